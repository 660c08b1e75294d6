"""
Test doubles for the ledger.

InMemoryDocumentStore implements the DocumentStore contract with optimistic
transactions: every document carries a version, a transaction records the
versions it read, and commit raises WriteConflictError if any of them moved.
Reads yield to the event loop so concurrent transactions really interleave.
"""

from copy import deepcopy
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import operator

from ledger.core.errors import WriteConflictError
from ledger.core.store import DocumentStore, Filter, StoreTransaction
from ledger.models import DocumentRequest, GeneratedBy

Key = Tuple[str, str]

COMPARISONS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def matches(doc: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    for field, op, value in filters:
        actual = doc.get(field)
        if op == "==":
            ok = actual == value
        elif op == "!=":
            ok = actual != value
        elif op == "in":
            ok = actual in value
        elif actual is None:
            ok = False
        else:
            ok = COMPARISONS[op](actual, value)
        if not ok:
            return False
    return True


class InMemoryTransaction(StoreTransaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        self.store = store
        self.read_versions: Dict[Key, int] = {}
        self.writes: Dict[Key, Dict[str, Any]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = (collection, doc_id)
        if key in self.writes:
            return deepcopy(self.writes[key])

        await asyncio.sleep(0)
        self.read_versions.setdefault(key, self.store.version(key))
        doc = deepcopy(self.store.docs.get(key))
        await self.store.fire_read_hook(key)
        await asyncio.sleep(0)
        return doc

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        self.read_versions.setdefault(key, self.store.version(key))
        self.writes[key] = deepcopy(data)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        current = await self.get(collection, doc_id)
        if current is None:
            return
        current.update(deepcopy(fields))
        self.writes[(collection, doc_id)] = current


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self.docs: Dict[Key, Dict[str, Any]] = {}
        self.versions: Dict[Key, int] = {}
        self.read_hooks: Dict[Key, Callable[[], Awaitable[None]]] = {}
        self.conflicting_collections = set()
        self.lost_acks = set()
        self.commits = 0
        self.conflicts = 0

    def version(self, key: Key) -> int:
        return self.versions.get(key, 0)

    def seed(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        self.docs[key] = deepcopy(data)
        self.versions[key] = self.version(key) + 1

    def peek(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return deepcopy(self.docs.get((collection, doc_id)))

    def documents(self, collection: str) -> List[Dict[str, Any]]:
        return [deepcopy(doc) for (coll, _), doc in self.docs.items() if coll == collection]

    def lose_commit_ack(self, collection: str) -> None:
        """Next commit writing to collection is applied but reported as a write conflict"""
        self.lost_acks.add(collection)

    def on_next_read(self, collection: str, doc_id: str, hook: Callable[[], Awaitable[None]]) -> None:
        """Run hook (once) right after a transaction reads this document"""
        self.read_hooks[(collection, doc_id)] = hook

    async def fire_read_hook(self, key: Key) -> None:
        hook = self.read_hooks.pop(key, None)
        if hook is not None:
            await hook()

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        return deepcopy(self.docs.get((collection, doc_id)))

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.seed(collection, doc_id, data)

    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        found = [doc for doc in self.documents(collection) if matches(doc, filters)]
        if order_by:
            found.sort(key=lambda doc: doc[order_by], reverse=descending)
        if limit:
            found = found[:limit]
        return found

    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[Any]]) -> Any:
        txn = InMemoryTransaction(self)
        result = await fn(txn)

        # Commit: validate and apply without yielding to the event loop
        for key, seen in txn.read_versions.items():
            if self.version(key) != seen:
                self.conflicts += 1
                raise WriteConflictError(f"{key[0]}/{key[1]} changed during transaction")
        for collection, _ in txn.writes:
            if collection in self.conflicting_collections:
                self.conflicts += 1
                raise WriteConflictError(f"forced conflict on {collection}")

        for key, data in txn.writes.items():
            self.docs[key] = data
            self.versions[key] = self.version(key) + 1
        self.commits += 1

        lost = self.lost_acks.intersection(collection for collection, _ in txn.writes)
        if lost:
            self.lost_acks -= lost
            raise WriteConflictError(f"commit on {', '.join(sorted(lost))} applied but not acknowledged")
        return result


class TickingClock:
    """Deterministic clock advancing one second per call"""

    def __init__(self, start: datetime = datetime(2026, 3, 15, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


GENERATED_BY = GeneratedBy(user_id="u-1", username="owner", customer_id="cust-1")


def make_request(**overrides) -> DocumentRequest:
    fields = {
        "customer_id": "cust-1",
        "document_type": "invoice",
        "customer_name": "Acme Ltd",
        "description": "Consulting",
        "amount": 1000,
        "currency": "ILS",
        "payment_method": None,
        "issue_date": date(2026, 3, 15),
        "generated_by": GENERATED_BY,
    }
    fields.update(overrides)
    return DocumentRequest(**fields)

"""
TRANSACTIONAL DOCUMENT STORE

Contract consumed by the ledger core plus the MongoDB driver.

A store exposes:
1. Document get / set by (collection, document id)
2. Range queries with equality / inequality / "in" filters, ordering, limit
3. run_transaction(fn): ONE optimistic attempt. fn receives a
   StoreTransaction; if a concurrent commit touched the same documents the
   attempt raises WriteConflictError and nothing is written. Retrying is
   the caller's job (see transactions.with_transaction). WriteConflictError
   must only be raised when the attempt is known NOT to have committed.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from ledger.core.collections import COUNTERS_COLLECTION, DOCUMENT_COLLECTIONS
from ledger.core.errors import ConflictError, WriteConflictError

logger = logging.getLogger(__name__)

# (field, operator, value); operators: ==, !=, <, <=, >, >=, in
Filter = Tuple[str, str, Any]

FILTER_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"
COMMIT_RETRIES = 3


class StoreTransaction(ABC):
    """Reads and writes performed inside one store transaction"""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ...


class DocumentStore(ABC):
    """Generic transactional document store"""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[Any]]) -> Any:
        ...


def build_mongo_filter(filters: Sequence[Filter]) -> Dict[str, Any]:
    """Translate (field, op, value) filters into a MongoDB query document"""
    query: Dict[str, Any] = {}
    for field, op, value in filters:
        if op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        clause = query.setdefault(field, {})
        clause[FILTER_OPERATORS[op]] = list(value) if op == "in" else value
    return query


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k != "_id"}


class MotorTransaction(StoreTransaction):
    """StoreTransaction bound to a MongoDB client session"""

    def __init__(self, db: AsyncIOMotorDatabase, session):
        self.db = db
        self.session = session

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.db[collection].find_one({"_id": doc_id}, session=self.session)
        return _strip_id(doc)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.db[collection].replace_one(
            {"_id": doc_id},
            {**data, "_id": doc_id},
            upsert=True,
            session=self.session
        )

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self.db[collection].update_one(
            {"_id": doc_id},
            {"$set": fields},
            session=self.session
        )


class MotorDocumentStore(DocumentStore):
    """
    DocumentStore on MongoDB multi-document transactions.

    Requires a replica set (transactions are unavailable on standalone
    servers). Write-write conflicts surface from the server with the
    TransientTransactionError label and are mapped to WriteConflictError.
    A commit whose outcome is unknown (UnknownTransactionCommitResult) is
    retried as a commit only; the callback never runs twice.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.db[collection].find_one({"_id": doc_id})
        return _strip_id(doc)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.db[collection].replace_one({"_id": doc_id}, {**data, "_id": doc_id}, upsert=True)

    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(build_mongo_filter(filters))
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [_strip_id(doc) for doc in docs]

    async def run_transaction(self, fn: Callable[[StoreTransaction], Awaitable[Any]]) -> Any:
        async with await self.client.start_session() as session:
            session.start_transaction()
            try:
                value = await fn(MotorTransaction(self.db, session))
            except (OperationFailure, ConnectionFailure) as e:
                await self._abort(session)
                if e.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                    logger.warning(f"[TRANSACTION] Write conflict: {e}")
                    raise WriteConflictError(str(e)) from e
                logger.error(f"[TRANSACTION ERROR] {str(e)}")
                raise
            except BaseException:
                await self._abort(session)
                raise
            await self._commit(session)
            return value

    @staticmethod
    async def _abort(session) -> None:
        if session.in_transaction:
            try:
                await session.abort_transaction()
            except PyMongoError as e:
                logger.warning(f"[TRANSACTION] Abort failed: {e}")

    @staticmethod
    async def _commit(session) -> None:
        """
        Commit, retrying ONLY the commit when its outcome is unknown.

        A commit with the UnknownTransactionCommitResult label may already be
        applied on the server, so fn must not run again.
        """
        for attempt in range(COMMIT_RETRIES + 1):
            try:
                await session.commit_transaction()
                return
            except (OperationFailure, ConnectionFailure) as e:
                if e.has_error_label(UNKNOWN_COMMIT_RESULT):
                    if attempt < COMMIT_RETRIES:
                        logger.warning(f"[TRANSACTION] Commit outcome unknown, retrying commit: {e}")
                        continue
                    logger.error(f"[TRANSACTION ERROR] Commit outcome unknown after {attempt + 1} attempts: {e}")
                    raise ConflictError(
                        "Transaction commit outcome unknown; re-read before retrying",
                        reason="commit_unknown",
                        details={"attempts": attempt + 1}
                    ) from e
                if e.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                    logger.warning(f"[TRANSACTION] Write conflict at commit: {e}")
                    raise WriteConflictError(str(e)) from e
                logger.error(f"[TRANSACTION ERROR] {str(e)}")
                raise

    async def create_indexes(self) -> None:
        """
        Create unique indexes backing the numbering guarantees.
        """
        try:
            await self.db[COUNTERS_COLLECTION].create_index(
                [("customer_id", ASCENDING), ("year", ASCENDING)],
                unique=True,
                name="unique_counter_key"
            )
            for collection in DOCUMENT_COLLECTIONS.values():
                await self.db[collection].create_index(
                    [("customer_id", ASCENDING), ("document_number", ASCENDING)],
                    unique=True,
                    name="unique_document_number"
                )
                await self.db[collection].create_index(
                    [("customer_id", ASCENDING), ("generated_at", ASCENDING)],
                    name="customer_generated_at"
                )
            logger.info("Created ledger unique constraints")
        except OperationFailure as e:
            # Index may already exist with different options
            logger.warning(f"Index creation result: {str(e)}")

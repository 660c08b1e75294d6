"""
LEDGER CORE - TRANSACTION RUNNER

with_transaction() re-runs a whole read-compute-write unit when the store
reports a write conflict, and returns a Result instead of letting store
exceptions cross into callers.

Usage:
    result = await with_transaction(store, _apply, max_retries=5)
    if not result.ok:
        if isinstance(result.error, ConflictError):
            ...
    value = result.unwrap()
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar
import asyncio
import logging
import random

from ledger.core.errors import ConflictError, LedgerError, WriteConflictError
from ledger.core.store import DocumentStore, StoreTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY_MS = 100  # Base delay in milliseconds


@dataclass
class Result(Generic[T]):
    """Outcome of a ledger mutation: either a value or a LedgerError"""
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Result[T]":
        return cls(error=error)


async def with_transaction(
    store: DocumentStore,
    fn: Callable[[StoreTransaction], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    label: str = "transaction"
) -> Result[T]:
    """
    Run fn inside a store transaction, retrying on WriteConflictError.

    - LedgerError raised by fn aborts the transaction and is returned as-is,
      never retried (NotFound / Validation / business Conflict).
    - WriteConflictError re-runs fn from scratch, up to max_retries times,
      with linear back-off plus jitter.
    - Budget exhausted -> Result with ConflictError; the store guarantees
      nothing from the failed attempts was written.
    """
    attempts = max_retries + 1
    for attempt in range(attempts):
        try:
            value = await store.run_transaction(fn)
            if attempt:
                logger.info(f"[TRANSACTION] {label} committed after {attempt} retries")
            return Result.success(value)
        except LedgerError as e:
            logger.info(f"[TRANSACTION] {label} aborted: {e.message}")
            return Result.failure(e)
        except WriteConflictError as e:
            logger.warning(f"[TRANSACTION] {label} write conflict, retry {attempt + 1}/{max_retries}: {e}")
            if attempt == attempts - 1:
                break
            if retry_delay_ms:
                delay = retry_delay_ms * (attempt + 1) / 1000
                await asyncio.sleep(delay * random.uniform(0.5, 1.0))
            else:
                await asyncio.sleep(0)

    logger.error(f"[TRANSACTION ERROR] {label} failed after {attempts} attempts")
    return Result.failure(ConflictError(
        f"Failed to commit {label} after {attempts} attempts",
        reason="commit_failed",
        details={"attempts": attempts}
    ))

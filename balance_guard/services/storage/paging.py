"""
Paginated reads and batched writes.

Large operations bound their per-request payload: the ledger is read a
page at a time and written or deleted a batch at a time. Each batch is
awaited before the next one starts, so ordering stays deterministic and a
failure can be reported as "N rows done before batch K failed".
"""

from typing import Awaitable, Callable, Iterator, Sequence, TypeVar

import structlog

from balance_guard.models.transaction import TransactionRecord
from balance_guard.services.storage.interface import (
    BatchWriteError,
    StorageError,
    TransactionStoreInterface,
)

T = TypeVar("T")

logger = structlog.get_logger(__name__)


def batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def fetch_all_transactions(
    store: TransactionStoreInterface,
    page_size: int,
) -> list[TransactionRecord]:
    """
    Read the entire ledger, one page at a time.

    Stops as soon as a page comes back shorter than ``page_size``.

    Raises:
        StorageError: If any page cannot be read
    """
    records: list[TransactionRecord] = []
    offset = 0

    while True:
        page = await store.fetch_page(offset, page_size)
        records.extend(page)
        offset += len(page)
        logger.debug("ledger_page_fetched", rows=len(page), total=len(records))
        if len(page) < page_size:
            break

    return records


async def run_in_batches(
    items: Sequence[T],
    batch_size: int,
    operation: Callable[[Sequence[T]], Awaitable[int]],
    label: str,
) -> int:
    """
    Apply ``operation`` to sequential batches of ``items``.

    The first failing batch aborts the remaining ones.

    Returns:
        Number of items handed to ``operation`` across all batches

    Raises:
        BatchWriteError: With the number of items completed before the failure
    """
    completed = 0
    total_batches = (len(items) + batch_size - 1) // batch_size

    for index, batch in enumerate(batched(items, batch_size), start=1):
        try:
            await operation(batch)
        except StorageError as e:
            logger.error(
                "batch_failed",
                operation=label,
                batch=index,
                total_batches=total_batches,
                completed=completed,
                error=str(e),
            )
            raise BatchWriteError(
                f"{label} failed on batch {index}/{total_batches}: {e}",
                completed=completed,
                batch_index=index,
            ) from e

        completed += len(batch)
        logger.info(
            "batch_completed",
            operation=label,
            batch=index,
            total_batches=total_batches,
            completed=completed,
        )

    return completed

"""MetaSync — Bounded-concurrency batch runner.

Each record is handled on its own; a record that raises becomes an ERROR
outcome and never takes its batch-mates down with it.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from metasync.core.logging import get_logger

logger = get_logger("sync.batching")


class UpsertOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class BatchTally:
    success: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.SUCCESS:
            self.success += 1
        elif outcome is UpsertOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    @property
    def total(self) -> int:
        return self.success + self.skipped + self.errors


async def _attempt(
    handler: Callable[[Any], Awaitable[UpsertOutcome]], item: Any, label: str
) -> UpsertOutcome:
    try:
        return await handler(item)
    except Exception as e:
        item_id = None
        if isinstance(item, dict):
            item_id = item.get("id") or item.get("ad_id")
        logger.error(f"Error upserting {label} {item_id}: {e}")
        return UpsertOutcome.ERROR


async def run_in_batches(
    items: Sequence[Any],
    handler: Callable[[Any], Awaitable[UpsertOutcome]],
    batch_size: int = 10,
    label: str = "record",
) -> BatchTally:
    """Run `handler` over `items`, `batch_size` at a time.

    Batches are processed one after another; members of a batch run
    concurrently.
    """
    tally = BatchTally()
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*(_attempt(handler, item, label) for item in batch))
        for outcome in outcomes:
            tally.record(outcome)
        logger.info(
            f"Processed {min(start + batch_size, len(items))}/{len(items)} {label}s "
            f"({tally.success} success, {tally.skipped} skipped, {tally.errors} errors)"
        )
    return tally

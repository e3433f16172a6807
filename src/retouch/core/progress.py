"""Progress projection for batches.

:func:`compute_progress` is a pure function of a status snapshot.  It must be
recomputed on every poll; nothing is cached.

:func:`poll_progress` implements the consumer-side polling contract: fetch a
snapshot, yield its projection, and keep re-fetching on a fixed interval
while any unit is ``processing``.  Polling stops as soon as no unit is
processing, including when there are no units at all.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Any

from pydantic import BaseModel

from .models import UnitStatus, WorkUnit


class ProgressSnapshot(BaseModel):
    """Summary of a batch's unit statuses.

    ``percentage`` counts only ``completed`` units; ``error`` units are
    settled but not complete.
    """

    total: int
    idle: int
    processing: int
    completed: int
    error: int
    percentage: float

    @property
    def is_active(self) -> bool:
        return self.processing > 0

    @property
    def counts(self) -> dict[str, int]:
        return {
            UnitStatus.IDLE.value: self.idle,
            UnitStatus.PROCESSING.value: self.processing,
            UnitStatus.COMPLETED.value: self.completed,
            UnitStatus.ERROR.value: self.error,
        }


def compute_progress(units: Iterable[WorkUnit | UnitStatus | str]) -> ProgressSnapshot:
    """Project a status snapshot into counts and a completion percentage.

    Args:
        units: Work units, or their statuses.

    Returns:
        The projection; ``percentage`` is 0 when there are no units.
    """
    counts = {status: 0 for status in UnitStatus}
    for item in units:
        status = item.status if isinstance(item, WorkUnit) else UnitStatus(item)
        counts[status] += 1

    total = sum(counts.values())
    completed = counts[UnitStatus.COMPLETED]
    percentage = (completed / total) * 100 if total > 0 else 0.0

    return ProgressSnapshot(
        total=total,
        idle=counts[UnitStatus.IDLE],
        processing=counts[UnitStatus.PROCESSING],
        completed=completed,
        error=counts[UnitStatus.ERROR],
        percentage=percentage,
    )


def poll_interval_ms(snapshot: ProgressSnapshot, interval: float) -> int | None:
    """Return the client polling interval, or ``None`` when polling should stop."""
    return int(interval * 1000) if snapshot.is_active else None


async def poll_progress(
    fetch: Callable[[], Awaitable[list[WorkUnit]]],
    interval: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[ProgressSnapshot]:
    """Yield progress snapshots while any unit is processing.

    Args:
        fetch: Returns the current units of the batch.
        interval: Seconds between fetches while work is outstanding.
        sleep: Coroutine used to wait; injectable for tests.

    Yields:
        One snapshot per fetch.  The last one has no processing units.
    """
    while True:
        snapshot = compute_progress(await fetch())
        yield snapshot
        if not snapshot.is_active:
            return
        await sleep(interval)

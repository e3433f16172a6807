"""Batch orchestration with bounded concurrency.

:class:`BatchOrchestrator` runs the dispatcher over a list of work units
and reports one settlement per unit, in input order.

Algorithm
---------
1. Split the units into consecutive chunks of ``concurrency_limit``.
2. Before a chunk starts, check the cancel event.  If it is set, every
   remaining unit settles as rejected and is left untouched in storage.
3. Emit a ``processing`` :class:`~retouch.core.models.StatusEvent` for every
   unit of the chunk, synchronously, before any network call is awaited.
4. Run the chunk's units concurrently.  Each unit persists ``processing``,
   dispatches under ``dispatch_timeout`` and persists its terminal state
   (``completed`` with result and history entry, or ``error``).
5. Wait for the whole chunk to settle (hard barrier), then sleep
   ``pacing_delay`` unless this was the last chunk.

Failure Isolation
-----------------
A unit's failure becomes a rejected settlement and never affects its
siblings.  Store failures are logged as a divergence between persisted and
reported state; the settlement still reflects the dispatch outcome.

If the task running a batch is cancelled mid-chunk, every unit whose
dispatch was in flight persists ``error`` ("Batch cancelled") before the
cancellation propagates, so no unit is left ``processing``.

Whether a batch as a whole "succeeded" is for the caller to decide from
:attr:`BatchResult.succeeded` and :attr:`BatchResult.failed`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .dispatcher import TransformationDispatcher
from .errors import BatchCancelledError, PersistenceError, ProviderError, ValidationError
from .models import (
    BatchResult,
    EditHistory,
    Settlement,
    StatusEvent,
    TransformationSettings,
    TransformResult,
    UnitStatus,
    WorkUnit,
    utcnow,
)
from .storage import SessionStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusEvent], None]


def chunked(units: Sequence[WorkUnit], size: int) -> list[Sequence[WorkUnit]]:
    """Split ``units`` into consecutive chunks of at most ``size`` items."""
    return [units[i : i + size] for i in range(0, len(units), size)]


class BatchOrchestrator:
    """Runs work units through the dispatcher under a concurrency bound.

    Args:
        dispatcher: Performs one provider call per unit.
        store: Session store receiving status updates.
        concurrency_limit: Default chunk size.
        pacing_delay: Seconds to wait between chunks.
        dispatch_timeout: Seconds allowed for one unit's dispatch.
        sleep: Coroutine used for pacing; injectable for tests.
        clock: Monotonic clock recorded at each chunk start.
    """

    def __init__(
        self,
        dispatcher: TransformationDispatcher,
        store: SessionStore,
        concurrency_limit: int = 3,
        pacing_delay: float = 0.5,
        dispatch_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.concurrency_limit = concurrency_limit
        self.pacing_delay = pacing_delay
        self.dispatch_timeout = dispatch_timeout
        self._sleep = sleep
        self._clock = clock
        self._listeners: list[StatusListener] = []

    def add_listener(self, listener: StatusListener) -> None:
        """Register a callback invoked for every status event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def run_batch(
        self,
        units: Sequence[WorkUnit],
        prompt: str,
        settings: TransformationSettings,
        concurrency_limit: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Process ``units`` chunk by chunk.

        Args:
            units: Work units to process, in output order.
            prompt: Prompt applied to every unit.
            settings: Settings shared by every unit.
            concurrency_limit: Chunk size; defaults to the orchestrator's.
            cancel_event: When set, no further chunk is started.

        Returns:
            Settlements in input order plus chunk timing.

        Raises:
            ValidationError: Missing prompt or a non-positive concurrency limit.
        """
        limit = concurrency_limit if concurrency_limit is not None else self.concurrency_limit
        if limit < 1:
            raise ValidationError("concurrency_limit must be at least 1")
        if not prompt or not prompt.strip():
            raise ValidationError("Missing required field: prompt")

        units = list(units)
        batch_id = units[0].batch_id if units else None
        result = BatchResult(batch_id=batch_id)
        chunks = chunked(units, limit)

        logger.info(
            f"Starting batch {batch_id}: {len(units)} units in {len(chunks)} chunks "
            f"(concurrency {limit})"
        )

        for index, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                remaining = units[sum(len(c) for c in chunks[:index]) :]
                for unit in remaining:
                    result.settlements.append(
                        Settlement(
                            unit_id=unit.id,
                            status="rejected",
                            error=str(BatchCancelledError("Batch cancelled")),
                        )
                    )
                result.cancelled = len(remaining)
                logger.info(f"Batch {batch_id} cancelled, {len(remaining)} units not started")
                break

            result.chunk_started_at.append(self._clock())
            for unit in chunk:
                self._emit_status(unit, UnitStatus.PROCESSING)

            settled = await asyncio.gather(
                *(self._process_unit(unit, prompt, settings) for unit in chunk)
            )
            result.settlements.extend(settled)

            if index < len(chunks) - 1:
                await self._sleep(self.pacing_delay)

        logger.info(
            f"Batch {batch_id} finished: {result.succeeded} succeeded, {result.failed} failed"
        )
        return result

    async def process_batch(
        self,
        batch_id: str,
        prompt: str,
        settings: TransformationSettings,
        owner_id: str | None = None,
        concurrency_limit: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Load a batch's units from the store and run them."""
        units = await self.store.list_by_batch_id(batch_id, owner_id=owner_id)
        result = await self.run_batch(
            units,
            prompt,
            settings,
            concurrency_limit=concurrency_limit,
            cancel_event=cancel_event,
        )
        result.batch_id = batch_id
        return result

    async def run_unit(
        self,
        unit: WorkUnit,
        prompt: str,
        settings: TransformationSettings,
    ) -> Settlement:
        """Process a single unit (the single-image flow).

        Raises:
            ValidationError: Before any status change if a field is missing.
        """
        self.dispatcher.validate(unit, prompt, settings)
        self._emit_status(unit, UnitStatus.PROCESSING)
        return await self._process_unit(unit, prompt, settings)

    async def _process_unit(
        self,
        unit: WorkUnit,
        prompt: str,
        settings: TransformationSettings,
    ) -> Settlement:
        prompt = prompt.strip()
        await self._persist(
            unit.id,
            {
                "status": UnitStatus.PROCESSING,
                "original_image_url": unit.original_image_url,
                "prompt": prompt,
                "settings": settings.model_dump(),
                "current_image_url": None,
                "error_message": None,
                "processing_started_at": utcnow(),
                "processing_completed_at": None,
            },
        )

        try:
            value = await asyncio.wait_for(
                self.dispatcher.dispatch(unit, prompt, settings),
                timeout=self.dispatch_timeout,
            )
        except asyncio.CancelledError:
            await self._fail(unit, str(BatchCancelledError("Batch cancelled")))
            raise
        except asyncio.TimeoutError:
            error: Exception = ProviderError(
                f"Dispatch timed out after {self.dispatch_timeout:g} seconds"
            )
        except Exception as e:
            error = e
        else:
            await self._complete(unit, prompt, value)
            return Settlement(unit_id=unit.id, status="fulfilled", value=value)

        message = str(error) or type(error).__name__
        logger.error(f"Unit {unit.id} failed: {message}")
        await self._fail(unit, message)
        return Settlement(unit_id=unit.id, status="rejected", error=message)

    async def _fail(self, unit: WorkUnit, message: str) -> None:
        await self._persist(
            unit.id,
            {
                "status": UnitStatus.ERROR,
                "current_image_url": None,
                "error_message": message,
                "processing_completed_at": utcnow(),
            },
        )
        self._emit_status(unit, UnitStatus.ERROR, error=message)

    async def _complete(self, unit: WorkUnit, prompt: str, value: TransformResult) -> None:
        await self._persist(
            unit.id,
            {
                "status": UnitStatus.COMPLETED,
                "current_image_url": value.image_url,
                "processing_completed_at": utcnow(),
            },
        )
        try:
            await self.store.add_history(
                EditHistory(
                    session_id=unit.id,
                    image_url=value.image_url,
                    prompt=prompt,
                    processing_time_ms=value.processing_time_ms,
                )
            )
        except Exception as e:
            logger.warning(f"Could not record edit history for unit {unit.id}: {e}")
        self._emit_status(unit, UnitStatus.COMPLETED)

    async def _persist(self, unit_id: str, updates: dict[str, Any]) -> None:
        status = updates.get("status")
        try:
            updated = await self.store.update_by_id(unit_id, updates)
        except Exception as e:
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            logger.warning(
                f"Persisted state diverged for unit {unit_id} (status {status}): {error}"
            )
            return
        if updated is None:
            logger.warning(
                f"Persisted state diverged for unit {unit_id} (status {status}): unit not in store"
            )

    def _emit_status(self, unit: WorkUnit, status: UnitStatus, error: str | None = None) -> None:
        self._emit(StatusEvent(unit_id=unit.id, batch_id=unit.batch_id, status=status, error=error))

    def _emit(self, event: StatusEvent) -> None:
        logger.debug(f"Unit {event.unit_id} -> {event.status.value}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Status listener {listener!r} failed: {e}")

"""Refresh loop that turns periodic metric queries into snapshots."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TypeVar

from clustertop.errors import MetricsError, UnsupportedError
from clustertop.metrics import Metrics
from clustertop.models import Snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_POLL_RATE = 0.1


class PollerState(Enum):
    """States of the refresh loop."""

    IDLE = "idle"
    POLLING = "polling"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _optional(call: Awaitable[T]) -> T | None:
    """Await an optional metric, mapping UnsupportedError to None."""
    try:
        return await call
    except UnsupportedError as exc:
        logger.debug("Metric unavailable: %s", exc)
        return None


class MetricsPoller:
    """
    Poll a Metrics source on a fixed cadence and publish Snapshots.

    Each tick issues all eight queries concurrently. The next tick never
    starts before the current batch has finished, so at most one batch is
    in flight. A batch in which any query fails is dropped as a whole and
    the failure is logged; the loop keeps running.

    Runs as an asyncio task. Cancelling the task (see stop()) stops
    scheduling and cancels the outstanding queries of the current batch.
    """

    def __init__(
        self,
        metrics: Metrics,
        sink: Callable[[Snapshot], None],
        poll_rate: float = 2.0,
        range_width: timedelta = timedelta(hours=1),
        step: timedelta = timedelta(seconds=15),
    ) -> None:
        """
        Initialize the MetricsPoller.

        Args:
            metrics: Source of the metric values, shared by all queries.
            sink: Called with every published snapshot.
            poll_rate: How often to poll the backend (in seconds). Default 2.0s.
            range_width: How far back the rate series and peaks reach.
            step: Resolution of the rate series.
        """
        self._metrics = metrics
        self._sink = sink
        self.poll_rate = poll_rate
        self._range_width = range_width
        self._step = step
        self._state = PollerState.IDLE
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.published = 0
        self.dropped = 0
        self._last_observed: datetime | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(MIN_POLL_RATE, value)

    @property
    def state(self) -> PollerState:
        """Get the current state of the loop."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the polling task is running."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling in a background task of the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(), name="MetricsPoller")

    async def stop(self) -> None:
        """Cancel the polling task and wait until it has finished."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._state = PollerState.CANCELLED

    async def run(self) -> None:
        """Poll until cancelled."""
        loop = asyncio.get_running_loop()
        logger.info(
            "Poller started (interval=%.1fs, range=%s, step=%s)",
            self._poll_rate,
            self._range_width,
            self._step,
        )
        try:
            while True:
                started = loop.time()
                await self.tick()
                # Missed ticks are coalesced: a slow batch delays the next one
                await asyncio.sleep(max(0.0, self._poll_rate - (loop.time() - started)))
        except asyncio.CancelledError:
            self._state = PollerState.CANCELLED
            logger.info("Poller stopped")
            raise

    async def tick(self) -> Snapshot | None:
        """
        Run one batch of queries and publish the resulting snapshot.

        Returns:
            The published snapshot, or None if the batch was dropped.
        """
        self._state = PollerState.POLLING
        self.ticks += 1
        snapshot = None
        try:
            snapshot = await self._collect_snapshot()
        except* MetricsError as group:
            for exc in group.exceptions:
                logger.warning("Dropping tick %d: %s", self.ticks, exc)
        except* Exception:
            logger.exception("Dropping tick %d: unexpected error", self.ticks)

        self._state = PollerState.IDLE
        if snapshot is None:
            self.dropped += 1
            return None

        try:
            self._sink(snapshot)
        except Exception:
            logger.exception("Display sink failed on snapshot at %s", snapshot.observed_at)
        self.published += 1
        return snapshot

    async def _collect_snapshot(self) -> Snapshot:
        """Query all eight metrics concurrently and assemble a snapshot."""
        end = _utcnow()
        if self._last_observed is not None and end < self._last_observed:
            # Wall clock stepped back; keep snapshots in non-decreasing order
            end = self._last_observed
        self._last_observed = end
        start = end - self._range_width
        metrics = self._metrics

        async with asyncio.TaskGroup() as group:
            total_cpu = group.create_task(metrics.get_total_cpu())
            total_memory = group.create_task(_optional(metrics.get_total_memory()))
            current_cpu = group.create_task(metrics.get_current_cpu_rate())
            max_cpu = group.create_task(_optional(metrics.get_max_cpu_rate(start, end)))
            cpu_rate = group.create_task(metrics.get_cpu_rate(start, end, self._step))
            current_memory = group.create_task(metrics.get_current_memory_rate())
            max_memory = group.create_task(_optional(metrics.get_max_memory_rate(start, end)))
            memory_rate = group.create_task(metrics.get_memory_rate(start, end, self._step))

        return Snapshot(
            total_cpu=total_cpu.result(),
            total_memory_bytes=total_memory.result(),
            current_cpu_percent=current_cpu.result(),
            max_cpu_percent=max_cpu.result(),
            cpu_rate=cpu_rate.result(),
            current_memory_percent=current_memory.result(),
            max_memory_percent=max_memory.result(),
            memory_rate=memory_rate.result(),
            observed_at=end,
        )

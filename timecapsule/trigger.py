"""Entry points that start dispatch runs: manual, change-driven and periodic."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Callable, List, Optional

from .dispatcher import Dispatcher
from .logger import get_logger
from .models import BatchResult, ChangeEvent
from .notifications import Debouncer, SleepCallable, invoke_callback
from .prometheus import DeliveryMetrics

RunObserver = Callable[[BatchResult], Any]

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_SETTLE_DELAY = 1.0


class TriggerCoordinator:
    """Funnel every caller into :meth:`run_dispatch`.

    Runs may overlap, inside this process or across processes; the dispatcher's
    leases and guarded writes keep overlapping runs from sending a record twice.
    ``settle_delay`` is the time granted to the store before re-querying, both
    for change notices and for the follow-up check after a productive run.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        start_active: bool = True,
        sleep: SleepCallable = asyncio.sleep,
        metrics: DeliveryMetrics | None = None,
        logger=None,
    ):
        self.dispatcher = dispatcher
        self.poll_interval = float(poll_interval)
        self.settle_delay = max(0.0, float(settle_delay))
        self._sleep = sleep
        self.metrics = metrics or dispatcher.ctx.metrics
        self.logger = logger or get_logger("trigger")
        self._active = bool(start_active)
        self._observers: List[RunObserver] = []
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_poll: Optional[asyncio.Task] = None
        self._change_debouncer = Debouncer(
            self._run_after_change,
            self.settle_delay,
            sleep=sleep,
            logger=self.logger,
            name="change-dispatch",
        )
        self.last_result: Optional[BatchResult] = None

    # ---------------------------------------------------------------- observers
    def subscribe(self, callback: RunObserver) -> Callable[[], None]:
        """Call ``callback`` with every :class:`BatchResult`; returns an unsubscriber."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    async def _notify(self, result: BatchResult) -> None:
        for callback in list(self._observers):
            await invoke_callback(callback, result, self.logger)

    # ------------------------------------------------------------------ running
    @property
    def active(self) -> bool:
        return self._active

    async def run_dispatch(self, trigger: str = "manual") -> BatchResult:
        """Run the dispatcher once, plus one follow-up check when it did work.

        Errors reading the due set propagate; per-record errors are reported in
        the returned result.
        """
        self.metrics.inc_run(trigger)
        result = await self.dispatcher.run()
        if result.processed:
            self.logger.info(
                "Dispatch (%s) processed=%d success=%d failed=%d skipped=%d",
                trigger,
                result.processed,
                result.success,
                result.failed,
                result.skipped,
            )
        if result.changed_anything:
            result.follow_up = await self._follow_up()
        self.last_result = result
        await self._notify(result)
        return result

    async def _follow_up(self) -> Optional[BatchResult]:
        """Catch records that became due while the previous run was processing."""
        await self._sleep(self.settle_delay)
        try:
            if not await self.dispatcher.has_due():
                return None
            self.metrics.inc_run("follow-up")
            return await self.dispatcher.run()
        except Exception:
            self.logger.exception("Follow-up dispatch check failed")
            return None

    # ------------------------------------------------------------- change feed
    def notify_change(self, _event: Optional[ChangeEvent] = None) -> None:
        """Schedule a debounced run in response to a store change.

        The event payload is only a wake-up signal and is not inspected.
        """
        if not self._active:
            return
        self._change_debouncer.trigger()

    async def _run_after_change(self) -> None:
        await self.run_dispatch("change")

    # ----------------------------------------------------------------- commands
    def wake(self) -> None:
        """Interrupt the periodic wait so the next poll happens now."""
        self._wake_event.set()

    def suspend(self) -> None:
        self._active = False

    def activate(self) -> None:
        self._active = True
        self._wake_event.set()

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the periodic backstop loop."""
        if self._task_poll and not self._task_poll.done():
            return
        self._stop.clear()
        self._task_poll = asyncio.create_task(self._poll_loop(), name="dispatch-poll-loop")

    async def stop(self) -> None:
        """Stop the periodic loop and drop pending change-driven runs."""
        self._stop.set()
        self._wake_event.set()
        await self._change_debouncer.cancel()
        if self._task_poll:
            await asyncio.gather(self._task_poll, return_exceptions=True)
            self._task_poll = None

    async def drain(self) -> None:
        """Wait for change-driven runs already scheduled to finish."""
        await self._change_debouncer.drain()

    async def poll_once(self) -> Optional[BatchResult]:
        """Run a periodic check, returning ``None`` when nothing was due."""
        if not self._active:
            return None
        if not await self.dispatcher.has_due():
            await self.dispatcher.refresh_pending_gauge()
            return None
        return await self.run_dispatch("periodic")

    async def _poll_loop(self) -> None:
        self.logger.debug("Dispatch poll loop started (interval=%ss)", self.poll_interval)
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as exc:  # pragma: no cover - loop must survive
                self.logger.exception("Unhandled error in dispatch poll loop: %s", exc)
            await self._wait_for_wakeup(self.poll_interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop until ``timeout`` elapses or :meth:`wake` is called."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()


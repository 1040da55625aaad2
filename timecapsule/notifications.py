"""In-process change feed and debounced wake-ups for scheduled deliveries."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from .logger import get_logger
from .models import ChangeEvent

ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
SleepCallable = Callable[[float], Awaitable[Any]]


async def invoke_callback(callback: Callable[[Any], Any], arg: Any, logger) -> None:
    """Call a sync or async callback, logging its failure instead of raising."""
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Subscriber %r failed", callback)


class ChangeFeed:
    """Deliver :class:`ChangeEvent` notices to registered subscribers.

    Subscribers receive events in registration order. A failing subscriber is
    logged and does not prevent the others from being notified.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger("notifications")
        self._subscribers: List[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, event: ChangeEvent) -> None:
        """Notify every subscriber of ``event``."""
        for callback in list(self._subscribers):
            await invoke_callback(callback, event, self.logger)


class Debouncer:
    """Run ``action`` once, ``delay`` seconds after the first of a burst of triggers.

    Triggers arriving while the delay is running are folded into the pending
    run; a trigger arriving once the action has started schedules a new run.
    The delay is the settle time granted to the store before re-querying.
    """

    def __init__(
        self,
        action: Callable[[], Awaitable[Any]],
        delay: float,
        *,
        sleep: SleepCallable = asyncio.sleep,
        logger=None,
        name: str = "debounced-action",
    ):
        self.action = action
        self.delay = max(0.0, float(delay))
        self._sleep = sleep
        self.logger = logger or get_logger("notifications")
        self.name = name
        self._waiting = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def waiting(self) -> bool:
        return self._waiting

    def trigger(self, _event: Optional[Any] = None) -> None:
        """Request a run; the payload, if any, is ignored."""
        if self._waiting:
            return
        self._waiting = True
        task = asyncio.create_task(self._run(), name=self.name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        try:
            await self._sleep(self.delay)
        finally:
            self._waiting = False
        try:
            await self.action()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Debounced action %s failed", self.name)

    async def drain(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel pending runs."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._waiting = False

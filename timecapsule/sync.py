"""Owner-side view of scheduled deliveries kept in step with the store."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import AuthRequired, ValidationError
from .logger import get_logger
from .models import BatchResult, ChangeEvent, DeliveryStatus, ScheduledDelivery, StatusChange
from .notifications import ChangeFeed, Debouncer, SleepCallable, invoke_callback

STATUS_TABS = ("all", "pending", "sent", "failed")

StatusChangeCallback = Callable[[StatusChange], object]


def filter_deliveries(
    deliveries: Iterable[ScheduledDelivery],
    search_query: str = "",
    status_filter: Sequence[DeliveryStatus | str] = (),
    active_tab: str = "all",
) -> List[ScheduledDelivery]:
    """Select the deliveries shown for a tab, a status set and a search string.

    The tab narrows first, then the status set, then a case-insensitive
    substring match against the file name or the recipient address.
    """
    tab = (active_tab or "all").lower()
    if tab not in STATUS_TABS:
        raise ValidationError(f"unknown tab: {active_tab}")
    try:
        statuses = {DeliveryStatus(s) for s in status_filter}
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    query = (search_query or "").strip().lower()

    selected = []
    for delivery in deliveries:
        if tab != "all" and delivery.status.value != tab:
            continue
        if statuses and delivery.status not in statuses:
            continue
        if query and query not in delivery.file_name.lower() and query not in delivery.recipient_address.lower():
            continue
        selected.append(delivery)
    return selected


def diff_statuses(
    previous: Iterable[ScheduledDelivery], current: Iterable[ScheduledDelivery]
) -> List[StatusChange]:
    """Return the deliveries that left ``pending`` between two snapshots."""
    before: Dict[str, ScheduledDelivery] = {d.id: d for d in previous}
    changes = []
    for delivery in current:
        old = before.get(delivery.id)
        if old is None or old.status == delivery.status:
            continue
        if old.status == DeliveryStatus.PENDING and delivery.status in (DeliveryStatus.SENT, DeliveryStatus.FAILED):
            changes.append(
                StatusChange(id=delivery.id, file_name=delivery.file_name, old=old.status, new=delivery.status)
            )
    return changes


class DeliverySync:
    """Cached list of one owner's deliveries, refetched on every signal.

    Change notices and dispatch results only tell the view to re-query; their
    payloads never patch the cached list.
    """

    def __init__(
        self,
        store,
        owner_id: str,
        *,
        settle_delay: float = 1.0,
        sleep: SleepCallable = asyncio.sleep,
        logger=None,
    ):
        if not owner_id:
            raise AuthRequired()
        self.store = store
        self.owner_id = owner_id
        self.logger = logger or get_logger("sync")
        self.deliveries: List[ScheduledDelivery] = []
        self.loaded = False
        self._listeners: List[StatusChangeCallback] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._refresh_debouncer = Debouncer(
            self.refresh, settle_delay, sleep=sleep, logger=self.logger, name=f"sync-{owner_id}"
        )

    def on_status_change(self, callback: StatusChangeCallback) -> Callable[[], None]:
        """Register a callback fired when a delivery is sent or fails."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def refresh(self) -> List[StatusChange]:
        """Refetch the owner's deliveries and replace the cached list."""
        fresh = await self.store.list_by_owner(self.owner_id)
        changes = diff_statuses(self.deliveries, fresh) if self.loaded else []
        self.deliveries = fresh
        self.loaded = True
        for change in changes:
            if change.new == DeliveryStatus.SENT:
                self.logger.info('File "%s" has been sent', change.file_name)
            else:
                self.logger.warning('Failed to send "%s"', change.file_name)
            for callback in list(self._listeners):
                await invoke_callback(callback, change, self.logger)
        return changes

    def on_change(self, _event: Optional[ChangeEvent] = None) -> None:
        """Schedule a refresh after the settle delay; the payload is ignored."""
        self._refresh_debouncer.trigger()

    async def on_dispatch(self, _result: BatchResult) -> None:
        await self.refresh()

    def view(
        self,
        search_query: str = "",
        status_filter: Sequence[DeliveryStatus | str] = (),
        active_tab: str = "all",
    ) -> List[ScheduledDelivery]:
        return filter_deliveries(self.deliveries, search_query, status_filter, active_tab)

    def attach(self, trigger, changes: ChangeFeed | None = None) -> None:
        """Follow dispatch results of ``trigger`` and notices of ``changes``."""
        self._unsubscribers.append(trigger.subscribe(self.on_dispatch))
        if changes is not None:
            self._unsubscribers.append(changes.subscribe(self.on_change))

    async def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self._refresh_debouncer.cancel()

    async def drain(self) -> None:
        """Wait for scheduled refreshes to complete."""
        await self._refresh_debouncer.drain()

"""Dispatch of due deliveries: link rendering, mail send and status transition.

A record is only emailed after this runner wins a lease on it through a
conditional update, and its final status is written with a second conditional
update keyed on the expected prior status. Mail send and status write are not
one transaction: a crash between the two leaves the record pending and it is
emailed again once the lease expires (at-least-once delivery).
"""

from __future__ import annotations

import asyncio
import html
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from .context import DeliveryContext
from .errors import PreconditionFailed
from .mailer import MailResult
from .models import BatchResult, DeliveryStatus, DispatchDetail, ScheduledDelivery

DEFAULT_LINK_VALIDITY_HOURS = 24
RETRYABLE_FROM = (DeliveryStatus.PENDING, DeliveryStatus.FAILED)


def build_access_url(base_url: str, access_token: str) -> str:
    """Compose the recipient-facing access URL for a token."""
    return f"{base_url.rstrip('/')}/access/{access_token}"


def render_delivery_message(
    delivery: ScheduledDelivery,
    access_url: str,
    validity_hours: int = DEFAULT_LINK_VALIDITY_HOURS,
) -> Tuple[str, str]:
    """Return the subject and HTML body announcing a delivered file."""
    subject = f'Your scheduled file "{delivery.file_name}" is ready'
    name = html.escape(delivery.file_name)
    link = html.escape(access_url, quote=True)
    hours = f"{validity_hours} hour" if validity_hours == 1 else f"{validity_hours} hours"
    body = (
        "Hello,<br><br>"
        f'Your scheduled file "{name}" is now available. Click the link below to access it:<br><br>'
        f'<a href="{link}">{link}</a><br><br>'
        f"This link will expire in {hours}.<br><br>"
        "Regards,<br>TimeCapsule Team"
    )
    return subject, body


class Dispatcher:
    """Send access links for every due pending delivery."""

    def __init__(
        self,
        ctx: DeliveryContext,
        *,
        base_url: str,
        link_validity_hours: int = DEFAULT_LINK_VALIDITY_HOURS,
        concurrency: int = 10,
        send_timeout: float = 30.0,
        store_timeout: float = 10.0,
        claim_ttl_seconds: int = 300,
        log_delivery_activity: bool = False,
    ):
        self.ctx = ctx
        self.base_url = base_url
        self.link_validity_hours = int(link_validity_hours)
        self.concurrency = max(1, int(concurrency))
        self.send_timeout = float(send_timeout)
        self.store_timeout = float(store_timeout)
        self.claim_ttl = timedelta(seconds=max(1, int(claim_ttl_seconds)))
        self._log_delivery_activity = bool(log_delivery_activity)

    @property
    def logger(self):
        return self.ctx.logger

    async def has_due(self) -> bool:
        """Return ``True`` when a run would find work."""
        async with asyncio.timeout(self.store_timeout):
            return await self.ctx.store.count_due(self.ctx.clock()) > 0

    async def run(self) -> BatchResult:
        """Attempt every due delivery once and aggregate the outcomes."""
        async with asyncio.timeout(self.store_timeout):
            due = await self.ctx.store.list_due(self.ctx.clock())
        if not due:
            self.logger.debug("No deliveries due")
            await self.refresh_pending_gauge()
            return BatchResult()

        self.logger.info("Dispatching %d due deliveries", len(due))
        run_id = uuid.uuid4().hex
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(delivery: ScheduledDelivery) -> Optional[DispatchDetail]:
            async with semaphore:
                return await self._process(delivery, run_id)

        outcomes = await asyncio.gather(*(bounded(d) for d in due))
        details: List[DispatchDetail] = [o for o in outcomes if o is not None]
        result = BatchResult.from_details(details, skipped=len(outcomes) - len(details))
        await self.refresh_pending_gauge()
        return result

    async def _process(self, delivery: ScheduledDelivery, run_id: str) -> Optional[DispatchDetail]:
        """Run the claim, send and transition steps for one delivery.

        Returns ``None`` when another runner holds the delivery or it is no
        longer due.
        """
        now = self.ctx.clock()
        try:
            async with asyncio.timeout(self.store_timeout):
                claimed = await self.ctx.store.claim(delivery.id, run_id, now, now + self.claim_ttl)
        except Exception as exc:
            return await self._mark_failed(delivery, f"could not claim delivery: {exc}")
        if claimed is None:
            self.logger.debug("Delivery %s is held elsewhere or no longer due, skipping", delivery.id)
            return None
        # the listed snapshot may be stale; send what was stored when the lease was taken
        delivery = claimed

        access_url = build_access_url(self.base_url, delivery.access_token)
        subject, body = render_delivery_message(delivery, access_url, self.link_validity_hours)
        if self._log_delivery_activity:
            self.logger.info("Attempting delivery %s to %s", delivery.id, delivery.recipient_address or "-")

        result = await self._send(delivery.recipient_address, subject, body)
        if not result.delivered:
            if result.temporary:
                self.logger.info("Delivery %s hit a transient error; it stays failed until reset", delivery.id)
            return await self._mark_failed(delivery, result.reason or "Failed to send email")
        return await self._mark_sent(delivery)

    async def _send(self, to: str, subject: str, body: str) -> MailResult:
        try:
            async with asyncio.timeout(self.send_timeout):
                return await self.ctx.transport.send(to, subject, body)
        except TimeoutError:
            return MailResult.rejected(f"mail transport timed out after {self.send_timeout:g}s", temporary=True)
        except Exception as exc:
            return MailResult.rejected(f"mail transport error: {exc}", temporary=True)

    async def _mark_sent(self, delivery: ScheduledDelivery) -> DispatchDetail:
        try:
            async with asyncio.timeout(self.store_timeout):
                await self.ctx.store.update(
                    delivery.id,
                    {"status": DeliveryStatus.SENT, "sent_at": self.ctx.clock()},
                    expected_status=RETRYABLE_FROM,
                )
        except PreconditionFailed:
            self.logger.debug("Delivery %s was already advanced by another writer", delivery.id)
        except Exception as exc:
            self.logger.error(
                "Email for delivery %s was sent but its status could not be stored: %s",
                delivery.id,
                exc,
            )
            self.ctx.metrics.inc_sent()
            self.ctx.metrics.inc_anomaly()
            return DispatchDetail(
                id=delivery.id,
                success=True,
                anomaly=True,
                error=f"email sent but status update failed: {exc}",
            )
        self.ctx.metrics.inc_sent()
        if self._log_delivery_activity:
            self.logger.info("Delivery %s succeeded", delivery.id)
        return DispatchDetail(id=delivery.id, success=True)

    async def _mark_failed(self, delivery: ScheduledDelivery, reason: str) -> DispatchDetail:
        try:
            async with asyncio.timeout(self.store_timeout):
                await self.ctx.store.update(
                    delivery.id,
                    {"status": DeliveryStatus.FAILED},
                    expected_status=RETRYABLE_FROM,
                )
        except PreconditionFailed:
            self.logger.debug("Delivery %s left untouched: status advanced concurrently", delivery.id)
        except Exception as exc:
            self.logger.error("Could not mark delivery %s as failed: %s", delivery.id, exc)
            reason = f"{reason}; status update failed: {exc}"
        self.ctx.metrics.inc_failed()
        self.logger.warning("Delivery %s failed: %s", delivery.id, reason)
        return DispatchDetail(id=delivery.id, success=False, error=reason)

    async def refresh_pending_gauge(self) -> None:
        """Refresh the metric describing pending deliveries."""
        try:
            counts = await self.ctx.store.count_by_status()
        except Exception:  # pragma: no cover - metrics only
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.ctx.metrics.set_pending(counts.get(DeliveryStatus.PENDING.value, 0))

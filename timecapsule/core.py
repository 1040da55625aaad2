"""Core orchestration logic for the scheduled delivery service."""

from __future__ import annotations

import asyncio
import functools
import re
import uuid
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional

from .access import AccessResolver
from .context import DeliveryContext
from .dispatcher import DEFAULT_LINK_VALIDITY_HOURS, Dispatcher
from .errors import AuthRequired, NotFound, TimeCapsuleError, UnknownError, ValidationError
from .logger import get_logger
from .mailer import DEFAULT_SENDER, ResendTransport, SMTPTransport, validate_recipient
from .models import (
    BatchResult,
    DeliveryStatus,
    FileMeta,
    ResolvedFile,
    ScheduledDelivery,
    ensure_utc,
)
from .notifications import ChangeFeed, SleepCallable
from .persistence import ScheduleStore
from .prometheus import DeliveryMetrics
from .storage import LocalObjectStore, S3ObjectStore
from .sync import DeliverySync
from .trigger import TriggerCoordinator

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def owner_operation(func: Callable) -> Callable:
    """Surface unclassified failures of an owner-facing call as :class:`UnknownError`."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except TimeCapsuleError:
            raise
        except Exception as exc:
            self.logger.exception("%s failed", func.__name__)
            raise UnknownError(str(exc) or exc.__class__.__name__) from exc

    return wrapper


def object_key(owner_id: str, file_name: str) -> str:
    """Return the object-store key for a new upload of ``owner_id``."""
    suffix = _UNSAFE_KEY_CHARS.sub("", PurePosixPath(file_name).suffix.lower())
    owner = _UNSAFE_KEY_CHARS.sub("_", owner_id)
    return f"{owner}/{uuid.uuid4().hex}{suffix}"


class TimeCapsuleService:
    """Owner operations, dispatch and access resolution behind one object.

    All collaborators come from the :class:`DeliveryContext`; nothing is
    looked up from module state.
    """

    def __init__(
        self,
        ctx: DeliveryContext,
        *,
        app_base_url: str,
        link_validity_hours: int = DEFAULT_LINK_VALIDITY_HOURS,
        dispatch_concurrency: int = 10,
        send_timeout: float = 30.0,
        claim_ttl_seconds: int = 300,
        storage_timeout: float = 30.0,
        poll_interval: float = 30.0,
        settle_delay: float = 1.0,
        start_active: bool = True,
        changes: ChangeFeed | None = None,
        sleep: SleepCallable = asyncio.sleep,
        log_delivery_activity: bool = False,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.changes = changes
        self.settle_delay = settle_delay
        self.storage_timeout = float(storage_timeout)
        self._sleep = sleep
        self.dispatcher = Dispatcher(
            ctx,
            base_url=app_base_url,
            link_validity_hours=link_validity_hours,
            concurrency=dispatch_concurrency,
            send_timeout=send_timeout,
            claim_ttl_seconds=claim_ttl_seconds,
            log_delivery_activity=log_delivery_activity,
        )
        self.trigger = TriggerCoordinator(
            self.dispatcher,
            poll_interval=poll_interval,
            settle_delay=settle_delay,
            start_active=start_active,
            sleep=sleep,
            metrics=ctx.metrics,
            logger=self.logger,
        )
        self.access = AccessResolver(
            ctx,
            link_ttl_seconds=int(link_validity_hours) * 3600,
            storage_timeout=storage_timeout,
        )
        self._unsubscribe_changes: Optional[Callable[[], None]] = None

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **overrides: Any) -> "TimeCapsuleService":
        """Build a service and its collaborators from :func:`load_settings` output."""
        logger = get_logger()
        changes = ChangeFeed(logger=logger)
        store = ScheduleStore(str(settings["db_path"]), changes=changes)

        if settings.get("storage_backend") == "s3":
            if not settings.get("storage_bucket"):
                raise ValidationError("storage bucket is required for the s3 backend")
            objects = S3ObjectStore(settings["storage_bucket"], region=settings.get("storage_region"))
        else:
            objects = LocalObjectStore(
                str(settings.get("storage_dir") or "/data/files"),
                public_url=str(settings.get("public_url") or "http://localhost:8000"),
                signing_key=settings.get("signing_key"),
            )

        sender = settings.get("mail_from") or DEFAULT_SENDER
        send_timeout = float(settings.get("send_timeout") or 30.0)
        if settings.get("mail_backend") == "smtp":
            transport = SMTPTransport(
                settings.get("smtp_host"),
                int(settings.get("smtp_port") or 587),
                user=settings.get("smtp_user"),
                password=settings.get("smtp_password"),
                use_tls=settings.get("smtp_use_tls"),
                sender=sender,
                timeout=send_timeout,
            )
        else:
            transport = ResendTransport(settings.get("resend_api_key"), sender=sender, timeout=send_timeout)

        ctx = DeliveryContext(
            store=store,
            objects=objects,
            transport=transport,
            metrics=DeliveryMetrics(),
            logger=logger,
        )
        kwargs: Dict[str, Any] = dict(
            app_base_url=settings["app_base_url"],
            link_validity_hours=int(settings.get("link_validity_hours") or DEFAULT_LINK_VALIDITY_HOURS),
            dispatch_concurrency=int(settings.get("dispatch_concurrency") or 10),
            send_timeout=send_timeout,
            claim_ttl_seconds=int(settings.get("claim_ttl_seconds") or 300),
            poll_interval=float(settings.get("poll_interval") or 30.0),
            settle_delay=float(settings.get("settle_delay") if settings.get("settle_delay") is not None else 1.0),
            start_active=bool(settings.get("scheduler_active", True)),
            changes=changes,
            log_delivery_activity=bool(settings.get("log_delivery_activity")),
        )
        kwargs.update(overrides)
        return cls(ctx, **kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Prepare the schedule store."""
        await self.ctx.store.init_db()
        await self.dispatcher.refresh_pending_gauge()

    async def start(self) -> None:
        """Initialise storage, follow store changes and start the periodic loop."""
        await self.init()
        if self.changes is not None and self._unsubscribe_changes is None:
            self._unsubscribe_changes = self.changes.subscribe(self.trigger.notify_change)
        await self.trigger.start()

    async def stop(self) -> None:
        """Stop background work and release the mail transport."""
        if self._unsubscribe_changes is not None:
            self._unsubscribe_changes()
            self._unsubscribe_changes = None
        await self.trigger.stop()
        await self.ctx.transport.close()

    # ------------------------------------------------------------- owner helpers
    @staticmethod
    def _require_owner(owner_id: Optional[str]) -> str:
        if not owner_id or not str(owner_id).strip():
            raise AuthRequired("Sign in to manage scheduled deliveries")
        return str(owner_id).strip()

    async def _get_owned(self, delivery_id: str, owner_id: Optional[str]) -> ScheduledDelivery:
        owner = self._require_owner(owner_id)
        delivery = await self.ctx.store.get(delivery_id)
        if delivery.owner_id != owner:
            raise NotFound(f"Delivery '{delivery_id}' not found")
        return delivery

    async def _dispatch_now(self, trigger: str) -> None:
        try:
            await self.trigger.run_dispatch(trigger)
        except Exception:
            self.logger.exception("Immediate dispatch after %s failed", trigger)

    async def _dispatch_if_due(self, delivery: ScheduledDelivery, trigger: str) -> ScheduledDelivery:
        if not delivery.is_due(self.ctx.clock()):
            return delivery
        await self._dispatch_now(trigger)
        return await self.ctx.store.get(delivery.id)

    # ---------------------------------------------------------- owner operations
    @owner_operation
    async def schedule(
        self,
        file_bytes: Optional[bytes],
        file_meta: FileMeta | Dict[str, Any],
        recipient: str,
        scheduled_at: datetime,
        owner_id: Optional[str],
    ) -> ScheduledDelivery:
        """Upload a file and schedule its delivery to ``recipient``.

        A delivery whose instant has already passed is dispatched at once;
        a failure of that dispatch does not fail the scheduling.
        """
        owner = self._require_owner(owner_id)
        if not isinstance(file_meta, FileMeta):
            try:
                file_meta = FileMeta.model_validate(file_meta or {})
            except ValueError as exc:
                raise ValidationError(f"invalid file metadata: {exc}") from None
        if not file_bytes:
            raise ValidationError("Please select a file to upload")
        if reason := validate_recipient(recipient):
            raise ValidationError(reason)
        if not isinstance(scheduled_at, datetime):
            raise ValidationError("scheduled_at must be a datetime")

        key = object_key(owner, file_meta.name)
        async with asyncio.timeout(self.storage_timeout):
            locator = await self.ctx.objects.put(key, file_bytes, file_meta.content_type)
        try:
            delivery_id = await self.ctx.store.insert(
                {
                    "owner_id": owner,
                    "file_name": file_meta.name,
                    "file_size": len(file_bytes),
                    "file_type": file_meta.content_type,
                    "storage_ref": locator,
                    "recipient_address": recipient.strip(),
                    "scheduled_at": ensure_utc(scheduled_at),
                }
            )
        except Exception:
            await self._discard_object(locator)
            raise
        delivery = await self.ctx.store.get(delivery_id)
        self.logger.info("Scheduled %s (%s) for %s", delivery.id, delivery.file_name, delivery.scheduled_at.isoformat())
        return await self._dispatch_if_due(delivery, "immediate")

    @owner_operation
    async def reschedule(
        self,
        delivery_id: str,
        owner_id: Optional[str],
        *,
        recipient: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> ScheduledDelivery:
        """Change the recipient and/or instant of a pending delivery."""
        await self._get_owned(delivery_id, owner_id)
        fields: Dict[str, Any] = {}
        if recipient is not None:
            if reason := validate_recipient(recipient):
                raise ValidationError(reason)
            fields["recipient_address"] = recipient.strip()
        if scheduled_at is not None:
            fields["scheduled_at"] = ensure_utc(scheduled_at)
        if not fields:
            raise ValidationError("Nothing to update: provide a recipient or a scheduled time")
        updated = await self.ctx.store.update(delivery_id, fields, expected_status=DeliveryStatus.PENDING)
        return await self._dispatch_if_due(updated, "immediate")

    @owner_operation
    async def retry(self, delivery_id: str, owner_id: Optional[str]) -> ScheduledDelivery:
        """Move a failed delivery back to pending so dispatch considers it again."""
        await self._get_owned(delivery_id, owner_id)
        updated = await self.ctx.store.update(
            delivery_id,
            {"status": DeliveryStatus.PENDING},
            expected_status=DeliveryStatus.FAILED,
        )
        self.logger.info("Delivery %s reset to pending", delivery_id)
        return await self._dispatch_if_due(updated, "retry")

    @owner_operation
    async def cancel(self, delivery_id: str, owner_id: Optional[str]) -> None:
        """Delete a delivery and then its stored file."""
        delivery = await self._get_owned(delivery_id, owner_id)
        await self.ctx.store.delete(delivery_id)
        await self._discard_object(delivery.storage_ref)

    async def _discard_object(self, locator: str) -> None:
        try:
            async with asyncio.timeout(self.storage_timeout):
                await self.ctx.objects.remove(locator)
        except Exception as exc:
            self.logger.warning("Could not remove stored file %s: %s", locator, exc)

    @owner_operation
    async def list(self, owner_id: Optional[str]) -> List[ScheduledDelivery]:
        """Return the owner's deliveries, newest first."""
        return await self.ctx.store.list_by_owner(self._require_owner(owner_id))

    # ------------------------------------------------------- dispatch / access
    async def run_dispatch(self, trigger: str = "manual") -> BatchResult:
        return await self.trigger.run_dispatch(trigger)

    async def resolve(self, token: str) -> ResolvedFile:
        return await self.access.resolve(token)

    async def open_sync(self, owner_id: Optional[str]) -> DeliverySync:
        """Return an owner view that refreshes after dispatch runs and store changes."""
        sync = DeliverySync(
            self.ctx.store,
            self._require_owner(owner_id),
            settle_delay=self.settle_delay,
            sleep=self._sleep,
            logger=self.logger,
        )
        sync.attach(self.trigger, self.changes)
        await sync.refresh()
        return sync

    # ----------------------------------------------------------------- commands
    def suspend(self) -> None:
        self.trigger.suspend()

    def activate(self) -> None:
        self.trigger.activate()

    async def status(self) -> Dict[str, Any]:
        """Return scheduler state and per-status counts."""
        counts = await self.ctx.store.count_by_status()
        last = self.trigger.last_result
        return {
            "ok": True,
            "active": self.trigger.active,
            "counts": counts,
            "due": await self.ctx.store.count_due(self.ctx.clock()),
            "last_run": last.model_dump(exclude={"details", "follow_up"}) if last else None,
        }

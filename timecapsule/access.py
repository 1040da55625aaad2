"""Resolution of recipient access tokens into download links."""

from __future__ import annotations

import asyncio

from .context import DeliveryContext
from .errors import NotFound, PreconditionFailed, TimeCapsuleError, TransportError, UnknownError
from .models import DeliveryStatus, ResolvedFile

DEFAULT_LINK_TTL_SECONDS = 24 * 60 * 60


class AccessResolver:
    """Turn an access token into a freshly signed, time-limited download URL.

    Unknown and malformed tokens fail identically. Issuing a link for a
    pending delivery marks it sent; that bookkeeping write never blocks the
    answer.
    """

    def __init__(
        self,
        ctx: DeliveryContext,
        *,
        link_ttl_seconds: int = DEFAULT_LINK_TTL_SECONDS,
        store_timeout: float = 10.0,
        storage_timeout: float = 30.0,
    ):
        self.ctx = ctx
        self.link_ttl_seconds = int(link_ttl_seconds)
        self.store_timeout = float(store_timeout)
        self.storage_timeout = float(storage_timeout)

    async def resolve(self, token: str) -> ResolvedFile:
        try:
            async with asyncio.timeout(self.store_timeout):
                delivery = await self.ctx.store.get_by_token(token)
        except NotFound:
            self.ctx.metrics.inc_resolution("not_found")
            raise NotFound("Invalid or expired access link") from None
        except TimeoutError:
            self.ctx.metrics.inc_resolution("error")
            raise UnknownError("Timed out looking up access link") from None
        except Exception as exc:
            self.ctx.metrics.inc_resolution("error")
            self.ctx.logger.error("Access link lookup failed: %s", exc)
            raise UnknownError(f"Could not look up access link: {exc}") from exc

        try:
            async with asyncio.timeout(self.storage_timeout):
                url = await self.ctx.objects.signed_url(delivery.storage_ref, self.link_ttl_seconds)
        except TimeCapsuleError:
            self.ctx.metrics.inc_resolution("error")
            raise
        except TimeoutError:
            self.ctx.metrics.inc_resolution("error")
            raise TransportError("Timed out generating download link") from None
        except Exception as exc:
            self.ctx.metrics.inc_resolution("error")
            raise TransportError(f"Failed to generate download link: {exc}") from exc

        # only an issued link counts as delivery
        if delivery.status == DeliveryStatus.PENDING:
            await self._mark_opened(delivery.id)

        self.ctx.metrics.inc_resolution("ok")
        return ResolvedFile(file_name=delivery.file_name, file_type=delivery.file_type, download_url=url)

    async def _mark_opened(self, delivery_id: str) -> None:
        try:
            async with asyncio.timeout(self.store_timeout):
                await self.ctx.store.update(
                    delivery_id,
                    {"status": DeliveryStatus.SENT, "sent_at": self.ctx.clock()},
                    expected_status=DeliveryStatus.PENDING,
                )
        except PreconditionFailed:
            pass
        except Exception as exc:
            self.ctx.logger.warning("Could not mark delivery %s as sent on access: %s", delivery_id, exc)

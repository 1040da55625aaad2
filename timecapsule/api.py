"""
FastAPI application factory and HTTP schemas for the scheduled delivery service.

`create_app` builds the REST API around a :class:`TimeCapsuleService`. Control
and owner endpoints are protected by a configurable API token carried in the
``X-API-Token`` header; owner endpoints additionally identify the caller through
``X-Owner-Id``. Access links and signed file downloads are public: the token or
the signature is the credential.
"""

import base64
import binascii
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import TimeCapsuleService
from .errors import (
    AuthRequired,
    NotFound,
    PreconditionFailed,
    TimeCapsuleError,
    TransportError,
    ValidationError,
)
from .models import BatchResult, DeliveryStatus, FileMeta, ResolvedFile, ScheduledDelivery
from .storage import LocalObjectStore
from .sync import filter_deliveries

API_TOKEN_HEADER_NAME = "X-API-Token"
OWNER_HEADER_NAME = "X-Owner-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    AuthRequired: status.HTTP_401_UNAUTHORIZED,
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransportError: status.HTTP_502_BAD_GATEWAY,
    PreconditionFailed: status.HTTP_409_CONFLICT,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` the dependency is
    bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


async def owner_id(x_owner_id: str | None = Header(default=None, alias=OWNER_HEADER_NAME)) -> str:
    """Return the calling owner or raise :class:`AuthRequired`."""
    if not x_owner_id or not x_owner_id.strip():
        raise AuthRequired("Sign in to manage scheduled deliveries")
    return x_owner_id.strip()


def get_service(request: Request) -> TimeCapsuleService:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise HTTPException(500, "Service not initialized")
    return svc


def service_lifespan(service: TimeCapsuleService) -> Callable[[FastAPI], AsyncContextManager]:
    """Return a lifespan that starts the service with the server and stops it after."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    return lifespan


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: bool
    counts: Dict[str, int]
    due: int
    last_run: Optional[Dict[str, Any]] = None


class SchedulePayload(BaseModel):
    """Upload accepted by ``POST /deliveries``; ``content`` is base64 encoded."""
    file_name: str = Field(min_length=1)
    content_type: str = "application/octet-stream"
    content: str
    recipient: str
    scheduled_at: datetime


class ReschedulePayload(BaseModel):
    recipient: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class DeliveryResponse(CommandStatus):
    delivery: ScheduledDelivery


class DeliveriesResponse(CommandStatus):
    deliveries: List[ScheduledDelivery]


class DispatchResponse(CommandStatus):
    result: BatchResult


class AccessResponse(CommandStatus):
    file: ResolvedFile


def create_app(
    svc: TimeCapsuleService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`timecapsule.core.TimeCapsuleService` that
        implements every operation.
    api_token:
        Optional secret protecting control and owner endpoints.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="TimeCapsule", lifespan=lifespan)
    api.state.service = svc
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(TimeCapsuleError)
    async def handle_service_error(request: Request, exc: TimeCapsuleError):
        code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(status_code=code, content={"ok": False, "error": str(exc), "code": exc.code})

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status(service: TimeCapsuleService = Depends(get_service)):
        """Return scheduler state and delivery counts."""
        return StatusResponse.model_validate(await service.status())

    @router.post("/run-dispatch", response_model=DispatchResponse)
    async def run_dispatch(service: TimeCapsuleService = Depends(get_service)):
        """Run a dispatch pass now and return its batch result."""
        result = await service.run_dispatch("manual")
        return DispatchResponse(ok=True, result=result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend(service: TimeCapsuleService = Depends(get_service)):
        """Stop periodic and change-driven runs."""
        service.suspend()
        return BasicOkResponse(ok=True)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate(service: TimeCapsuleService = Depends(get_service)):
        service.activate()
        return BasicOkResponse(ok=True)

    @api.post(
        "/deliveries",
        response_model=DeliveryResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[auth_dependency],
    )
    async def schedule_delivery(
        payload: SchedulePayload,
        owner: str = Depends(owner_id),
        service: TimeCapsuleService = Depends(get_service),
    ):
        """Upload a file and schedule its delivery."""
        try:
            content = base64.b64decode(payload.content, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("content must be base64 encoded") from None
        meta = FileMeta(name=payload.file_name, content_type=payload.content_type, size=len(content))
        delivery = await service.schedule(content, meta, payload.recipient, payload.scheduled_at, owner)
        return DeliveryResponse(ok=True, delivery=delivery)

    @api.get("/deliveries", response_model=DeliveriesResponse, dependencies=[auth_dependency])
    async def list_deliveries(
        q: str = "",
        status_filter: List[DeliveryStatus] = Query(default=[], alias="status"),
        tab: Literal["all", "pending", "sent", "failed"] = "all",
        owner: str = Depends(owner_id),
        service: TimeCapsuleService = Depends(get_service),
    ):
        """List the caller's deliveries, filtered like the dashboard tabs."""
        deliveries = await service.list(owner)
        return DeliveriesResponse(ok=True, deliveries=filter_deliveries(deliveries, q, status_filter, tab))

    @api.patch("/deliveries/{delivery_id}", response_model=DeliveryResponse, dependencies=[auth_dependency])
    async def reschedule_delivery(
        delivery_id: str,
        payload: ReschedulePayload,
        owner: str = Depends(owner_id),
        service: TimeCapsuleService = Depends(get_service),
    ):
        """Change recipient or instant of a pending delivery."""
        delivery = await service.reschedule(
            delivery_id, owner, recipient=payload.recipient, scheduled_at=payload.scheduled_at
        )
        return DeliveryResponse(ok=True, delivery=delivery)

    @api.post("/deliveries/{delivery_id}/retry", response_model=DeliveryResponse, dependencies=[auth_dependency])
    async def retry_delivery(
        delivery_id: str,
        owner: str = Depends(owner_id),
        service: TimeCapsuleService = Depends(get_service),
    ):
        delivery = await service.retry(delivery_id, owner)
        return DeliveryResponse(ok=True, delivery=delivery)

    @api.delete(
        "/deliveries/{delivery_id}",
        response_model=BasicOkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def cancel_delivery(
        delivery_id: str,
        owner: str = Depends(owner_id),
        service: TimeCapsuleService = Depends(get_service),
    ):
        """Delete a delivery together with its stored file."""
        await service.cancel(delivery_id, owner)
        return BasicOkResponse(ok=True)

    @api.get("/access/{token}", response_model=AccessResponse)
    async def access(token: str, service: TimeCapsuleService = Depends(get_service)):
        """Resolve an emailed access token into a fresh download link."""
        resolved = await service.resolve(token)
        return AccessResponse(ok=True, file=resolved)

    @api.get("/files/{locator:path}")
    async def download(
        locator: str,
        expires: int,
        signature: str,
        service: TimeCapsuleService = Depends(get_service),
    ):
        """Serve bytes of the local backend behind a signed, expiring link."""
        objects = service.ctx.objects
        if not isinstance(objects, LocalObjectStore):
            raise NotFound("Downloads are served by the storage provider")
        if not objects.verify(locator, expires, signature):
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Invalid or expired download link")
        data = await objects.read(locator)
        return Response(content=data, media_type="application/octet-stream")

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(service: TimeCapsuleService = Depends(get_service)):
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=service.ctx.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api

"""Pydantic models for the scheduled delivery service.

Models:
    - DeliveryStatus: Lifecycle state of a scheduled delivery
    - FileMeta: Descriptive metadata of an uploaded file
    - ScheduledDelivery: Stored delivery record
    - DispatchDetail / BatchResult: Outcome of a dispatch run
    - ResolvedFile: Answer to an access-token lookup
    - ChangeEvent: Store mutation notice used as a wake-up signal
    - StatusChange: Status transition observed by the client sync layer
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalise ``value`` to UTC, reading naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeliveryStatus(str, Enum):
    """Lifecycle state of a scheduled delivery.

    Attributes:
        PENDING: Waiting for its scheduled instant.
        SENT: The access link was emailed (or opened). Terminal.
        FAILED: The last delivery attempt was rejected.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class FileMeta(BaseModel):
    """Metadata supplied with an upload."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, description="Original file name")]
    content_type: Annotated[
        str,
        Field(default="application/octet-stream", description="MIME type of the file")
    ]
    size: Annotated[Optional[int], Field(default=None, ge=0, description="Size in bytes")]


class ScheduledDelivery(BaseModel):
    """A file scheduled for delivery to a recipient."""

    id: str
    owner_id: str
    file_name: str
    file_size: int
    file_type: str
    storage_ref: str
    recipient_address: str
    scheduled_at: datetime
    access_token: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime] = None

    @field_validator("scheduled_at", "created_at", "updated_at", "sent_at")
    @classmethod
    def normalise_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Keep every timestamp in UTC."""
        if v is None:
            return None
        return ensure_utc(v)

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` when a dispatch run would select this record."""
        return self.status == DeliveryStatus.PENDING and self.scheduled_at <= ensure_utc(now)


class DispatchDetail(BaseModel):
    """Per-record outcome of a dispatch run.

    ``anomaly`` marks a record whose email went out but whose status write
    failed: it counts as a success and carries the write error.
    """

    id: str
    success: bool
    error: Optional[str] = None
    anomaly: bool = False


class BatchResult(BaseModel):
    """Aggregate outcome of a dispatch run."""

    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    anomalies: int = 0
    details: List[DispatchDetail] = Field(default_factory=list)
    follow_up: Optional["BatchResult"] = None

    @classmethod
    def from_details(cls, details: List[DispatchDetail], skipped: int = 0) -> "BatchResult":
        """Build the aggregate counters from per-record outcomes."""
        return cls(
            processed=len(details),
            success=sum(1 for d in details if d.success),
            failed=sum(1 for d in details if not d.success),
            skipped=skipped,
            anomalies=sum(1 for d in details if d.anomaly),
            details=details,
        )

    @property
    def changed_anything(self) -> bool:
        """Return ``True`` when at least one record was sent or failed."""
        return self.success > 0 or self.failed > 0


class ResolvedFile(BaseModel):
    """Download information returned for a valid access token."""

    file_name: str
    file_type: str
    download_url: str


class ChangeEvent(BaseModel):
    """Notice that a stored delivery changed.

    Consumers treat it as a signal to re-query, never as authoritative data.
    """

    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None


class StatusChange(BaseModel):
    """Status transition detected between two fetched snapshots."""

    id: str
    file_name: str
    old: DeliveryStatus
    new: DeliveryStatus


BatchResult.model_rebuild()

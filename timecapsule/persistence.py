"""SQLite backed schedule store used by the delivery service."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiosqlite

from .errors import NotFound, PreconditionFailed, ValidationError
from .models import ChangeEvent, DeliveryStatus, ScheduledDelivery, ensure_utc, utc_now
from .notifications import ChangeFeed

MUTABLE_FIELDS = {"recipient_address", "scheduled_at", "status", "sent_at"}
CLAIM_COLUMNS = ("claim_id", "claimed_until")
TOKEN_ATTEMPTS = 3

StatusSet = Union[DeliveryStatus, str, Iterable[Union[DeliveryStatus, str]]]


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime as a fixed-width UTC ISO-8601 string.

    The fixed width keeps lexical order equal to chronological order, which
    the due-selection query relies on.
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def new_access_token() -> str:
    """Return a fresh unguessable access token."""
    return secrets.token_urlsafe(32)


def _status_values(expected: StatusSet) -> List[str]:
    if isinstance(expected, (DeliveryStatus, str)):
        expected = [expected]
    return [DeliveryStatus(s).value for s in expected]


class ScheduleStore:
    """Read and write scheduled deliveries.

    Every status transition goes through :meth:`update` with an expected prior
    status, so overlapping dispatch runs in separate processes never move a
    record backwards.
    """

    def __init__(
        self,
        db_path: str = "/data/timecapsule.db",
        *,
        changes: ChangeFeed | None = None,
        busy_timeout: float = 10.0,
    ):
        """Persist data to the given database path."""
        self.db_path = db_path
        self.changes = changes
        self.busy_timeout = busy_timeout

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    file_type TEXT NOT NULL,
                    storage_ref TEXT NOT NULL,
                    recipient_address TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    access_token TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    sent_at TEXT
                )
                """
            )
            for column in CLAIM_COLUMNS:
                try:
                    await db.execute(f"ALTER TABLE deliveries ADD COLUMN {column} TEXT")
                except aiosqlite.OperationalError:
                    pass
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_due ON deliveries(status, scheduled_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_owner ON deliveries(owner_id, created_at)"
            )
            await db.commit()

    # Rows ---------------------------------------------------------------------
    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> ScheduledDelivery:
        data = dict(zip(columns, row))
        for column in CLAIM_COLUMNS:
            data.pop(column, None)
        return ScheduledDelivery.model_validate(data)

    async def _fetch_one(self, db: aiosqlite.Connection, where: str, params: Tuple[Any, ...]) -> Optional[ScheduledDelivery]:
        async with db.execute(f"SELECT * FROM deliveries WHERE {where}", params) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            cols = [c[0] for c in cur.description]
        return self._decode_row(row, cols)

    async def _fetch_all(self, query: str, params: Tuple[Any, ...]) -> List[ScheduledDelivery]:
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def _publish(self, event_type: str, old: Optional[ScheduledDelivery], new: Optional[ScheduledDelivery]) -> None:
        if self.changes is None:
            return
        await self.changes.publish(
            ChangeEvent(
                event_type=event_type,
                old=old.model_dump(mode="json") if old else None,
                new=new.model_dump(mode="json") if new else None,
            )
        )

    # Writes -------------------------------------------------------------------
    async def insert(self, record: Dict[str, Any]) -> str:
        """Store a new delivery and return its id.

        ``id``, ``status`` and the timestamps are assigned here. An access
        token is generated when the record does not carry one; a generated
        token that collides with an existing one is replaced.
        """
        now = to_db_timestamp(utc_now())
        supplied_token = record.get("access_token")
        delivery_id = uuid.uuid4().hex
        async with self._connect() as db:
            for attempt in range(TOKEN_ATTEMPTS):
                token = supplied_token or new_access_token()
                try:
                    await db.execute(
                        """
                        INSERT INTO deliveries
                        (id, owner_id, file_name, file_size, file_type, storage_ref,
                         recipient_address, scheduled_at, access_token, status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            delivery_id,
                            record["owner_id"],
                            record["file_name"],
                            int(record.get("file_size") or 0),
                            record.get("file_type") or "application/octet-stream",
                            record["storage_ref"],
                            record.get("recipient_address") or "",
                            to_db_timestamp(record["scheduled_at"]),
                            token,
                            DeliveryStatus(record.get("status", DeliveryStatus.PENDING)).value,
                            now,
                            now,
                        ),
                    )
                except aiosqlite.IntegrityError:
                    if supplied_token or attempt == TOKEN_ATTEMPTS - 1:
                        raise ValidationError("access token already in use")
                    continue
                await db.commit()
                break
            created = await self._fetch_one(db, "id=?", (delivery_id,))
        await self._publish("INSERT", None, created)
        return delivery_id

    async def update(
        self,
        delivery_id: str,
        fields: Dict[str, Any],
        expected_status: StatusSet | None = None,
    ) -> ScheduledDelivery:
        """Apply ``fields`` to a delivery, optionally guarded on its status.

        Raises:
            NotFound: No delivery with this id.
            PreconditionFailed: The delivery exists but is not in
                ``expected_status``.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields not updatable: {', '.join(sorted(unknown))}")

        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if isinstance(value, datetime):
                value = to_db_timestamp(value)
            elif isinstance(value, DeliveryStatus):
                value = value.value
            assignments.append(f"{name}=?")
            params.append(value)
        if "status" in fields:
            assignments.extend(f"{column}=NULL" for column in CLAIM_COLUMNS)
        assignments.append("updated_at=?")
        params.append(to_db_timestamp(utc_now()))

        where = "id=?"
        params.append(delivery_id)
        expected: List[str] = []
        if expected_status is not None:
            expected = _status_values(expected_status)
            where += f" AND status IN ({','.join('?' for _ in expected)})"
            params.extend(expected)

        async with self._connect() as db:
            old = await self._fetch_one(db, "id=?", (delivery_id,))
            cursor = await db.execute(
                f"UPDATE deliveries SET {', '.join(assignments)} WHERE {where}",
                tuple(params),
            )
            await db.commit()
            if not cursor.rowcount:
                if old is None:
                    raise NotFound(f"Delivery '{delivery_id}' not found")
                current = await self._fetch_one(db, "id=?", (delivery_id,))
                status = current.status.value if current else old.status.value
                raise PreconditionFailed(
                    f"Delivery '{delivery_id}' is {status}, expected {' or '.join(expected)}"
                )
            new = await self._fetch_one(db, "id=?", (delivery_id,))
        await self._publish("UPDATE", old, new)
        return new

    async def claim(
        self, delivery_id: str, claim_id: str, now: datetime, lease_until: datetime
    ) -> Optional[ScheduledDelivery]:
        """Take the dispatch lease on a due pending delivery.

        Returns the delivery as stored at the moment the lease was taken, or
        ``None`` when it is no longer pending, no longer due, or another
        runner holds an unexpired lease.
        """
        now_ts = to_db_timestamp(now)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE deliveries
                SET claim_id=?, claimed_until=?
                WHERE id=? AND status=? AND scheduled_at<=?
                  AND (claimed_until IS NULL OR claimed_until <= ?)
                """,
                (claim_id, to_db_timestamp(lease_until), delivery_id, DeliveryStatus.PENDING.value, now_ts, now_ts),
            )
            claimed = None
            if cursor.rowcount:
                # read inside the same write transaction so the row matches the lease
                claimed = await self._fetch_one(db, "id=? AND claim_id=?", (delivery_id, claim_id))
            await db.commit()
            return claimed

    async def delete(self, delivery_id: str) -> ScheduledDelivery:
        """Remove a delivery and return the removed record."""
        async with self._connect() as db:
            old = await self._fetch_one(db, "id=?", (delivery_id,))
            cursor = await db.execute("DELETE FROM deliveries WHERE id=?", (delivery_id,))
            await db.commit()
            if not cursor.rowcount or old is None:
                raise NotFound(f"Delivery '{delivery_id}' not found")
        await self._publish("DELETE", old, None)
        return old

    # Reads --------------------------------------------------------------------
    async def get(self, delivery_id: str) -> ScheduledDelivery:
        """Fetch a single delivery or raise :class:`NotFound`."""
        async with self._connect() as db:
            record = await self._fetch_one(db, "id=?", (delivery_id,))
        if record is None:
            raise NotFound(f"Delivery '{delivery_id}' not found")
        return record

    async def get_by_token(self, token: str) -> ScheduledDelivery:
        """Fetch the delivery owning ``token`` or raise :class:`NotFound`."""
        async with self._connect() as db:
            record = await self._fetch_one(db, "access_token=?", (token or "",))
        if record is None:
            raise NotFound("Invalid or expired access link")
        return record

    async def list_by_owner(self, owner_id: str) -> List[ScheduledDelivery]:
        """Return the owner's deliveries, newest first."""
        return await self._fetch_all(
            "SELECT * FROM deliveries WHERE owner_id=? ORDER BY created_at DESC, id ASC",
            (owner_id,),
        )

    async def list_due(self, now: datetime) -> List[ScheduledDelivery]:
        """Return pending deliveries whose instant has passed and that nobody holds."""
        now_ts = to_db_timestamp(now)
        return await self._fetch_all(
            """
            SELECT * FROM deliveries
            WHERE status=? AND scheduled_at <= ?
              AND (claimed_until IS NULL OR claimed_until <= ?)
            ORDER BY scheduled_at ASC, id ASC
            """,
            (DeliveryStatus.PENDING.value, now_ts, now_ts),
        )

    async def count_due(self, now: datetime) -> int:
        """Return how many deliveries :meth:`list_due` would select."""
        now_ts = to_db_timestamp(now)
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT COUNT(*) FROM deliveries
                WHERE status=? AND scheduled_at <= ?
                  AND (claimed_until IS NULL OR claimed_until <= ?)
                """,
                (DeliveryStatus.PENDING.value, now_ts, now_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def count_by_status(self) -> Dict[str, int]:
        """Return the number of deliveries in each status."""
        counts = {status.value: 0 for status in DeliveryStatus}
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM deliveries GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    counts[status] = int(count)
        return counts

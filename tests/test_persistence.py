from datetime import datetime, timedelta, timezone

import pytest

from timecapsule.errors import NotFound, PreconditionFailed, ValidationError
from timecapsule.models import DeliveryStatus
from timecapsule.notifications import ChangeFeed
from timecapsule.persistence import ScheduleStore, to_db_timestamp


def make_record(**overrides):
    record = {
        "owner_id": "alice",
        "file_name": "letter.txt",
        "file_size": 12,
        "file_type": "text/plain",
        "storage_ref": "alice/abc.txt",
        "recipient_address": "friend@example.com",
        "scheduled_at": datetime.now(timezone.utc) - timedelta(hours=1),
    }
    record.update(overrides)
    return record


async def make_store(tmp_path, changes=None) -> ScheduleStore:
    store = ScheduleStore(str(tmp_path / "tc.db"), changes=changes)
    await store.init_db()
    return store


def test_db_timestamps_sort_chronologically():
    early = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    late = datetime(2024, 1, 1, 10, 0, 0, 5, tzinfo=timezone(timedelta(hours=2)))
    assert to_db_timestamp(late) < to_db_timestamp(early)
    assert to_db_timestamp(None) is None
    assert to_db_timestamp(datetime(2024, 1, 1)).endswith("+00:00")


@pytest.mark.asyncio
async def test_insert_assigns_identity_and_defaults(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())

    delivery = await store.get(delivery_id)
    assert delivery.status == DeliveryStatus.PENDING
    assert delivery.owner_id == "alice"
    assert len(delivery.access_token) >= 32
    assert delivery.created_at.tzinfo == timezone.utc
    assert delivery.sent_at is None


@pytest.mark.asyncio
async def test_access_tokens_are_unique(tmp_path):
    store = await make_store(tmp_path)
    ids = [await store.insert(make_record()) for _ in range(5)]
    tokens = {(await store.get(i)).access_token for i in ids}
    assert len(tokens) == 5


@pytest.mark.asyncio
async def test_insert_rejects_reused_token(tmp_path):
    store = await make_store(tmp_path)
    await store.insert(make_record(access_token="fixed-token"))
    with pytest.raises(ValidationError):
        await store.insert(make_record(access_token="fixed-token"))


@pytest.mark.asyncio
async def test_get_by_token(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record(access_token="tok"))
    assert (await store.get_by_token("tok")).id == delivery_id
    with pytest.raises(NotFound):
        await store.get_by_token("nope")
    with pytest.raises(NotFound):
        await store.get_by_token("")


@pytest.mark.asyncio
async def test_list_due_selects_only_past_due_pending(tmp_path):
    store = await make_store(tmp_path)
    now = datetime.now(timezone.utc)
    due = await store.insert(make_record())
    future = await store.insert(make_record(scheduled_at=now + timedelta(hours=1)))
    failed = await store.insert(make_record())
    sent = await store.insert(make_record())
    await store.update(failed, {"status": DeliveryStatus.FAILED})
    await store.update(sent, {"status": DeliveryStatus.SENT, "sent_at": now})

    selected = [d.id for d in await store.list_due(now)]
    assert selected == [due]
    assert future not in selected
    assert await store.count_due(now) == 1


@pytest.mark.asyncio
async def test_guarded_update_refuses_to_leave_sent(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    await store.update(
        delivery_id,
        {"status": DeliveryStatus.SENT},
        expected_status=(DeliveryStatus.PENDING, DeliveryStatus.FAILED),
    )

    with pytest.raises(PreconditionFailed):
        await store.update(
            delivery_id,
            {"status": DeliveryStatus.FAILED},
            expected_status=(DeliveryStatus.PENDING, DeliveryStatus.FAILED),
        )
    assert (await store.get(delivery_id)).status == DeliveryStatus.SENT


@pytest.mark.asyncio
async def test_update_unknown_id_and_immutable_fields(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    with pytest.raises(NotFound):
        await store.update("missing", {"status": DeliveryStatus.SENT}, expected_status=DeliveryStatus.PENDING)
    with pytest.raises(ValidationError):
        await store.update(delivery_id, {"access_token": "other"})


@pytest.mark.asyncio
async def test_update_changes_updated_at(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    before = await store.get(delivery_id)
    later = datetime(2031, 5, 1, 12, 0, tzinfo=timezone.utc)

    after = await store.update(delivery_id, {"scheduled_at": later, "recipient_address": "new@example.com"})
    assert after.scheduled_at == later
    assert after.recipient_address == "new@example.com"
    assert after.updated_at >= before.updated_at


@pytest.mark.asyncio
async def test_claim_is_exclusive_until_lease_expires(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    now = datetime.now(timezone.utc)
    lease = now + timedelta(minutes=5)

    assert await store.claim(delivery_id, "run-a", now, lease) is not None
    assert await store.claim(delivery_id, "run-b", now, lease) is None
    assert await store.list_due(now) == []

    after_expiry = lease + timedelta(seconds=1)
    assert [d.id for d in await store.list_due(after_expiry)] == [delivery_id]
    assert await store.claim(delivery_id, "run-b", after_expiry, after_expiry + timedelta(minutes=5)) is not None


@pytest.mark.asyncio
async def test_status_change_releases_claim(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    now = datetime.now(timezone.utc)
    await store.claim(delivery_id, "run-a", now, now + timedelta(minutes=5))
    await store.update(delivery_id, {"status": DeliveryStatus.FAILED})
    await store.update(delivery_id, {"status": DeliveryStatus.PENDING}, expected_status=DeliveryStatus.FAILED)

    assert [d.id for d in await store.list_due(now)] == [delivery_id]


@pytest.mark.asyncio
async def test_claim_ignores_non_pending(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    await store.update(delivery_id, {"status": DeliveryStatus.SENT})
    now = datetime.now(timezone.utc)
    assert await store.claim(delivery_id, "run-a", now, now + timedelta(minutes=5)) is None


@pytest.mark.asyncio
async def test_claim_skips_future_records_and_returns_stored_row(tmp_path):
    store = await make_store(tmp_path)
    now = datetime.now(timezone.utc)
    future_id = await store.insert(make_record(scheduled_at=now + timedelta(days=1)))
    due_id = await store.insert(make_record())
    await store.update(due_id, {"recipient_address": "changed@example.com"})

    assert await store.claim(future_id, "run-a", now, now + timedelta(minutes=5)) is None
    claimed = await store.claim(due_id, "run-a", now, now + timedelta(minutes=5))
    assert claimed.id == due_id
    assert claimed.recipient_address == "changed@example.com"


@pytest.mark.asyncio
async def test_delete_returns_record_and_forgets_it(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())

    removed = await store.delete(delivery_id)
    assert removed.storage_ref == "alice/abc.txt"
    with pytest.raises(NotFound):
        await store.get(delivery_id)
    with pytest.raises(NotFound):
        await store.delete(delivery_id)


@pytest.mark.asyncio
async def test_list_by_owner_is_scoped_and_newest_first(tmp_path):
    store = await make_store(tmp_path)
    await store.insert(make_record(file_name="one.txt"))
    await store.insert(make_record(file_name="two.txt"))
    await store.insert(make_record(owner_id="bob"))

    mine = await store.list_by_owner("alice")
    assert {d.file_name for d in mine} == {"one.txt", "two.txt"}
    assert [d.created_at for d in mine] == sorted((d.created_at for d in mine), reverse=True)
    assert await store.list_by_owner("nobody") == []


@pytest.mark.asyncio
async def test_count_by_status(tmp_path):
    store = await make_store(tmp_path)
    await store.insert(make_record())
    failed = await store.insert(make_record())
    await store.update(failed, {"status": DeliveryStatus.FAILED})

    assert await store.count_by_status() == {"pending": 1, "sent": 0, "failed": 1}


@pytest.mark.asyncio
async def test_mutations_are_published(tmp_path):
    changes = ChangeFeed()
    events = []
    changes.subscribe(events.append)
    store = await make_store(tmp_path, changes=changes)

    delivery_id = await store.insert(make_record())
    await store.update(delivery_id, {"status": DeliveryStatus.SENT})
    await store.delete(delivery_id)

    assert [e.event_type for e in events] == ["INSERT", "UPDATE", "DELETE"]
    assert events[1].old["status"] == "pending"
    assert events[1].new["status"] == "sent"
    assert events[2].new is None


@pytest.mark.asyncio
async def test_failed_guarded_update_publishes_nothing(tmp_path):
    changes = ChangeFeed()
    events = []
    changes.subscribe(events.append)
    store = await make_store(tmp_path, changes=changes)
    delivery_id = await store.insert(make_record())
    await store.update(delivery_id, {"status": DeliveryStatus.SENT})
    events.clear()

    with pytest.raises(PreconditionFailed):
        await store.update(delivery_id, {"recipient_address": "x@example.com"}, expected_status=DeliveryStatus.PENDING)
    assert events == []


@pytest.mark.asyncio
async def test_init_db_is_idempotent(tmp_path):
    store = await make_store(tmp_path)
    delivery_id = await store.insert(make_record())
    await store.init_db()
    assert (await store.get(delivery_id)).id == delivery_id

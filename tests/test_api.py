import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from timecapsule.api import API_TOKEN_HEADER_NAME, OWNER_HEADER_NAME, create_app
from timecapsule.context import DeliveryContext
from timecapsule.core import TimeCapsuleService
from timecapsule.mailer import MailResult, validate_recipient
from timecapsule.persistence import ScheduleStore
from timecapsule.prometheus import DeliveryMetrics
from timecapsule.storage import LocalObjectStore

API_TOKEN = "secret-token"


class DummyTransport:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to, subject, html):
        if reason := validate_recipient(to):
            return MailResult.rejected(reason)
        self.sent.append({"to": to, "subject": subject})
        return MailResult.ok()

    async def close(self):
        return None


async def no_sleep(_delay):
    return None


@pytest.fixture
def service(tmp_path):
    ctx = DeliveryContext(
        store=ScheduleStore(str(tmp_path / "tc.db")),
        objects=LocalObjectStore(str(tmp_path / "files"), public_url="http://testserver", signing_key="k"),
        transport=DummyTransport(),
        metrics=DeliveryMetrics(),
    )
    svc = TimeCapsuleService(ctx, app_base_url="https://capsule.example", sleep=no_sleep)
    asyncio.run(svc.init())
    return svc


@pytest.fixture
def client(service):
    client = TestClient(create_app(service, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN, OWNER_HEADER_NAME: "alice"})
    return client


def iso(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat()


def schedule(client, *, name="notes.txt", recipient="friend@example.com", when=timedelta(days=1), content=b"hi"):
    return client.post(
        "/deliveries",
        json={
            "file_name": name,
            "content_type": "text/plain",
            "content": base64.b64encode(content).decode(),
            "recipient": recipient,
            "scheduled_at": iso(when),
        },
    )


def test_requires_api_token(service):
    client = TestClient(create_app(service, api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401


def test_owner_routes_require_owner(client):
    response = client.get("/deliveries", headers={OWNER_HEADER_NAME: ""})
    assert response.status_code == 401
    assert response.json() == {
        "ok": False,
        "error": "Sign in to manage scheduled deliveries",
        "code": "auth_required",
    }


def test_schedule_and_list(client):
    response = schedule(client)
    assert response.status_code == 201
    delivery = response.json()["delivery"]
    assert delivery["status"] == "pending"
    assert delivery["file_size"] == 2

    schedule(client, name="holiday.zip", recipient="mum@example.com")
    listed = client.get("/deliveries").json()["deliveries"]
    assert {d["file_name"] for d in listed} == {"notes.txt", "holiday.zip"}

    searched = client.get("/deliveries", params={"q": "MUM"}).json()["deliveries"]
    assert [d["file_name"] for d in searched] == ["holiday.zip"]
    assert client.get("/deliveries", params={"tab": "sent"}).json()["deliveries"] == []
    other_owner = client.get("/deliveries", headers={OWNER_HEADER_NAME: "bob"}).json()["deliveries"]
    assert other_owner == []


def test_schedule_past_instant_sends_immediately(client, service):
    response = schedule(client, when=-timedelta(minutes=5))
    assert response.json()["delivery"]["status"] == "sent"
    assert len(service.ctx.transport.sent) == 1


def test_schedule_validation_errors(client):
    response = schedule(client, recipient="not-an-email")
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"

    response = client.post(
        "/deliveries",
        json={"file_name": "a", "content": "***", "recipient": "a@b.com", "scheduled_at": iso(timedelta(days=1))},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "content must be base64 encoded"


def test_reschedule_retry_and_cancel(client):
    delivery_id = schedule(client).json()["delivery"]["id"]

    response = client.patch(f"/deliveries/{delivery_id}", json={"recipient": "new@example.com"})
    assert response.status_code == 200
    assert response.json()["delivery"]["recipient_address"] == "new@example.com"

    response = client.post(f"/deliveries/{delivery_id}/retry")
    assert response.status_code == 409
    assert response.json()["code"] == "precondition_failed"

    assert client.delete(f"/deliveries/{delivery_id}", headers={OWNER_HEADER_NAME: "bob"}).status_code == 404
    assert client.delete(f"/deliveries/{delivery_id}").json() == {"ok": True}
    assert client.delete(f"/deliveries/{delivery_id}").status_code == 404


def test_failed_delivery_can_be_retried(client, service):
    delivery_id = schedule(client).json()["delivery"]["id"]
    store = service.ctx.store
    asyncio.run(store.update(delivery_id, {"recipient_address": "broken", "scheduled_at": datetime.now(timezone.utc)}))

    result = client.post("/commands/run-dispatch").json()["result"]
    assert (result["processed"], result["failed"]) == (1, 1)

    asyncio.run(store.update(delivery_id, {"recipient_address": "friend@example.com"}))
    response = client.post(f"/deliveries/{delivery_id}/retry")
    assert response.status_code == 200
    assert response.json()["delivery"]["status"] == "sent"


def test_access_link_and_signed_download(client):
    delivery = schedule(client, content=b"secret bytes").json()["delivery"]
    public = TestClient(client.app)

    response = public.get(f"/access/{delivery['access_token']}")
    assert response.status_code == 200
    file_info = response.json()["file"]
    assert file_info["file_name"] == "notes.txt"

    download = public.get(file_info["download_url"])
    assert download.status_code == 200
    assert download.content == b"secret bytes"

    tampered = file_info["download_url"].replace("signature=", "signature=0")
    assert public.get(tampered).status_code == 403

    listed = client.get("/deliveries").json()["deliveries"]
    assert listed[0]["status"] == "sent"


def test_unknown_access_token_is_not_found(client):
    public = TestClient(client.app)
    for token in ("nope", "x" * 64):
        response = public.get(f"/access/{token}")
        assert response.status_code == 404
        assert response.json()["error"] == "Invalid or expired access link"


def test_commands_status_and_metrics(client):
    assert client.post("/commands/suspend").json() == {"ok": True}
    status = client.get("/status").json()
    assert status["active"] is False
    assert status["counts"] == {"pending": 0, "sent": 0, "failed": 0}

    assert client.post("/commands/activate").json() == {"ok": True}
    result = client.post("/commands/run-dispatch").json()
    assert result["ok"] is True and result["result"]["processed"] == 0

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert b'tc_dispatch_runs_total{trigger="manual"} 1.0' in metrics.content


def test_no_token_configured_allows_requests(service):
    client = TestClient(create_app(service))
    assert client.get("/status").status_code == 200


def test_access_lookup_failure_returns_error_body(client, service, monkeypatch):
    async def broken_lookup(token):
        raise OSError("database disk image is malformed")

    monkeypatch.setattr(service.ctx.store, "get_by_token", broken_lookup)
    response = TestClient(client.app).get("/access/some-token")

    assert response.status_code == 500
    body = response.json()
    assert body["ok"] is False
    assert body["code"] == "unknown_error"

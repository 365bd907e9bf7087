import asyncio
import json
from collections.abc import AsyncIterator, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.routes import webhooks
from app.core.db import get_db_session
from app.core.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_webhook_signature
from app.infra.db.repositories import SupportCounterRepository
from app.main import app
from tests.unit.database import create_schema, create_session_factory, create_test_engine

WEBHOOK_URL = "http://localhost/api/v1/webhooks/hubspot"

ESCALATION_DELIVERY = [
    {
        "subscriptionType": "conversation.propertyChange",
        "objectId": 42,
        "propertyName": "assignedTo",
        "propertyValue": "BOT-1",
        "eventId": 1,
    },
    {
        "subscriptionType": "conversation.propertyChange",
        "objectId": 42,
        "propertyName": "assignedTo",
        "propertyValue": "AGENT-7",
        "eventId": 2,
    },
]


@pytest.fixture
def database(tmp_path: Path) -> async_sessionmaker[AsyncSession]:
    engine = create_test_engine(tmp_path / "api.db")
    asyncio.run(create_schema(engine))
    return create_session_factory(engine)


@pytest.fixture
def client(
    database: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[TestClient]:
    async def session_override() -> AsyncIterator[AsyncSession]:
        async with database() as session:
            yield session

    monkeypatch.setattr(webhooks, "get_session_factory", lambda: database)
    monkeypatch.setattr(webhooks.settings, "bot_assignee_ids_raw", "BOT-1")
    monkeypatch.setattr(webhooks.settings, "webhook_client_secret", None)
    monkeypatch.setattr(webhooks.settings, "webhook_public_url", None)
    app.dependency_overrides[get_db_session] = session_override
    # Lifespan is not entered, so no Postgres engine or reconciler is started.
    yield TestClient(app, base_url="http://localhost")
    app.dependency_overrides.clear()


def _stored_escalations(database: async_sessionmaker[AsyncSession]) -> int | None:
    async def read() -> int | None:
        async with database() as session:
            counter = await SupportCounterRepository(session).get_current()
        return None if counter is None else counter.sessions_escalated

    return asyncio.run(read())


def test_webhook_delivery_is_acknowledged_and_detected(
    client: TestClient,
    database: async_sessionmaker[AsyncSession],
) -> None:
    response = client.post("/api/v1/webhooks/hubspot", json=ESCALATION_DELIVERY)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Logged 2 event(s)"
    assert "timestamp" in body
    assert _stored_escalations(database) == 1


def test_redelivered_webhook_is_acknowledged_once(
    client: TestClient,
    database: async_sessionmaker[AsyncSession],
) -> None:
    client.post("/api/v1/webhooks/hubspot", json=ESCALATION_DELIVERY)
    response = client.post("/api/v1/webhooks/hubspot", json=ESCALATION_DELIVERY)

    assert response.status_code == 200
    assert response.json()["message"] == "Logged 0 event(s), 2 already seen"
    assert _stored_escalations(database) == 1


def test_malformed_json_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/v1/webhooks/hubspot",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400


def test_payload_missing_object_id_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/v1/webhooks/hubspot",
        json=[{"subscriptionType": "conversation.creation"}],
    )

    assert response.status_code == 400


def test_bad_signature_is_rejected(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(webhooks.settings, "webhook_client_secret", "shared-secret")
    timestamp = str(int(datetime.now(UTC).timestamp() * 1000))

    response = client.post(
        "/api/v1/webhooks/hubspot",
        json=ESCALATION_DELIVERY,
        headers={SIGNATURE_HEADER: "bm90LWEtc2lnbmF0dXJl", TIMESTAMP_HEADER: timestamp},
    )

    assert response.status_code == 401


def test_valid_signature_is_accepted(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(webhooks.settings, "webhook_client_secret", "shared-secret")
    body = json.dumps(ESCALATION_DELIVERY).encode("utf-8")
    timestamp = str(int(datetime.now(UTC).timestamp() * 1000))
    signature = compute_webhook_signature(
        secret="shared-secret",
        method="POST",
        uri=WEBHOOK_URL,
        body=body,
        timestamp=timestamp,
    )

    response = client.post(
        "/api/v1/webhooks/hubspot",
        content=body,
        headers={
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: timestamp,
        },
    )

    assert response.status_code == 200


def test_support_data_missing_returns_error_envelope(client: TestClient) -> None:
    response = client.get("/api/v1/support")

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "No support data found"
    assert "timestamp" in body


def test_support_data_round_trip(client: TestClient) -> None:
    posted = client.post(
        "/api/v1/support",
        json={
            "tickets": {"open": 12, "chat": 5, "email": 6, "other": 1},
            "sessions": {"active": 3},
            "source": "scheduled",
        },
    )
    response = client.get("/api/v1/support")

    assert posted.status_code == 200
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["tickets"] == {"open": 12, "chat": 5, "email": 6, "other": 1}
    assert data["sessions"] == {"active": 3, "escalated": 0}
    assert data["source"] == "scheduled"
    assert "lastUpdated" in data

from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

from app import main as app_main
from app.domain.models import Notification, NotificationType, now_utc
from app.infra import audit, db, events
from app.services.notification_service import build_notification, notification_id


@pytest.fixture()
def notification_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "notifications_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register_and_login(client: TestClient, email: str) -> tuple[str, str]:
    created = client.post("/api/identity/users", json={"email": email})
    assert created.status_code == 201
    token = client.post("/api/identity/dev-token", json={"email": email})
    assert token.status_code == 200
    return created.json()["id"], token.json()["access_token"]


def _seed(*notifications: Notification) -> None:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        for item in notifications:
            session.add(item)
        session.commit()


def test_notification_ids_are_stable_per_dedupe_key() -> None:
    first = notification_id(NotificationType.DEVICE_ASSIGNMENT, "req-1", "D1")
    assert first == notification_id(NotificationType.DEVICE_ASSIGNMENT, "req-1", "D1")
    assert first != notification_id(NotificationType.DEVICE_ASSIGNMENT, "req-1", "D2")
    assert first != notification_id(NotificationType.DEVICE_REASSIGNED, "req-1", "D1")

    keyed = build_notification(
        "u-1",
        NotificationType.COST_ESTIMATE,
        title="Cost estimate ready",
        message="Your estimate is ready",
        payload={"request_id": "req-1"},
        dedupe_parts=("req-1",),
    )
    assert keyed.id == notification_id(NotificationType.COST_ESTIMATE, "req-1")
    assert keyed.read is False

    unkeyed = build_notification(
        "u-1",
        NotificationType.COST_ESTIMATE,
        title="Cost estimate ready",
        message="Your estimate is ready",
        payload={},
    )
    assert unkeyed.id != keyed.id


def test_list_newest_first_and_mark_read(notification_client: TestClient) -> None:
    owner_id, owner_token = _register_and_login(notification_client, "nimal@farm.lk")
    _, other_token = _register_and_login(notification_client, "sunil@farm.lk")
    base = now_utc()
    older = build_notification(
        owner_id,
        NotificationType.COST_ESTIMATE,
        title="Cost estimate ready",
        message="Estimated at 59.28 USD",
        payload={"request_id": "req-1"},
    )
    older.created_at = base - timedelta(minutes=5)
    newer = build_notification(
        owner_id,
        NotificationType.DEVICE_ASSIGNMENT,
        title="Device assigned",
        message="Device D1 is now yours",
        payload={"request_id": "req-1", "device_id": "D1"},
    )
    newer.created_at = base
    _seed(older, newer)

    listed = notification_client.get("/api/notifications", headers=_auth_header(owner_token))
    assert listed.status_code == 200
    assert [item["type"] for item in listed.json()] == ["device_assignment", "cost_estimate"]
    assert notification_client.get("/api/notifications", headers=_auth_header(other_token)).json() == []

    foreign = notification_client.post(f"/api/notifications/{newer.id}/read", headers=_auth_header(other_token))
    assert foreign.status_code == 403

    marked = notification_client.post(f"/api/notifications/{newer.id}/read", headers=_auth_header(owner_token))
    assert marked.status_code == 200
    assert marked.json()["read"] is True
    again = notification_client.post(f"/api/notifications/{newer.id}/read", headers=_auth_header(owner_token))
    assert again.status_code == 200

    unread = notification_client.get(
        "/api/notifications",
        params={"unread_only": True},
        headers=_auth_header(owner_token),
    )
    assert [item["id"] for item in unread.json()] == [older.id]

    missing = notification_client.post("/api/notifications/n-missing/read", headers=_auth_header(owner_token))
    assert missing.status_code == 404


def test_notifications_require_token(notification_client: TestClient) -> None:
    assert notification_client.get("/api/notifications").status_code == 401

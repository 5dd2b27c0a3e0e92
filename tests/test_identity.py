from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import AuditLog, EventRecord, UserProfile
from app.domain.permissions import PERM_WILDCARD, AccountRole
from app.infra import audit, db, events, settings
from app.infra.auth import create_access_token
from app.services.identity_service import RoleResolver

OPERATOR_EMAIL = "ops@agro.lk"


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    monkeypatch.setattr(settings, "PRIVILEGED_IDENTITIES", frozenset({OPERATOR_EMAIL}))
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, email: str, display_name: str | None = None) -> str:
    response = client.post("/api/identity/users", json={"email": email, "display_name": display_name})
    assert response.status_code == 201
    return response.json()["id"]


def _login(client: TestClient, email: str) -> str:
    response = client.post("/api/identity/dev-token", json={"email": email})
    assert response.status_code == 200
    return response.json()["access_token"]


def test_role_resolver_prefers_configured_identities() -> None:
    resolver = RoleResolver(["Ops@Agro.lk", "svc-batch"])
    operator_profile = UserProfile(id="u-7", email="field@agro.lk", role=AccountRole.OPERATOR)

    assert resolver.resolve("u-1", "ops@agro.lk", None) == AccountRole.SUPERADMIN
    assert resolver.resolve("svc-batch", None, None) == AccountRole.SUPERADMIN
    assert resolver.resolve("u-7", "field@agro.lk", operator_profile) == AccountRole.OPERATOR
    assert resolver.resolve("u-8", "farmer@agro.lk", None) == AccountRole.USER


def test_registration_and_dev_token(identity_client: TestClient) -> None:
    user_id = _register(identity_client, "  Nimal@Farm.lk ", "Nimal")

    duplicate = identity_client.post("/api/identity/users", json={"email": "nimal@farm.lk"})
    assert duplicate.status_code == 409
    invalid = identity_client.post("/api/identity/users", json={"email": "nimal-at-farm"})
    assert invalid.status_code == 400

    token_response = identity_client.post("/api/identity/dev-token", json={"user_id": user_id})
    assert token_response.status_code == 200
    assert token_response.json()["role"] == "user"
    me = identity_client.get("/api/identity/me", headers=_auth_header(token_response.json()["access_token"]))
    assert me.status_code == 200
    assert me.json()["email"] == "nimal@farm.lk"
    assert me.json()["display_name"] == "Nimal"

    missing = identity_client.post("/api/identity/dev-token", json={"email": "nobody@farm.lk"})
    assert missing.status_code == 404
    assert identity_client.post("/api/identity/dev-token", json={}).status_code == 400


def test_invalid_token_is_rejected(identity_client: TestClient) -> None:
    response = identity_client.get("/api/identity/me", headers=_auth_header("not-a-jwt"))
    assert response.status_code == 401
    assert identity_client.get("/api/identity/me").status_code == 401


def test_privileged_identity_gets_wildcard_permissions(identity_client: TestClient) -> None:
    _register(identity_client, OPERATOR_EMAIL)
    response = identity_client.post("/api/identity/dev-token", json={"email": OPERATOR_EMAIL})
    assert response.status_code == 200
    assert response.json()["role"] == "superadmin"
    assert response.json()["permissions"] == [PERM_WILDCARD]

    me = identity_client.get("/api/identity/me", headers=_auth_header(response.json()["access_token"]))
    assert me.json()["role"] == "superadmin"


def test_role_changes_are_limited(identity_client: TestClient) -> None:
    admin_id = _register(identity_client, OPERATOR_EMAIL)
    field_id = _register(identity_client, "field@agro.lk")
    farmer_id = _register(identity_client, "farmer@agro.lk")
    admin_token = _login(identity_client, OPERATOR_EMAIL)
    farmer_token = _login(identity_client, "farmer@agro.lk")

    denied = identity_client.post(
        f"/api/identity/users/{field_id}/role",
        json={"role": "operator"},
        headers=_auth_header(farmer_token),
    )
    assert denied.status_code == 403

    promoted = identity_client.post(
        f"/api/identity/users/{field_id}/role",
        json={"role": "operator"},
        headers=_auth_header(admin_token),
    )
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "operator"

    field_token = _login(identity_client, "field@agro.lk")
    escalate = identity_client.post(
        f"/api/identity/users/{farmer_id}/role",
        json={"role": "superadmin"},
        headers=_auth_header(field_token),
    )
    assert escalate.status_code == 400
    self_demote = identity_client.post(
        f"/api/identity/users/{admin_id}/role",
        json={"role": "user"},
        headers=_auth_header(admin_token),
    )
    assert self_demote.status_code == 400
    missing = identity_client.post(
        "/api/identity/users/u-missing/role",
        json={"role": "operator"},
        headers=_auth_header(admin_token),
    )
    assert missing.status_code == 404

    with Session(db.get_engine()) as session:
        rows = session.exec(select(AuditLog).where(AuditLog.action == "identity.role.set")).all()
    assert sorted(row.status_code for row in rows) == [200, 400, 400, 404]
    assert any(row.actor_id == admin_id and row.status_code == 200 for row in rows)

    with Session(db.get_engine()) as session:
        role_events = session.exec(select(EventRecord).where(EventRecord.event_type == "user.role_changed")).all()
    assert [(event.subject_id, event.payload["role"]) for event in role_events] == [(field_id, "operator")]


def test_me_for_unregistered_subject_is_not_found(identity_client: TestClient) -> None:
    token = create_access_token(user_id="u-unregistered", email="walkin@farm.lk")
    response = identity_client.get("/api/identity/me", headers=_auth_header(token))
    assert response.status_code == 404

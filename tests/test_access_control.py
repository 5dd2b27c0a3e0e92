from __future__ import annotations

import json
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.errors import NotFoundError, UnauthorizedError
from app.domain.models import AccessGrant, AccessType, Device, DeviceStatus, UserDeviceLink
from app.infra import audit, db, events, redis_state, settings
from app.infra.store import SqlTransactionalStore, Write
from app.services.access_control_service import AccessControlService
from app.services.identity_service import IdentityService

OPERATOR_EMAIL = "ops@agro.lk"


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def set(self, key: str, value: str) -> bool:
        self._store[key] = value
        return True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def ping(self) -> bool:
        return True



class RacingStore(SqlTransactionalStore):
    def __init__(self, competitor: Callable[[], object]) -> None:
        super().__init__()
        self._competitor: Callable[[], object] | None = competitor

    def commit(self, writes: Sequence[Write]) -> None:
        if self._competitor is not None:
            competitor, self._competitor = self._competitor, None
            competitor()
        super().commit(writes)

@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def access_engine(tmp_path: Path) -> Engine:
    db_path = tmp_path / "access_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    return test_engine


@pytest.fixture()
def access_client(
    monkeypatch: pytest.MonkeyPatch,
    access_engine: Engine,
    fake_redis: FakeRedis,
) -> Generator[TestClient, None, None]:
    monkeypatch.setattr(db, "engine", access_engine)
    monkeypatch.setattr(audit, "engine", access_engine)
    monkeypatch.setattr(events, "engine", access_engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)
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


def _seed_device(engine: Engine, device_id: str, owner_user_id: str) -> None:
    with Session(engine) as session:
        session.add(Device(id=device_id, owner_user_id=owner_user_id, status=DeviceStatus.ACTIVE, version=1))
        session.add(UserDeviceLink(user_id=owner_user_id, device_id=device_id))
        session.commit()


def _share(client: TestClient, token: str, device_id: str, grantee: str) -> dict[str, object]:
    response = client.post(
        f"/api/devices/{device_id}/share",
        json={"grantee": grantee},
        headers=_auth_header(token),
    )
    assert response.status_code == 200
    return response.json()


def _notification_types(client: TestClient, token: str) -> list[str]:
    response = client.get("/api/notifications", headers=_auth_header(token))
    assert response.status_code == 200
    return [item["type"] for item in response.json()]


def test_share_grants_read_only_access(
    access_client: TestClient,
    access_engine: Engine,
    fake_redis: FakeRedis,
) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk", "Sunil")
    owner_token = _login(access_client, "nimal@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    fake_redis.set(redis_state.device_live_key("D1"), json.dumps({"soilMoisture": 41.5, "airTemp": 29.1}))

    grant = _share(access_client, owner_token, "D1", "SUNIL@farm.lk")
    assert grant["grantee_user_id"] == viewer_id
    assert grant["owner_user_id"] == owner_id
    assert grant["access_type"] == "shared"
    assert _share(access_client, owner_token, "D1", viewer_id)["id"] == grant["id"]
    assert _notification_types(access_client, viewer_token) == ["device_share"]

    accessible = access_client.get("/api/devices/accessible", headers=_auth_header(viewer_token))
    assert accessible.status_code == 200
    assert [(item["device"]["id"], item["access_type"], item["owner_name"]) for item in accessible.json()] == [
        ("D1", "shared", "Nimal")
    ]

    snapshot = access_client.get("/api/devices/D1/snapshot", headers=_auth_header(viewer_token))
    assert snapshot.status_code == 200
    assert snapshot.json()["access_type"] == "shared"
    assert snapshot.json()["reading"] == {"soilMoisture": 41.5, "airTemp": 29.1}

    viewer_settings = access_client.patch(
        "/api/devices/D1/settings",
        json={"thresholds": {"soilMoisture": {"min": 10}}},
        headers=_auth_header(viewer_token),
    )
    assert viewer_settings.status_code == 403

    owner_settings = access_client.patch(
        "/api/devices/D1/settings",
        json={"label": "North field", "thresholds": {"soilMoisture": {"min": 20}}},
        headers=_auth_header(owner_token),
    )
    assert owner_settings.status_code == 200
    assert owner_settings.json()["label"] == "North field"
    assert owner_settings.json()["settings"] == {"thresholds": {"soilMoisture": {"min": 20}}}

    shared_with = access_client.get("/api/devices/D1/shared-with", headers=_auth_header(owner_token))
    assert [item["grantee_user_id"] for item in shared_with.json()] == [viewer_id]
    assert access_client.get("/api/devices/D1/shared-with", headers=_auth_header(viewer_token)).status_code == 403


def test_unshare_removes_access(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk")
    owner_token = _login(access_client, "nimal@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    _share(access_client, owner_token, "D1", "sunil@farm.lk")

    revoked = access_client.post(
        "/api/devices/D1/unshare",
        json={"grantee_user_id": viewer_id},
        headers=_auth_header(owner_token),
    )
    assert revoked.status_code == 200
    assert revoked.json()["revoked_at"] is not None

    assert access_client.get("/api/devices/accessible", headers=_auth_header(viewer_token)).json() == []
    assert access_client.get("/api/devices/D1", headers=_auth_header(viewer_token)).status_code == 404
    assert _notification_types(access_client, viewer_token) == ["device_unshare", "device_share"]

    again = access_client.post(
        "/api/devices/D1/unshare",
        json={"grantee_user_id": viewer_id},
        headers=_auth_header(owner_token),
    )
    assert again.status_code == 404


def test_sharing_is_restricted_to_the_owner(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    _register(access_client, "sunil@farm.lk")
    _register(access_client, "kamal@farm.lk")
    owner_token = _login(access_client, "nimal@farm.lk")
    stranger_token = _login(access_client, "kamal@farm.lk")
    _seed_device(access_engine, "D1", owner_id)

    stranger_share = access_client.post(
        "/api/devices/D1/share",
        json={"grantee": "sunil@farm.lk"},
        headers=_auth_header(stranger_token),
    )
    assert stranger_share.status_code == 403
    stranger_unknown = access_client.post(
        "/api/devices/D1/share",
        json={"grantee": "nobody@farm.lk"},
        headers=_auth_header(stranger_token),
    )
    assert stranger_unknown.status_code == 403

    self_share = access_client.post(
        "/api/devices/D1/share",
        json={"grantee": "nimal@farm.lk"},
        headers=_auth_header(owner_token),
    )
    assert self_share.status_code == 400

    unknown = access_client.post(
        "/api/devices/D1/share",
        json={"grantee": "nobody@farm.lk"},
        headers=_auth_header(owner_token),
    )
    assert unknown.status_code == 404

    assert access_client.get("/api/devices/D1", headers=_auth_header(stranger_token)).status_code == 404
    assert access_client.get("/api/devices/D1/snapshot", headers=_auth_header(stranger_token)).status_code == 404
    foreign_list = access_client.get(
        "/api/devices/accessible",
        params={"user_id": owner_id},
        headers=_auth_header(stranger_token),
    )
    assert foreign_list.status_code == 403


def test_grant_from_a_previous_owner_is_ignored(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    with Session(access_engine) as session:
        session.add(AccessGrant(device_id="D1", owner_user_id="u-previous", grantee_user_id=viewer_id))
        session.commit()

    assert access_client.get("/api/devices/accessible", headers=_auth_header(viewer_token)).json() == []
    assert access_client.get("/api/devices/D1", headers=_auth_header(viewer_token)).status_code == 404


def test_operator_unassign_releases_device(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    _register(access_client, "sunil@farm.lk")
    _register(access_client, OPERATOR_EMAIL)
    owner_token = _login(access_client, "nimal@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    ops_token = _login(access_client, OPERATOR_EMAIL)
    _seed_device(access_engine, "D1", owner_id)
    _share(access_client, owner_token, "D1", "sunil@farm.lk")

    assert access_client.post("/api/devices/D1/unassign", headers=_auth_header(owner_token)).status_code == 403

    released = access_client.post("/api/devices/D1/unassign", headers=_auth_header(ops_token))
    assert released.status_code == 200
    assert released.json()["status"] == "unassigned"
    assert released.json()["owner_user_id"] is None

    assert access_client.get("/api/devices/accessible", headers=_auth_header(owner_token)).json() == []
    assert access_client.get("/api/devices/accessible", headers=_auth_header(viewer_token)).json() == []
    assert _notification_types(access_client, owner_token) == ["device_unassigned"]
    with Session(access_engine) as session:
        links = session.exec(select(UserDeviceLink).where(UserDeviceLink.device_id == "D1")).all()
        grants = session.exec(select(AccessGrant).where(AccessGrant.device_id == "D1")).all()
    assert list(links) == []
    assert all(grant.revoked_at is not None for grant in grants)

    again = access_client.post("/api/devices/D1/unassign", headers=_auth_header(ops_token))
    assert again.status_code == 409
    reconciliation = access_client.get("/api/devices/reconciliation", headers=_auth_header(ops_token))
    assert reconciliation.status_code == 200
    assert reconciliation.json() == []


def test_operator_device_administration(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    _register(access_client, OPERATOR_EMAIL)
    owner_token = _login(access_client, "nimal@farm.lk")
    ops_token = _login(access_client, OPERATOR_EMAIL)
    _seed_device(access_engine, "D1", owner_id)
    _seed_device(access_engine, "D2", owner_id)

    listed = access_client.get("/api/devices", headers=_auth_header(ops_token))
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == ["D1", "D2"]
    assert access_client.get("/api/devices", headers=_auth_header(owner_token)).status_code == 403

    offline = access_client.post(
        "/api/devices/D2/status",
        json={"status": "offline"},
        headers=_auth_header(ops_token),
    )
    assert offline.status_code == 200
    assert offline.json()["status"] == "offline"
    filtered = access_client.get("/api/devices", params={"status": "offline"}, headers=_auth_header(ops_token))
    assert [item["id"] for item in filtered.json()] == ["D2"]

    invalid = access_client.post(
        "/api/devices/D2/status",
        json={"status": "unassigned"},
        headers=_auth_header(ops_token),
    )
    assert invalid.status_code == 400

    snapshot = access_client.get("/api/devices/D1/snapshot", headers=_auth_header(ops_token))
    assert snapshot.status_code == 200
    assert snapshot.json() == {"device_id": "D1", "access_type": None, "reading": None}
    assert access_client.get("/api/devices/D404/snapshot", headers=_auth_header(ops_token)).status_code == 404


def test_concurrent_shares_leave_a_single_grant(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    owner = IdentityService().resolve_caller(owner_id)
    store = RacingStore(lambda: AccessControlService().grant_access("D1", owner, "sunil@farm.lk"))

    grant = AccessControlService(store=store).grant_access("D1", owner, "sunil@farm.lk")

    with Session(access_engine) as session:
        grants = session.exec(select(AccessGrant).where(AccessGrant.device_id == "D1")).all()
    assert [item.id for item in grants] == [grant.id]
    service = AccessControlService()
    assert service.device_access("D1", viewer_id) == AccessType.SHARED

    service.revoke_access("D1", owner, viewer_id)
    with pytest.raises(NotFoundError):
        service.device_access("D1", viewer_id)
    assert _notification_types(access_client, viewer_token) == ["device_unshare", "device_share"]


def test_unshare_revokes_every_active_grant_for_the_pair(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    with Session(access_engine) as session:
        session.add(AccessGrant(device_id="D1", owner_user_id=owner_id, grantee_user_id=viewer_id))
        session.add(AccessGrant(device_id="D1", owner_user_id=owner_id, grantee_user_id=viewer_id))
        session.commit()
    owner = IdentityService().resolve_caller(owner_id)
    service = AccessControlService()

    service.revoke_access("D1", owner, viewer_id)

    with Session(access_engine) as session:
        grants = session.exec(select(AccessGrant).where(AccessGrant.device_id == "D1")).all()
    assert len(grants) == 2
    assert all(item.revoked_at is not None for item in grants)
    with pytest.raises(NotFoundError):
        service.device_access("D1", viewer_id)


def test_reshare_after_unshare_restores_the_same_grant(access_client: TestClient, access_engine: Engine) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    viewer_id = _register(access_client, "sunil@farm.lk")
    owner_token = _login(access_client, "nimal@farm.lk")
    viewer_token = _login(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)

    first = _share(access_client, owner_token, "D1", "sunil@farm.lk")
    revoked = access_client.post(
        "/api/devices/D1/unshare",
        json={"grantee_user_id": viewer_id},
        headers=_auth_header(owner_token),
    )
    assert revoked.status_code == 200
    second = _share(access_client, owner_token, "D1", "sunil@farm.lk")

    assert second["id"] == first["id"]
    assert second["revoked_at"] is None
    assert access_client.get("/api/devices/D1", headers=_auth_header(viewer_token)).status_code == 200
    assert _notification_types(access_client, viewer_token).count("device_share") == 2


def test_non_owner_sharing_is_unauthorized_whatever_the_grantee(
    access_client: TestClient,
    access_engine: Engine,
) -> None:
    owner_id = _register(access_client, "nimal@farm.lk", "Nimal")
    stranger_id = _register(access_client, "kamal@farm.lk")
    _register(access_client, "sunil@farm.lk")
    _seed_device(access_engine, "D1", owner_id)
    stranger = IdentityService().resolve_caller(stranger_id)
    service = AccessControlService()

    for grantee in ("sunil@farm.lk", "nobody@farm.lk", "u-missing"):
        with pytest.raises(UnauthorizedError):
            service.grant_access("D1", stranger, grantee)

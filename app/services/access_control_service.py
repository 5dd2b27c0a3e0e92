from __future__ import annotations

import logging
from uuid import NAMESPACE_URL, uuid5

from sqlmodel import Session, col, select

from app.domain.errors import NotFoundError, UnauthorizedError, ValidationError
from app.domain.models import (
    AccessGrant,
    AccessibleDeviceRead,
    AccessType,
    Caller,
    Device,
    DeviceRead,
    EventEnvelope,
    NotificationType,
    UserProfile,
    now_utc,
)
from app.infra.db import get_engine
from app.infra.events import as_record, event_bus
from app.infra.store import PreconditionFailedError, SqlTransactionalStore, TransactionalStore, Write
from app.services.identity_service import IdentityService
from app.services.notification_service import build_notification

logger = logging.getLogger(__name__)


def grant_id(device_id: str, owner_user_id: str, grantee_user_id: str) -> str:
    return str(uuid5(NAMESPACE_URL, f"grant:{device_id}:{owner_user_id}:{grantee_user_id}"))


class AccessControlService:
    def __init__(
        self,
        *,
        store: TransactionalStore | None = None,
        identity: IdentityService | None = None,
    ) -> None:
        self._store = store or SqlTransactionalStore()
        self._identity = identity or IdentityService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_device(self, session: Session, device_id: str) -> Device:
        device = session.get(Device, device_id)
        if device is None:
            raise NotFoundError("device not found")
        return device

    def _active_grants(self, session: Session, device: Device, grantee_user_id: str) -> list[AccessGrant]:
        statement = (
            select(AccessGrant)
            .where(AccessGrant.device_id == device.id)
            .where(AccessGrant.grantee_user_id == grantee_user_id)
            .where(AccessGrant.owner_user_id == device.owner_user_id)
            .where(col(AccessGrant.revoked_at).is_(None))
        )
        return list(session.exec(statement).all())

    def _require_owner(self, device: Device, caller: Caller, action: str) -> None:
        if device.owner_user_id != caller.user_id:
            logger.warning("unauthorized %s on device %s by %s", action, device.id, caller.user_id)
            raise UnauthorizedError("only the device owner can manage sharing")

    def device_access(self, device_id: str, user_id: str, *, mutate: bool = False) -> AccessType:
        with self._session() as session:
            device = self._get_device(session, device_id)
            if device.owner_user_id == user_id:
                return AccessType.OWNER
            grants = self._active_grants(session, device, user_id)
        if not grants:
            raise NotFoundError("device not found")
        if mutate:
            logger.warning("shared viewer %s attempted to modify device %s", user_id, device_id)
            raise UnauthorizedError("shared access is read-only")
        return AccessType.SHARED

    def grant_access(self, device_id: str, caller: Caller, grantee: str) -> AccessGrant:
        with self._session() as session:
            device = self._get_device(session, device_id)
        self._require_owner(device, caller, "share")
        grantee_profile = self._identity.resolve_user(grantee.strip())
        if grantee_profile.id == caller.user_id:
            logger.info("user %s tried to share device %s with themselves", caller.user_id, device_id)
            raise ValidationError("cannot share a device with yourself")

        key = {"id": grant_id(device.id, caller.user_id, grantee_profile.id)}
        with self._session() as session:
            current = session.get(AccessGrant, key["id"])
        if current is not None and current.revoked_at is None:
            return current

        now = now_utc()
        grant = AccessGrant(
            id=key["id"],
            device_id=device.id,
            owner_user_id=caller.user_id,
            grantee_user_id=grantee_profile.id,
            access_type=AccessType.SHARED,
            created_at=now,
        )
        if current is None:
            grant_writes = [Write.expect_absent(AccessGrant, key), Write.create_if_absent(grant)]
        else:
            grant_writes = [
                Write.expect(AccessGrant, key, revoked_at=current.revoked_at),
                Write.set_(AccessGrant, key, created_at=now, revoked_at=None),
            ]
        notification = build_notification(
            grantee_profile.id,
            NotificationType.DEVICE_SHARE,
            title="Device Shared With You",
            message=f"{caller.email or caller.user_id} shared device {device.id} with you.",
            payload={"device_id": device.id, "grant_id": grant.id},
            dedupe_parts=(grant.id, now.isoformat()),
        )
        event = EventEnvelope(
            event_type="device.shared",
            actor_id=caller.user_id,
            subject_id=device.id,
            payload={"device_id": device.id, "grantee_user_id": grantee_profile.id},
        )
        try:
            self._store.commit(
                [
                    Write.expect(Device, {"id": device.id}, owner_user_id=caller.user_id),
                    *grant_writes,
                    Write.create_if_absent(notification),
                    Write.create_if_absent(as_record(event)),
                ]
            )
        except PreconditionFailedError as exc:
            if exc.write is not None and exc.write.model is not AccessGrant:
                raise
            with self._session() as session:
                winner = session.get(AccessGrant, key["id"])
            if winner is None or winner.revoked_at is not None:
                raise
            logger.info("device %s already shared with %s by a concurrent call", device.id, grantee_profile.id)
            return winner
        event_bus.dispatch(event)
        logger.info("device %s shared by %s with %s", device.id, caller.user_id, grantee_profile.id)
        return grant

    def revoke_access(self, device_id: str, caller: Caller, grantee_user_id: str) -> AccessGrant:
        with self._session() as session:
            device = self._get_device(session, device_id)
            self._require_owner(device, caller, "unshare")
            grants = self._active_grants(session, device, grantee_user_id)
        if not grants:
            raise NotFoundError("no active share for that user")

        now = now_utc()
        grant = grants[0]
        notification = build_notification(
            grantee_user_id,
            NotificationType.DEVICE_UNSHARE,
            title="Device Access Removed",
            message=f"Your access to device {device.id} has been removed.",
            payload={"device_id": device.id, "grant_id": grant.id},
            dedupe_parts=(grant.id, now.isoformat()),
        )
        event = EventEnvelope(
            event_type="device.unshared",
            actor_id=caller.user_id,
            subject_id=device.id,
            payload={"device_id": device.id, "grantee_user_id": grantee_user_id},
        )
        writes: list[Write] = []
        for item in grants:
            writes.append(Write.expect(AccessGrant, {"id": item.id}, revoked_at=None))
            writes.append(Write.set_(AccessGrant, {"id": item.id}, revoked_at=now))
        self._store.commit([*writes, Write.create_if_absent(notification), Write.create_if_absent(as_record(event))])
        for item in grants:
            item.revoked_at = now
        event_bus.dispatch(event)
        logger.info("device %s unshared by %s from %s", device.id, caller.user_id, grantee_user_id)
        return grant

    def list_shared_with(self, device_id: str, caller: Caller) -> list[AccessGrant]:
        with self._session() as session:
            device = self._get_device(session, device_id)
            if device.owner_user_id != caller.user_id and not caller.is_privileged:
                raise UnauthorizedError("only the device owner can list shares")
            statement = (
                select(AccessGrant)
                .where(AccessGrant.device_id == device.id)
                .where(AccessGrant.owner_user_id == device.owner_user_id)
                .where(col(AccessGrant.revoked_at).is_(None))
                .order_by(col(AccessGrant.created_at).asc())
            )
            return list(session.exec(statement).all())

    def list_accessible_devices(self, user_id: str, caller: Caller) -> list[AccessibleDeviceRead]:
        if user_id != caller.user_id and not caller.is_privileged:
            raise UnauthorizedError("cannot list another user's devices")
        with self._session() as session:
            owned = list(
                session.exec(
                    select(Device).where(Device.owner_user_id == user_id).order_by(col(Device.id).asc())
                ).all()
            )
            shared_rows = list(
                session.exec(
                    select(Device, AccessGrant)
                    .join(AccessGrant, col(AccessGrant.device_id) == col(Device.id))
                    .where(AccessGrant.grantee_user_id == user_id)
                    .where(col(AccessGrant.owner_user_id) == col(Device.owner_user_id))
                    .where(col(AccessGrant.revoked_at).is_(None))
                    .order_by(col(Device.id).asc())
                ).all()
            )
            owner_ids = {device.owner_user_id for device, _ in shared_rows if device.owner_user_id}
            owners: dict[str, UserProfile] = {}
            if owner_ids:
                statement = select(UserProfile).where(col(UserProfile.id).in_(owner_ids))
                owners = {profile.id: profile for profile in session.exec(statement).all()}

        items = [
            AccessibleDeviceRead(device=DeviceRead.model_validate(device), access_type=AccessType.OWNER)
            for device in owned
        ]
        seen = {device.id for device in owned}
        for device, _grant in shared_rows:
            if device.id in seen:
                continue
            seen.add(device.id)
            owner = owners.get(device.owner_user_id or "")
            items.append(
                AccessibleDeviceRead(
                    device=DeviceRead.model_validate(device),
                    access_type=AccessType.SHARED,
                    owner_name=(owner.display_name or owner.email) if owner is not None else None,
                )
            )
        return items

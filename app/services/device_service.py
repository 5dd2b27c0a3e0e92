from __future__ import annotations

import json
import logging
from typing import Any

from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.domain.models import (
    AccessType,
    Caller,
    Device,
    DeviceSettingsUpdate,
    DeviceSnapshotRead,
    DeviceStatus,
    EventEnvelope,
    NotificationType,
    now_utc,
)
from app.infra import redis_state
from app.infra.db import get_engine
from app.infra.events import as_record, event_bus
from app.infra.store import PreconditionFailedError, SqlTransactionalStore, TransactionalStore, Write
from app.services.access_control_service import AccessControlService
from app.services.assignment_service import active_grants, release_device_writes
from app.services.notification_service import build_notification

logger = logging.getLogger(__name__)


class DeviceService:
    def __init__(
        self,
        *,
        store: TransactionalStore | None = None,
        access: AccessControlService | None = None,
    ) -> None:
        self._store = store or SqlTransactionalStore()
        self._access = access or AccessControlService(store=self._store)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _load(self, device_id: str) -> Device:
        with self._session() as session:
            device = session.get(Device, device_id)
        if device is None:
            raise NotFoundError("device not found")
        return device

    def _require_operator(self, caller: Caller, action: str, device_id: str) -> None:
        if not caller.is_privileged:
            logger.warning("unauthorized %s on device %s by %s", action, device_id, caller.user_id)
            raise UnauthorizedError("operator role required")

    def list_devices(
        self,
        caller: Caller,
        *,
        owner_user_id: str | None = None,
        status: DeviceStatus | None = None,
    ) -> list[Device]:
        self._require_operator(caller, "list", "*")
        statement = select(Device)
        if owner_user_id is not None:
            statement = statement.where(Device.owner_user_id == owner_user_id)
        if status is not None:
            statement = statement.where(Device.status == status)
        statement = statement.order_by(col(Device.id).asc())
        with self._session() as session:
            return list(session.exec(statement).all())

    def get_device(self, device_id: str, caller: Caller) -> Device:
        if not caller.is_privileged:
            self._access.device_access(device_id, caller.user_id)
        return self._load(device_id)

    def get_snapshot(self, device_id: str, caller: Caller) -> DeviceSnapshotRead:
        access: AccessType | None
        try:
            access = self._access.device_access(device_id, caller.user_id)
        except NotFoundError:
            if not caller.is_privileged:
                raise
            self._load(device_id)
            access = None
        raw = redis_state.get_redis().get(redis_state.device_live_key(device_id))
        reading: dict[str, Any] | None = json.loads(raw) if raw else None
        return DeviceSnapshotRead(device_id=device_id, access_type=access, reading=reading)

    def update_settings(self, device_id: str, caller: Caller, payload: DeviceSettingsUpdate) -> Device:
        device = self._load(device_id)
        if device.owner_user_id != caller.user_id:
            if not caller.is_privileged:
                self._access.device_access(device_id, caller.user_id, mutate=True)
            logger.warning("unauthorized settings change on device %s by %s", device_id, caller.user_id)
            raise UnauthorizedError("only the device owner can change settings")
        changes: dict[str, Any] = {"updated_at": now_utc()}
        if payload.label is not None:
            changes["label"] = payload.label.strip() or None
        if payload.thresholds is not None:
            changes["settings"] = {**device.settings, "thresholds": payload.thresholds}
        self._store.commit(
            [
                Write.expect(Device, {"id": device.id}, owner_user_id=caller.user_id),
                Write.set_(Device, {"id": device.id}, **changes),
            ]
        )
        for key, value in changes.items():
            setattr(device, key, value)
        logger.info("device %s settings updated by %s", device.id, caller.user_id)
        return device

    def update_status(self, device_id: str, caller: Caller, status: DeviceStatus) -> Device:
        self._require_operator(caller, "status update", device_id)
        device = self._load(device_id)
        if status == DeviceStatus.UNASSIGNED:
            logger.info("status update on %s rejected: use unassign instead", device_id)
            raise ValidationError("devices are unassigned through the unassign operation")
        if device.owner_user_id is None:
            logger.info("status update on %s rejected: device has no owner", device_id)
            raise ValidationError("only assigned devices can change status")
        now = now_utc()
        self._store.commit(
            [
                Write.expect(Device, {"id": device.id}, version=device.version),
                Write.set_(Device, {"id": device.id}, status=status, updated_at=now, version=device.version + 1),
            ]
        )
        device.status = status
        device.updated_at = now
        device.version += 1
        logger.info("device %s status set to %s by %s", device.id, status, caller.user_id)
        return device

    def unassign(self, device_id: str, caller: Caller) -> Device:
        self._require_operator(caller, "unassign", device_id)
        with self._session() as session:
            device = session.get(Device, device_id)
            if device is None:
                raise NotFoundError("device not found")
            grants = active_grants(session, device_id)
        previous_owner = device.owner_user_id
        if previous_owner is None:
            raise ConflictError("device is not assigned")

        now = now_utc()
        changes: dict[str, Any] = {
            "owner_user_id": None,
            "status": DeviceStatus.UNASSIGNED,
            "request_id": None,
            "assigned_at": None,
            "assigned_by": None,
            "updated_at": now,
            "version": device.version + 1,
        }
        notification = build_notification(
            previous_owner,
            NotificationType.DEVICE_UNASSIGNED,
            title="Device Unassigned",
            message=f"Device {device.id} has been unassigned from your account.",
            payload={"device_id": device.id},
            dedupe_parts=(device.id, str(device.version)),
        )
        event = EventEnvelope(
            event_type="device.unassigned",
            actor_id=caller.user_id,
            subject_id=device.id,
            payload={"device_id": device.id, "previous_owner_user_id": previous_owner},
        )
        writes = [
            Write.expect(Device, {"id": device.id}, version=device.version, owner_user_id=previous_owner),
            Write.set_(Device, {"id": device.id}, **changes),
            *release_device_writes(device, previous_owner, grants, now),
            Write.create_if_absent(notification),
            Write.create_if_absent(as_record(event)),
        ]
        try:
            self._store.commit(writes)
        except PreconditionFailedError as exc:
            logger.warning("unassign of %s lost a race: %s", device.id, exc)
            raise ConflictError(f"device {device.id} changed concurrently") from exc

        for key, value in changes.items():
            setattr(device, key, value)
        event_bus.dispatch(event)
        logger.info("device %s unassigned from %s by %s", device.id, previous_owner, caller.user_id)
        return device

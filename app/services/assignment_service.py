from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session, col, select

from app.domain.errors import (
    AlreadyTerminalError,
    DeviceUnavailableError,
    InvalidTransitionError,
    PersistenceFailureError,
    RequestNotInAssignableStateError,
    ValidationError,
)
from app.domain.models import (
    AccessGrant,
    Caller,
    Device,
    DeviceRequest,
    DeviceStatus,
    EventEnvelope,
    NotificationType,
    UserDeviceLink,
    now_utc,
)
from app.domain.state_machine import RequestAction, RequestStatus, is_terminal, plan_transition
from app.infra import settings
from app.infra.db import get_engine
from app.infra.events import as_record, event_bus
from app.infra.store import PreconditionFailedError, SqlTransactionalStore, TransactionalStore, Write
from app.services.notification_service import build_notification, notification_id
from app.services.request_service import RequestService, log_rejection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentRecord:
    request_id: str
    device_id: str
    user_id: str
    assigned_by: str
    assigned_at: datetime
    notification_id: str
    previous_owner_user_id: str | None = None


def release_device_writes(device: Device, previous_owner: str, grants: list[AccessGrant], at: datetime) -> list[Write]:
    writes = [Write.delete(UserDeviceLink, {"user_id": previous_owner, "device_id": device.id})]
    writes.extend(Write.set_(AccessGrant, {"id": grant.id}, revoked_at=at) for grant in grants)
    return writes


def active_grants(session: Session, device_id: str) -> list[AccessGrant]:
    statement = (
        select(AccessGrant)
        .where(AccessGrant.device_id == device_id)
        .where(col(AccessGrant.revoked_at).is_(None))
    )
    return list(session.exec(statement).all())


class AssignmentService:
    def __init__(
        self,
        *,
        store: TransactionalStore | None = None,
        requests: RequestService | None = None,
        strict_ownership: bool | None = None,
    ) -> None:
        self._store = store or SqlTransactionalStore()
        self._requests = requests or RequestService(store=self._store)
        self._strict = settings.STRICT_DEVICE_OWNERSHIP if strict_ownership is None else strict_ownership

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _replayed_assignment(
        self,
        request: DeviceRequest,
        device: Device | None,
        device_id: str,
        user_id: str,
    ) -> AssignmentRecord | None:
        if request.status != RequestStatus.DEVICE_ASSIGNED or request.assigned_device_id != device_id:
            return None
        if device is None or device.owner_user_id != user_id or device.request_id != request.id:
            return None
        return AssignmentRecord(
            request_id=request.id,
            device_id=device_id,
            user_id=user_id,
            assigned_by=request.assigned_by or "",
            assigned_at=request.device_assigned_at or device.assigned_at or now_utc(),
            notification_id=notification_id(NotificationType.DEVICE_ASSIGNMENT, request.id, device_id),
        )

    def assign(
        self,
        request_id: str,
        device_id: str,
        operator: Caller,
        *,
        user_id: str | None = None,
        reassign: bool = False,
    ) -> AssignmentRecord:
        device_id = device_id.strip()
        request = self._requests.load(request_id)
        role = self._requests.authorize_action(request, operator, RequestAction.ASSIGN)
        target_user = user_id or request.owner_user_id
        try:
            if not device_id:
                raise ValidationError("device_id is required")
            if target_user != request.owner_user_id:
                raise ValidationError("a device can only be assigned to the user who requested it")
        except ValidationError as exc:
            log_rejection(logger, exc, action="assign", subject_id=request_id, actor_id=operator.user_id)
            raise

        with self._session() as session:
            device = session.get(Device, device_id)
            grants = active_grants(session, device_id) if device is not None else []

        replayed = self._replayed_assignment(request, device, device_id, target_user)
        if replayed is not None:
            logger.info("assign %s -> %s already applied; returning existing assignment", request_id, device_id)
            return replayed

        previous_owner = device.owner_user_id if device is not None else None
        try:
            if request.status != RequestStatus.USER_ACCEPTED:
                if is_terminal(request.status):
                    raise AlreadyTerminalError(f"request is already {request.status}")
                raise RequestNotInAssignableStateError(
                    f"request must be {RequestStatus.USER_ACCEPTED} before assignment, not {request.status}"
                )
            if previous_owner is not None and previous_owner != target_user and self._strict and not reassign:
                raise DeviceUnavailableError(f"device {device_id} is already owned by another user")
        except (InvalidTransitionError, DeviceUnavailableError) as exc:
            log_rejection(logger, exc, action="assign", subject_id=request_id, actor_id=operator.user_id)
            if isinstance(exc, DeviceUnavailableError):
                logger.warning("device %s unavailable for request %s", device_id, request_id)
            raise

        now = now_utc()
        assigned_by = operator.email or operator.user_id
        planned = plan_transition(
            request,
            RequestAction.ASSIGN,
            role,
            changes={"assigned_device_id": device_id, "assigned_by": assigned_by},
            now=now,
        )
        notification = build_notification(
            target_user,
            NotificationType.DEVICE_ASSIGNMENT,
            title="Device Assigned",
            message=f"Your device {device_id} has been assigned and is ready for setup.",
            payload={"device_id": device_id, "request_id": request.id},
            dedupe_parts=(request.id, device_id),
        )
        device_key = {"id": device_id}
        writes: list[Write] = []
        if device is None:
            writes.append(Write.expect_absent(Device, device_key))
            next_version = 1
        else:
            writes.append(
                Write.expect(Device, device_key, version=device.version, owner_user_id=device.owner_user_id)
            )
            next_version = device.version + 1
        writes.extend(
            [
                Write.set_(
                    Device,
                    device_key,
                    owner_user_id=target_user,
                    status=DeviceStatus.ACTIVE,
                    request_id=request.id,
                    assigned_at=now,
                    assigned_by=assigned_by,
                    version=next_version,
                    updated_at=now,
                ),
                Write.expect(DeviceRequest, {"id": request.id}, status=RequestStatus.USER_ACCEPTED),
                Write.set_(DeviceRequest, {"id": request.id}, **planned),
                Write.create_if_absent(UserDeviceLink(user_id=target_user, device_id=device_id, created_at=now)),
                Write.create_if_absent(notification),
            ]
        )
        if device is not None and previous_owner is not None and previous_owner != target_user:
            writes.extend(release_device_writes(device, previous_owner, grants, now))
            writes.append(
                Write.create_if_absent(
                    build_notification(
                        previous_owner,
                        NotificationType.DEVICE_REASSIGNED,
                        title="Device Reassigned",
                        message=f"Device {device_id} has been reassigned to another user.",
                        payload={"device_id": device_id, "request_id": request.id},
                        dedupe_parts=(request.id, device_id, previous_owner),
                    )
                )
            )

        event = EventEnvelope(
            event_type="device_request.assign",
            actor_id=operator.user_id,
            subject_id=request.id,
            payload={
                "request_id": request.id,
                "device_id": device_id,
                "user_id": target_user,
                "previous_owner_user_id": previous_owner,
            },
        )
        writes.append(Write.create_if_absent(as_record(event)))

        try:
            self._store.commit(writes)
        except PreconditionFailedError as exc:
            conflict: InvalidTransitionError | DeviceUnavailableError
            if exc.write is not None and exc.write.model is DeviceRequest:
                conflict = RequestNotInAssignableStateError(f"request {request.id} changed concurrently")
            else:
                conflict = DeviceUnavailableError(f"device {device_id} was assigned concurrently")
            log_rejection(logger, conflict, action="assign", subject_id=request_id, actor_id=operator.user_id)
            logger.warning("assignment race on device %s for request %s: %s", device_id, request_id, exc)
            raise conflict from exc
        except PersistenceFailureError as exc:
            log_rejection(logger, exc, action="assign", subject_id=request_id, actor_id=operator.user_id)
            raise

        event_bus.dispatch(event)
        logger.info("device %s assigned to %s for request %s by %s", device_id, target_user, request.id, assigned_by)
        return AssignmentRecord(
            request_id=request.id,
            device_id=device_id,
            user_id=target_user,
            assigned_by=assigned_by,
            assigned_at=now,
            notification_id=notification.id,
            previous_owner_user_id=previous_owner if previous_owner != target_user else None,
        )

    def complete(self, request_id: str, operator: Caller) -> DeviceRequest:
        return self._requests.apply_action(
            request_id,
            operator,
            RequestAction.COMPLETE,
            changes={"completed_by": operator.email or operator.user_id},
        )

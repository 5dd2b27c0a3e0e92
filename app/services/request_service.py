from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Any

from sqlmodel import Session, col, func, select

from app.domain.errors import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailureError,
    ProvisioningError,
    RequestLimitExceededError,
    UnauthorizedError,
    ValidationError,
)
from app.domain.models import (
    SENSOR_PARAMETERS,
    Caller,
    DeviceRequest,
    DeviceRequestCreate,
    DeviceRequestUpdate,
    EventEnvelope,
    FarmInfo,
    NotificationType,
    PersonalInfo,
    RequestSummaryRead,
)
from app.domain.permissions import AccountRole
from app.domain.state_machine import (
    ACTIVE_STATUSES,
    DEVICE_BEARING_STATUSES,
    OWNER_ACTIONS,
    ActorRole,
    RequestAction,
    RequestStatus,
    authorize,
    ensure_transition,
    plan_transition,
)
from app.infra import settings
from app.infra.db import get_engine
from app.infra.events import as_record, event_bus
from app.infra.store import PreconditionFailedError, SqlTransactionalStore, TransactionalStore, Write
from app.services.identity_service import normalize_email
from app.services.notification_service import build_notification

logger = logging.getLogger(__name__)


def actor_role_for(caller: Caller, request: DeviceRequest, action: RequestAction) -> ActorRole:
    if caller.role == AccountRole.SUPERADMIN:
        return ActorRole.SUPERADMIN
    is_owner = caller.user_id == request.owner_user_id
    if action in OWNER_ACTIONS and is_owner:
        return ActorRole.OWNER
    if caller.is_privileged:
        return ActorRole.OPERATOR
    if is_owner:
        return ActorRole.OWNER
    raise UnauthorizedError("caller is neither the request owner nor an operator")


def log_rejection(
    log: logging.Logger,
    exc: ProvisioningError,
    *,
    action: str,
    subject_id: str,
    actor_id: str,
) -> None:
    if isinstance(exc, UnauthorizedError):
        log.warning("unauthorized %s on %s by %s: %s", action, subject_id, actor_id, exc)
    elif isinstance(exc, InvalidTransitionError):
        log.warning("illegal %s on %s by %s: %s", action, subject_id, actor_id, exc)
    elif isinstance(exc, ValidationError):
        log.info("invalid %s input for %s by %s: %s", action, subject_id, actor_id, exc)
    elif isinstance(exc, PersistenceFailureError):
        log.error("persistence failure during %s on %s by %s: %s", action, subject_id, actor_id, exc)


def _require_text(name: str, value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{name} is required")
    return cleaned


def _optional_text(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def clean_personal_info(info: PersonalInfo) -> dict[str, Any]:
    if info.age is not None and not 18 <= info.age <= 100:
        raise ValidationError("age must be between 18 and 100")
    return {
        "full_name": _require_text("full_name", info.full_name),
        "email": normalize_email(_require_text("email", info.email)),
        "phone": _require_text("phone", info.phone),
        "nic_or_passport": _optional_text(info.nic_or_passport),
        "address": _optional_text(info.address),
        "age": info.age,
    }


def clean_farm_info(info: FarmInfo) -> dict[str, Any]:
    if not math.isfinite(info.farm_size) or info.farm_size <= 0:
        raise ValidationError("farm_size must be a positive number")
    return {
        "farm_name": _require_text("farm_name", info.farm_name),
        "farm_size": float(info.farm_size),
        "soil_type": _require_text("soil_type", info.soil_type),
        "location": _optional_text(info.location),
        "notes": _optional_text(info.notes),
    }


def clean_parameters(parameters: Sequence[str]) -> list[str]:
    cleaned: list[str] = []
    for name in parameters:
        if name not in SENSOR_PARAMETERS:
            raise ValidationError(f"unknown sensor parameter: {name}")
        if name not in cleaned:
            cleaned.append(name)
    if not cleaned:
        raise ValidationError("at least one sensor parameter must be requested")
    return cleaned


class RequestService:
    def __init__(
        self,
        *,
        store: TransactionalStore | None = None,
        max_active_requests: int | None = None,
    ) -> None:
        self._store = store or SqlTransactionalStore()
        self._max_active = settings.MAX_ACTIVE_REQUESTS if max_active_requests is None else max_active_requests

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def load(self, request_id: str) -> DeviceRequest:
        with self._session() as session:
            request = session.get(DeviceRequest, request_id)
        if request is None:
            raise NotFoundError("device request not found")
        return request

    def _count_active(self, session: Session, owner_user_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(DeviceRequest)
            .where(DeviceRequest.owner_user_id == owner_user_id)
            .where(col(DeviceRequest.status).in_(list(ACTIVE_STATUSES)))
        )
        return int(session.exec(statement).one())

    def authorize_action(self, request: DeviceRequest, caller: Caller, action: RequestAction) -> ActorRole:
        try:
            role = actor_role_for(caller, request, action)
            authorize(action, role)
        except UnauthorizedError as exc:
            log_rejection(logger, exc, action=str(action), subject_id=request.id, actor_id=caller.user_id)
            raise
        return role

    def check_transition(self, request: DeviceRequest, caller: Caller, action: RequestAction) -> ActorRole:
        role = self.authorize_action(request, caller, action)
        try:
            ensure_transition(RequestStatus(request.status), action)
        except InvalidTransitionError as exc:
            log_rejection(logger, exc, action=str(action), subject_id=request.id, actor_id=caller.user_id)
            raise
        return role

    def apply_action(
        self,
        request_id: str,
        caller: Caller,
        action: RequestAction,
        *,
        changes: dict[str, Any] | None = None,
        extra_writes: Sequence[Write] = (),
        event_payload: dict[str, Any] | None = None,
    ) -> DeviceRequest:
        request = self.load(request_id)
        try:
            role = actor_role_for(caller, request, action)
            planned = plan_transition(request, action, role, changes=changes)
        except (UnauthorizedError, InvalidTransitionError) as exc:
            log_rejection(logger, exc, action=str(action), subject_id=request_id, actor_id=caller.user_id)
            raise

        event = EventEnvelope(
            event_type=f"device_request.{action}",
            actor_id=caller.user_id,
            subject_id=request.id,
            payload={
                "request_id": request.id,
                "from": request.status,
                "to": planned["status"],
                **(event_payload or {}),
            },
        )
        writes = [
            Write.expect(DeviceRequest, {"id": request.id}, status=request.status),
            Write.set_(DeviceRequest, {"id": request.id}, **planned),
            *extra_writes,
            Write.create_if_absent(as_record(event)),
        ]
        try:
            self._store.commit(writes)
        except PreconditionFailedError as exc:
            conflict = InvalidTransitionError(f"request {request.id} changed concurrently; reload and retry")
            log_rejection(logger, conflict, action=str(action), subject_id=request_id, actor_id=caller.user_id)
            raise conflict from exc
        except PersistenceFailureError as exc:
            log_rejection(logger, exc, action=str(action), subject_id=request_id, actor_id=caller.user_id)
            raise

        for key, value in planned.items():
            setattr(request, key, value)
        event_bus.dispatch(event)
        logger.info("request %s: %s by %s -> %s", request.id, action, caller.user_id, request.status)
        return request

    def create_request(self, caller: Caller, payload: DeviceRequestCreate) -> DeviceRequest:
        try:
            request = DeviceRequest(
                owner_user_id=caller.user_id,
                status=RequestStatus.PENDING,
                personal_info=clean_personal_info(payload.personal_info),
                farm_info=clean_farm_info(payload.farm_info),
                requested_parameters=clean_parameters(payload.requested_parameters),
                advanced_notes=_optional_text(payload.advanced_notes),
            )
            with self._session() as session:
                active_count = self._count_active(session, caller.user_id)
            if active_count >= self._max_active:
                raise RequestLimitExceededError(
                    f"at most {self._max_active} active device requests are allowed",
                    active_count,
                )
        except ValidationError as exc:
            log_rejection(logger, exc, action="create", subject_id="new request", actor_id=caller.user_id)
            raise

        event = EventEnvelope(
            event_type="device_request.created",
            actor_id=caller.user_id,
            subject_id=request.id,
            payload={"request_id": request.id, "status": request.status},
        )
        self._store.commit([Write.create_if_absent(request), Write.create_if_absent(as_record(event))])
        event_bus.dispatch(event)
        logger.info("request %s submitted by %s", request.id, caller.user_id)
        return request

    def update_request(self, request_id: str, caller: Caller, payload: DeviceRequestUpdate) -> DeviceRequest:
        changes: dict[str, Any] = {}
        try:
            if payload.personal_info is not None:
                changes["personal_info"] = clean_personal_info(payload.personal_info)
            if payload.farm_info is not None:
                changes["farm_info"] = clean_farm_info(payload.farm_info)
            if payload.requested_parameters is not None:
                changes["requested_parameters"] = clean_parameters(payload.requested_parameters)
            if payload.advanced_notes is not None:
                changes["advanced_notes"] = _optional_text(payload.advanced_notes)
        except ValidationError as exc:
            log_rejection(logger, exc, action="update", subject_id=request_id, actor_id=caller.user_id)
            raise
        return self.apply_action(request_id, caller, RequestAction.UPDATE, changes=changes)

    def cancel_request(self, request_id: str, caller: Caller) -> DeviceRequest:
        return self.apply_action(request_id, caller, RequestAction.CANCEL)

    def accept_request(self, request_id: str, caller: Caller) -> DeviceRequest:
        return self.apply_action(
            request_id,
            caller,
            RequestAction.ACCEPT,
            changes={"reviewed_by": caller.email or caller.user_id},
        )

    def reject_request(self, request_id: str, caller: Caller, reason: str | None = None) -> DeviceRequest:
        request = self.load(request_id)
        reason_text = _optional_text(reason) or "Rejected by operator"
        notification = build_notification(
            request.owner_user_id,
            NotificationType.ORDER_REJECTED,
            title="Order Rejected",
            message=f"Your device request has been rejected. Reason: {reason_text}",
            payload={"request_id": request.id},
            dedupe_parts=(request.id,),
        )
        return self.apply_action(
            request_id,
            caller,
            RequestAction.REJECT,
            changes={"rejection_reason": reason_text, "reviewed_by": caller.email or caller.user_id},
            extra_writes=[Write.create_if_absent(notification)],
            event_payload={"reason": reason_text},
        )

    def user_accept(self, request_id: str, caller: Caller) -> DeviceRequest:
        return self.apply_action(request_id, caller, RequestAction.USER_ACCEPT)

    def user_reject(self, request_id: str, caller: Caller) -> DeviceRequest:
        return self.apply_action(request_id, caller, RequestAction.USER_REJECT)

    def get_request(self, request_id: str, caller: Caller) -> DeviceRequest:
        request = self.load(request_id)
        if not caller.is_privileged and request.owner_user_id != caller.user_id:
            raise NotFoundError("device request not found")
        return request

    def list_requests(
        self,
        caller: Caller,
        *,
        status: RequestStatus | None = None,
        owner_user_id: str | None = None,
    ) -> list[DeviceRequest]:
        statement = select(DeviceRequest)
        if not caller.is_privileged:
            statement = statement.where(DeviceRequest.owner_user_id == caller.user_id)
        elif owner_user_id is not None:
            statement = statement.where(DeviceRequest.owner_user_id == owner_user_id)
        if status is not None:
            statement = statement.where(DeviceRequest.status == status)
        statement = statement.order_by(col(DeviceRequest.created_at).desc())
        with self._session() as session:
            return list(session.exec(statement).all())

    def summary(self, caller: Caller, user_id: str | None = None) -> RequestSummaryRead:
        target = user_id or caller.user_id
        if target != caller.user_id and not caller.is_privileged:
            raise UnauthorizedError("cannot read another user's request summary")
        with self._session() as session:
            statuses = list(
                session.exec(select(DeviceRequest.status).where(DeviceRequest.owner_user_id == target)).all()
            )
        return RequestSummaryRead(
            total=len(statuses),
            active=sum(1 for item in statuses if item in ACTIVE_STATUSES),
            assigned=sum(1 for item in statuses if item in DEVICE_BEARING_STATUSES),
            closed=sum(1 for item in statuses if item not in ACTIVE_STATUSES),
        )

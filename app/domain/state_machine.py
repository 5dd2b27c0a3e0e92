from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from app.domain.errors import AlreadyTerminalError, InvalidTransitionError, UnauthorizedError


class RequestStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COST_ESTIMATED = "cost-estimated"
    USER_ACCEPTED = "user-accepted"
    USER_REJECTED = "user-rejected"
    DEVICE_ASSIGNED = "device-assigned"
    COMPLETED = "completed"


class RequestAction(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    UPDATE = "update"
    ESTIMATE = "estimate"
    USER_ACCEPT = "user-accept"
    USER_REJECT = "user-reject"
    ASSIGN = "assign"
    COMPLETE = "complete"


class ActorRole(StrEnum):
    OWNER = "owner"
    OPERATOR = "operator"
    SUPERADMIN = "superadmin"


@dataclass(frozen=True)
class TransitionRule:
    target: RequestStatus
    stamp_field: str | None


ALLOWED_TRANSITIONS: dict[tuple[RequestStatus, RequestAction], TransitionRule] = {
    (RequestStatus.PENDING, RequestAction.ACCEPT): TransitionRule(RequestStatus.ACCEPTED, "accepted_at"),
    (RequestStatus.PENDING, RequestAction.REJECT): TransitionRule(RequestStatus.REJECTED, "rejected_at"),
    (RequestStatus.PENDING, RequestAction.CANCEL): TransitionRule(RequestStatus.CANCELLED, "cancelled_at"),
    (RequestStatus.PENDING, RequestAction.UPDATE): TransitionRule(RequestStatus.PENDING, None),
    (RequestStatus.ACCEPTED, RequestAction.ESTIMATE): TransitionRule(RequestStatus.COST_ESTIMATED, "estimated_at"),
    (RequestStatus.ACCEPTED, RequestAction.REJECT): TransitionRule(RequestStatus.REJECTED, "rejected_at"),
    (RequestStatus.COST_ESTIMATED, RequestAction.USER_ACCEPT): TransitionRule(
        RequestStatus.USER_ACCEPTED, "user_accepted_at"
    ),
    (RequestStatus.COST_ESTIMATED, RequestAction.USER_REJECT): TransitionRule(
        RequestStatus.USER_REJECTED, "user_rejected_at"
    ),
    (RequestStatus.USER_ACCEPTED, RequestAction.ASSIGN): TransitionRule(
        RequestStatus.DEVICE_ASSIGNED, "device_assigned_at"
    ),
    (RequestStatus.DEVICE_ASSIGNED, RequestAction.COMPLETE): TransitionRule(RequestStatus.COMPLETED, "completed_at"),
}

OWNER_ACTIONS: frozenset[RequestAction] = frozenset(
    {
        RequestAction.CANCEL,
        RequestAction.UPDATE,
        RequestAction.USER_ACCEPT,
        RequestAction.USER_REJECT,
    }
)

ACTION_ROLES: dict[RequestAction, frozenset[ActorRole]] = {
    action: (
        frozenset({ActorRole.OWNER, ActorRole.SUPERADMIN})
        if action in OWNER_ACTIONS
        else frozenset({ActorRole.OPERATOR, ActorRole.SUPERADMIN})
    )
    for action in RequestAction
}

TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {
        RequestStatus.COMPLETED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
        RequestStatus.USER_REJECTED,
    }
)

ACTIVE_STATUSES: frozenset[RequestStatus] = frozenset(RequestStatus) - TERMINAL_STATUSES

COST_BEARING_STATUSES: frozenset[RequestStatus] = frozenset(
    {
        RequestStatus.COST_ESTIMATED,
        RequestStatus.USER_ACCEPTED,
        RequestStatus.USER_REJECTED,
        RequestStatus.DEVICE_ASSIGNED,
        RequestStatus.COMPLETED,
    }
)

DEVICE_BEARING_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.DEVICE_ASSIGNED, RequestStatus.COMPLETED}
)

class TransitionSubject(Protocol):
    status: RequestStatus
    cost_details: dict[str, Any] | None
    assigned_device_id: str | None


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(source: RequestStatus, action: RequestAction) -> bool:
    return (source, action) in ALLOWED_TRANSITIONS


def allowed_actions(source: RequestStatus) -> list[RequestAction]:
    return [action for (status, action) in ALLOWED_TRANSITIONS if status == source]


def authorize(action: RequestAction, actor_role: ActorRole) -> None:
    if actor_role not in ACTION_ROLES[action]:
        raise UnauthorizedError(f"role {actor_role} may not perform {action}")


def ensure_transition(source: RequestStatus, action: RequestAction) -> TransitionRule:
    if is_terminal(source):
        raise AlreadyTerminalError(f"request is already {source}")
    rule = ALLOWED_TRANSITIONS.get((source, action))
    if rule is None:
        raise InvalidTransitionError(f"illegal transition: {source} --{action}-->")
    return rule


def invariant_violations(
    status: RequestStatus,
    cost_details: dict[str, Any] | None,
    assigned_device_id: str | None,
) -> list[str]:
    violations: list[str] = []
    if (assigned_device_id is not None) != (status in DEVICE_BEARING_STATUSES):
        violations.append(f"assigned device must be set exactly in {sorted(DEVICE_BEARING_STATUSES)}")
    if (cost_details is not None) != (status in COST_BEARING_STATUSES):
        violations.append(f"cost details must be set exactly in {sorted(COST_BEARING_STATUSES)}")
    return violations


def plan_transition(
    request: TransitionSubject,
    action: RequestAction,
    actor_role: ActorRole,
    *,
    changes: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    authorize(action, actor_role)
    source = RequestStatus(request.status)
    rule = ensure_transition(source, action)

    ts = now or datetime.now(UTC)
    planned: dict[str, Any] = dict(changes or {})
    planned["status"] = rule.target
    planned["updated_at"] = ts
    if rule.stamp_field is not None:
        if getattr(request, rule.stamp_field, None) is not None:
            raise InvalidTransitionError(f"{rule.stamp_field} is already set")
        planned[rule.stamp_field] = ts

    violations = invariant_violations(
        rule.target,
        planned.get("cost_details", request.cost_details),
        planned.get("assigned_device_id", request.assigned_device_id),
    )
    if violations:
        raise InvalidTransitionError(f"{source} --{action}--> {rule.target}: {'; '.join(violations)}")
    return planned


def transition(
    request: TransitionSubject,
    action: RequestAction,
    actor_role: ActorRole,
    *,
    changes: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> TransitionSubject:
    planned = plan_transition(request, action, actor_role, changes=changes, now=now)
    for key, value in planned.items():
        setattr(request, key, value)
    return request

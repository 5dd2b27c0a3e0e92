from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from app.api.deps import get_caller, raise_http_error, require_perm
from app.domain.errors import ProvisioningError
from app.domain.models import Caller, NotificationRead
from app.domain.permissions import PERM_NOTIFICATION_READ
from app.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get(
    "",
    response_model=list[NotificationRead],
    dependencies=[Depends(require_perm(PERM_NOTIFICATION_READ))],
)
def list_notifications(caller: CurrentCaller, service: Service, unread_only: bool = False) -> list[NotificationRead]:
    items = service.list_notifications(caller, unread_only=unread_only)
    return [NotificationRead.model_validate(item) for item in items]


@router.post(
    "/{notification_id}/read",
    response_model=NotificationRead,
    dependencies=[Depends(require_perm(PERM_NOTIFICATION_READ))],
)
def mark_notification_read(notification_id: str, caller: CurrentCaller, service: Service) -> NotificationRead:
    try:
        return NotificationRead.model_validate(service.mark_read(notification_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise

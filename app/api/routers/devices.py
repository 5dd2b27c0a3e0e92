from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_caller, raise_http_error, require_perm
from app.domain.errors import ProvisioningError
from app.domain.models import (
    AccessGrantCreate,
    AccessGrantRead,
    AccessGrantRevoke,
    AccessibleDeviceRead,
    AssignmentMismatchRead,
    Caller,
    DeviceRead,
    DeviceSettingsUpdate,
    DeviceSnapshotRead,
    DeviceStatus,
    DeviceStatusUpdate,
)
from app.domain.permissions import PERM_DEVICE_ADMIN, PERM_DEVICE_READ, PERM_DEVICE_WRITE
from app.infra.audit import set_audit_context
from app.services.access_control_service import AccessControlService
from app.services.device_service import DeviceService
from app.services.reconciliation_service import ReconciliationService

router = APIRouter()


def get_device_service() -> DeviceService:
    return DeviceService()


def get_access_control_service() -> AccessControlService:
    return AccessControlService()


def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
Service = Annotated[DeviceService, Depends(get_device_service)]
Access = Annotated[AccessControlService, Depends(get_access_control_service)]
Reconciliation = Annotated[ReconciliationService, Depends(get_reconciliation_service)]


@router.get(
    "",
    response_model=list[DeviceRead],
    dependencies=[Depends(require_perm(PERM_DEVICE_ADMIN))],
)
def list_devices(
    caller: CurrentCaller,
    service: Service,
    owner_user_id: str | None = None,
    device_status: Annotated[DeviceStatus | None, Query(alias="status")] = None,
) -> list[DeviceRead]:
    try:
        devices = service.list_devices(caller, owner_user_id=owner_user_id, status=device_status)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    return [DeviceRead.model_validate(item) for item in devices]


@router.get(
    "/accessible",
    response_model=list[AccessibleDeviceRead],
    dependencies=[Depends(require_perm(PERM_DEVICE_READ))],
)
def list_accessible_devices(
    caller: CurrentCaller,
    access: Access,
    user_id: str | None = None,
) -> list[AccessibleDeviceRead]:
    try:
        return access.list_accessible_devices(user_id or caller.user_id, caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/reconciliation",
    response_model=list[AssignmentMismatchRead],
    dependencies=[Depends(require_perm(PERM_DEVICE_ADMIN))],
)
def reconciliation_report(caller: CurrentCaller, service: Reconciliation) -> list[AssignmentMismatchRead]:
    try:
        return service.report(caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/{device_id}",
    response_model=DeviceRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_READ))],
)
def get_device(device_id: str, caller: CurrentCaller, service: Service) -> DeviceRead:
    try:
        return DeviceRead.model_validate(service.get_device(device_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/{device_id}/snapshot",
    response_model=DeviceSnapshotRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_READ))],
)
def get_device_snapshot(device_id: str, caller: CurrentCaller, service: Service) -> DeviceSnapshotRead:
    try:
        return service.get_snapshot(device_id, caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.patch(
    "/{device_id}/settings",
    response_model=DeviceRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_WRITE))],
)
def update_device_settings(
    device_id: str,
    payload: DeviceSettingsUpdate,
    caller: CurrentCaller,
    service: Service,
) -> DeviceRead:
    try:
        return DeviceRead.model_validate(service.update_settings(device_id, caller, payload))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{device_id}/status",
    response_model=DeviceRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_ADMIN))],
)
def update_device_status(
    device_id: str,
    payload: DeviceStatusUpdate,
    caller: CurrentCaller,
    service: Service,
) -> DeviceRead:
    try:
        return DeviceRead.model_validate(service.update_status(device_id, caller, payload.status))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{device_id}/unassign",
    response_model=DeviceRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_ADMIN))],
)
def unassign_device(device_id: str, request: Request, caller: CurrentCaller, service: Service) -> DeviceRead:
    set_audit_context(request, action="device.unassign", resource=f"devices/{device_id}")
    try:
        return DeviceRead.model_validate(service.unassign(device_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{device_id}/share",
    response_model=AccessGrantRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_WRITE))],
)
def share_device(
    device_id: str,
    payload: AccessGrantCreate,
    request: Request,
    caller: CurrentCaller,
    access: Access,
) -> AccessGrantRead:
    set_audit_context(request, action="device.share", resource=f"devices/{device_id}")
    try:
        return AccessGrantRead.model_validate(access.grant_access(device_id, caller, payload.grantee))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{device_id}/unshare",
    response_model=AccessGrantRead,
    dependencies=[Depends(require_perm(PERM_DEVICE_WRITE))],
)
def unshare_device(
    device_id: str,
    payload: AccessGrantRevoke,
    request: Request,
    caller: CurrentCaller,
    access: Access,
) -> AccessGrantRead:
    set_audit_context(request, action="device.unshare", resource=f"devices/{device_id}")
    try:
        return AccessGrantRead.model_validate(access.revoke_access(device_id, caller, payload.grantee_user_id))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/{device_id}/shared-with",
    response_model=list[AccessGrantRead],
    dependencies=[Depends(require_perm(PERM_DEVICE_READ))],
)
def list_shared_with(device_id: str, caller: CurrentCaller, access: Access) -> list[AccessGrantRead]:
    try:
        grants = access.list_shared_with(device_id, caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    return [AccessGrantRead.model_validate(item) for item in grants]

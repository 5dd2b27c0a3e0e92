from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status

from app.api.deps import get_caller, raise_http_error, require_perm
from app.domain.errors import ProvisioningError
from app.domain.models import (
    AssignDeviceRequest,
    AssignmentRead,
    Caller,
    CostEstimateCreate,
    DeviceRequest,
    DeviceRequestCreate,
    DeviceRequestRead,
    DeviceRequestUpdate,
    ProvisioningStatsRead,
    RejectRequest,
    RequestSummaryRead,
)
from app.domain.permissions import PERM_REPORT_READ, PERM_REQUEST_READ, PERM_REQUEST_REVIEW, PERM_REQUEST_WRITE
from app.domain.state_machine import RequestStatus
from app.infra.audit import set_audit_context
from app.services.assignment_service import AssignmentService
from app.services.cost_estimation_service import CostEstimationService
from app.services.reporting_service import ReportingService
from app.services.request_service import RequestService

router = APIRouter()


def get_request_service() -> RequestService:
    return RequestService()


def get_cost_estimation_service() -> CostEstimationService:
    return CostEstimationService()


def get_assignment_service() -> AssignmentService:
    return AssignmentService()


def get_reporting_service() -> ReportingService:
    return ReportingService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
Service = Annotated[RequestService, Depends(get_request_service)]
EstimationService = Annotated[CostEstimationService, Depends(get_cost_estimation_service)]
Assignments = Annotated[AssignmentService, Depends(get_assignment_service)]
Reports = Annotated[ReportingService, Depends(get_reporting_service)]


def _read(item: DeviceRequest) -> DeviceRequestRead:
    return DeviceRequestRead.model_validate(item)


@router.post(
    "",
    response_model=DeviceRequestRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REQUEST_WRITE))],
)
def create_request(payload: DeviceRequestCreate, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.create_request(caller, payload))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "",
    response_model=list[DeviceRequestRead],
    dependencies=[Depends(require_perm(PERM_REQUEST_READ))],
)
def list_requests(
    caller: CurrentCaller,
    service: Service,
    request_status: Annotated[RequestStatus | None, Query(alias="status")] = None,
    owner_user_id: str | None = None,
) -> list[DeviceRequestRead]:
    items = service.list_requests(caller, status=request_status, owner_user_id=owner_user_id)
    return [_read(item) for item in items]


@router.get(
    "/summary",
    response_model=RequestSummaryRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_READ))],
)
def request_summary(caller: CurrentCaller, service: Service, user_id: str | None = None) -> RequestSummaryRead:
    try:
        return service.summary(caller, user_id)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/stats",
    response_model=ProvisioningStatsRead,
    dependencies=[Depends(require_perm(PERM_REPORT_READ))],
)
def provisioning_stats(caller: CurrentCaller, reports: Reports) -> ProvisioningStatsRead:
    try:
        return reports.get_stats(caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/{request_id}",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_READ))],
)
def get_request(request_id: str, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.get_request(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.patch(
    "/{request_id}",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_WRITE))],
)
def update_request(
    request_id: str,
    payload: DeviceRequestUpdate,
    caller: CurrentCaller,
    service: Service,
) -> DeviceRequestRead:
    try:
        return _read(service.update_request(request_id, caller, payload))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/cancel",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_WRITE))],
)
def cancel_request(request_id: str, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.cancel_request(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/accept",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_REVIEW))],
)
def accept_request(request_id: str, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.accept_request(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/reject",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_REVIEW))],
)
def reject_request(
    request_id: str,
    caller: CurrentCaller,
    service: Service,
    payload: RejectRequest | None = None,
) -> DeviceRequestRead:
    try:
        return _read(service.reject_request(request_id, caller, payload.reason if payload else None))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/estimate",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_REVIEW))],
)
def estimate_request(
    request_id: str,
    payload: CostEstimateCreate,
    request: Request,
    caller: CurrentCaller,
    service: EstimationService,
) -> DeviceRequestRead:
    set_audit_context(request, action="device_request.estimate", resource=f"device_requests/{request_id}")
    try:
        return _read(service.estimate_request(request_id, caller, payload))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/user-accept",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_WRITE))],
)
def user_accept(request_id: str, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.user_accept(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/user-reject",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_WRITE))],
)
def user_reject(request_id: str, caller: CurrentCaller, service: Service) -> DeviceRequestRead:
    try:
        return _read(service.user_reject(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/{request_id}/assign",
    response_model=AssignmentRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_REVIEW))],
)
def assign_device(
    request_id: str,
    payload: AssignDeviceRequest,
    request: Request,
    caller: CurrentCaller,
    service: Assignments,
) -> AssignmentRead:
    set_audit_context(
        request,
        action="device_request.assign",
        resource=f"device_requests/{request_id}",
        detail={"what": {"device_id": payload.device_id, "reassign": payload.reassign}},
    )
    try:
        record = service.assign(
            request_id,
            payload.device_id,
            caller,
            user_id=payload.user_id,
            reassign=payload.reassign,
        )
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    return AssignmentRead(
        request_id=record.request_id,
        device_id=record.device_id,
        user_id=record.user_id,
        assigned_by=record.assigned_by,
        assigned_at=record.assigned_at,
        notification_id=record.notification_id,
        previous_owner_user_id=record.previous_owner_user_id,
    )


@router.post(
    "/{request_id}/complete",
    response_model=DeviceRequestRead,
    dependencies=[Depends(require_perm(PERM_REQUEST_REVIEW))],
)
def complete_request(request_id: str, caller: CurrentCaller, service: Assignments) -> DeviceRequestRead:
    try:
        return _read(service.complete(request_id, caller))
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise

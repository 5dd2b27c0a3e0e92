from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_caller, raise_http_error, require_perm
from app.domain.errors import ProvisioningError
from app.domain.models import (
    Caller,
    DevTokenRequest,
    TokenResponse,
    UserProfileCreate,
    UserProfileRead,
    UserRoleUpdate,
)
from app.domain.permissions import PERM_IDENTITY_READ, PERM_IDENTITY_WRITE
from app.infra.audit import set_audit_context
from app.infra.auth import create_access_token
from app.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


@router.post("/users", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def register_user(payload: UserProfileCreate, service: Service) -> UserProfileRead:
    try:
        profile = service.register_user(payload)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    return UserProfileRead.model_validate(profile)


@router.post("/dev-token", response_model=TokenResponse)
def dev_token(payload: DevTokenRequest, service: Service) -> TokenResponse:
    lookup = payload.user_id or payload.email
    if not lookup:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id or email is required")
    try:
        profile = service.resolve_user(lookup)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    caller = service.resolve_caller(profile.id, profile.email)
    token = create_access_token(user_id=profile.id, email=profile.email)
    return TokenResponse(access_token=token, role=caller.role, permissions=caller.permissions)


@router.get(
    "/me",
    response_model=UserProfileRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_me(caller: CurrentCaller, service: Service) -> UserProfileRead:
    try:
        profile = service.get_user(caller.user_id)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    read = UserProfileRead.model_validate(profile)
    return read.model_copy(update={"role": caller.role})


@router.get(
    "/users",
    response_model=list[UserProfileRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def list_users(caller: CurrentCaller, service: Service) -> list[UserProfileRead]:
    try:
        return service.list_users(caller)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/users/{user_id}/role",
    response_model=UserProfileRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def set_user_role(
    user_id: str,
    payload: UserRoleUpdate,
    request: Request,
    caller: CurrentCaller,
    service: Service,
) -> UserProfileRead:
    set_audit_context(
        request,
        action="identity.role.set",
        resource=f"users/{user_id}",
        detail={"what": {"role": str(payload.role)}},
    )
    try:
        profile = service.set_role(caller, user_id, payload.role)
    except ProvisioningError as exc:
        raise_http_error(exc)
        raise
    return UserProfileRead.model_validate(profile)

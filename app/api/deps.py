from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.errors import (
    AssignmentError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailureError,
    ProvisioningError,
    UnauthorizedError,
    ValidationError,
)
from app.domain.models import Caller
from app.domain.permissions import has_permission
from app.infra.auth import decode_access_token
from app.infra.context import set_request_context
from app.infra.store import PreconditionFailedError
from app.services.identity_service import IdentityService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-token")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    caller = IdentityService().resolve_caller(claims["sub"], claims.get("email"))
    claims = {**claims, "email": caller.email, "role": str(caller.role), "permissions": caller.permissions}
    request.state.claims = claims
    set_request_context(caller.user_id, str(caller.role))
    return claims


def get_caller(claims: Annotated[dict[str, Any], Depends(get_current_claims)]) -> Caller:
    return Caller(
        user_id=claims["sub"],
        email=claims.get("email"),
        role=claims["role"],
        permissions=claims["permissions"],
    )


def require_perm(permission: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return _checker


def raise_http_error(exc: ProvisioningError) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, UnauthorizedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (InvalidTransitionError, AssignmentError, ConflictError, PreconditionFailedError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, PersistenceFailureError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    raise exc

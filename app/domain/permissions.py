from __future__ import annotations

from enum import StrEnum
from typing import Any

PERM_WILDCARD = "*"
PERM_REQUEST_READ = "request.read"
PERM_REQUEST_WRITE = "request.write"
PERM_REQUEST_REVIEW = "request.review"
PERM_DEVICE_READ = "device.read"
PERM_DEVICE_WRITE = "device.write"
PERM_DEVICE_ADMIN = "device.admin"
PERM_NOTIFICATION_READ = "notification.read"
PERM_IDENTITY_READ = "identity.read"
PERM_IDENTITY_WRITE = "identity.write"
PERM_REPORT_READ = "report.read"


class AccountRole(StrEnum):
    USER = "user"
    OPERATOR = "operator"
    SUPERADMIN = "superadmin"


USER_PERMISSIONS = [
    PERM_REQUEST_READ,
    PERM_REQUEST_WRITE,
    PERM_DEVICE_READ,
    PERM_DEVICE_WRITE,
    PERM_NOTIFICATION_READ,
    PERM_IDENTITY_READ,
]

ROLE_PERMISSIONS: dict[AccountRole, list[str]] = {
    AccountRole.USER: USER_PERMISSIONS,
    AccountRole.OPERATOR: [
        *USER_PERMISSIONS,
        PERM_REQUEST_REVIEW,
        PERM_DEVICE_ADMIN,
        PERM_IDENTITY_WRITE,
        PERM_REPORT_READ,
    ],
    AccountRole.SUPERADMIN: [PERM_WILDCARD],
}


def permissions_for_role(role: AccountRole) -> list[str]:
    return list(ROLE_PERMISSIONS.get(role, []))


def is_privileged(role: AccountRole) -> bool:
    return role in {AccountRole.OPERATOR, AccountRole.SUPERADMIN}


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions

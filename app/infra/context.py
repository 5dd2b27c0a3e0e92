from __future__ import annotations

from contextvars import ContextVar

user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
role_ctx: ContextVar[str | None] = ContextVar("role", default=None)


def set_request_context(user_id: str | None, role: str | None) -> None:
    user_id_ctx.set(user_id)
    role_ctx.set(role)


def get_user_id() -> str | None:
    return user_id_ctx.get()


def get_role() -> str | None:
    return role_ctx.get()

from __future__ import annotations

import logging
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from sqlmodel import Session, col, select

from app.domain.errors import NotFoundError, UnauthorizedError
from app.domain.models import Caller, Notification, NotificationType, now_utc
from app.infra.db import get_engine
from app.infra.store import SqlTransactionalStore, TransactionalStore, Write

logger = logging.getLogger(__name__)


def notification_id(kind: NotificationType, *parts: str) -> str:
    return str(uuid5(NAMESPACE_URL, f"notification:{kind}:{':'.join(parts)}"))


def build_notification(
    recipient_user_id: str,
    kind: NotificationType,
    *,
    title: str,
    message: str,
    payload: dict[str, Any],
    dedupe_parts: tuple[str, ...] | None = None,
) -> Notification:
    notification = Notification(
        recipient_user_id=recipient_user_id,
        type=kind,
        title=title,
        message=message,
        payload=payload,
        created_at=now_utc(),
        read=False,
    )
    if dedupe_parts is not None:
        notification.id = notification_id(kind, *dedupe_parts)
    return notification


class NotificationService:
    def __init__(self, *, store: TransactionalStore | None = None) -> None:
        self._store = store or SqlTransactionalStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_notifications(self, caller: Caller, *, unread_only: bool = False) -> list[Notification]:
        statement = select(Notification).where(Notification.recipient_user_id == caller.user_id)
        if unread_only:
            statement = statement.where(col(Notification.read).is_(False))
        statement = statement.order_by(col(Notification.created_at).desc())
        with self._session() as session:
            return list(session.exec(statement).all())

    def mark_read(self, notification_id: str, caller: Caller) -> Notification:
        with self._session() as session:
            notification = session.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("notification not found")
        if notification.recipient_user_id != caller.user_id:
            logger.warning("user %s tried to mark notification %s of another user", caller.user_id, notification_id)
            raise UnauthorizedError("only the recipient may mark a notification as read")
        if not notification.read:
            self._store.commit([Write.set_(Notification, {"id": notification.id}, read=True)])
            notification.read = True
        return notification

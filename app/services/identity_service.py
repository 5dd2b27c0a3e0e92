from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.domain.models import Caller, EventEnvelope, UserProfile, UserProfileCreate, UserProfileRead, now_utc
from app.domain.permissions import AccountRole, permissions_for_role
from app.infra import settings
from app.infra.db import get_engine
from app.infra.events import event_bus

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

logger = logging.getLogger(__name__)


def normalize_email(raw: str) -> str:
    email = raw.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError(f"invalid email: {raw!r}")
    return email


class RoleResolver:
    def __init__(self, privileged_identities: Iterable[str] | None = None) -> None:
        identities = settings.PRIVILEGED_IDENTITIES if privileged_identities is None else privileged_identities
        self._privileged = frozenset(item.strip().lower() for item in identities)

    def is_privileged_identity(self, user_id: str, email: str | None) -> bool:
        if user_id.lower() in self._privileged:
            return True
        return email is not None and email.lower() in self._privileged

    def resolve(self, user_id: str, email: str | None, profile: UserProfile | None) -> AccountRole:
        if self.is_privileged_identity(user_id, email):
            return AccountRole.SUPERADMIN
        if profile is None:
            return AccountRole.USER
        return AccountRole(profile.role)


class IdentityService:
    def __init__(self, resolver: RoleResolver | None = None) -> None:
        self._resolver = resolver or RoleResolver()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_profile(self, session: Session, user_id: str) -> UserProfile | None:
        return session.get(UserProfile, user_id)

    def resolve_user(self, id_or_email: str) -> UserProfile:
        with self._session() as session:
            if "@" in id_or_email:
                profile = session.exec(
                    select(UserProfile).where(UserProfile.email == normalize_email(id_or_email))
                ).first()
            else:
                profile = self._find_profile(session, id_or_email)
        if profile is None:
            raise NotFoundError("user not found")
        return profile

    def get_user(self, user_id: str) -> UserProfile:
        with self._session() as session:
            profile = self._find_profile(session, user_id)
        if profile is None:
            raise NotFoundError("user not found")
        return profile

    def register_user(self, payload: UserProfileCreate) -> UserProfile:
        profile = UserProfile(
            email=normalize_email(payload.email),
            display_name=(payload.display_name or "").strip() or None,
        )
        if payload.id:
            profile.id = payload.id
        with self._session() as session:
            session.add(profile)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("user already registered") from exc
            session.refresh(profile)
        logger.info("registered user %s", profile.id)
        return profile

    def resolve_caller(self, user_id: str, email: str | None = None) -> Caller:
        with self._session() as session:
            profile = self._find_profile(session, user_id)
        if email is None and profile is not None:
            email = profile.email
        role = self._resolver.resolve(user_id, email, profile)
        return Caller(user_id=user_id, email=email, role=role, permissions=permissions_for_role(role))

    def list_users(self, caller: Caller) -> list[UserProfileRead]:
        if not caller.is_privileged:
            raise UnauthorizedError("operator role required")
        with self._session() as session:
            profiles = list(session.exec(select(UserProfile).order_by(col(UserProfile.created_at).asc())).all())
        return [
            UserProfileRead.model_validate(profile).model_copy(
                update={"role": self._resolver.resolve(profile.id, profile.email, profile)}
            )
            for profile in profiles
        ]

    def set_role(self, caller: Caller, user_id: str, role: AccountRole) -> UserProfile:
        if not caller.is_privileged:
            raise UnauthorizedError("operator role required")
        if user_id == caller.user_id:
            raise ValidationError("cannot change your own role")
        if role == AccountRole.SUPERADMIN:
            raise ValidationError("superadmin is granted through configuration only")
        with self._session() as session:
            profile = self._find_profile(session, user_id)
            if profile is None:
                raise NotFoundError("user not found")
            profile.role = role
            profile.updated_at = now_utc()
            session.add(profile)
            event_bus.publish(
                EventEnvelope(
                    event_type="user.role_changed",
                    actor_id=caller.user_id,
                    subject_id=user_id,
                    payload={"role": str(role)},
                ),
                session=session,
            )
            session.commit()
            session.refresh(profile)
        logger.info("user %s set role of %s to %s", caller.user_id, user_id, role)
        return profile

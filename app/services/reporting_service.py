from __future__ import annotations

import logging

from sqlmodel import Session, col, func, select

from app.domain.errors import UnauthorizedError
from app.domain.models import Caller, Device, DeviceRequest, ProvisioningStatsRead, UserProfile
from app.domain.permissions import AccountRole
from app.domain.state_machine import RequestStatus
from app.infra.db import get_engine
from app.services.identity_service import RoleResolver

logger = logging.getLogger(__name__)


class ReportingService:
    def __init__(self, resolver: RoleResolver | None = None) -> None:
        self._resolver = resolver or RoleResolver()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _count_requests(self, session: Session, status: RequestStatus) -> int:
        statement = select(func.count()).select_from(DeviceRequest).where(DeviceRequest.status == status)
        return int(session.exec(statement).one())

    def get_stats(self, caller: Caller) -> ProvisioningStatsRead:
        if not caller.is_privileged:
            logger.warning("user %s requested provisioning stats", caller.user_id)
            raise UnauthorizedError("operator role required")
        with self._session() as session:
            profiles = list(session.exec(select(UserProfile)).all())
            pending = self._count_requests(session, RequestStatus.PENDING)
            rejected = self._count_requests(session, RequestStatus.REJECTED)
            owned = session.exec(
                select(func.count()).select_from(Device).where(col(Device.owner_user_id).is_not(None))
            ).one()
        end_users = [
            profile
            for profile in profiles
            if self._resolver.resolve(profile.id, profile.email, profile) == AccountRole.USER
        ]
        return ProvisioningStatsRead(
            total_users=len(end_users),
            pending_requests=pending,
            active_devices=int(owned),
            rejected_requests=rejected,
        )

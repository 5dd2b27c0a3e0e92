from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from app.domain.errors import UnauthorizedError
from app.domain.models import AssignmentMismatchRead, Caller, Device, DeviceRequest, DeviceStatus, UserDeviceLink
from app.domain.state_machine import RequestStatus
from app.infra.db import get_engine

logger = logging.getLogger(__name__)


class ReconciliationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def find_mismatches(self) -> list[AssignmentMismatchRead]:
        with self._session() as session:
            assigned = list(
                session.exec(
                    select(DeviceRequest).where(DeviceRequest.status == RequestStatus.DEVICE_ASSIGNED)
                ).all()
            )
            devices = {device.id: device for device in session.exec(select(Device)).all()}
            links = list(session.exec(select(UserDeviceLink)).all())
            referenced_ids = {device.request_id for device in devices.values() if device.request_id}
            referenced = {
                request.id: request
                for request in session.exec(
                    select(DeviceRequest).where(col(DeviceRequest.id).in_(list(referenced_ids)))
                ).all()
            }

        mismatches: list[AssignmentMismatchRead] = []
        for request in assigned:
            device = devices.get(request.assigned_device_id or "")
            if device is None:
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="missing_device",
                        request_id=request.id,
                        device_id=request.assigned_device_id,
                        detail="request is device-assigned but the device record does not exist",
                    )
                )
            elif device.request_id != request.id:
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="device_request_mismatch",
                        request_id=request.id,
                        device_id=device.id,
                        detail=f"device points at request {device.request_id}",
                    )
                )
            elif device.owner_user_id != request.owner_user_id:
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="owner_mismatch",
                        request_id=request.id,
                        device_id=device.id,
                        detail=(
                            f"device owner {device.owner_user_id} differs from requester {request.owner_user_id}"
                        ),
                    )
                )

        linked = {(link.user_id, link.device_id) for link in links}
        for device in devices.values():
            if device.status == DeviceStatus.UNASSIGNED:
                continue
            if device.owner_user_id is None or (device.owner_user_id, device.id) not in linked:
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="missing_user_link",
                        request_id=device.request_id,
                        device_id=device.id,
                        detail=f"owner {device.owner_user_id} has no link to the device",
                    )
                )
            source = referenced.get(device.request_id or "")
            if device.request_id and (source is None or source.assigned_device_id != device.id):
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="request_device_mismatch",
                        request_id=device.request_id,
                        device_id=device.id,
                        detail="device references a request that was not assigned this device",
                    )
                )

        for link in links:
            device = devices.get(link.device_id)
            if device is None or device.owner_user_id != link.user_id:
                mismatches.append(
                    AssignmentMismatchRead(
                        kind="stale_user_link",
                        device_id=link.device_id,
                        detail=f"user {link.user_id} is linked but does not own the device",
                    )
                )

        if mismatches:
            logger.warning("reconciliation found %d assignment mismatch(es)", len(mismatches))
        return mismatches

    def report(self, caller: Caller) -> list[AssignmentMismatchRead]:
        if not caller.is_privileged:
            logger.warning("unauthorized reconciliation report by %s", caller.user_id)
            raise UnauthorizedError("operator role required")
        return self.find_mismatches()

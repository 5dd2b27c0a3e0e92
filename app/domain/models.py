from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from app.domain.permissions import AccountRole, is_privileged
from app.domain.state_machine import RequestStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


SENSOR_PARAMETERS: tuple[str, ...] = (
    "soilMoisture",
    "airTemp",
    "airHumidity",
    "soilTemp",
    "gasLevel",
    "rain",
    "light",
)


class DeviceStatus(StrEnum):
    UNASSIGNED = "unassigned"
    ACTIVE = "active"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class AccessType(StrEnum):
    OWNER = "owner"
    SHARED = "shared"


class NotificationType(StrEnum):
    DEVICE_ASSIGNMENT = "device_assignment"
    DEVICE_REASSIGNED = "device_reassigned"
    DEVICE_UNASSIGNED = "device_unassigned"
    COST_ESTIMATE = "cost_estimate"
    ORDER_REJECTED = "order_rejected"
    DEVICE_SHARE = "device_share"
    DEVICE_UNSHARE = "device_unshare"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    subject_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class UserProfile(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    display_name: str | None = None
    role: AccountRole = Field(default=AccountRole.USER, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class DeviceRequest(SQLModel, table=True):
    __tablename__ = "device_requests"
    __table_args__ = (
        Index("ix_device_requests_owner_created", "owner_user_id", "created_at"),
        Index("ix_device_requests_status_created", "status", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_user_id: str = Field(index=True)
    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    personal_info: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    farm_info: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    requested_parameters: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    advanced_notes: str | None = None
    cost_details: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    assigned_device_id: str | None = Field(default=None, index=True)
    assigned_by: str | None = None
    rejection_reason: str | None = None
    reviewed_by: str | None = None
    completed_by: str | None = None
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    cancelled_at: datetime | None = None
    estimated_at: datetime | None = None
    user_accepted_at: datetime | None = None
    user_rejected_at: datetime | None = None
    device_assigned_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: str = Field(primary_key=True)
    owner_user_id: str | None = Field(default=None, index=True)
    status: DeviceStatus = Field(default=DeviceStatus.UNASSIGNED, index=True)
    request_id: str | None = Field(default=None, index=True)
    label: str | None = None
    settings: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class UserDeviceLink(SQLModel, table=True):
    __tablename__ = "user_devices"

    user_id: str = Field(primary_key=True)
    device_id: str = Field(primary_key=True, index=True)
    created_at: datetime = Field(default_factory=now_utc)


class AccessGrant(SQLModel, table=True):
    __tablename__ = "access_grants"
    __table_args__ = (
        Index("ix_access_grants_device_grantee", "device_id", "grantee_user_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    device_id: str = Field(index=True)
    owner_user_id: str = Field(index=True)
    grantee_user_id: str = Field(index=True)
    access_type: AccessType = Field(default=AccessType.SHARED)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    revoked_at: datetime | None = Field(default=None, index=True)


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_user_id", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    recipient_user_id: str = Field(index=True)
    type: NotificationType = Field(index=True)
    title: str
    message: str
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    read: bool = Field(default=False)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    subject_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserProfileCreate(BaseModel):
    id: str | None = None
    email: str
    display_name: str | None = None


class UserProfileRead(ORMReadModel):
    id: str
    email: str
    display_name: str | None
    role: AccountRole
    created_at: datetime


class UserRoleUpdate(BaseModel):
    role: AccountRole


class DevTokenRequest(BaseModel):
    user_id: str | None = None
    email: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: AccountRole
    permissions: list[str] = PydanticField(default_factory=list)


class Caller(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str | None = None
    role: AccountRole = AccountRole.USER
    permissions: list[str] = PydanticField(default_factory=list)

    @property
    def is_privileged(self) -> bool:
        return is_privileged(self.role)


class PersonalInfo(BaseModel):
    full_name: str
    email: str
    phone: str
    nic_or_passport: str | None = None
    address: str | None = None
    age: int | None = None


class FarmInfo(BaseModel):
    farm_name: str
    farm_size: float
    soil_type: str
    location: str | None = None
    notes: str | None = None


class DeviceRequestCreate(BaseModel):
    personal_info: PersonalInfo
    farm_info: FarmInfo
    requested_parameters: list[str] = PydanticField(default_factory=list)
    advanced_notes: str | None = None


class DeviceRequestUpdate(BaseModel):
    personal_info: PersonalInfo | None = None
    farm_info: FarmInfo | None = None
    requested_parameters: list[str] | None = None
    advanced_notes: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = None


class CostEstimateCreate(BaseModel):
    device_cost: float
    service_charge: float
    delivery_charge: float
    notes: str | None = None


class CostDetails(BaseModel):
    device_cost: float
    service_charge: float
    delivery_charge: float
    total_cost: float
    device_cost_entry: float
    service_charge_entry: float
    delivery_charge_entry: float
    total_cost_entry: float
    entry_currency: str
    canonical_currency: str
    exchange_rate: float
    notes: str | None = None
    estimated_by: str | None = None


class DeviceRequestRead(ORMReadModel):
    id: str
    owner_user_id: str
    status: RequestStatus
    personal_info: dict[str, Any]
    farm_info: dict[str, Any]
    requested_parameters: list[str]
    advanced_notes: str | None
    cost_details: dict[str, Any] | None
    assigned_device_id: str | None
    assigned_by: str | None
    rejection_reason: str | None
    reviewed_by: str | None
    completed_by: str | None
    accepted_at: datetime | None
    rejected_at: datetime | None
    cancelled_at: datetime | None
    estimated_at: datetime | None
    user_accepted_at: datetime | None
    user_rejected_at: datetime | None
    device_assigned_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RequestSummaryRead(BaseModel):
    total: int
    active: int
    assigned: int
    closed: int


class ProvisioningStatsRead(BaseModel):
    total_users: int
    pending_requests: int
    active_devices: int
    rejected_requests: int


class AssignDeviceRequest(BaseModel):
    device_id: str
    user_id: str | None = None
    reassign: bool = False


class AssignmentRead(BaseModel):
    request_id: str
    device_id: str
    user_id: str
    assigned_by: str
    assigned_at: datetime
    notification_id: str
    previous_owner_user_id: str | None = None


class DeviceRead(ORMReadModel):
    id: str
    owner_user_id: str | None
    status: DeviceStatus
    request_id: str | None
    label: str | None
    settings: dict[str, Any]
    created_at: datetime
    assigned_at: datetime | None
    assigned_by: str | None
    updated_at: datetime


class DeviceStatusUpdate(BaseModel):
    status: DeviceStatus


class DeviceSettingsUpdate(BaseModel):
    label: str | None = None
    thresholds: dict[str, Any] | None = None


class DeviceSnapshotRead(BaseModel):
    device_id: str
    access_type: AccessType | None
    reading: dict[str, Any] | None


class AccessGrantCreate(BaseModel):
    grantee: str


class AccessGrantRevoke(BaseModel):
    grantee_user_id: str


class AccessGrantRead(ORMReadModel):
    id: str
    device_id: str
    owner_user_id: str
    grantee_user_id: str
    access_type: AccessType
    created_at: datetime
    revoked_at: datetime | None


class AccessibleDeviceRead(BaseModel):
    device: DeviceRead
    access_type: AccessType
    owner_name: str | None = None


class NotificationRead(ORMReadModel):
    id: str
    recipient_user_id: str
    type: NotificationType
    title: str
    message: str
    payload: dict[str, Any]
    created_at: datetime
    read: bool


class AssignmentMismatchRead(BaseModel):
    kind: str
    request_id: str | None = None
    device_id: str | None = None
    detail: str



from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    id: UUID
    email: str
    phone_number: Optional[str] = None
    created_at: datetime
    is_admin: bool = False
    kyc_verified: bool = False

    model_config = ConfigDict(from_attributes=True)


class UserDevice(BaseModel):
    user_id: UUID
    fingerprint_hash: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_seen_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RequestInfo(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


class AuditLog(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    action: str
    resource_type: str
    resource_id: str
    changes: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogFilters(BaseModel):
    user_id: Optional[UUID] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AdminControl(BaseModel):
    id: UUID
    key: str
    value: Any
    description: str = ""
    updated_by: UUID
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UpdateControlRequest(BaseModel):
    value: Any
    description: str = Field(default="")

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from healthvia.storage.models import AdminLevel, IdentityStatus

_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "account_locked",
    "already_exists",
    "validation_failed",
    "token_invalid",
    "token_expired",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="email or phone")
    password: str = Field(..., min_length=1, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class BaseRegisterRequest(BaseModel):
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    email: str = Field(..., max_length=254)
    phone: str = Field(..., max_length=32)
    password: str = Field(..., max_length=128)
    # left optional so a missing flag reaches the validator as a domain error
    consent: Optional[bool] = None

    def profile_fields(self) -> dict:
        common = set(BaseRegisterRequest.model_fields)
        return self.model_dump(mode="json", exclude=common, exclude_none=True)


class UserRegisterRequest(BaseRegisterRequest):
    pass


class PatientRegisterRequest(BaseRegisterRequest):
    national_id: Optional[str] = Field(default=None, max_length=11)
    passport_no: Optional[str] = Field(default=None, max_length=32)
    birth_place: Optional[str] = Field(default=None, max_length=100)


class DoctorRegisterRequest(BaseRegisterRequest):
    diploma_number: Optional[str] = Field(default=None, max_length=64)
    medical_license_number: Optional[str] = Field(default=None, max_length=64)
    primary_specialty: Optional[str] = Field(default=None, max_length=100)
    medical_school: Optional[str] = Field(default=None, max_length=200)
    graduation_year: Optional[int] = Field(default=None, ge=1900, le=2100)
    years_of_experience: Optional[int] = Field(default=None, ge=0, le=80)
    current_hospital: Optional[str] = Field(default=None, max_length=200)


class AdminRegisterRequest(BaseRegisterRequest):
    employee_id: Optional[str] = Field(default=None, max_length=64)
    department: Optional[str] = Field(default=None, max_length=100)
    job_title: Optional[str] = Field(default=None, max_length=100)
    admin_level: Optional[AdminLevel] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=100)
    can_manage_users: Optional[bool] = None
    can_manage_doctors: Optional[bool] = None
    can_manage_clinics: Optional[bool] = None
    can_view_reports: Optional[bool] = None
    can_manage_system: Optional[bool] = None


class AuthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    id: str
    email: str
    name: str
    role: str
    status: str
    email_verified: bool
    phone_verified: bool
    last_login_date: Optional[datetime] = None


class IdentitySummary(BaseModel):
    id: str
    role: str
    email: str
    name: str
    status: str
    email_verified: bool
    phone_verified: bool
    failed_login_count: int
    lock_until: Optional[datetime] = None
    last_login_date: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity) -> "IdentitySummary":
        return cls(
            id=identity.id,
            role=identity.role.value,
            email=identity.email,
            name=identity.name,
            status=identity.status.value,
            email_verified=identity.email_verified,
            phone_verified=identity.phone_verified,
            failed_login_count=identity.failed_login_count,
            lock_until=identity.lock_until,
            last_login_date=identity.last_login_at,
        )


class LockStatusResponse(BaseModel):
    id: str
    locked: bool
    lock_until: Optional[datetime] = None
    failed_login_count: int = 0


class LockRequest(BaseModel):
    minutes: int = Field(..., gt=0, le=60 * 24 * 365)
    reason: Optional[str] = Field(default=None, max_length=500)


class StatusChangeRequest(BaseModel):
    status: IdentityStatus


class CleanupResponse(BaseModel):
    cleared: int

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Identity role; each role is stored in its own partition."""

    USER = "user"
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


# Probe order used when an identifier or id is resolved across partitions
PARTITION_ORDER = (Role.USER, Role.PATIENT, Role.DOCTOR, Role.ADMIN)


class IdentityStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class DoctorVerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AdminLevel(str, Enum):
    STANDARD = "standard"
    SENIOR = "senior"
    SUPER = "super"


@dataclass
class PatientProfile:
    national_id: Optional[str] = None
    passport_no: Optional[str] = None
    birth_place: Optional[str] = None

    UNIQUE_KEYS = ("national_id", "passport_no")


@dataclass
class DoctorProfile:
    diploma_number: Optional[str] = None
    medical_license_number: Optional[str] = None
    primary_specialty: Optional[str] = None
    medical_school: Optional[str] = None
    graduation_year: Optional[int] = None
    years_of_experience: Optional[int] = None
    current_hospital: Optional[str] = None
    verification_status: DoctorVerificationStatus = DoctorVerificationStatus.PENDING
    accepting_new_patients: bool = False

    UNIQUE_KEYS = ("diploma_number", "medical_license_number")


@dataclass
class AdminProfile:
    employee_id: Optional[str] = None
    department: Optional[str] = None
    job_title: Optional[str] = None
    admin_level: AdminLevel = AdminLevel.STANDARD
    permissions: List[str] = field(default_factory=list)
    can_manage_users: bool = True
    can_manage_doctors: bool = False
    can_manage_clinics: bool = False
    can_view_reports: bool = True
    can_manage_system: bool = False

    UNIQUE_KEYS = ("employee_id",)


Profile = Union[PatientProfile, DoctorProfile, AdminProfile]

PROFILE_TYPES: Dict[Role, type] = {
    Role.PATIENT: PatientProfile,
    Role.DOCTOR: DoctorProfile,
    Role.ADMIN: AdminProfile,
}


def unique_profile_keys(role: Role) -> tuple[str, ...]:
    profile_type = PROFILE_TYPES.get(Role(role))
    return profile_type.UNIQUE_KEYS if profile_type else ()


def profile_from_dict(role: Role, raw: Optional[Dict[str, Any]]) -> Optional[Profile]:
    """Build the role payload from a plain mapping, ignoring unknown keys."""
    profile_type = PROFILE_TYPES.get(Role(role))
    if profile_type is None:
        return None
    known = {f.name for f in fields(profile_type)}
    payload = {k: v for k, v in (raw or {}).items() if k in known}
    if profile_type is DoctorProfile and "verification_status" in payload:
        payload["verification_status"] = DoctorVerificationStatus(payload["verification_status"])
    if profile_type is AdminProfile and "admin_level" in payload:
        payload["admin_level"] = AdminLevel(payload["admin_level"])
    return profile_type(**payload)


def profile_to_dict(profile: Optional[Profile]) -> Dict[str, Any]:
    if profile is None:
        return {}
    data = asdict(profile)
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data


@dataclass
class Identity:
    """One account in exactly one role partition.

    ``role`` is the tag selecting the partition and the shape of ``profile``;
    the generic ``user`` role carries no profile.
    """

    id: str
    role: Role
    first_name: str
    last_name: str
    email: str
    phone: str
    password_hash: Optional[str] = None
    status: IdentityStatus = IdentityStatus.PENDING_VERIFICATION
    email_verified: bool = False
    phone_verified: bool = False
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    consent_given_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    profile: Optional[Profile] = None

    @classmethod
    def new(
        cls,
        role: Role,
        *,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        **kwargs: Any,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            role=Role(role),
            first_name=first_name,
            last_name=last_name,
            email=email.strip().lower(),
            phone=phone.strip(),
            **kwargs,
        )

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def profile_value(self, key: str) -> Any:
        return getattr(self.profile, key, None) if self.profile is not None else None

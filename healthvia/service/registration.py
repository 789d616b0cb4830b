from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from healthvia.logging import get_logger
from healthvia.service.credentials import PasswordService
from healthvia.service.errors import AlreadyExistsError, ValidationError
from healthvia.service.resolver import IdentityResolver, normalize_phone
from healthvia.storage.models import Role, unique_profile_keys

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE = re.compile(r"^[+]?[(]?[0-9]{3}[)]?[-\s.]?[0-9]{3}[-\s.]?[0-9]{4,6}$")
_NATIONAL_ID = re.compile(r"^[1-9][0-9]{10}$")

# Role-specific fields that must be present and non-blank
REQUIRED_PROFILE_FIELDS: Dict[Role, tuple[str, ...]] = {
    Role.USER: (),
    Role.PATIENT: (),
    Role.DOCTOR: ("diploma_number", "medical_license_number", "primary_specialty"),
    Role.ADMIN: ("employee_id", "department"),
}


def normalize_email(value: str) -> str:
    """Lowercase and syntax-check an email address; raise ValueError if invalid."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass
class RegistrationRequest:
    role: Role
    first_name: str
    last_name: str
    email: str
    phone: str
    password: str
    consent: Optional[bool] = None
    profile: Dict[str, Any] = field(default_factory=dict)


class RegistrationValidator:
    """Gate in front of identity creation. Fail-fast: the first violation raises.

    Order: consent, common fields, password strength, global email and phone
    uniqueness, role-specific required fields, role-key uniqueness within
    the partition.
    """

    def __init__(
        self, resolver: IdentityResolver, store, passwords: PasswordService
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.passwords = passwords

    def validate(self, request: RegistrationRequest) -> RegistrationRequest:
        """Return a normalized copy of ``request`` or raise the first violation."""
        role = Role(request.role)
        # consent has no default; only an explicit True passes
        if request.consent is not True:
            raise ValidationError("consent must be given explicitly", field="consent")

        for name in ("first_name", "last_name", "email", "phone", "password"):
            if _blank(getattr(request, name)):
                raise ValidationError(f"{name} is required", field=name)
        try:
            email = normalize_email(request.email)
        except ValueError as exc:
            raise ValidationError(str(exc), field="email") from None
        if not _PHONE.match(request.phone.strip()):
            raise ValidationError("invalid phone number format", field="phone")
        phone = normalize_phone(request.phone)

        self.passwords.require_strong(request.password)

        if self.resolver.email_in_use(email):
            raise AlreadyExistsError("email already registered", field="email")
        if self.resolver.phone_in_use(phone):
            raise AlreadyExistsError("phone already registered", field="phone")

        profile = {
            k: v.strip() if isinstance(v, str) else v
            for k, v in (request.profile or {}).items()
        }
        self._validate_profile(role, profile)

        return RegistrationRequest(
            role=role,
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            email=email,
            phone=phone,
            password=request.password,
            consent=True,
            profile=profile,
        )

    def _validate_profile(self, role: Role, profile: Dict[str, Any]) -> None:
        for name in REQUIRED_PROFILE_FIELDS[role]:
            if _blank(profile.get(name)):
                raise ValidationError(f"{name} is required for {role.value}", field=name)

        if role == Role.PATIENT:
            national_id = profile.get("national_id")
            passport_no = profile.get("passport_no")
            if _blank(national_id) and _blank(passport_no):
                raise ValidationError(
                    "national_id or passport_no is required for patient",
                    field="national_id",
                )
            if not _blank(national_id) and not _NATIONAL_ID.match(str(national_id)):
                raise ValidationError(
                    "national_id must be 11 digits and not start with 0",
                    field="national_id",
                )

        for key in self._keys_to_check(role, profile):
            if self.store.exists_by_profile_key(role, key, profile[key]):
                logger.info("registration_role_key_taken", role=role.value, field=key)
                raise AlreadyExistsError(f"{key} already registered", field=key)

    def _keys_to_check(self, role: Role, profile: Dict[str, Any]) -> list[str]:
        return [key for key in unique_profile_keys(role) if not _blank(profile.get(key))]

from __future__ import annotations

from typing import Optional

from healthvia.logging import get_logger
from healthvia.storage.models import Identity, PARTITION_ORDER

logger = get_logger(__name__)

_PHONE_SEPARATORS = str.maketrans("", "", " -.()\t")


def normalize_phone(value: str) -> str:
    """Canonical phone form: separators stripped, leading ``+`` kept."""
    return value.strip().translate(_PHONE_SEPARATORS)


class IdentityResolver:
    """Find the single live identity behind an identifier across all partitions.

    Partitions are probed in the fixed order user, patient, doctor, admin; in
    each one the identifier is tried as an email and then as a phone number.
    Email and phone are globally unique, so the first match is the only one.
    Soft-deleted records are never returned. Read-only.
    """

    def __init__(self, store) -> None:
        self.store = store

    def resolve(self, identifier: Optional[str]) -> Optional[Identity]:
        if identifier is None:
            return None
        candidate = identifier.strip()
        if not candidate:
            return None
        email = candidate.lower()
        phone = normalize_phone(candidate)
        for role in PARTITION_ORDER:
            identity = self.store.find_by_email(role, email)
            if identity is None and phone:
                identity = self.store.find_by_phone(role, phone)
            if identity is not None:
                return identity
        logger.debug("identity_unresolved")
        return None

    def resolve_by_id(
        self, identity_id: Optional[str], *, include_deleted: bool = False
    ) -> Optional[Identity]:
        if not identity_id:
            return None
        for role in PARTITION_ORDER:
            identity = self.store.find_by_id(
                role, identity_id, include_deleted=include_deleted
            )
            if identity is not None:
                return identity
        return None

    def email_in_use(self, email: str) -> bool:
        needle = email.strip().lower()
        return any(self.store.exists_by_email(role, needle) for role in PARTITION_ORDER)

    def phone_in_use(self, phone: str) -> bool:
        needle = normalize_phone(phone)
        return any(self.store.exists_by_phone(role, needle) for role in PARTITION_ORDER)

from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from healthvia.logging import get_logger
from healthvia.service.errors import InvalidCredentialsError, ServerError, ValidationError
from healthvia.storage.models import Identity

logger = get_logger(__name__)

# Symbols accepted toward the password complexity rule
PASSWORD_SYMBOLS = "@#$%^&+="
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_WHITESPACE = re.compile(r"\s")


class PasswordService:
    """Argon2id hashing, verification and strength rules for stored credentials."""

    def __init__(self, store, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, raw_password: str) -> str:
        return self._pwd_hasher.hash(raw_password)

    def verify(self, identity: Identity, raw_password: str) -> bool:
        if not identity.password_hash:
            logger.warning("password_record_missing", identity_id=identity.id)
            return False
        try:
            return self._pwd_hasher.verify(identity.password_hash, raw_password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable", identity_id=identity.id)
            return False

    def is_strong(self, raw_password: Optional[str]) -> bool:
        """At least 8 chars, no whitespace, upper, lower, digit and one of ``@#$%^&+=``."""
        if not raw_password or len(raw_password) < MIN_PASSWORD_LENGTH:
            return False
        if len(raw_password) > MAX_PASSWORD_LENGTH:
            return False
        if _WHITESPACE.search(raw_password):
            return False
        return (
            any(c.isupper() for c in raw_password)
            and any(c.islower() for c in raw_password)
            and any(c.isdigit() for c in raw_password)
            and any(c in PASSWORD_SYMBOLS for c in raw_password)
        )

    def require_strong(self, raw_password: Optional[str]) -> None:
        if not self.is_strong(raw_password):
            raise ValidationError(
                "password must be at least 8 characters with upper and lower case "
                f"letters, a digit, one of {PASSWORD_SYMBOLS} and no whitespace",
                field="password",
            )

    def set_password(self, identity: Identity, raw_password: str) -> Identity:
        self.require_strong(raw_password)
        updated = self.store.set_password_hash(
            identity.role, identity.id, self.hash(raw_password)
        )
        if updated is None:
            raise ServerError("identity disappeared while setting password")
        logger.info("password_set", identity_id=identity.id)
        return updated

    def change_password(
        self, identity: Identity, old_password: str, new_password: str
    ) -> Identity:
        if not self.verify(identity, old_password):
            raise InvalidCredentialsError("current password is incorrect")
        return self.set_password(identity, new_password)

    def needs_rehash(self, identity: Identity) -> bool:
        if not identity.password_hash:
            return False
        try:
            return self._pwd_hasher.check_needs_rehash(identity.password_hash)
        except InvalidHash:
            return False

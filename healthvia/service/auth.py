from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from healthvia.config import Settings
from healthvia.logging import get_logger
from healthvia.service.credentials import PasswordService
from healthvia.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from healthvia.service.lockout import AccountSecurity
from healthvia.service.registration import RegistrationRequest, RegistrationValidator
from healthvia.service.resolver import IdentityResolver
from healthvia.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from healthvia.storage.errors import ConstraintViolation
from healthvia.storage.models import (
    DoctorVerificationStatus,
    Identity,
    IdentityStatus,
    Role,
    profile_from_dict,
)

logger = get_logger(__name__)

# Statuses that end a login or refresh regardless of credentials
_LOGIN_BLOCKING_STATUSES = {IdentityStatus.SUSPENDED, IdentityStatus.DELETED}


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    id: str
    email: str
    name: str
    role: str
    status: str
    email_verified: bool
    phone_verified: bool
    last_login_date: Optional[datetime]

    @classmethod
    def build(cls, identity: Identity, tokens: TokenPair) -> "AuthResult":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            id=identity.id,
            email=identity.email,
            name=identity.name,
            role=identity.role.value,
            status=identity.status.value,
            email_verified=identity.email_verified,
            phone_verified=identity.phone_verified,
            last_login_date=identity.last_login_at,
        )


@dataclass
class AuthContext:
    identity_id: str
    role: str
    email: str
    token_jti: Optional[str] = None


class AuthService:
    """Login, refresh and registration composed from the identity components.

    The store handle is passed in explicitly; the service keeps no identity
    or token state of its own.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.resolver = IdentityResolver(store)
        self.security = AccountSecurity(store, settings, clock=clock)
        self.passwords = PasswordService(store)
        self.tokens = TokenIssuer(settings, cache, clock=clock)
        self.validator = RegistrationValidator(self.resolver, store, self.passwords)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def login(self, identifier: str, password: str) -> AuthResult:
        identity = self.resolver.resolve(identifier)
        if identity is None:
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()

        if self.security.is_locked(identity):
            self.logger.info("login_rejected_locked", identity_id=identity.id)
            raise AccountLockedError(
                "account is temporarily locked",
                detail={"lock_until": identity.lock_until.isoformat()},
            )
        if identity.status == IdentityStatus.SUSPENDED:
            self.logger.info("login_rejected_suspended", identity_id=identity.id)
            raise AccountLockedError("account is suspended", detail={"reason": "suspended"})
        if identity.status == IdentityStatus.DELETED:
            self.logger.info("login_rejected_deleted", identity_id=identity.id)
            raise InvalidCredentialsError()

        # argon2 is deliberately slow; keep it off the event loop
        verified = await asyncio.to_thread(self.passwords.verify, identity, password)
        if not verified:
            self.security.record_failed_attempt(identity)
            self.logger.info("login_failed", reason="bad_password", identity_id=identity.id)
            raise InvalidCredentialsError()

        identity = self.security.record_success(identity)
        tokens = self.tokens.issue(identity)
        self.logger.info("login_succeeded", identity_id=identity.id, role=identity.role.value)
        return AuthResult.build(identity, tokens)

    async def refresh(self, refresh_token: str) -> AuthResult:
        claims = self.tokens.decode(refresh_token, expected_type=REFRESH)
        if await self.tokens.is_revoked(claims):
            raise TokenInvalidError("refresh token revoked")
        identity = self.resolver.resolve_by_id(claims["sub"])
        if identity is None:
            raise NotFoundError("identity not found")
        if identity.status in _LOGIN_BLOCKING_STATUSES:
            raise AccountLockedError(
                f"account is {identity.status.value}",
                detail={"reason": identity.status.value},
            )
        tokens = self.tokens.issue(identity)
        # rotation: the presented refresh token is spent when a denylist exists
        await self.tokens.revoke(claims)
        self.logger.info("tokens_refreshed", identity_id=identity.id)
        return AuthResult.build(identity, tokens)

    def _role_defaults(self, role: Role) -> dict:
        if role == Role.ADMIN:
            return {"status": IdentityStatus.ACTIVE, "email_verified": True}
        return {"status": IdentityStatus.PENDING_VERIFICATION, "email_verified": False}

    async def register(
        self, request: RegistrationRequest, *, actor_id: Optional[str] = None
    ) -> AuthResult:
        valid = self.validator.validate(request)
        role = valid.role
        profile_fields = dict(valid.profile)
        if role == Role.DOCTOR:
            # new doctors start unverified and closed to new patients
            profile_fields["verification_status"] = DoctorVerificationStatus.PENDING.value
            profile_fields["accepting_new_patients"] = False

        now = self._now()
        password_hash = await asyncio.to_thread(self.passwords.hash, valid.password)
        identity = Identity.new(
            role,
            first_name=valid.first_name,
            last_name=valid.last_name,
            email=valid.email,
            phone=valid.phone,
            password_hash=password_hash,
            consent_given_at=now,
            created_at=now,
            updated_at=now,
            created_by=actor_id,
            updated_by=actor_id,
            profile=profile_from_dict(role, profile_fields),
            **self._role_defaults(role),
        )
        try:
            created = self.store.insert(identity)
        except ConstraintViolation as exc:
            # lost the race between validation and write
            field = exc.detail.get("field")
            self.logger.warning("registration_write_conflict", role=role.value, field=field)
            raise AlreadyExistsError(exc.message, field=field) from exc

        tokens = self.tokens.issue(created)
        self.logger.info(
            "identity_registered",
            identity_id=created.id,
            role=role.value,
            created_by=actor_id,
        )
        return AuthResult.build(created, tokens)

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Denylist the presented tokens; False when no denylist is configured."""
        claims = self.tokens.decode(access_token, expected_type=ACCESS)
        revoked = await self.tokens.revoke(claims)
        if refresh_token:
            refresh_claims = self.tokens.decode(refresh_token, expected_type=REFRESH)
            if refresh_claims.get("sub") != claims.get("sub"):
                raise ForbiddenError("refresh token belongs to another identity")
            await self.tokens.revoke(refresh_claims)
        self.logger.info("logout", identity_id=claims.get("sub"), denylisted=revoked)
        return revoked

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[Role] = None
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalidError("bearer token required")
        claims = self.tokens.decode(token, expected_type=ACCESS)
        if await self.tokens.is_revoked(claims):
            self.logger.info("access_token_denylisted", jti=claims.get("jti"))
            raise TokenInvalidError("access token revoked")
        identity = self.resolver.resolve_by_id(claims["sub"])
        if identity is None:
            raise TokenInvalidError("identity no longer exists")
        if identity.status in _LOGIN_BLOCKING_STATUSES:
            raise AccountLockedError(f"account is {identity.status.value}")
        if required_role is not None and identity.role != Role(required_role):
            raise ForbiddenError(f"{Role(required_role).value} role required")
        return AuthContext(
            identity_id=identity.id,
            role=identity.role.value,
            email=identity.email,
            token_jti=claims.get("jti"),
        )

    def get_identity(self, identity_id: str, *, include_deleted: bool = False) -> Identity:
        identity = self.resolver.resolve_by_id(identity_id, include_deleted=include_deleted)
        if identity is None:
            raise NotFoundError("identity not found", detail={"id": identity_id})
        return identity

    def is_locked(self, identity_id: str) -> bool:
        return self.security.is_locked(self.get_identity(identity_id))

    def unlock(self, identity_id: str, *, actor_id: Optional[str] = None) -> Identity:
        identity = self.security.unlock(self.get_identity(identity_id))
        self.logger.info("admin_unlock", identity_id=identity_id, actor_id=actor_id)
        return identity

    def lock(
        self,
        identity_id: str,
        minutes: int,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Identity:
        identity = self.security.lock(self.get_identity(identity_id), minutes, reason)
        self.logger.info("admin_lock", identity_id=identity_id, actor_id=actor_id)
        return identity

    def cleanup_expired_locks(self) -> int:
        return self.security.cleanup_expired_locks()

    def list_locked(self) -> List[Identity]:
        return self.security.find_locked()

    def change_status(
        self, identity_id: str, status: IdentityStatus, *, actor_id: str
    ) -> Identity:
        status = IdentityStatus(status)
        # deletion also releases email and phone; it goes through mark_deleted
        if status == IdentityStatus.DELETED:
            raise ValidationError(
                "use the delete operation to delete an identity", field="status"
            )
        identity = self.get_identity(identity_id)
        updated = self.store.update_status(
            identity.role, identity.id, status, actor_id=actor_id
        )
        if updated is None:
            raise NotFoundError("identity not found", detail={"id": identity_id})
        self.logger.info(
            "identity_status_changed",
            identity_id=identity_id,
            old_status=identity.status.value,
            new_status=updated.status.value,
            actor_id=actor_id,
        )
        return updated

    def verify_email(self, identity_id: str) -> Identity:
        identity = self.get_identity(identity_id)
        updated = self.store.mark_email_verified(identity.role, identity.id)
        if updated is None:
            raise NotFoundError("identity not found", detail={"id": identity_id})
        self.logger.info("email_verified", identity_id=identity_id)
        return updated

    def verify_phone(self, identity_id: str) -> Identity:
        identity = self.get_identity(identity_id)
        updated = self.store.mark_phone_verified(identity.role, identity.id)
        if updated is None:
            raise NotFoundError("identity not found", detail={"id": identity_id})
        self.logger.info("phone_verified", identity_id=identity_id)
        return updated

    async def change_password(
        self, identity_id: str, old_password: str, new_password: str
    ) -> Identity:
        identity = self.get_identity(identity_id)
        return await asyncio.to_thread(
            self.passwords.change_password, identity, old_password, new_password
        )

    def _require_actor(self, actor_id: Optional[str]) -> str:
        if not actor_id or not actor_id.strip():
            raise ValidationError("actor id is required for deletion", field="actor_id")
        return actor_id

    def mark_deleted(self, identity_id: str, *, actor_id: str) -> None:
        actor_id = self._require_actor(actor_id)
        identity = self.get_identity(identity_id)
        if not self.store.mark_deleted(
            identity.role, identity.id, actor_id=actor_id, now=self._now()
        ):
            raise NotFoundError("identity not found", detail={"id": identity_id})
        self.logger.info("identity_soft_deleted", identity_id=identity_id, actor_id=actor_id)

    def permanently_delete(self, identity_id: str, *, actor_id: str) -> None:
        actor_id = self._require_actor(actor_id)
        identity = self.get_identity(identity_id, include_deleted=True)
        if not self.store.hard_delete(identity.role, identity.id):
            raise NotFoundError("identity not found", detail={"id": identity_id})
        self.logger.warning(
            "identity_permanently_deleted", identity_id=identity_id, actor_id=actor_id
        )

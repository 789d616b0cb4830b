from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from healthvia.config import Settings
from healthvia.logging import get_logger
from healthvia.service.errors import NotFoundError, ValidationError
from healthvia.storage.models import Identity, PARTITION_ORDER

logger = get_logger(__name__)


class AccountSecurity:
    """Failed-login counter and lock window for identities in any partition.

    Unlocked (0..N-1 failures) -> Locked (N failures, ``lock_until`` set) ->
    Unlocked on a successful login after expiry, an admin unlock, or the
    expired-lock sweep. Every transition is one atomic store update against
    the partition the identity came from.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = settings.max_failed_login_attempts
        self.lockout_window = timedelta(minutes=settings.lockout_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _require(self, updated: Optional[Identity], identity: Identity) -> Identity:
        if updated is None:
            raise NotFoundError("identity not found", detail={"id": identity.id})
        return updated

    def is_locked(self, identity: Identity) -> bool:
        return identity.is_locked(self._now())

    def record_failed_attempt(self, identity: Identity) -> Identity:
        now = self._now()
        updated = self._require(
            self.store.record_failed_login(
                identity.role,
                identity.id,
                max_attempts=self.max_attempts,
                lock_until=now + self.lockout_window,
                now=now,
            ),
            identity,
        )
        if updated.failed_login_count >= self.max_attempts:
            logger.warning(
                "account_locked",
                identity_id=identity.id,
                role=identity.role.value,
                failed_login_count=updated.failed_login_count,
                lock_until=updated.lock_until.isoformat() if updated.lock_until else None,
            )
        else:
            logger.info(
                "login_failure_recorded",
                identity_id=identity.id,
                failed_login_count=updated.failed_login_count,
            )
        return updated

    def record_success(self, identity: Identity) -> Identity:
        return self._require(
            self.store.record_login_success(identity.role, identity.id, now=self._now()),
            identity,
        )

    def unlock(self, identity: Identity) -> Identity:
        updated = self._require(self.store.clear_lock(identity.role, identity.id), identity)
        logger.info("account_unlocked", identity_id=identity.id)
        return updated

    def lock(self, identity: Identity, minutes: int, reason: Optional[str] = None) -> Identity:
        if minutes <= 0:
            raise ValidationError("lock duration must be positive", field="minutes")
        lock_until = self._now() + timedelta(minutes=minutes)
        updated = self._require(
            self.store.set_lock(identity.role, identity.id, lock_until=lock_until),
            identity,
        )
        logger.warning(
            "account_locked_by_admin",
            identity_id=identity.id,
            minutes=minutes,
            reason=reason,
        )
        return updated

    def cleanup_expired_locks(self) -> int:
        now = self._now()
        cleared = sum(self.store.clear_expired_locks(role, now) for role in PARTITION_ORDER)
        if cleared:
            logger.info("expired_locks_cleared", count=cleared)
        return cleared

    def find_locked(self) -> List[Identity]:
        now = self._now()
        locked: List[Identity] = []
        for role in PARTITION_ORDER:
            locked.extend(self.store.list_locked(role, now))
        return locked

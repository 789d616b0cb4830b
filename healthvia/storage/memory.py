from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from healthvia.logging import get_logger
from healthvia.storage.errors import ConstraintViolation
from healthvia.storage.models import (
    Identity,
    IdentityStatus,
    PARTITION_ORDER,
    Role,
    unique_profile_keys,
)


class MemoryStore:
    """In-memory identity store with one dict per role partition.

    Every read-modify-write runs under a single re-entrant lock so counter
    updates behave like the per-record atomic updates of the Postgres store.
    Records handed out are copies; mutate through the store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.partitions: Dict[Role, Dict[str, Identity]] = {
            role: {} for role in PARTITION_ORDER
        }
        self._data_lock = threading.RLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _partition(self, role: Role) -> Dict[str, Identity]:
        return self.partitions[Role(role)]

    def _live(self, role: Role):
        return (i for i in self._partition(role).values() if not i.deleted)

    def _find(
        self, role: Role, predicate: Callable[[Identity], bool], include_deleted: bool
    ) -> Optional[Identity]:
        with self._data_lock:
            records = self._partition(role).values() if include_deleted else self._live(role)
            match = next((i for i in records if predicate(i)), None)
            return copy.deepcopy(match) if match else None

    def find_by_email(
        self, role: Role, email: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        needle = email.strip().lower()
        return self._find(role, lambda i: i.email == needle, include_deleted)

    def find_by_phone(
        self, role: Role, phone: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        needle = phone.strip()
        return self._find(role, lambda i: i.phone == needle, include_deleted)

    def find_by_id(
        self, role: Role, identity_id: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        with self._data_lock:
            record = self._partition(role).get(identity_id)
            if record is None or (record.deleted and not include_deleted):
                return None
            return copy.deepcopy(record)

    def exists_by_email(self, role: Role, email: str) -> bool:
        return self.find_by_email(role, email) is not None

    def exists_by_phone(self, role: Role, phone: str) -> bool:
        return self.find_by_phone(role, phone) is not None

    def exists_by_profile_key(self, role: Role, key: str, value: str) -> bool:
        with self._data_lock:
            return any(i.profile_value(key) == value for i in self._live(role))

    def insert(self, identity: Identity) -> Identity:
        with self._data_lock:
            partition = self._partition(identity.role)
            if identity.id in partition:
                raise ConstraintViolation("identity id already exists", {"field": "id"})
            for existing in self._live(identity.role):
                if existing.email == identity.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.phone == identity.phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
                for key in unique_profile_keys(identity.role):
                    value = identity.profile_value(key)
                    if value and existing.profile_value(key) == value:
                        raise ConstraintViolation(f"{key} already exists", {"field": key})
            partition[identity.id] = copy.deepcopy(identity)
            return copy.deepcopy(identity)

    def _update(
        self, role: Role, identity_id: str, mutate: Callable[[Identity], None]
    ) -> Optional[Identity]:
        with self._data_lock:
            record = self._partition(role).get(identity_id)
            if record is None or record.deleted:
                return None
            mutate(record)
            record.updated_at = self._now()
            return copy.deepcopy(record)

    def record_failed_login(
        self,
        role: Role,
        identity_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            if record.lock_until is not None and record.lock_until <= now:
                # an elapsed window starts a fresh count
                record.failed_login_count = 0
                record.lock_until = None
            record.failed_login_count += 1
            if record.failed_login_count >= max_attempts:
                record.lock_until = lock_until

        return self._update(role, identity_id, _apply)

    def record_login_success(
        self, role: Role, identity_id: str, *, now: datetime
    ) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.last_login_at = now
            record.failed_login_count = 0
            record.lock_until = None

        return self._update(role, identity_id, _apply)

    def clear_lock(self, role: Role, identity_id: str) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.failed_login_count = 0
            record.lock_until = None

        return self._update(role, identity_id, _apply)

    def set_lock(
        self, role: Role, identity_id: str, *, lock_until: datetime
    ) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.lock_until = lock_until

        return self._update(role, identity_id, _apply)

    def clear_expired_locks(self, role: Role, now: datetime) -> int:
        cleared = 0
        with self._data_lock:
            for record in self._live(role):
                if record.lock_until is not None and record.lock_until <= now:
                    record.lock_until = None
                    record.failed_login_count = 0
                    record.updated_at = self._now()
                    cleared += 1
        return cleared

    def list_locked(self, role: Role, now: datetime) -> List[Identity]:
        with self._data_lock:
            return [copy.deepcopy(i) for i in self._live(role) if i.is_locked(now)]

    def set_password_hash(
        self, role: Role, identity_id: str, password_hash: str
    ) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.password_hash = password_hash

        return self._update(role, identity_id, _apply)

    def update_status(
        self,
        role: Role,
        identity_id: str,
        status: IdentityStatus,
        *,
        actor_id: Optional[str] = None,
    ) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.status = IdentityStatus(status)
            record.updated_by = actor_id

        return self._update(role, identity_id, _apply)

    def mark_email_verified(self, role: Role, identity_id: str) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.email_verified = True
            if record.status == IdentityStatus.PENDING_VERIFICATION:
                record.status = IdentityStatus.ACTIVE

        return self._update(role, identity_id, _apply)

    def mark_phone_verified(self, role: Role, identity_id: str) -> Optional[Identity]:
        def _apply(record: Identity) -> None:
            record.phone_verified = True

        return self._update(role, identity_id, _apply)

    def mark_deleted(
        self, role: Role, identity_id: str, *, actor_id: str, now: datetime
    ) -> bool:
        def _apply(record: Identity) -> None:
            record.deleted = True
            record.deleted_at = now
            record.deleted_by = actor_id
            record.updated_by = actor_id
            record.status = IdentityStatus.DELETED

        return self._update(role, identity_id, _apply) is not None

    def hard_delete(self, role: Role, identity_id: str) -> bool:
        with self._data_lock:
            removed = self._partition(role).pop(identity_id, None)
        if removed is not None:
            self.logger.info("identity_hard_deleted", identity_id=identity_id, role=Role(role).value)
        return removed is not None

    def verify_connection(self) -> None:
        return None

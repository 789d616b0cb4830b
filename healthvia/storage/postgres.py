from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from healthvia.logging import get_logger
from healthvia.storage.errors import ConstraintViolation
from healthvia.storage.models import (
    Identity,
    IdentityStatus,
    PARTITION_ORDER,
    Role,
    profile_from_dict,
    profile_to_dict,
    unique_profile_keys,
)

# One table per role partition
PARTITION_TABLES: Dict[Role, str] = {
    Role.USER: "app_user",
    Role.PATIENT: "patient",
    Role.DOCTOR: "doctor",
    Role.ADMIN: "admin_user",
}

_IDENTITY_COLUMNS = (
    "id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "password_hash",
    "status",
    "email_verified",
    "phone_verified",
    "failed_login_count",
    "lock_until",
    "last_login_at",
    "consent_given_at",
    "deleted",
    "deleted_at",
    "deleted_by",
    "created_at",
    "updated_at",
    "created_by",
    "updated_by",
    "profile",
)


def _index_name(table: str, key: str) -> str:
    return f"{table}_{key}_live_uniq"


class PostgresStore:
    """Postgres-backed identity store, one table per partition.

    Live-record uniqueness of email, phone and role keys is enforced by
    partial unique indexes; counter and lock changes are single
    ``UPDATE ... RETURNING *`` statements.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _table(self, role: Role) -> str:
        return PARTITION_TABLES[Role(role)]

    def _ensure_schema(self) -> None:
        """Create partition tables and their partial unique indexes if missing."""

        with self._connect() as conn:
            for role in PARTITION_ORDER:
                table = self._table(role)
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id UUID PRIMARY KEY,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        email TEXT NOT NULL,
                        phone TEXT NOT NULL,
                        password_hash TEXT,
                        status TEXT NOT NULL,
                        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                        phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
                        failed_login_count INTEGER NOT NULL DEFAULT 0,
                        lock_until TIMESTAMPTZ,
                        last_login_at TIMESTAMPTZ,
                        consent_given_at TIMESTAMPTZ,
                        deleted BOOLEAN NOT NULL DEFAULT FALSE,
                        deleted_at TIMESTAMPTZ,
                        deleted_by TEXT,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        created_by TEXT,
                        updated_by TEXT,
                        profile JSONB NOT NULL DEFAULT '{{}}'::jsonb
                    )
                    """
                )
                for column in ("email", "phone"):
                    conn.execute(
                        f"CREATE UNIQUE INDEX IF NOT EXISTS {_index_name(table, column)} "
                        f"ON {table} ({column}) WHERE NOT deleted"
                    )
                for key in unique_profile_keys(role):
                    conn.execute(
                        f"CREATE UNIQUE INDEX IF NOT EXISTS {_index_name(table, key)} "
                        f"ON {table} ((profile->>'{key}')) "
                        f"WHERE NOT deleted AND profile->>'{key}' IS NOT NULL"
                    )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_lock_until_idx "
                    f"ON {table} (lock_until) WHERE lock_until IS NOT NULL"
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _row_to_identity(self, role: Role, row: Dict[str, Any]) -> Identity:
        profile_raw = row.get("profile")
        if isinstance(profile_raw, str):
            profile_raw = json.loads(profile_raw)
        return Identity(
            id=str(row["id"]),
            role=Role(role),
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            password_hash=row.get("password_hash"),
            status=IdentityStatus(row.get("status", IdentityStatus.PENDING_VERIFICATION.value)),
            email_verified=bool(row.get("email_verified", False)),
            phone_verified=bool(row.get("phone_verified", False)),
            failed_login_count=int(row.get("failed_login_count") or 0),
            lock_until=row.get("lock_until"),
            last_login_at=row.get("last_login_at"),
            consent_given_at=row.get("consent_given_at"),
            deleted=bool(row.get("deleted", False)),
            deleted_at=row.get("deleted_at"),
            deleted_by=row.get("deleted_by"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
            created_by=row.get("created_by"),
            updated_by=row.get("updated_by"),
            profile=profile_from_dict(role, profile_raw),
        )

    def _fetch_one(
        self, role: Role, where: str, params: tuple, include_deleted: bool
    ) -> Optional[Identity]:
        clause = where if include_deleted else f"{where} AND NOT deleted"
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._table(role)} WHERE {clause} LIMIT 1", params
            ).fetchone()
        return self._row_to_identity(role, row) if row else None

    def find_by_email(
        self, role: Role, email: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        return self._fetch_one(
            role, "email = %s", (email.strip().lower(),), include_deleted
        )

    def find_by_phone(
        self, role: Role, phone: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        return self._fetch_one(role, "phone = %s", (phone.strip(),), include_deleted)

    def find_by_id(
        self, role: Role, identity_id: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        try:
            return self._fetch_one(role, "id = %s", (identity_id,), include_deleted)
        except errors.InvalidTextRepresentation:
            # malformed uuid
            return None

    def exists_by_email(self, role: Role, email: str) -> bool:
        return self.find_by_email(role, email) is not None

    def exists_by_phone(self, role: Role, phone: str) -> bool:
        return self.find_by_phone(role, phone) is not None

    def exists_by_profile_key(self, role: Role, key: str, value: str) -> bool:
        if key not in unique_profile_keys(role):
            raise ValueError(f"{key} is not a unique key of the {Role(role).value} partition")
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {self._table(role)} "
                f"WHERE profile->>'{key}' = %s AND NOT deleted LIMIT 1",
                (value,),
            ).fetchone()
        return row is not None

    def _violated_field(self, table: str, exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        prefix = f"{table}_"
        suffix = "_live_uniq"
        if constraint.startswith(prefix) and constraint.endswith(suffix):
            return constraint[len(prefix) : -len(suffix)]
        if constraint.endswith("_pkey"):
            return "id"
        return "unknown"

    def insert(self, identity: Identity) -> Identity:
        table = self._table(identity.role)
        values = (
            identity.id,
            identity.first_name,
            identity.last_name,
            identity.email,
            identity.phone,
            identity.password_hash,
            IdentityStatus(identity.status).value,
            identity.email_verified,
            identity.phone_verified,
            identity.failed_login_count,
            identity.lock_until,
            identity.last_login_at,
            identity.consent_given_at,
            identity.deleted,
            identity.deleted_at,
            identity.deleted_by,
            identity.created_at,
            identity.updated_at,
            identity.created_by,
            identity.updated_by,
            json.dumps(profile_to_dict(identity.profile)),
        )
        placeholders = ", ".join(["%s"] * len(_IDENTITY_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO {table} ({', '.join(_IDENTITY_COLUMNS)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    values,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._violated_field(table, exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_identity(identity.role, row)

    def _update_returning(
        self, role: Role, assignments: str, identity_id: str, params: Optional[dict] = None
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE {self._table(role)} SET {assignments}, updated_at = now() "
                "WHERE id = %(identity_id)s AND NOT deleted RETURNING *",
                {**(params or {}), "identity_id": identity_id},
            ).fetchone()
        return self._row_to_identity(role, row) if row else None

    def record_failed_login(
        self,
        role: Role,
        identity_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[Identity]:
        # Right-hand sides read the pre-update row, so concurrent failures
        # serialize on the row lock and each one is counted. An elapsed
        # window starts a fresh count.
        next_count = (
            "CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s "
            "THEN 1 ELSE failed_login_count + 1 END"
        )
        return self._update_returning(
            role,
            f"failed_login_count = {next_count}, "
            f"lock_until = CASE WHEN {next_count} >= %(max_attempts)s THEN %(lock_until)s "
            "WHEN lock_until <= %(now)s THEN NULL ELSE lock_until END",
            identity_id,
            {"now": now, "max_attempts": max_attempts, "lock_until": lock_until},
        )

    def record_login_success(
        self, role: Role, identity_id: str, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_returning(
            role,
            "last_login_at = %(now)s, failed_login_count = 0, lock_until = NULL",
            identity_id,
            {"now": now},
        )

    def clear_lock(self, role: Role, identity_id: str) -> Optional[Identity]:
        return self._update_returning(
            role, "failed_login_count = 0, lock_until = NULL", identity_id
        )

    def set_lock(
        self, role: Role, identity_id: str, *, lock_until: datetime
    ) -> Optional[Identity]:
        return self._update_returning(
            role, "lock_until = %(lock_until)s", identity_id, {"lock_until": lock_until}
        )

    def clear_expired_locks(self, role: Role, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {self._table(role)} "
                "SET lock_until = NULL, failed_login_count = 0, updated_at = now() "
                "WHERE lock_until IS NOT NULL AND lock_until <= %s AND NOT deleted",
                (now,),
            )
            return max(cur.rowcount, 0)

    def list_locked(self, role: Role, now: datetime) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self._table(role)} "
                "WHERE lock_until > %s AND NOT deleted ORDER BY lock_until",
                (now,),
            ).fetchall()
        return [self._row_to_identity(role, row) for row in rows]

    def set_password_hash(
        self, role: Role, identity_id: str, password_hash: str
    ) -> Optional[Identity]:
        return self._update_returning(
            role,
            "password_hash = %(password_hash)s",
            identity_id,
            {"password_hash": password_hash},
        )

    def update_status(
        self,
        role: Role,
        identity_id: str,
        status: IdentityStatus,
        *,
        actor_id: Optional[str] = None,
    ) -> Optional[Identity]:
        return self._update_returning(
            role,
            "status = %(status)s, updated_by = %(actor_id)s",
            identity_id,
            {"status": IdentityStatus(status).value, "actor_id": actor_id},
        )

    def mark_email_verified(self, role: Role, identity_id: str) -> Optional[Identity]:
        return self._update_returning(
            role,
            "email_verified = TRUE, "
            "status = CASE WHEN status = %(pending)s THEN %(active)s ELSE status END",
            identity_id,
            {
                "pending": IdentityStatus.PENDING_VERIFICATION.value,
                "active": IdentityStatus.ACTIVE.value,
            },
        )

    def mark_phone_verified(self, role: Role, identity_id: str) -> Optional[Identity]:
        return self._update_returning(role, "phone_verified = TRUE", identity_id)

    def mark_deleted(
        self, role: Role, identity_id: str, *, actor_id: str, now: datetime
    ) -> bool:
        updated = self._update_returning(
            role,
            "deleted = TRUE, deleted_at = %(now)s, deleted_by = %(actor_id)s, "
            "updated_by = %(actor_id)s, status = %(status)s",
            identity_id,
            {"now": now, "actor_id": actor_id, "status": IdentityStatus.DELETED.value},
        )
        return updated is not None

    def hard_delete(self, role: Role, identity_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"DELETE FROM {self._table(role)} WHERE id = %s", (identity_id,)
            )
            removed = cur.rowcount > 0
        if removed:
            self.logger.info(
                "identity_hard_deleted", identity_id=identity_id, role=Role(role).value
            )
        return removed

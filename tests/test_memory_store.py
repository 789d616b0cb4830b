from datetime import datetime, timedelta, timezone

import pytest

from healthvia.storage.errors import ConstraintViolation
from healthvia.storage.memory import MemoryStore
from healthvia.storage.models import (
    DoctorProfile,
    Identity,
    IdentityStatus,
    PatientProfile,
    Role,
)

NOW = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)


def _patient(email="p@example.com", phone="5551212121", national_id="12345678901"):
    return Identity.new(
        Role.PATIENT,
        first_name="Pia",
        last_name="Arslan",
        email=email,
        phone=phone,
        profile=PatientProfile(national_id=national_id),
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


class TestUniqueness:
    def test_duplicate_email_in_partition(self, memory_store):
        memory_store.insert(_patient())
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.insert(_patient(phone="5550000000", national_id="19876543210"))
        assert exc_info.value.detail == {"field": "email"}

    def test_duplicate_profile_key(self, memory_store):
        memory_store.insert(_patient())
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.insert(_patient(email="q@example.com", phone="5550000000"))
        assert exc_info.value.detail == {"field": "national_id"}

    def test_deleted_records_release_keys(self, memory_store):
        first = memory_store.insert(_patient())
        assert memory_store.mark_deleted(Role.PATIENT, first.id, actor_id="admin", now=NOW)
        second = memory_store.insert(_patient())
        assert second.id != first.id
        assert memory_store.find_by_email(Role.PATIENT, "p@example.com").id == second.id

    def test_profile_key_lookup(self, memory_store):
        memory_store.insert(
            Identity.new(
                Role.DOCTOR,
                first_name="D",
                last_name="R",
                email="d@example.com",
                phone="5553131313",
                profile=DoctorProfile(diploma_number="DIP-9"),
            )
        )
        assert memory_store.exists_by_profile_key(Role.DOCTOR, "diploma_number", "DIP-9")
        assert not memory_store.exists_by_profile_key(Role.DOCTOR, "diploma_number", "DIP-8")


class TestCopies:
    def test_returned_records_are_detached(self, memory_store):
        created = memory_store.insert(_patient())
        created.failed_login_count = 99
        fetched = memory_store.find_by_id(Role.PATIENT, created.id)
        assert fetched.failed_login_count == 0


class TestCounters:
    def test_failed_login_locks_at_threshold(self, memory_store):
        created = memory_store.insert(_patient())
        lock_until = NOW + timedelta(minutes=30)
        for _ in range(2):
            updated = memory_store.record_failed_login(
                Role.PATIENT, created.id, max_attempts=3, lock_until=lock_until, now=NOW
            )
        assert updated.lock_until is None
        updated = memory_store.record_failed_login(
            Role.PATIENT, created.id, max_attempts=3, lock_until=lock_until, now=NOW
        )
        assert updated.failed_login_count == 3
        assert updated.lock_until == lock_until

    def test_updates_skip_deleted_records(self, memory_store):
        created = memory_store.insert(_patient())
        memory_store.mark_deleted(Role.PATIENT, created.id, actor_id="admin", now=NOW)
        assert memory_store.clear_lock(Role.PATIENT, created.id) is None
        assert not memory_store.mark_deleted(Role.PATIENT, created.id, actor_id="admin", now=NOW)

    def test_email_verification_activates_pending(self, memory_store):
        created = memory_store.insert(_patient())
        updated = memory_store.mark_email_verified(Role.PATIENT, created.id)
        assert updated.status == IdentityStatus.ACTIVE

    def test_email_verification_keeps_suspension(self, memory_store):
        created = memory_store.insert(_patient())
        memory_store.update_status(Role.PATIENT, created.id, IdentityStatus.SUSPENDED, actor_id="a")
        updated = memory_store.mark_email_verified(Role.PATIENT, created.id)
        assert updated.status == IdentityStatus.SUSPENDED
        assert updated.updated_by == "a"

    def test_hard_delete(self, memory_store):
        created = memory_store.insert(_patient())
        assert memory_store.hard_delete(Role.PATIENT, created.id)
        assert not memory_store.hard_delete(Role.PATIENT, created.id)
        assert memory_store.find_by_id(Role.PATIENT, created.id, include_deleted=True) is None

"""
Hash uniqueness and duplicate repair tests.
"""

import pytest

from certchain.conflicts import HashConflictResolver, MAX_HASH_ATTEMPTS
from certchain.errors import StoreError
from certchain.hashing import CertificateFields, is_valid_hash_format, mark_pending
from certchain.records import CertificateRecord


FIELDS = CertificateFields(
    certificate_id="CERT-1",
    student_name="Ada Lovelace",
    student_wallet="wallet",
    course_name="Analytical Engines",
    grade="A",
    institution_name="Example University",
    issued_by="issuer",
    issued_date="2024-06-01",
)


class LookupStore:
    """Answers hash_exists from a script of responses."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.lookups = []

    def hash_exists(self, certificate_hash):
        self.lookups.append(certificate_hash)
        answer = self.answers.pop(0) if self.answers else False
        if isinstance(answer, Exception):
            raise answer
        return answer


def seed(store, n, certificate_hash, created_at):
    return store.insert_certificate(CertificateRecord(
        certificate_id=f"CERT-{n}",
        student_name="Same Name",
        roll_no=f"R-{n}",
        course_name="Same Course",
        grade="A",
        institution_name="Example University",
        issued_by="issuer",
        student_wallet="wallet",
        issued_date="2024-06-01",
        certificate_hash=certificate_hash,
        created_at=created_at,
    ))


# ============================================================
# generate_unique_hash
# ============================================================

def test_first_candidate_used_when_free():
    store = LookupStore([False])
    unique = HashConflictResolver(store).generate_unique_hash(FIELDS)
    assert unique.attempts == 1
    assert not unique.lookup_failed
    assert is_valid_hash_format(unique.certificate_hash)
    assert store.lookups == [unique.certificate_hash]


def test_collisions_retry_with_new_salt():
    store = LookupStore([True, True, False])
    unique = HashConflictResolver(store).generate_unique_hash(FIELDS)
    assert unique.attempts == 3
    assert len(set(store.lookups)) == 3
    assert unique.certificate_hash == store.lookups[-1]


def test_exhausted_attempts_fall_back():
    store = LookupStore([True] * MAX_HASH_ATTEMPTS)
    unique = HashConflictResolver(store).generate_unique_hash(FIELDS)
    assert unique.attempts == MAX_HASH_ATTEMPTS + 1
    assert len(store.lookups) == MAX_HASH_ATTEMPTS
    assert is_valid_hash_format(unique.certificate_hash)
    assert unique.certificate_hash not in store.lookups


def test_lookup_failure_returns_candidate():
    store = LookupStore([StoreError("timeout")])
    unique = HashConflictResolver(store).generate_unique_hash(FIELDS)
    assert unique.lookup_failed
    assert unique.attempts == 1
    assert unique.certificate_hash == store.lookups[0]


def test_custom_attempt_limit():
    store = LookupStore([True] * 10)
    unique = HashConflictResolver(store, max_attempts=2).generate_unique_hash(FIELDS)
    assert unique.attempts == 3
    assert len(store.lookups) == 2


# ============================================================
# Duplicate repair
# ============================================================

def test_find_conflicts(legacy_store):
    seed(legacy_store, 1, "a" * 64, "2024-01-01T00:00:00.000000+00:00")
    seed(legacy_store, 2, "a" * 64, "2024-01-02T00:00:00.000000+00:00")
    seed(legacy_store, 3, "b" * 64, "2024-01-03T00:00:00.000000+00:00")

    report = HashConflictResolver(legacy_store).find_hash_conflicts()
    assert report.total_hashes == 3
    assert report.unique_hashes == 2
    assert report.duplicate_hashes == 1
    assert report.has_conflicts
    assert report.to_dict()["conflicts"][0]["count"] == 2


def test_earliest_record_keeps_its_hash(legacy_store):
    shared = "a" * 64
    # inserted out of order; created_at decides who keeps the hash
    seed(legacy_store, 3, shared, "2024-01-03T00:00:00.000000+00:00")
    seed(legacy_store, 1, shared, "2024-01-01T00:00:00.000000+00:00")
    seed(legacy_store, 2, shared, "2024-01-02T00:00:00.000000+00:00")

    result = HashConflictResolver(legacy_store).resolve_all_hash_conflicts()

    assert result.success
    assert result.resolved == 2
    assert legacy_store.get_certificate("CERT-1").certificate_hash == shared
    h2 = legacy_store.get_certificate("CERT-2").certificate_hash
    h3 = legacy_store.get_certificate("CERT-3").certificate_hash
    assert len({shared, h2, h3}) == 3
    assert is_valid_hash_format(h2) and is_valid_hash_format(h3)


def test_second_run_writes_nothing(legacy_store, monkeypatch):
    shared = "a" * 64
    for n in (1, 2, 3):
        seed(legacy_store, n, shared, f"2024-01-0{n}T00:00:00.000000+00:00")
    resolver = HashConflictResolver(legacy_store)
    assert resolver.resolve_all_hash_conflicts().resolved == 2

    writes = []
    monkeypatch.setattr(legacy_store, "update_certificate_hash",
                        lambda *args: writes.append(args))
    second = resolver.resolve_all_hash_conflicts()
    assert (second.resolved, second.failed) == (0, 0)
    assert writes == []


def test_failures_do_not_stop_the_run(legacy_store, monkeypatch):
    shared = "a" * 64
    for n in (1, 2, 3):
        seed(legacy_store, n, shared, f"2024-01-0{n}T00:00:00.000000+00:00")

    original = legacy_store.update_certificate_hash

    def flaky_update(certificate_id, certificate_hash):
        if certificate_id == "CERT-2":
            raise StoreError("write failed")
        return original(certificate_id, certificate_hash)

    monkeypatch.setattr(legacy_store, "update_certificate_hash", flaky_update)
    result = HashConflictResolver(legacy_store).resolve_all_hash_conflicts()

    assert result.resolved == 1
    assert result.failed == 1
    assert not result.success
    assert "CERT-2" in result.errors[0]
    assert legacy_store.get_certificate("CERT-2").certificate_hash == shared
    assert legacy_store.get_certificate("CERT-3").certificate_hash != shared


def test_scan_failure_reported(legacy_store, monkeypatch):
    def broken():
        raise StoreError("database is locked")

    monkeypatch.setattr(legacy_store, "all_certificates", broken)
    result = HashConflictResolver(legacy_store).resolve_all_hash_conflicts()
    assert result.failed == 1
    assert result.resolved == 0


def test_resolve_single(store):
    seed(store, 1, "c" * 64, None)
    outcome = HashConflictResolver(store).resolve_hash_conflict("CERT-1")
    assert outcome["success"]
    assert outcome["old_hash"] == "c" * 64
    assert store.get_certificate("CERT-1").certificate_hash == outcome["new_hash"]

    missing = HashConflictResolver(store).resolve_hash_conflict("CERT-404")
    assert missing["success"] is False


def test_regenerate_invalid_hashes_skips_pending(store):
    seed(store, 1, "not-a-hash", None)
    seed(store, 2, mark_pending("d" * 64), None)
    seed(store, 3, "e" * 64, None)

    result = HashConflictResolver(store).regenerate_invalid_hashes()

    assert result.resolved == 1
    assert is_valid_hash_format(store.get_certificate("CERT-1").certificate_hash)
    assert store.get_certificate("CERT-2").certificate_hash == mark_pending("d" * 64)
    assert store.get_certificate("CERT-3").certificate_hash == "e" * 64


@pytest.mark.parametrize("max_attempts", [1, 3])
def test_resolver_uses_store_lookup(store, max_attempts):
    seed(store, 1, "f" * 64, None)
    unique = HashConflictResolver(store, max_attempts=max_attempts).generate_unique_hash(FIELDS)
    assert unique.certificate_hash != "f" * 64
    assert unique.attempts == 1

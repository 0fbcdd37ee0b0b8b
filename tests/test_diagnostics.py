"""
Diagnostics tests: hash inspection, integrity comparison and environment checks.
"""

from certchain.anchor import CertificateAccount
from certchain.chain import ChainCertificate
from certchain.diagnostics import CertificateDiagnostics, integrity_check
from certchain.hashing import mark_pending
from certchain.records import CertificateRecord
from certchain.signing import KeypairSigner


def record(n=1, certificate_hash=None, **overrides):
    data = dict(
        certificate_id=f"CERT-{n}",
        student_name="Ada Lovelace",
        roll_no=f"R-{n}",
        course_name="Engines",
        grade="A",
        institution_name="Example University",
        issued_by="issuer",
        student_wallet="wallet",
        issued_date="2024-06-01",
        certificate_hash=certificate_hash or f"{n:064x}",
    )
    data.update(overrides)
    return CertificateRecord(**data)


def chain_copy(rec, certificate_hash=None, **overrides):
    account = dict(
        institution=KeypairSigner.generate().public_key,
        student_name=rec.student_name,
        course_name=rec.course_name,
        grade=rec.grade,
        certificate_id=rec.certificate_id,
        is_revoked=False,
        verification_count=0,
        issued_at=0,
    )
    account.update(overrides)
    return ChainCertificate(
        address="addr",
        issuer=rec.issued_by,
        account=CertificateAccount(**account),
        metadata={"certificate_hash": certificate_hash or rec.certificate_hash},
    )


# ============================================================
# Integrity
# ============================================================

def test_integrity_consistent():
    rec = record()
    report = integrity_check(rec, chain_copy(rec))
    assert report["is_consistent"]
    assert report["confidence"] == 1.0
    assert report["revocation_matches"]


def test_integrity_one_discrepancy():
    rec = record()
    report = integrity_check(rec, chain_copy(rec, grade="B"))
    assert not report["is_consistent"]
    assert report["confidence"] == 0.8
    assert report["discrepancies"] == [{"field": "grade", "database": "A", "blockchain": "B"}]


def test_integrity_pending_hash_compared_clean():
    rec = record(certificate_hash=mark_pending("a" * 64))
    report = integrity_check(rec, chain_copy(rec, certificate_hash="a" * 64))
    assert report["is_consistent"]


def test_integrity_missing_chain_hash():
    rec = record()
    copy = chain_copy(rec)
    copy.metadata = None
    report = integrity_check(rec, copy)
    assert report["discrepancies"][0]["field"] == "certificate_hash"


# ============================================================
# Hash inspection
# ============================================================

def test_hash_statistics(legacy_store):
    legacy_store.insert_certificate(record(1, "a" * 64))
    legacy_store.insert_certificate(record(2, "a" * 64))
    legacy_store.insert_certificate(record(3, "b" * 64))
    legacy_store.insert_certificate(record(4, "junk"))

    stats = CertificateDiagnostics(legacy_store).hash_statistics()

    assert stats["total_certificates"] == 4
    assert stats["unique_hashes"] == 3
    assert stats["duplicate_hashes"] == 1
    assert stats["invalid_hashes"] == 1
    assert stats["collision_rate"] == 25.0
    assert stats["prefix_distribution"] == {"aa": 2, "bb": 1}


def test_validate_all_hashes(store):
    store.insert_certificate(record(1, "a" * 64))
    store.insert_certificate(record(2, "junk"))
    store.insert_certificate(record(3, mark_pending("c" * 64)))

    report = CertificateDiagnostics(store).validate_all_hashes()
    assert (report["total"], report["valid"], report["invalid"], report["pending"]) == (3, 1, 1, 1)
    assert report["pending_certificates"] == ["CERT-3"]


def test_check_hash(legacy_store):
    legacy_store.insert_certificate(record(1, "a" * 64))
    legacy_store.insert_certificate(record(2, "a" * 64))
    report = CertificateDiagnostics(legacy_store).check_hash("a" * 64)
    assert report["is_duplicate"]
    assert report["count"] == 2


def test_debug_certificate_recommendations(legacy_store):
    legacy_store.insert_certificate(record(1, "a" * 64))
    legacy_store.insert_certificate(record(2, "a" * 64))
    legacy_store.insert_certificate(record(3, mark_pending("c" * 64)))
    diagnostics = CertificateDiagnostics(legacy_store)

    shared = diagnostics.debug_certificate("CERT-1")
    assert shared["conflicts"] == ["CERT-2"]
    assert any("conflict" in r for r in shared["recommendations"])

    pending = diagnostics.debug_certificate("CERT-3")
    assert pending["hash"]["pending"]
    assert any("sync" in r for r in pending["recommendations"])

    assert diagnostics.debug_certificate("CERT-404")["found"] is False


def test_debug_certificate_with_chain(service, certificate_data):
    created = service.create_certificate(certificate_data(certificate_id="CERT-D"))
    report = CertificateDiagnostics(service.store, service.chain).debug_certificate("CERT-D")
    assert report["blockchain"]["found"]
    assert report["integrity"]["is_consistent"]
    assert report["recommendations"] == ["No issues found"]
    assert report["hash"]["stored"] == created.certificate_hash


# ============================================================
# Database-only batch verification
# ============================================================

def test_batch_verify_without_chain(store):
    store.insert_certificate(record(1, "a" * 64))
    store.insert_certificate(record(2, "b" * 64))
    store.mark_revoked("CERT-2")

    result = CertificateDiagnostics(store).batch_verify([
        {"certificate_id": "CERT-1", "certificate_hash": "a" * 64},
        {"certificate_id": "CERT-1", "certificate_hash": "a" * 64, "institution": "elsewhere"},
        {"certificate_id": "CERT-1", "certificate_hash": "A" * 64},
        {"certificate_id": "CERT-2", "certificate_hash": "b" * 64},
        {"certificate_id": "CERT-3", "certificate_hash": "c" * 64},
    ])

    assert len(result.verified) == 1
    assert [f["reason"] for f in result.failed] == ["Issuer mismatch", "Hash mismatch"]
    assert len(result.revoked) == 1
    assert len(result.not_found) == 1


# ============================================================
# Environment
# ============================================================

def test_connectivity_without_chain(store):
    report = CertificateDiagnostics(store).check_connectivity()
    assert report["database"]["ok"]
    assert not report["blockchain"]["ok"]


def test_connectivity_with_chain(service, signer):
    report = CertificateDiagnostics(service.store, service.chain).check_connectivity()
    assert report["blockchain"]["initialized"]
    assert report["blockchain"]["global_state"]["authority"] == signer.public_key


def test_policies(service):
    diagnostics = CertificateDiagnostics(service.store, service.chain)
    assert not diagnostics.check_policies([])["ok"]
    assert not diagnostics.check_policies(["nonsense"])["ok"]
    assert diagnostics.check_policies([KeypairSigner.generate().public_key])["ok"]


def test_run_all(service):
    report = CertificateDiagnostics(service.store, service.chain).run_all(
        [KeypairSigner.generate().public_key]
    )
    assert report["schema"]["ok"]
    assert report["hashes"]["duplicate_hashes"] == 0
    assert report["ok"]

"""
Unified certificate service tests: database-first writes mirrored on an
in-memory chain, verification, revocation and reconciliation.
"""

import pytest

from certchain import config
from certchain.backends import build_service
from certchain.chain import ChainTransactionManager
from certchain.errors import (
    ChainError,
    ChainUnavailableError,
    DuplicateHashError,
    SignerUnavailableError,
    StoreError,
)
from certchain.hashing import PENDING_SUFFIX, is_pending, is_valid_hash_format
from certchain.memory_chain import InMemoryChainProgram
from certchain.service import (
    PartialSuccess,
    UnifiedCertificateService,
    generate_certificate_id,
)
from certchain.signing import KeypairSigner


def issue(service, certificate_data, **overrides):
    result = service.create_certificate(certificate_data(**overrides))
    assert result.success, result.error
    return result


# ============================================================
# Creation
# ============================================================

def test_generated_certificate_id_fits_seed():
    certificate_id = generate_certificate_id()
    assert certificate_id.startswith("CERT-")
    assert len(certificate_id.encode("utf-8")) <= 32
    assert generate_certificate_id() != certificate_id


def test_create_mirrors_on_chain(service, certificate_data, signer):
    result = issue(service, certificate_data)

    record = result.certificate
    assert is_valid_hash_format(result.certificate_hash)
    assert record.certificate_hash == result.certificate_hash
    assert result.signature
    assert result.hash_attempts == 1
    assert result.verification_url.startswith(
        f"https://certs.example.edu/verify/{record.certificate_id}?institution={signer.public_key}"
    )

    chain_copy = service.chain.get_certificate(record.certificate_id, signer.public_key)
    assert chain_copy.certificate_hash == result.certificate_hash
    assert chain_copy.metadata["student_wallet"] == record.student_wallet
    assert service.store.get_certificate(record.certificate_id) is not None


def test_identical_fields_get_distinct_hashes(service, certificate_data):
    first = issue(service, certificate_data, certificate_id="CERT-A")
    second = issue(service, certificate_data, certificate_id="CERT-B")
    assert first.certificate_hash != second.certificate_hash


def test_defaults_filled(service, certificate_data):
    data = certificate_data()
    result = service.create_certificate(data)
    assert result.certificate.certificate_id.startswith("CERT-")
    assert result.certificate.issued_date == "2024-06-01"

    del data["issued_date"]
    data["certificate_id"] = "CERT-NODATE"
    undated = service.create_certificate(data)
    assert len(undated.certificate.issued_date) == 10


@pytest.mark.parametrize("overrides", [
    {"student_name": "A"},
    {"course_name": ""},
    {"student_wallet": "not-a-wallet"},
    {"issued_date": "06/01/2024"},
    {"certificate_id": "X" * 33},
    {"certificate_id": "bad id!"},
])
def test_validation_rejects_before_any_write(service, certificate_data, program, overrides):
    before = program.fetch_global_state().total_certificates
    result = service.create_certificate(certificate_data(**overrides))
    assert not result.success
    assert result.error_type == "validation"
    assert service.store.list_certificates() == ([], 0)
    assert program.fetch_global_state().total_certificates == before


def test_issuer_must_match_signer(service, certificate_data):
    other = KeypairSigner.generate()
    result = service.create_certificate(certificate_data(issued_by=other.public_key))
    assert result.error_type == "validation"
    assert "issued_by" in result.error


def test_duplicate_certificate_id(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-1")
    result = service.create_certificate(certificate_data(certificate_id="CERT-1"))
    assert not result.success
    assert result.error_type == "duplicate"


def test_duplicate_hash_at_insert_retried_once(service, certificate_data, monkeypatch):
    original = service.store.insert_certificate
    calls = []

    def racing_insert(record):
        calls.append(record.certificate_hash)
        if len(calls) == 1:
            raise DuplicateHashError(record.certificate_hash)
        return original(record)

    monkeypatch.setattr(service.store, "insert_certificate", racing_insert)
    result = service.create_certificate(certificate_data())

    assert result.success
    assert len(calls) == 2
    assert calls[0] != calls[1]
    assert result.certificate_hash == calls[1]
    assert result.hash_attempts == 2


def test_duplicate_hash_twice_is_terminal(service, certificate_data, monkeypatch):
    calls = []

    def always_taken(record):
        calls.append(record)
        raise DuplicateHashError(record.certificate_hash)

    monkeypatch.setattr(service.store, "insert_certificate", always_taken)
    result = service.create_certificate(certificate_data())
    assert not result.success
    assert result.error_type == "store"
    assert len(calls) == 2


def test_store_failure(service, certificate_data, monkeypatch, program):
    def broken(record):
        raise StoreError("disk I/O error")

    monkeypatch.setattr(service.store, "insert_certificate", broken)
    result = service.create_certificate(certificate_data())
    assert result.error_type == "store"
    assert program.fetch_global_state().total_certificates == 0


def test_chain_exception_gives_partial_success(service, certificate_data, program):
    program.fail_issue = True
    result = service.create_certificate(certificate_data(certificate_id="CERT-P"))

    assert not result.success
    assert result.error_type == "chain"
    assert result.partial_success == PartialSuccess(database=True, blockchain=False)
    stored = service.store.get_certificate("CERT-P")
    assert stored.certificate_hash == result.certificate_hash + PENDING_SUFFIX
    assert result.certificate.certificate_hash.endswith(PENDING_SUFFIX)


def test_chain_rejection_gives_partial_success(store, certificate_data, signer):
    # program never initialized: every issue is rejected
    chain = ChainTransactionManager(InMemoryChainProgram(), signer=signer)
    service = UnifiedCertificateService(store, chain)
    result = service.create_certificate(certificate_data(certificate_id="CERT-R"))
    assert result.partial_success == PartialSuccess(True, False)
    assert is_pending(store.get_certificate("CERT-R").certificate_hash)


def test_chain_without_signer_is_database_only(store, certificate_data):
    service = UnifiedCertificateService(store, ChainTransactionManager(InMemoryChainProgram()))
    result = service.create_certificate(certificate_data(certificate_id="CERT-N"))
    assert result.success
    assert result.partial_success is None
    assert result.signature is None
    stored = store.get_certificate("CERT-N")
    assert not is_pending(stored.certificate_hash)
    assert stored.certificate_hash == result.certificate_hash


def test_database_only_mode(store, certificate_data):
    service = UnifiedCertificateService(store)
    result = issue(service, certificate_data, certificate_id="CERT-DB")
    assert result.signature is None
    assert store.get_certificate("CERT-DB").certificate_hash == result.certificate_hash


def test_certificates_issued_counter(service, certificate_data, signer):
    service.register_institution("Example University", "Springfield")
    issue(service, certificate_data, certificate_id="CERT-1")
    issue(service, certificate_data, certificate_id="CERT-2")
    assert service.store.get_institution(signer.public_key).certificates_issued == 2


# ============================================================
# Verification
# ============================================================

def test_verify_valid(service, certificate_data, signer):
    created = issue(service, certificate_data, certificate_id="CERT-V")
    result = service.verify_certificate("CERT-V", provided_hash=created.certificate_hash,
                                        institution=signer.public_key)
    assert result.is_valid
    assert result.database_valid
    assert result.blockchain_valid is True
    assert result.hash_matches is True
    assert result.verification_count == 1
    assert result.signature is None

    again = service.verify_certificate("CERT-V", provided_hash=created.certificate_hash)
    assert again.is_valid
    assert again.verification_count == 2


def test_verify_hash_is_compared_exactly(service, certificate_data):
    created = issue(service, certificate_data, certificate_id="CERT-U")
    result = service.verify_certificate("CERT-U", provided_hash=created.certificate_hash.upper())
    assert not result.is_valid
    assert result.hash_matches is False
    assert result.error == "Certificate hash does not match"


def test_verify_hash_exact_without_chain(store, certificate_data):
    service = UnifiedCertificateService(store)
    created = issue(service, certificate_data, certificate_id="CERT-U")
    result = service.verify_certificate("CERT-U", provided_hash=created.certificate_hash.upper())
    assert not result.is_valid
    assert result.hash_matches is False


def test_verification_log(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-L")
    verifier = KeypairSigner.generate().public_key
    service.verify_certificate("CERT-L", verifier=verifier,
                               ip_address="203.0.113.7", user_agent="pytest")
    service.verify_certificate("CERT-L", provided_hash="0" * 64)

    history = service.verification_history("CERT-L")
    assert len(history) == 2
    assert history[0].verifier_wallet is None
    assert history[1].verifier_wallet == verifier
    assert history[1].ip_address == "203.0.113.7"
    assert history[1].user_agent == "pytest"
    assert history[1].certificate_id == service.store.get_certificate("CERT-L").id
    assert service.verification_history("CERT-404") is None


def test_verification_log_skips_rejected_reads(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-L")
    service.verify_certificate("CERT-L", institution=KeypairSigner.generate().public_key)
    service.revoke_certificate("CERT-L")
    service.verify_certificate("CERT-L")
    assert service.verification_history("CERT-L") == []


def test_verify_malformed_verifier(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-L")
    result = service.verify_certificate("CERT-L", verifier="not-a-wallet")
    assert not result.is_valid
    assert result.error == "Malformed verifier wallet"
    assert service.verification_history("CERT-L") == []


def test_verify_records_on_chain_with_signer(service, certificate_data, signer, program):
    issue(service, certificate_data, certificate_id="CERT-V")
    result = service.verify_certificate("CERT-V", signer=signer)
    assert result.is_valid
    assert result.signature
    assert program.fetch_certificate(signer.public_key, "CERT-V").verification_count == 1


def test_verify_hash_mismatch(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-V")
    result = service.verify_certificate("CERT-V", provided_hash="0" * 64)
    assert not result.is_valid
    assert result.hash_matches is False
    assert result.verification_count == 1


def test_verify_malformed_hash(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-V")
    result = service.verify_certificate("CERT-V", provided_hash="xyz")
    assert not result.is_valid
    assert service.store.get_certificate("CERT-V").verification_count == 0


def test_verify_not_found(service):
    result = service.verify_certificate("CERT-404")
    assert not result.is_valid
    assert result.error == "Certificate not found"


def test_verify_revoked_skips_chain_and_counter(service, certificate_data, monkeypatch):
    issue(service, certificate_data, certificate_id="CERT-X")
    service.revoke_certificate("CERT-X")

    lookups = []
    monkeypatch.setattr(service.chain, "get_certificate_with_metadata",
                        lambda *args: lookups.append(args))
    result = service.verify_certificate("CERT-X")

    assert not result.is_valid
    assert result.is_revoked
    assert lookups == []
    assert service.store.get_certificate("CERT-X").verification_count == 0


def test_verify_other_institution(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-V")
    result = service.verify_certificate("CERT-V", institution=KeypairSigner.generate().public_key)
    assert not result.is_valid
    assert service.store.get_certificate("CERT-V").verification_count == 0


def test_verify_missing_on_chain(service, certificate_data, program):
    program.fail_issue = True
    created = service.create_certificate(certificate_data(certificate_id="CERT-P"))
    result = service.verify_certificate("CERT-P", provided_hash=created.certificate_hash)
    assert not result.is_valid
    assert result.database_valid
    assert result.blockchain_valid is False
    assert result.hash_matches is True


def test_verify_database_only(store, certificate_data):
    service = UnifiedCertificateService(store)
    created = issue(service, certificate_data, certificate_id="CERT-DB")
    result = service.verify_certificate("CERT-DB", provided_hash=created.certificate_hash)
    assert result.is_valid
    assert result.blockchain_valid is None


def test_batch_verify(service, certificate_data, signer):
    good = issue(service, certificate_data, certificate_id="CERT-1")
    revoked = issue(service, certificate_data, certificate_id="CERT-2")
    service.revoke_certificate("CERT-2")

    result = service.batch_verify_certificate_hashes([
        {"certificate_id": "CERT-1", "certificate_hash": good.certificate_hash,
         "institution": signer.public_key},
        {"certificate_id": "CERT-1", "certificate_hash": "1" * 64},
        {"certificate_id": "CERT-2", "certificate_hash": revoked.certificate_hash},
        {"certificate_id": "CERT-9", "certificate_hash": good.certificate_hash},
    ]).to_dict()
    assert result["summary"] == {"verified": 1, "failed": 1, "revoked": 1, "not_found": 1}
    assert service.store.get_certificate("CERT-1").verification_count == 0


# ============================================================
# Revocation
# ============================================================

def test_revoke(service, certificate_data, signer):
    issue(service, certificate_data, certificate_id="CERT-X")
    result = service.revoke_certificate("CERT-X", reason="issued in error")
    assert result.success
    assert result.signature
    assert service.store.get_certificate("CERT-X").is_revoked
    assert service.chain.get_certificate("CERT-X", signer.public_key).is_revoked


def test_revoke_twice_rejected(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-X")
    service.revoke_certificate("CERT-X")
    again = service.revoke_certificate("CERT-X")
    assert not again.success
    assert "already revoked" in again.error


def test_revoke_by_non_issuer(service, certificate_data):
    issue(service, certificate_data, certificate_id="CERT-X")
    result = service.revoke_certificate("CERT-X", signer=KeypairSigner.generate())
    assert not result.success
    assert not service.store.get_certificate("CERT-X").is_revoked


def test_revoke_requires_signer(store):
    service = UnifiedCertificateService(store, ChainTransactionManager(InMemoryChainProgram()))
    with pytest.raises(SignerUnavailableError):
        service.revoke_certificate("CERT-X")


def test_revoke_database_only_with_service_signer(store, certificate_data, signer):
    service = UnifiedCertificateService(store, signer=signer)
    issue(service, certificate_data, certificate_id="CERT-DB")
    result = service.revoke_certificate("CERT-DB", reason="issued in error")
    assert result.success
    assert result.signature is None
    assert store.get_certificate("CERT-DB").is_revoked


def test_register_institution_database_only(store, signer):
    service = UnifiedCertificateService(store, signer=signer)
    result = service.register_institution("Example University", "Springfield")
    assert result.success
    assert store.get_institution(signer.public_key).name == "Example University"


def test_build_service_keeps_signer_without_chain(store, certificate_data, signer, monkeypatch):
    monkeypatch.setattr(config, "CHAIN_BACKEND", "none")
    service = build_service(store=store, signer=signer)
    assert service.chain is None
    assert service.signer is signer
    issue(service, certificate_data, certificate_id="CERT-B")
    assert service.revoke_certificate("CERT-B").success


def test_revoke_chain_failure_is_partial(service, certificate_data, program):
    program.fail_issue = True
    service.create_certificate(certificate_data(certificate_id="CERT-P"))
    result = service.revoke_certificate("CERT-P")
    assert not result.success
    assert result.partial_success == PartialSuccess(True, False)
    assert service.store.get_certificate("CERT-P").is_revoked


# ============================================================
# Reconciliation
# ============================================================

def test_sync_reissues_missing_and_clears_pending(service, certificate_data, program, signer):
    issue(service, certificate_data, certificate_id="CERT-1")
    program.fail_issue = True
    created = service.create_certificate(certificate_data(certificate_id="CERT-2"))
    assert created.partial_success is not None
    program.fail_issue = False

    result = service.sync_certificates()

    assert result.success
    assert result.checked == 2
    assert result.already_synced == 1
    assert result.synced == ["CERT-2"]
    assert result.repaired_pending == ["CERT-2"]
    assert service.store.get_certificate("CERT-2").certificate_hash == created.certificate_hash
    chain_copy = service.chain.get_certificate("CERT-2", signer.public_key)
    assert chain_copy.certificate_hash == created.certificate_hash

    second = service.sync_certificates()
    assert second.synced == []
    assert second.already_synced == 2


def test_sync_reports_revocation_mismatch(service, certificate_data, program, signer):
    issue(service, certificate_data, certificate_id="CERT-1")
    program.revoke_certificate(signer, "CERT-1")

    result = service.sync_certificates()

    assert result.mismatches == [{
        "certificate_id": "CERT-1",
        "type": "revocation",
        "database_revoked": False,
        "blockchain_revoked": True,
    }]
    assert not service.store.get_certificate("CERT-1").is_revoked


def test_sync_does_not_reissue_revoked(service, certificate_data, program):
    program.fail_issue = True
    service.create_certificate(certificate_data(certificate_id="CERT-1"))
    program.fail_issue = False
    service.store.mark_revoked("CERT-1")

    result = service.sync_certificates()
    assert result.synced == []
    assert result.mismatches[0]["type"] == "missing_revoked"


def test_sync_needs_chain_and_signer(store):
    with pytest.raises(ChainUnavailableError):
        UnifiedCertificateService(store).sync_certificates()
    no_signer = UnifiedCertificateService(store, ChainTransactionManager(InMemoryChainProgram()))
    with pytest.raises(SignerUnavailableError):
        no_signer.sync_certificates()


def test_sync_uninitialized_chain(store, signer):
    service = UnifiedCertificateService(
        store, ChainTransactionManager(InMemoryChainProgram(), signer=signer)
    )
    result = service.sync_certificates()
    assert not result.success
    assert result.error == "Blockchain system not initialized"


def test_sync_status(service, certificate_data, program, signer):
    issue(service, certificate_data, certificate_id="CERT-1")
    program.fail_issue = True
    service.create_certificate(certificate_data(certificate_id="CERT-2"))

    status = service.sync_status(signer.public_key)
    assert status.total_database == 2
    assert status.total_blockchain == 1
    assert status.database_only == ["CERT-2"]
    assert status.sync_percentage == 50.0
    assert status.error is None


def test_sync_status_reports_unreadable_chain(service, certificate_data, program, signer, monkeypatch):
    issue(service, certificate_data, certificate_id="CERT-1")

    def unreachable(authority):
        raise ChainError("rpc node unreachable")

    monkeypatch.setattr(program, "fetch_institution_certificates", unreachable)
    status = service.sync_status(signer.public_key)
    assert status.error == "Could not read certificates from chain"
    assert status.total_database == 1
    assert status.total_blockchain is None
    assert status.sync_percentage is None
    assert status.database_only == []


def test_list_certificates_chain_status(service, certificate_data, program):
    issue(service, certificate_data, certificate_id="CERT-1")
    program.fail_issue = True
    service.create_certificate(certificate_data(certificate_id="CERT-2"))

    listing = service.list_certificates()
    statuses = {row["certificate_id"]: row["blockchain_status"] for row in listing["certificates"]}
    assert statuses == {"CERT-1": "on_chain", "CERT-2": "pending"}
    assert listing["total"] == 2


# ============================================================
# Institutions
# ============================================================

def test_register_institution(service, signer):
    result = service.register_institution("Example University", "Springfield")
    assert result.success
    assert result.record.authority_wallet == signer.public_key

    again = service.register_institution("Example University", "Springfield")
    assert not again.success


def test_register_institution_validation(service):
    assert not service.register_institution("X", "Springfield").success


def test_verify_institution(service, signer):
    service.register_institution("Example University", "Springfield")
    admin = KeypairSigner.generate().public_key

    denied = service.verify_institution(signer.public_key, "intruder", [admin])
    assert not denied.success

    result = service.verify_institution(signer.public_key, admin, [admin])
    assert result.success
    assert result.record.is_verified
    assert result.record.verified_by == admin
    assert service.chain.get_institution(signer.public_key).is_verified

    again = service.verify_institution(signer.public_key, admin, [admin])
    assert "already verified" in again.error


def test_verify_unknown_institution(service):
    admin = KeypairSigner.generate().public_key
    result = service.verify_institution(KeypairSigner.generate().public_key, admin, [admin])
    assert result.error == "Institution not found"

"""
Unified certificate service.

Writes go to the database first and are then mirrored on chain. The two
writes are not atomic. When the chain write fails the database row is kept,
its hash is flagged with the pending marker, and the caller gets a partial
success. `sync_certificates` later re-issues database certificates that are
missing on chain. The database is the source of truth, and revocation
differences are reported rather than repaired.

Verification reads the database row, then confirms it against the chain
when a chain backend is configured. Without one, the database alone decides.
"""

import logging
import secrets
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .anchor import is_valid_pubkey
from .chain import BatchVerification, ChainTransactionManager
from .conflicts import HashConflictResolver
from .diagnostics import CertificateDiagnostics
from .errors import (
    CertChainError,
    ChainUnavailableError,
    DuplicateCertificateIdError,
    DuplicateHashError,
    DuplicateInstitutionError,
    SignerUnavailableError,
    StoreError,
    ValidationError,
)
from .hashing import (
    build_verification_url,
    is_pending,
    is_valid_hash_format,
    mark_pending,
    strip_pending,
)
from .logging_config import audit_log
from .records import CertificateRecord, InstitutionRecord, VerificationRecord
from .security import (
    validate_certificate_id,
    validate_issued_date,
    validate_name,
    validate_string_length,
    validate_wallet,
)
from .signing import Signer
from .store import CertificateStore
from .util import constant_time_compare, now_epoch_ms, today_iso

logger = logging.getLogger(__name__)


def generate_certificate_id() -> str:
    """CERT-<epoch ms hex>-<8 random hex>, well under the 32-byte limit."""
    return f"CERT-{now_epoch_ms():X}-{secrets.token_hex(4).upper()}"


# ============================================================
# Result types
# ============================================================

@dataclass
class PartialSuccess:
    database: bool
    blockchain: bool


@dataclass
class CertificateResult:
    success: bool
    certificate: Optional[CertificateRecord] = None
    certificate_hash: Optional[str] = None
    signature: Optional[str] = None
    address: Optional[str] = None
    verification_url: Optional[str] = None
    hash_attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None  # validation|duplicate|store|chain
    partial_success: Optional[PartialSuccess] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VerificationResult:
    is_valid: bool
    certificate_id: str
    database_valid: bool = False
    blockchain_valid: Optional[bool] = None
    hash_matches: Optional[bool] = None
    is_revoked: bool = False
    verification_count: Optional[int] = None
    certificate: Optional[CertificateRecord] = None
    blockchain: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OperationResult:
    """Outcome of revoke and institution operations."""
    success: bool
    signature: Optional[str] = None
    address: Optional[str] = None
    error: Optional[str] = None
    partial_success: Optional[PartialSuccess] = None
    record: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    authority: str
    success: bool = True
    checked: int = 0
    already_synced: int = 0
    synced: List[str] = field(default_factory=list)
    repaired_pending: List[str] = field(default_factory=list)
    mismatches: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncStatus:
    authority: str
    total_database: int
    total_blockchain: Optional[int] = None
    synced: Optional[int] = None
    database_only: List[str] = field(default_factory=list)
    blockchain_only: List[str] = field(default_factory=list)
    sync_percentage: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================
# Service
# ============================================================

class UnifiedCertificateService:
    """
    Orchestrates the certificate store and the chain.

    Args:
        store: the certificate database
        chain: chain transaction manager, or None for database-only mode
        resolver: hash resolver (defaults to one over `store`)
        base_url: base for shareable verification links
        signer: the institution signer used for revocation, registration and
            chain writes when the caller passes none; works without a chain
    """

    def __init__(
        self,
        store: CertificateStore,
        chain: Optional[ChainTransactionManager] = None,
        resolver: Optional[HashConflictResolver] = None,
        base_url: str = "http://localhost:8000",
        signer: Optional[Signer] = None
    ):
        self._store = store
        self._signer = signer
        self._chain = chain
        self._resolver = resolver or HashConflictResolver(store)
        self._base_url = base_url

    @property
    def store(self) -> CertificateStore:
        return self._store

    @property
    def chain(self) -> Optional[ChainTransactionManager]:
        return self._chain

    @property
    def resolver(self) -> HashConflictResolver:
        return self._resolver

    @property
    def signer(self) -> Optional[Signer]:
        return self._chain_signer(None)

    def _chain_signer(self, signer: Optional[Signer]) -> Optional[Signer]:
        if signer is not None:
            return signer
        if self._signer is not None:
            return self._signer
        return self._chain.signer if self._chain is not None else None

    # --- creation ---

    def _validate_certificate_input(
        self,
        data: Dict[str, Any],
        signer: Optional[Signer]
    ) -> Dict[str, str]:
        cleaned = {
            "student_name": validate_name(data.get("student_name"), "student_name"),
            "roll_no": validate_string_length(data.get("roll_no"), "roll_no", max_length=50),
            "course_name": validate_name(data.get("course_name"), "course_name"),
            "grade": validate_string_length(data.get("grade"), "grade", max_length=20),
            "institution_name": validate_name(data.get("institution_name"), "institution_name"),
            "issued_by": validate_wallet(data.get("issued_by"), "issued_by"),
            "student_wallet": validate_wallet(data.get("student_wallet"), "student_wallet"),
        }
        issued_date = data.get("issued_date")
        cleaned["issued_date"] = validate_issued_date(issued_date) if issued_date else today_iso()

        certificate_id = data.get("certificate_id")
        cleaned["certificate_id"] = (
            validate_certificate_id(certificate_id) if certificate_id else generate_certificate_id()
        )

        if signer is not None and signer.public_key != cleaned["issued_by"]:
            raise ValidationError("issued_by", "must match the signing wallet")
        return cleaned

    def _chain_metadata(self, record: CertificateRecord, certificate_hash: str) -> Dict[str, Any]:
        return {
            "certificate_id": record.certificate_id,
            "student_name": record.student_name,
            "course_name": record.course_name,
            "grade": record.grade,
            "certificate_hash": certificate_hash,
            "roll_no": record.roll_no,
            "institution_name": record.institution_name,
            "student_wallet": record.student_wallet,
            "issued_date": record.issued_date,
        }

    def create_certificate(
        self,
        data: Dict[str, Any],
        signer: Optional[Signer] = None
    ) -> CertificateResult:
        """
        Create a certificate in the database and mirror it on chain.

        Steps: validate, generate a unique hash, insert (retrying once with
        a fresh salt on a duplicate hash), then issue on chain. A chain
        failure leaves the row in place with a pending-marked hash.
        """
        signer = self._chain_signer(signer)
        try:
            cleaned = self._validate_certificate_input(data, signer)
        except ValidationError as e:
            return CertificateResult(False, error=str(e), error_type="validation")

        record = CertificateRecord(**cleaned)
        fields = record.hash_fields()
        unique = self._resolver.generate_unique_hash(fields, record.certificate_id)
        record.certificate_hash = unique.certificate_hash
        attempts = unique.attempts

        try:
            try:
                stored = self._store.insert_certificate(record)
            except DuplicateHashError:
                logger.warning("Hash taken at insert for %s, retrying once", record.certificate_id)
                retry = self._resolver.generate_unique_hash(
                    fields, record.certificate_id, force_new_salt=True
                )
                record.certificate_hash = retry.certificate_hash
                attempts += retry.attempts
                stored = self._store.insert_certificate(record)
        except DuplicateCertificateIdError as e:
            return CertificateResult(False, error=str(e), error_type="duplicate")
        except StoreError as e:
            logger.error("Database insert failed for %s: %s", record.certificate_id, e)
            return CertificateResult(False, error=f"Database error: {e}", error_type="store",
                                     hash_attempts=attempts)

        try:
            self._store.increment_certificates_issued(stored.issued_by)
        except StoreError as e:
            logger.warning("Could not bump certificates_issued for %s: %s", stored.issued_by, e)

        certificate_hash = stored.certificate_hash
        url = build_verification_url(
            self._base_url, stored.certificate_id, stored.issued_by, certificate_hash
        )

        if self._chain is None or signer is None:
            # no chain write capability: database only, sync mirrors it later
            audit_log.certificate_issued(stored.certificate_id, stored.issued_by, certificate_hash)
            return CertificateResult(True, certificate=stored, certificate_hash=certificate_hash,
                                     verification_url=url, hash_attempts=attempts)

        signature = address = None
        try:
            tx = self._chain.store_certificate_with_metadata(
                self._chain_metadata(stored, certificate_hash), signer
            )
            chain_error = None if tx.success else tx.error
            signature, address = tx.signature, tx.address
        except Exception as e:
            logger.exception("Chain write raised for %s", stored.certificate_id)
            chain_error = str(e) or e.__class__.__name__

        if chain_error is None:
            audit_log.certificate_issued(stored.certificate_id, stored.issued_by,
                                         certificate_hash, signature)
            return CertificateResult(True, certificate=stored, certificate_hash=certificate_hash,
                                     signature=signature, address=address,
                                     verification_url=url, hash_attempts=attempts)

        pending = mark_pending(certificate_hash)
        try:
            self._store.update_certificate_hash(stored.certificate_id, pending)
            stored.certificate_hash = pending
        except StoreError as e:
            logger.error("Could not flag %s as pending: %s", stored.certificate_id, e)

        audit_log.partial_success(stored.certificate_id, True, False, chain_error)
        return CertificateResult(
            False,
            certificate=stored,
            certificate_hash=certificate_hash,
            address=address,
            verification_url=url,
            hash_attempts=attempts,
            error=f"Blockchain storage failed: {chain_error}",
            error_type="chain",
            partial_success=PartialSuccess(database=True, blockchain=False),
        )

    # --- verification ---

    def verify_certificate(
        self,
        certificate_id: str,
        provided_hash: Optional[str] = None,
        institution: Optional[str] = None,
        signer: Optional[Signer] = None,
        verifier: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> VerificationResult:
        """
        Verify a certificate by id, optionally against a presented hash.

        Missing or revoked rows, and rows whose issuer differs from
        `institution`, fail without touching the chain, the verification
        counter or the verification log. Otherwise the counter is
        incremented and the verification logged (with the optional
        `verifier` wallet and client details) before the chain
        cross-check. With an explicit `signer`, a valid result is also
        recorded on chain.
        """
        if provided_hash is not None and not is_valid_hash_format(provided_hash):
            return VerificationResult(False, certificate_id, error="Malformed certificate hash")
        if verifier is not None and not is_valid_pubkey(verifier):
            return VerificationResult(False, certificate_id, error="Malformed verifier wallet")

        try:
            record = self._store.get_certificate(certificate_id)
        except StoreError as e:
            logger.error("Verification read failed for %s: %s", certificate_id, e)
            return VerificationResult(False, certificate_id, error=f"Database error: {e}")

        if record is None:
            audit_log.certificate_verified(certificate_id, False, "not found")
            return VerificationResult(False, certificate_id, error="Certificate not found")

        if record.is_revoked:
            audit_log.certificate_verified(certificate_id, False, "revoked")
            return VerificationResult(False, certificate_id, is_revoked=True, certificate=record,
                                      verification_count=record.verification_count,
                                      error="Certificate has been revoked")

        if institution and institution != record.issued_by:
            audit_log.certificate_verified(certificate_id, False, "issuer mismatch")
            return VerificationResult(False, certificate_id, certificate=record,
                                      error="Certificate was not issued by this institution")

        result = VerificationResult(False, certificate_id, database_valid=True, certificate=record)
        try:
            result.verification_count = self._store.increment_verification_count(certificate_id)
            record.verification_count = result.verification_count
        except StoreError as e:
            logger.warning("Could not count verification of %s: %s", certificate_id, e)
        try:
            self._store.record_verification(VerificationRecord(
                certificate_id=record.id,
                verifier_wallet=verifier,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
        except StoreError as e:
            logger.warning("Could not log verification of %s: %s", certificate_id, e)

        expected_hash = strip_pending(record.certificate_hash)
        if self._chain is not None:
            lookup = self._chain.get_certificate_with_metadata(certificate_id, record.issued_by)
            if lookup.found:
                chain_cert = lookup.certificate
                result.blockchain = chain_cert.to_dict()
                result.blockchain_valid = not chain_cert.is_revoked
                if chain_cert.is_revoked:
                    result.error = "Certificate is revoked on chain"
                if chain_cert.certificate_hash:
                    expected_hash = chain_cert.certificate_hash
            else:
                result.blockchain_valid = False
                result.error = lookup.error or "Certificate not found on chain"

        if provided_hash is not None:
            result.hash_matches = constant_time_compare(expected_hash, provided_hash)
            if not result.hash_matches and result.error is None:
                result.error = "Certificate hash does not match"

        result.is_valid = (
            result.database_valid
            and result.hash_matches is not False
            and result.blockchain_valid is not False
        )

        if result.is_valid and self._chain is not None and signer is not None:
            tx = self._chain.verify_certificate(certificate_id, record.issued_by, signer)
            if tx.success:
                result.signature = tx.signature
            else:
                logger.warning("On-chain verification record for %s failed: %s",
                               certificate_id, tx.error)

        audit_log.certificate_verified(certificate_id, result.is_valid, result.error)
        return result

    # --- revocation ---

    def revoke_certificate(
        self,
        certificate_id: str,
        signer: Optional[Signer] = None,
        reason: Optional[str] = None
    ) -> OperationResult:
        """
        Revoke in the database, then on chain. Only the issuing wallet may
        revoke, and a revoked certificate cannot be revoked again.
        """
        signer = self._chain_signer(signer)
        if signer is None:
            raise SignerUnavailableError("revocation requires the issuer's signer")

        try:
            record = self._store.get_certificate(certificate_id)
            if record is None:
                return OperationResult(False, error="Certificate not found")
            if record.issued_by != signer.public_key:
                audit_log.security_event("revoke_not_issuer", severity="medium",
                                         certificate_id=certificate_id, wallet=signer.public_key)
                return OperationResult(False, error="Only the issuing institution can revoke")
            if not self._store.mark_revoked(certificate_id):
                return OperationResult(False, error="Certificate already revoked")
        except StoreError as e:
            return OperationResult(False, error=f"Database error: {e}")

        if self._chain is None:
            audit_log.certificate_revoked(certificate_id, signer.public_key, reason)
            return OperationResult(True)

        try:
            tx = self._chain.revoke_certificate(certificate_id, signer)
        except Exception as e:
            logger.exception("Chain revoke raised for %s", certificate_id)
            tx = None
            chain_error = str(e)
        else:
            chain_error = None if tx.success else tx.error

        audit_log.certificate_revoked(certificate_id, signer.public_key, reason,
                                      blockchain=chain_error is None)
        if chain_error is None:
            return OperationResult(True, signature=tx.signature, address=tx.address)
        return OperationResult(False, error=f"Blockchain revoke failed: {chain_error}",
                               partial_success=PartialSuccess(database=True, blockchain=False))

    # --- reconciliation ---

    def sync_certificates(self, signer: Optional[Signer] = None) -> SyncResult:
        """
        Re-issue on chain every database certificate of the signer that the
        chain is missing, and clear pending markers once a chain copy exists.
        Revoked-flag differences are reported only.
        """
        if self._chain is None:
            raise ChainUnavailableError("sync requires a chain backend")
        signer = self._chain_signer(signer)
        if signer is None:
            raise SignerUnavailableError("sync requires the institution signer")

        result = SyncResult(authority=signer.public_key)
        if self._chain.get_global_state() is None:
            result.success = False
            result.error = "Blockchain system not initialized"
            return result

        try:
            records, _ = self._store.list_certificates(issued_by=signer.public_key)
        except StoreError as e:
            result.success = False
            result.error = f"Database error: {e}"
            return result

        for record in records:
            result.checked += 1
            try:
                self._sync_one(record, signer, result)
            except CertChainError as e:
                result.errors.append({"certificate_id": record.certificate_id, "error": str(e)})

        result.success = not result.errors
        audit_log.sync_completed(signer.public_key, len(result.synced),
                                 len(result.mismatches), len(result.errors))
        return result

    def _sync_one(self, record: CertificateRecord, signer: Signer, result: SyncResult) -> None:
        lookup = self._chain.get_certificate_with_metadata(record.certificate_id, signer.public_key)
        if lookup.error:
            result.errors.append({"certificate_id": record.certificate_id, "error": lookup.error})
            return

        if lookup.found:
            if lookup.certificate.is_revoked != record.is_revoked:
                result.mismatches.append({
                    "certificate_id": record.certificate_id,
                    "type": "revocation",
                    "database_revoked": record.is_revoked,
                    "blockchain_revoked": lookup.certificate.is_revoked,
                })
            else:
                result.already_synced += 1
            if is_pending(record.certificate_hash):
                self._store.update_certificate_hash(
                    record.certificate_id, strip_pending(record.certificate_hash)
                )
                result.repaired_pending.append(record.certificate_id)
            return

        if record.is_revoked:
            result.mismatches.append({
                "certificate_id": record.certificate_id,
                "type": "missing_revoked",
                "database_revoked": True,
                "blockchain_revoked": None,
            })
            return

        clean_hash = strip_pending(record.certificate_hash)
        tx = self._chain.store_certificate_with_metadata(
            self._chain_metadata(record, clean_hash), signer
        )
        if not tx.success:
            result.errors.append({"certificate_id": record.certificate_id, "error": tx.error})
            return
        result.synced.append(record.certificate_id)
        if is_pending(record.certificate_hash):
            self._store.update_certificate_hash(record.certificate_id, clean_hash)
            result.repaired_pending.append(record.certificate_id)

    def sync_status(self, issued_by: str) -> SyncStatus:
        """Read-only comparison of database and chain certificate ids."""
        if self._chain is None:
            raise ChainUnavailableError("sync status requires a chain backend")
        records, _ = self._store.list_certificates(issued_by=issued_by)
        db_ids = {r.certificate_id for r in records}
        accounts = self._chain.get_institution_certificates(issued_by)
        if accounts is None:
            return SyncStatus(authority=issued_by, total_database=len(db_ids),
                              error="Could not read certificates from chain")
        chain_ids = {a.certificate_id for a in accounts}
        synced = db_ids & chain_ids
        percentage = round(len(synced) / len(db_ids) * 100, 2) if db_ids else 100.0
        return SyncStatus(
            authority=issued_by,
            total_database=len(db_ids),
            total_blockchain=len(chain_ids),
            synced=len(synced),
            database_only=sorted(db_ids - chain_ids),
            blockchain_only=sorted(chain_ids - db_ids),
            sync_percentage=percentage,
        )

    # --- queries ---

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        return self._store.get_certificate(certificate_id)

    def list_certificates(
        self,
        issued_by: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        include_chain_status: bool = True
    ) -> Dict[str, Any]:
        records, total = self._store.list_certificates(issued_by, limit, offset)
        rows = []
        for record in records:
            row = record.to_dict()
            if is_pending(record.certificate_hash):
                row["blockchain_status"] = "pending"
            elif self._chain is None or not include_chain_status:
                row["blockchain_status"] = "unknown"
            else:
                lookup = self._chain.get_certificate_with_metadata(
                    record.certificate_id, record.issued_by
                )
                if lookup.error:
                    row["blockchain_status"] = "unknown"
                else:
                    row["blockchain_status"] = "on_chain" if lookup.found else "missing"
            rows.append(row)
        return {"certificates": rows, "total": total, "limit": limit, "offset": offset}

    def verification_history(self, certificate_id: str) -> Optional[List[VerificationRecord]]:
        """Logged verifications of a certificate, newest first; None if it does not exist."""
        record = self._store.get_certificate(certificate_id)
        if record is None:
            return None
        return self._store.verification_history(record.id)

    def resolve_hash_conflict(self, certificate_id: str) -> Dict[str, Any]:
        return self._resolver.resolve_hash_conflict(certificate_id)

    def batch_verify_certificate_hashes(self, items: List[Dict[str, str]]) -> BatchVerification:
        """
        Sort (certificate_id, certificate_hash, institution) items into
        verified, failed, revoked and not_found without side effects.
        """
        return CertificateDiagnostics(self._store, self._chain).batch_verify(items)

    # --- institutions ---

    def register_institution(
        self,
        name: str,
        location: str,
        signer: Optional[Signer] = None
    ) -> OperationResult:
        signer = self._chain_signer(signer)
        if signer is None:
            raise SignerUnavailableError("registration requires the institution signer")
        try:
            name = validate_name(name, "name")
            location = validate_name(location, "location")
        except ValidationError as e:
            return OperationResult(False, error=str(e))

        try:
            record = self._store.insert_institution(
                InstitutionRecord(name=name, location=location, authority_wallet=signer.public_key)
            )
        except DuplicateInstitutionError as e:
            return OperationResult(False, error=str(e))
        except StoreError as e:
            return OperationResult(False, error=f"Database error: {e}")

        if self._chain is None:
            return OperationResult(True, record=record)

        tx = self._chain.setup_institution(name, location, signer)
        if tx.success:
            return OperationResult(True, signature=tx.signature, address=tx.address, record=record)
        audit_log.partial_success(signer.public_key, True, False, tx.error)
        return OperationResult(False, error=f"Blockchain registration failed: {tx.error}",
                               partial_success=PartialSuccess(database=True, blockchain=False),
                               record=record)

    def verify_institution(
        self,
        authority: str,
        verified_by: str,
        admin_wallets: List[str],
        signer: Optional[Signer] = None
    ) -> OperationResult:
        """
        Mark an institution verified. `verified_by` must be in `admin_wallets`.
        The chain write is signed by `signer` (default: the service signer),
        which the program requires to be the global authority.
        """
        if verified_by not in admin_wallets:
            audit_log.security_event("institution_verify_not_admin", severity="high",
                                     wallet=verified_by, authority=authority)
            return OperationResult(False, error="Not authorized to verify institutions")

        try:
            if self._store.get_institution(authority) is None:
                return OperationResult(False, error="Institution not found")
            if not self._store.mark_institution_verified(authority, verified_by):
                return OperationResult(False, error="Institution already verified")
            record = self._store.get_institution(authority)
        except StoreError as e:
            return OperationResult(False, error=f"Database error: {e}")

        signer = self._chain_signer(signer)
        if self._chain is None or signer is None:
            return OperationResult(True, record=record)

        tx = self._chain.verify_institution(authority, signer)
        if tx.success:
            return OperationResult(True, signature=tx.signature, address=tx.address, record=record)
        return OperationResult(False, error=f"Blockchain verification failed: {tx.error}",
                               partial_success=PartialSuccess(database=True, blockchain=False),
                               record=record)

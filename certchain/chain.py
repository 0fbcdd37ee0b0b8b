"""
Chain transaction manager.

`ChainProgram` is the interface to the external certificate registry
program (see `certchain.solana_rpc` and `certchain.memory_chain`).
Program adapters raise `ChainError`; `ChainTransactionManager` wraps every
call in a `TransactionResult` and never raises across its own boundary,
except `SignerUnavailableError` when a write is attempted without a signer.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from .anchor import (
    CertificateAccount,
    GlobalStateAccount,
    InstitutionAccount,
    certificate_address_for_authority,
    check_issue_limits,
    find_institution_address,
)
from .errors import ChainError, SignerUnavailableError
from .hashing import is_valid_hash_format
from .signing import Signer
from .util import constant_time_compare

logger = logging.getLogger(__name__)

DEFAULT_BATCH_DELAY = 1.0


class ChainProgram(ABC):
    """
    Abstract interface to the on-chain certificate registry.

    Write methods return the transaction signature and raise `ChainError`
    when the program rejects the call or the network fails. Read methods
    return None for missing accounts.
    """

    @property
    @abstractmethod
    def program_id(self) -> str:
        pass

    @abstractmethod
    def initialize(self, signer: Signer) -> str:
        """Create the global state; the signer becomes the global authority."""

    @abstractmethod
    def register_institution(self, signer: Signer, name: str, location: str) -> str:
        pass

    @abstractmethod
    def verify_institution(self, signer: Signer, authority: str) -> str:
        """Mark the institution owned by `authority` verified (global authority only)."""

    @abstractmethod
    def issue_certificate(
        self,
        signer: Signer,
        student_name: str,
        course_name: str,
        grade: str,
        certificate_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        pass

    @abstractmethod
    def verify_certificate(self, signer: Signer, issuer: str, certificate_id: str) -> str:
        """Record a verification of the certificate issued by `issuer`."""

    @abstractmethod
    def revoke_certificate(self, signer: Signer, certificate_id: str) -> str:
        """Revoke a certificate issued by the signer's institution."""

    @abstractmethod
    def fetch_global_state(self) -> Optional[GlobalStateAccount]:
        pass

    @abstractmethod
    def fetch_institution(self, authority: str) -> Optional[InstitutionAccount]:
        pass

    @abstractmethod
    def fetch_certificate(self, issuer: str, certificate_id: str) -> Optional[CertificateAccount]:
        pass

    @abstractmethod
    def fetch_certificate_metadata(self, issuer: str, certificate_id: str) -> Optional[Dict[str, Any]]:
        """Metadata attached when the certificate was issued, if any."""

    @abstractmethod
    def fetch_institution_certificates(self, authority: str) -> List[CertificateAccount]:
        pass


# ============================================================
# Result types
# ============================================================

@dataclass
class TransactionResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    address: Optional[str] = None
    certificate_hash: Optional[str] = None
    code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IssueParams:
    certificate_id: str
    student_name: str
    course_name: str
    grade: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssueParams":
        core = ("certificate_id", "student_name", "course_name", "grade")
        return cls(
            certificate_id=str(data.get("certificate_id") or ""),
            student_name=str(data.get("student_name") or ""),
            course_name=str(data.get("course_name") or ""),
            grade=str(data.get("grade") or ""),
            metadata={k: v for k, v in data.items() if k not in core},
        )


@dataclass
class ChainCertificate:
    """A certificate account read from chain, with its issuance metadata."""
    address: str
    issuer: str
    account: CertificateAccount
    metadata: Optional[Dict[str, Any]] = None

    @property
    def certificate_hash(self) -> Optional[str]:
        if not self.metadata:
            return None
        return self.metadata.get("certificate_hash")

    @property
    def is_revoked(self) -> bool:
        return self.account.is_revoked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "issuer": self.issuer,
            **self.account.to_dict(),
            "certificate_hash": self.certificate_hash,
            "metadata": self.metadata,
        }


@dataclass
class CertificateLookup:
    found: bool
    certificate: Optional[ChainCertificate] = None
    error: Optional[str] = None


@dataclass
class BatchVerification:
    verified: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    revoked: List[Dict[str, Any]] = field(default_factory=list)
    not_found: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["summary"] = {k: len(v) for k, v in out.items()}
        return out


# ============================================================
# Manager
# ============================================================

class ChainTransactionManager:
    """
    Issues, verifies and revokes certificates against a `ChainProgram`.

    Args:
        program: the chain program adapter
        signer: default signer for write operations
        batch_delay: seconds to wait between operations in a batch
        sleep: injectable sleep function
    """

    def __init__(
        self,
        program: ChainProgram,
        signer: Optional[Signer] = None,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._program = program
        self._signer = signer
        self._batch_delay = batch_delay
        self._sleep = sleep

    @property
    def program(self) -> ChainProgram:
        return self._program

    @property
    def signer(self) -> Optional[Signer]:
        return self._signer

    def _require_signer(self, signer: Optional[Signer]) -> Signer:
        signer = signer or self._signer
        if signer is None:
            raise SignerUnavailableError("a signer is required for chain writes")
        return signer

    def certificate_address(self, issuer: str, certificate_id: str) -> str:
        return str(certificate_address_for_authority(issuer, certificate_id, self._program.program_id))

    # --- writes ---

    def issue_certificate(self, params: IssueParams, signer: Optional[Signer] = None) -> TransactionResult:
        """Issue one certificate. Arguments are checked before any network call."""
        signer = self._require_signer(signer)
        certificate_hash = params.metadata.get("certificate_hash")

        try:
            check_issue_limits(params.certificate_id, params.student_name,
                               params.course_name, params.grade)
            if not params.certificate_id or not params.student_name or not params.course_name:
                raise ValueError("certificate_id, student_name and course_name are required")
            address = self.certificate_address(signer.public_key, params.certificate_id)
        except ValueError as e:
            return TransactionResult(False, error=str(e), certificate_hash=certificate_hash)

        try:
            existing = self._program.fetch_certificate(signer.public_key, params.certificate_id)
        except ChainError as e:
            logger.warning("Existence check for %s failed: %s", params.certificate_id, e)
            existing = None
        if existing is not None:
            return TransactionResult(
                False,
                error=f"Certificate ID {params.certificate_id} already exists on chain",
                address=address,
                certificate_hash=certificate_hash,
            )

        try:
            signature = self._program.issue_certificate(
                signer,
                params.student_name,
                params.course_name,
                params.grade,
                params.certificate_id,
                metadata=params.metadata or None,
            )
        except ChainError as e:
            logger.error("Issue of %s failed: %s", params.certificate_id, e)
            return TransactionResult(False, error=str(e), address=address,
                                     certificate_hash=certificate_hash, code=e.code)

        logger.info("Issued %s on chain: %s", params.certificate_id, signature)
        return TransactionResult(True, signature=signature, address=address,
                                 certificate_hash=certificate_hash)

    def store_certificate_with_metadata(
        self,
        metadata: Dict[str, Any],
        signer: Optional[Signer] = None
    ) -> TransactionResult:
        """Issue a certificate with the full database record attached as metadata."""
        return self.issue_certificate(IssueParams.from_dict(metadata), signer)

    def verify_certificate(
        self,
        certificate_id: str,
        issuer: str,
        signer: Optional[Signer] = None
    ) -> TransactionResult:
        signer = self._require_signer(signer)
        try:
            address = self.certificate_address(issuer, certificate_id)
            signature = self._program.verify_certificate(signer, issuer, certificate_id)
        except ValueError as e:
            return TransactionResult(False, error=str(e))
        except ChainError as e:
            return TransactionResult(False, error=str(e), code=e.code)
        return TransactionResult(True, signature=signature, address=address)

    def revoke_certificate(self, certificate_id: str, signer: Optional[Signer] = None) -> TransactionResult:
        signer = self._require_signer(signer)
        try:
            address = self.certificate_address(signer.public_key, certificate_id)
            signature = self._program.revoke_certificate(signer, certificate_id)
        except ValueError as e:
            return TransactionResult(False, error=str(e))
        except ChainError as e:
            logger.error("Revoke of %s failed: %s", certificate_id, e)
            return TransactionResult(False, error=str(e), code=e.code)
        return TransactionResult(True, signature=signature, address=address)

    def initialize_system(self, signer: Optional[Signer] = None) -> TransactionResult:
        signer = self._require_signer(signer)
        try:
            if self._program.fetch_global_state() is not None:
                return TransactionResult(True, error="already initialized")
            signature = self._program.initialize(signer)
        except ChainError as e:
            return TransactionResult(False, error=str(e), code=e.code)
        return TransactionResult(True, signature=signature)

    def register_institution(
        self,
        name: str,
        location: str,
        signer: Optional[Signer] = None
    ) -> TransactionResult:
        signer = self._require_signer(signer)
        address = str(find_institution_address(signer.public_key, self._program.program_id)[0])
        try:
            signature = self._program.register_institution(signer, name, location)
        except ChainError as e:
            return TransactionResult(False, error=str(e), address=address, code=e.code)
        return TransactionResult(True, signature=signature, address=address)

    def verify_institution(self, authority: str, signer: Optional[Signer] = None) -> TransactionResult:
        signer = self._require_signer(signer)
        try:
            address = str(find_institution_address(authority, self._program.program_id)[0])
            signature = self._program.verify_institution(signer, authority)
        except ValueError as e:
            return TransactionResult(False, error=str(e))
        except ChainError as e:
            return TransactionResult(False, error=str(e), code=e.code)
        return TransactionResult(True, signature=signature, address=address)

    def setup_institution(
        self,
        name: str,
        location: str,
        signer: Optional[Signer] = None
    ) -> TransactionResult:
        """Initialize the system if needed, then register the signer's institution."""
        signer = self._require_signer(signer)
        init = self.initialize_system(signer)
        if not init.success:
            return init
        try:
            if self._program.fetch_institution(signer.public_key) is not None:
                address = str(find_institution_address(signer.public_key, self._program.program_id)[0])
                return TransactionResult(True, error="already registered", address=address)
        except ChainError as e:
            logger.warning("Institution lookup failed, registering anyway: %s", e)
        return self.register_institution(name, location, signer)

    def batch_issue_certificates(
        self,
        params_list: List[IssueParams],
        signer: Optional[Signer] = None
    ) -> List[TransactionResult]:
        """
        Issue certificates one at a time with a fixed delay between them.

        A failure does not stop the batch and earlier successes are kept.
        The result list is index-aligned with `params_list`.
        """
        signer = self._require_signer(signer)
        results = []
        for index, params in enumerate(params_list):
            if index > 0 and self._batch_delay > 0:
                self._sleep(self._batch_delay)
            results.append(self.issue_certificate(params, signer))
        ok = sum(1 for r in results if r.success)
        logger.info("Batch issue finished: %d/%d succeeded", ok, len(results))
        return results

    # --- reads ---

    def get_certificate_with_metadata(self, certificate_id: str, issuer: str) -> CertificateLookup:
        try:
            address = self.certificate_address(issuer, certificate_id)
            account = self._program.fetch_certificate(issuer, certificate_id)
            if account is None:
                return CertificateLookup(found=False)
            metadata = self._program.fetch_certificate_metadata(issuer, certificate_id)
        except (ChainError, ValueError) as e:
            logger.warning("Chain lookup of %s failed: %s", certificate_id, e)
            return CertificateLookup(found=False, error=str(e))
        return CertificateLookup(True, ChainCertificate(address, issuer, account, metadata))

    def get_certificate(self, certificate_id: str, issuer: str) -> Optional[ChainCertificate]:
        return self.get_certificate_with_metadata(certificate_id, issuer).certificate

    def verify_certificate_hash(
        self,
        certificate_id: str,
        issuer: str,
        certificate_hash: str
    ) -> Dict[str, Any]:
        """Compare a hash against the one recorded on chain at issuance."""
        if not is_valid_hash_format(certificate_hash):
            return {"is_valid": False, "status": "failed", "reason": "Malformed hash"}
        lookup = self.get_certificate_with_metadata(certificate_id, issuer)
        if lookup.error:
            return {"is_valid": False, "status": "failed", "reason": lookup.error}
        if not lookup.found:
            return {"is_valid": False, "status": "not_found", "reason": "Certificate not found on chain"}
        cert = lookup.certificate
        if cert.is_revoked:
            return {"is_valid": False, "status": "revoked", "reason": "Certificate has been revoked",
                    "certificate": cert.to_dict()}
        if not constant_time_compare(cert.certificate_hash or "", certificate_hash):
            return {"is_valid": False, "status": "failed", "reason": "Hash mismatch",
                    "certificate": cert.to_dict()}
        return {"is_valid": True, "status": "verified", "certificate": cert.to_dict()}

    def batch_verify_certificate_hashes(self, items: List[Dict[str, str]]) -> BatchVerification:
        """
        Sort (certificate_id, certificate_hash, institution) items into
        verified, failed, revoked and not_found.
        """
        result = BatchVerification()
        for item in items:
            outcome = self.verify_certificate_hash(
                item.get("certificate_id", ""),
                item.get("institution", ""),
                item.get("certificate_hash", ""),
            )
            entry = {**item, "reason": outcome.get("reason")}
            getattr(result, outcome["status"]).append(entry)
        return result

    def get_institution_certificates(self, authority: str) -> Optional[List[CertificateAccount]]:
        """Certificates issued by `authority`, or None when the chain cannot be read."""
        try:
            return self._program.fetch_institution_certificates(authority)
        except (ChainError, ValueError) as e:
            logger.warning("Listing chain certificates for %s failed: %s", authority, e)
            return None

    def get_global_state(self) -> Optional[GlobalStateAccount]:
        try:
            return self._program.fetch_global_state()
        except ChainError as e:
            logger.warning("Global state lookup failed: %s", e)
            return None

    def get_institution(self, authority: str) -> Optional[InstitutionAccount]:
        try:
            return self._program.fetch_institution(authority)
        except (ChainError, ValueError) as e:
            logger.warning("Institution lookup for %s failed: %s", authority, e)
            return None

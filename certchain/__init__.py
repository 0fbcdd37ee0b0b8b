"""
CertChain: certificate issuance and verification over a database and a
Solana certificate registry program.

The database is the source of truth. Each certificate carries a salted
SHA-256 hash of its fields that is unique across the store, and is mirrored
on chain at an address derived from the issuing institution and the
certificate id. When the chain write fails the row is kept and flagged, and
`sync_certificates` repairs it later.

Usage:
    from certchain import (
        SqliteCertificateStore,
        InMemoryChainProgram,
        ChainTransactionManager,
        KeypairSigner,
        UnifiedCertificateService,
    )

    store = SqliteCertificateStore("data/certchain.db")
    store.init_db()
    signer = KeypairSigner.generate()
    chain = ChainTransactionManager(InMemoryChainProgram(), signer=signer)
    chain.setup_institution("Example University", "Springfield")

    service = UnifiedCertificateService(store, chain)
    result = service.create_certificate({
        "student_name": "Ada Lovelace",
        "roll_no": "R-001",
        "course_name": "Analytical Engines",
        "grade": "A",
        "institution_name": "Example University",
        "issued_by": signer.public_key,
        "student_wallet": "<student wallet>",
    })
    check = service.verify_certificate(result.certificate.certificate_id,
                                       provided_hash=result.certificate_hash)
"""

__version__ = "1.0.0"

from .errors import (
    CertChainError,
    ValidationError,
    StoreError,
    DuplicateHashError,
    DuplicateCertificateIdError,
    DuplicateInstitutionError,
    RecordNotFoundError,
    ChainError,
    SignerUnavailableError,
    ChainUnavailableError,
)

from .hashing import (
    CertificateFields,
    HashComparator,
    generate_hash,
    generate_deterministic_hash,
    is_valid_hash_format,
    verify_certificate_hash,
    build_verification_url,
    build_qr_payload,
    build_merkle_proof,
    verify_merkle_proof,
    mark_pending,
    is_pending,
    strip_pending,
    PENDING_SUFFIX,
)

from .records import CertificateRecord, InstitutionRecord
from .store import CertificateStore, SqliteCertificateStore
from .conflicts import HashConflictResolver, UniqueHash, HashConflictReport, ConflictResolution
from .signing import Signer, KeypairSigner, CallbackSigner, load_signer, verify_signature

from .chain import (
    ChainProgram,
    ChainTransactionManager,
    TransactionResult,
    IssueParams,
    ChainCertificate,
    CertificateLookup,
    BatchVerification,
)
from .memory_chain import InMemoryChainProgram

from .service import (
    UnifiedCertificateService,
    CertificateResult,
    VerificationResult,
    OperationResult,
    PartialSuccess,
    SyncResult,
    SyncStatus,
    generate_certificate_id,
)
from .diagnostics import CertificateDiagnostics, integrity_check

__all__ = [
    # Errors
    "CertChainError",
    "ValidationError",
    "StoreError",
    "DuplicateHashError",
    "DuplicateCertificateIdError",
    "DuplicateInstitutionError",
    "RecordNotFoundError",
    "ChainError",
    "SignerUnavailableError",
    "ChainUnavailableError",
    # Hashing
    "CertificateFields",
    "HashComparator",
    "generate_hash",
    "generate_deterministic_hash",
    "is_valid_hash_format",
    "verify_certificate_hash",
    "build_verification_url",
    "build_qr_payload",
    "build_merkle_proof",
    "verify_merkle_proof",
    "mark_pending",
    "is_pending",
    "strip_pending",
    "PENDING_SUFFIX",
    # Store
    "CertificateRecord",
    "InstitutionRecord",
    "CertificateStore",
    "SqliteCertificateStore",
    # Conflicts
    "HashConflictResolver",
    "UniqueHash",
    "HashConflictReport",
    "ConflictResolution",
    # Signing
    "Signer",
    "KeypairSigner",
    "CallbackSigner",
    "load_signer",
    "verify_signature",
    # Chain
    "ChainProgram",
    "ChainTransactionManager",
    "TransactionResult",
    "IssueParams",
    "ChainCertificate",
    "CertificateLookup",
    "BatchVerification",
    "InMemoryChainProgram",
    # Service
    "UnifiedCertificateService",
    "CertificateResult",
    "VerificationResult",
    "OperationResult",
    "PartialSuccess",
    "SyncResult",
    "SyncStatus",
    "generate_certificate_id",
    # Diagnostics
    "CertificateDiagnostics",
    "integrity_check",
]

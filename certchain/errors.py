"""
Exception taxonomy for CertChain.

Validation errors are raised before any I/O. Store and chain adapters raise
their own error types; the transaction manager and the certificate service
convert them into result objects. Only a missing signing capability or a
missing chain backend propagates to callers.
"""

from typing import Optional


class CertChainError(Exception):
    """Base class for all CertChain errors."""


class ValidationError(CertChainError):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class StoreError(CertChainError):
    """Certificate store connectivity or query failure."""


class DuplicateHashError(StoreError):
    """Unique constraint violation on certificates.certificate_hash."""
    def __init__(self, certificate_hash: str):
        self.certificate_hash = certificate_hash
        super().__init__(f"duplicate certificate_hash {certificate_hash}")


class DuplicateCertificateIdError(StoreError):
    """Unique constraint violation on certificates.certificate_id."""
    def __init__(self, certificate_id: str):
        self.certificate_id = certificate_id
        super().__init__(f"certificate_id {certificate_id!r} already exists")


class DuplicateInstitutionError(StoreError):
    """An institution is already registered for this authority."""


class RecordNotFoundError(StoreError):
    """The requested record does not exist."""


class ChainError(CertChainError):
    """A chain program call was rejected or could not be completed."""
    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class SignerUnavailableError(CertChainError):
    """A state-changing chain call was attempted without a signer."""


class ChainUnavailableError(CertChainError):
    """The operation needs a chain backend and none is configured."""

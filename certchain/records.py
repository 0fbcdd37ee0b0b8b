"""
Database record types for certificates and institutions.
"""

from dataclasses import dataclass, asdict, fields as dc_fields
from typing import Any, Dict, Optional

from .hashing import CertificateFields

CERTIFICATE_COLUMNS = (
    "id", "certificate_id", "student_name", "roll_no", "course_name", "grade",
    "institution_name", "issued_by", "student_wallet", "issued_date",
    "certificate_hash", "is_revoked", "verification_count",
    "created_at", "updated_at",
)

INSTITUTION_COLUMNS = (
    "id", "name", "location", "authority_wallet", "is_verified",
    "verified_by", "verified_at", "certificates_issued",
    "created_at", "updated_at",
)

VERIFICATION_COLUMNS = (
    "id", "certificate_id", "verifier_wallet", "verified_at", "ip_address", "user_agent",
)


def _from_mapping(cls, data: Dict[str, Any]):
    known = {f.name for f in dc_fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CertificateRecord:
    certificate_id: str
    student_name: str
    roll_no: str
    course_name: str
    grade: str
    institution_name: str
    issued_by: str
    student_wallet: str
    issued_date: str
    certificate_hash: str = ""
    is_revoked: bool = False
    verification_count: int = 0
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.is_revoked = bool(self.is_revoked)
        self.verification_count = int(self.verification_count or 0)

    def hash_fields(self) -> CertificateFields:
        """The subset of this record bound by its hash."""
        return CertificateFields(
            certificate_id=self.certificate_id,
            student_name=self.student_name,
            student_wallet=self.student_wallet,
            course_name=self.course_name,
            grade=self.grade,
            institution_name=self.institution_name,
            issued_by=self.issued_by,
            issued_date=self.issued_date,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        return _from_mapping(cls, data)


@dataclass
class InstitutionRecord:
    name: str
    location: str
    authority_wallet: str
    is_verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    certificates_issued: int = 0
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.is_verified = bool(self.is_verified)
        self.certificates_issued = int(self.certificates_issued or 0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstitutionRecord":
        return _from_mapping(cls, data)


@dataclass
class VerificationRecord:
    """One row of the certificate_verifications log; `certificate_id` is the certificate row id."""
    certificate_id: int
    verifier_wallet: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: Optional[int] = None
    verified_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationRecord":
        return _from_mapping(cls, data)

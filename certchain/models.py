from pydantic import BaseModel, Field
from typing import List, Optional


class CertificateCreate(BaseModel):
    student_name: str
    roll_no: str
    course_name: str
    grade: str
    institution_name: str
    issued_by: str
    student_wallet: str
    issued_date: Optional[str] = None
    certificate_id: Optional[str] = None


class RevokeRequest(BaseModel):
    reason: Optional[str] = None


class BatchVerifyItem(BaseModel):
    certificate_id: str
    certificate_hash: str
    institution: Optional[str] = None


class BatchVerifyRequest(BaseModel):
    items: List[BatchVerifyItem] = Field(default_factory=list, max_length=500)


class InstitutionCreate(BaseModel):
    name: str
    location: str


class ResolveConflictRequest(BaseModel):
    certificate_id: Optional[str] = None

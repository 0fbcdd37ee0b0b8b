"""
Supabase (PostgREST) implementation of the certificate store.

The supabase client is imported lazily so the package works without it
when the sqlite store is used.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import (
    StoreError,
    DuplicateHashError,
    DuplicateCertificateIdError,
    DuplicateInstitutionError,
    RecordNotFoundError,
)
from .records import CertificateRecord, InstitutionRecord, VerificationRecord
from .store import CertificateStore, REQUIRED_COLUMNS
from .util import utc_now_iso

logger = logging.getLogger(__name__)

# PostgreSQL unique_violation
UNIQUE_VIOLATION = "23505"


def _error_text(exc: Exception) -> str:
    parts = [str(getattr(exc, attr, "") or "") for attr in ("message", "details")]
    return " ".join(p for p in parts if p) or str(exc)


def _is_unique_violation(exc: Exception) -> bool:
    return str(getattr(exc, "code", "")) == UNIQUE_VIOLATION or "duplicate key" in str(exc)


class SupabaseCertificateStore(CertificateStore):
    """
    Store backed by the Supabase `certificates`, `institutions`,
    `certificate_verifications` and `students` tables.

    Accepts either an existing client (anything exposing `.table(name)`)
    or a URL and key to build one.
    """

    def __init__(self, url: str = "", key: str = "", client: Any = None):
        if client is None:
            if not url or not key:
                raise StoreError("SUPABASE_URL and SUPABASE_KEY are required")
            try:
                from supabase import create_client
            except ImportError:
                raise RuntimeError("supabase is required for the Supabase store")
            client = create_client(url, key)
        self._client = client

    def _table(self, name: str):
        return self._client.table(name)

    def _execute(self, query, context: str):
        try:
            return query.execute()
        except Exception as e:
            raise StoreError(f"{context}: {_error_text(e)}") from e

    # --- certificates ---

    def insert_certificate(self, record: CertificateRecord) -> CertificateRecord:
        now = utc_now_iso()
        row = record.to_dict()
        row.pop("id")
        row["created_at"] = record.created_at or now
        row["updated_at"] = now
        try:
            resp = self._table("certificates").insert(row).execute()
        except Exception as e:
            if _is_unique_violation(e):
                text = _error_text(e)
                if "certificate_hash" in text:
                    raise DuplicateHashError(record.certificate_hash) from e
                if "certificate_id" in text:
                    raise DuplicateCertificateIdError(record.certificate_id) from e
            raise StoreError(f"insert certificate: {_error_text(e)}") from e
        if not resp.data:
            raise StoreError("insert certificate: no row returned")
        return CertificateRecord.from_dict(resp.data[0])

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        resp = self._execute(
            self._table("certificates").select("*").eq("certificate_id", certificate_id).limit(1),
            "get certificate"
        )
        return CertificateRecord.from_dict(resp.data[0]) if resp.data else None

    def find_by_hash(self, certificate_hash: str) -> List[CertificateRecord]:
        resp = self._execute(
            self._table("certificates").select("*")
            .eq("certificate_hash", certificate_hash)
            .order("created_at").order("id"),
            "find by hash"
        )
        return [CertificateRecord.from_dict(r) for r in resp.data or []]

    def list_certificates(
        self,
        issued_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[CertificateRecord], int]:
        query = self._table("certificates").select("*", count="exact")
        if issued_by:
            query = query.eq("issued_by", issued_by)
        query = query.order("created_at", desc=True).order("id", desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        resp = self._execute(query, "list certificates")
        rows = [CertificateRecord.from_dict(r) for r in resp.data or []]
        total = resp.count if resp.count is not None else len(rows)
        return rows, total

    def all_certificates(self) -> List[CertificateRecord]:
        resp = self._execute(
            self._table("certificates").select("*").order("created_at").order("id"),
            "list all certificates"
        )
        return [CertificateRecord.from_dict(r) for r in resp.data or []]

    def update_certificate_hash(self, certificate_id: str, certificate_hash: str) -> None:
        try:
            resp = (
                self._table("certificates")
                .update({"certificate_hash": certificate_hash, "updated_at": utc_now_iso()})
                .eq("certificate_id", certificate_id)
                .execute()
            )
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateHashError(certificate_hash) from e
            raise StoreError(f"update hash: {_error_text(e)}") from e
        if not resp.data:
            raise RecordNotFoundError(f"certificate {certificate_id!r} not found")

    def mark_revoked(self, certificate_id: str) -> bool:
        resp = self._execute(
            self._table("certificates")
            .update({"is_revoked": True, "updated_at": utc_now_iso()})
            .eq("certificate_id", certificate_id)
            .eq("is_revoked", False),
            "revoke certificate"
        )
        return bool(resp.data)

    def increment_verification_count(self, certificate_id: str) -> int:
        # PostgREST has no atomic increment without an RPC; read then write.
        current = self.get_certificate(certificate_id)
        if current is None:
            raise RecordNotFoundError(f"certificate {certificate_id!r} not found")
        count = current.verification_count + 1
        self._execute(
            self._table("certificates")
            .update({"verification_count": count, "updated_at": utc_now_iso()})
            .eq("certificate_id", certificate_id),
            "increment verification count"
        )
        return count

    def record_verification(self, entry: VerificationRecord) -> VerificationRecord:
        row = entry.to_dict()
        row.pop("id")
        row["verified_at"] = utc_now_iso()
        resp = self._execute(
            self._table("certificate_verifications").insert(row), "record verification"
        )
        if not resp.data:
            raise StoreError("record verification: no row returned")
        return VerificationRecord.from_dict(resp.data[0])

    def verification_history(self, certificate_row_id: int) -> List[VerificationRecord]:
        resp = self._execute(
            self._table("certificate_verifications").select("*")
            .eq("certificate_id", certificate_row_id)
            .order("verified_at", desc=True).order("id", desc=True),
            "verification history"
        )
        return [VerificationRecord.from_dict(r) for r in resp.data or []]

    # --- institutions ---

    def insert_institution(self, record: InstitutionRecord) -> InstitutionRecord:
        now = utc_now_iso()
        row = record.to_dict()
        row.pop("id")
        row["created_at"] = now
        row["updated_at"] = now
        try:
            resp = self._table("institutions").insert(row).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateInstitutionError(
                    f"institution already registered for {record.authority_wallet}"
                ) from e
            raise StoreError(f"insert institution: {_error_text(e)}") from e
        if not resp.data:
            raise StoreError("insert institution: no row returned")
        return InstitutionRecord.from_dict(resp.data[0])

    def get_institution(self, authority_wallet: str) -> Optional[InstitutionRecord]:
        resp = self._execute(
            self._table("institutions").select("*")
            .eq("authority_wallet", authority_wallet).limit(1),
            "get institution"
        )
        return InstitutionRecord.from_dict(resp.data[0]) if resp.data else None

    def list_institutions(self) -> List[InstitutionRecord]:
        resp = self._execute(
            self._table("institutions").select("*").order("created_at", desc=True),
            "list institutions"
        )
        return [InstitutionRecord.from_dict(r) for r in resp.data or []]

    def mark_institution_verified(self, authority_wallet: str, verified_by: str) -> bool:
        now = utc_now_iso()
        resp = self._execute(
            self._table("institutions")
            .update({"is_verified": True, "verified_by": verified_by,
                     "verified_at": now, "updated_at": now})
            .eq("authority_wallet", authority_wallet)
            .eq("is_verified", False),
            "verify institution"
        )
        return bool(resp.data)

    def increment_certificates_issued(self, authority_wallet: str) -> None:
        current = self.get_institution(authority_wallet)
        if current is None:
            return
        self._execute(
            self._table("institutions")
            .update({"certificates_issued": current.certificates_issued + 1,
                     "updated_at": utc_now_iso()})
            .eq("authority_wallet", authority_wallet),
            "increment certificates issued"
        )

    # --- health ---

    def ping(self) -> None:
        self._execute(self._table("certificates").select("id").limit(1), "ping")

    def missing_columns(self) -> Dict[str, List[str]]:
        missing = {}
        for table, columns in REQUIRED_COLUMNS.items():
            missing[table] = []
            for column in columns:
                try:
                    self._table(table).select(column).limit(1).execute()
                except Exception as e:
                    logger.debug("Column check %s.%s failed: %s", table, column, _error_text(e))
                    missing[table].append(column)
        return missing

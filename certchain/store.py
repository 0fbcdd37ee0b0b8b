"""
Certificate store.

The store is the database side of CertChain: certificates, institutions and
the students table. `CertificateStore` is the interface the hash resolver,
the certificate service and diagnostics depend on. `SqliteCertificateStore`
is the local implementation; the Supabase implementation lives in
`certchain.supabase_store`.

Uniqueness of `certificate_hash` and `certificate_id` is enforced by the
schema. Hash lookups elsewhere only reduce how often that constraint fires.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import (
    StoreError,
    DuplicateHashError,
    DuplicateCertificateIdError,
    DuplicateInstitutionError,
    RecordNotFoundError,
)
from .records import (
    CertificateRecord,
    InstitutionRecord,
    VerificationRecord,
    CERTIFICATE_COLUMNS,
    INSTITUTION_COLUMNS,
    VERIFICATION_COLUMNS,
)
from .util import utc_now_iso

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {
    "certificates": CERTIFICATE_COLUMNS,
    "institutions": INSTITUTION_COLUMNS,
    "certificate_verifications": VERIFICATION_COLUMNS,
}


class CertificateStore(ABC):
    """Abstract interface for the certificate database."""

    # --- certificates ---

    @abstractmethod
    def insert_certificate(self, record: CertificateRecord) -> CertificateRecord:
        """
        Insert a certificate row.

        Returns:
            The stored record with id and timestamps filled in

        Raises:
            DuplicateHashError: certificate_hash already present
            DuplicateCertificateIdError: certificate_id already present
            StoreError: any other failure
        """

    @abstractmethod
    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        """Fetch a certificate by its human-assigned id."""

    @abstractmethod
    def find_by_hash(self, certificate_hash: str) -> List[CertificateRecord]:
        """All certificates currently carrying `certificate_hash`."""

    def hash_exists(self, certificate_hash: str) -> bool:
        return bool(self.find_by_hash(certificate_hash))

    @abstractmethod
    def list_certificates(
        self,
        issued_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[CertificateRecord], int]:
        """Newest first. Returns (page, total matching)."""

    @abstractmethod
    def all_certificates(self) -> List[CertificateRecord]:
        """Every certificate, oldest first (created_at, then id)."""

    @abstractmethod
    def update_certificate_hash(self, certificate_id: str, certificate_hash: str) -> None:
        """
        Raises:
            DuplicateHashError: the new hash is already taken
            RecordNotFoundError: no such certificate
        """

    @abstractmethod
    def mark_revoked(self, certificate_id: str) -> bool:
        """Set is_revoked. False if the certificate was already revoked."""

    @abstractmethod
    def increment_verification_count(self, certificate_id: str) -> int:
        """Add one to verification_count and return the new value."""

    @abstractmethod
    def record_verification(self, entry: VerificationRecord) -> VerificationRecord:
        """Append to the certificate_verifications log."""

    @abstractmethod
    def verification_history(self, certificate_row_id: int) -> List[VerificationRecord]:
        """Verification log of one certificate, newest first."""

    # --- institutions ---

    @abstractmethod
    def insert_institution(self, record: InstitutionRecord) -> InstitutionRecord:
        """Raises DuplicateInstitutionError if the authority is registered."""

    @abstractmethod
    def get_institution(self, authority_wallet: str) -> Optional[InstitutionRecord]:
        pass

    @abstractmethod
    def list_institutions(self) -> List[InstitutionRecord]:
        pass

    @abstractmethod
    def mark_institution_verified(self, authority_wallet: str, verified_by: str) -> bool:
        """Flip is_verified once. False if already verified."""

    @abstractmethod
    def increment_certificates_issued(self, authority_wallet: str) -> None:
        pass

    # --- health ---

    @abstractmethod
    def ping(self) -> None:
        """Raise StoreError if the store cannot be reached."""

    @abstractmethod
    def missing_columns(self) -> Dict[str, List[str]]:
        """Required columns absent from each table (empty lists when healthy)."""


def _classify_integrity_error(exc: sqlite3.IntegrityError, record) -> StoreError:
    msg = str(exc)
    if "certificate_hash" in msg:
        return DuplicateHashError(record.certificate_hash)
    if "certificate_id" in msg:
        return DuplicateCertificateIdError(record.certificate_id)
    if "authority_wallet" in msg:
        return DuplicateInstitutionError(
            f"institution already registered for {record.authority_wallet}"
        )
    return StoreError(msg)


class SqliteCertificateStore(CertificateStore):
    """
    SQLite-backed store.

    Connections are thread-local and reused within a thread.
    `unique_hashes=False` creates the schema without the unique index on
    certificate_hash, matching databases created before it existed.
    """

    def __init__(self, path: Union[str, Path] = "data/certchain.db", unique_hashes: bool = True):
        self._path = Path(path)
        self._unique_hashes = unique_hashes
        self._local = threading.local()

    @property
    def path(self) -> Path:
        return self._path

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        if getattr(self._local, 'conn', None) is None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._path), check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA temp_store=MEMORY;")
            except (OSError, sqlite3.Error) as e:
                raise StoreError(f"cannot open database {self._path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def init_db(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS institutions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                location TEXT NOT NULL,
                authority_wallet TEXT NOT NULL UNIQUE,
                is_verified INTEGER NOT NULL DEFAULT 0,
                verified_by TEXT,
                verified_at TEXT,
                certificates_issued INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS students (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                roll_no TEXT NOT NULL,
                email TEXT,
                student_wallet TEXT,
                institution_wallet TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (institution_wallet, roll_no)
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS certificates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                certificate_id TEXT NOT NULL UNIQUE,
                student_name TEXT NOT NULL,
                roll_no TEXT NOT NULL,
                course_name TEXT NOT NULL,
                grade TEXT NOT NULL,
                institution_name TEXT NOT NULL,
                issued_by TEXT NOT NULL,
                student_wallet TEXT NOT NULL,
                issued_date TEXT NOT NULL,
                certificate_hash TEXT NOT NULL,
                is_revoked INTEGER NOT NULL DEFAULT 0,
                verification_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_certificates_issued_by
            ON certificates(issued_by);""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_certificates_created
            ON certificates(created_at);""")
            unique = "UNIQUE " if self._unique_hashes else ""
            conn.execute(f"""
            CREATE {unique}INDEX IF NOT EXISTS idx_certificates_hash
            ON certificates(certificate_hash);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS certificate_verifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                certificate_id INTEGER NOT NULL REFERENCES certificates(id) ON DELETE CASCADE,
                verifier_wallet TEXT,
                verified_at TEXT NOT NULL,
                ip_address TEXT,
                user_agent TEXT
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_certificate_verifications_certificate_id
            ON certificate_verifications(certificate_id);""")

    def reset_db(self) -> None:
        """Delete all rows (test isolation)."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM certificate_verifications")
            conn.execute("DELETE FROM certificates")
            conn.execute("DELETE FROM institutions")
            conn.execute("DELETE FROM students")

    def close_connection(self) -> None:
        """Close the current thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # --- certificates ---

    def insert_certificate(self, record: CertificateRecord) -> CertificateRecord:
        now = utc_now_iso()
        created_at = record.created_at or now
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO certificates(certificate_id, student_name, roll_no, course_name, "
                    "grade, institution_name, issued_by, student_wallet, issued_date, "
                    "certificate_hash, is_revoked, verification_count, created_at, updated_at) "
                    "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (record.certificate_id, record.student_name, record.roll_no,
                     record.course_name, record.grade, record.institution_name,
                     record.issued_by, record.student_wallet, record.issued_date,
                     record.certificate_hash, int(record.is_revoked),
                     record.verification_count, created_at, now)
                )
                row_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            raise _classify_integrity_error(e, record) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

        stored = CertificateRecord.from_dict(record.to_dict())
        stored.id = row_id
        stored.created_at = created_at
        stored.updated_at = now
        return stored

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        rows = self._query("SELECT * FROM certificates WHERE certificate_id=?", (certificate_id,))
        return CertificateRecord.from_dict(dict(rows[0])) if rows else None

    def find_by_hash(self, certificate_hash: str) -> List[CertificateRecord]:
        rows = self._query(
            "SELECT * FROM certificates WHERE certificate_hash=? ORDER BY created_at, id",
            (certificate_hash,)
        )
        return [CertificateRecord.from_dict(dict(r)) for r in rows]

    def list_certificates(
        self,
        issued_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[CertificateRecord], int]:
        where, params = "", ()
        if issued_by:
            where, params = " WHERE issued_by=?", (issued_by,)
        total = self._query(f"SELECT COUNT(*) AS n FROM certificates{where}", params)[0]["n"]
        sql = f"SELECT * FROM certificates{where} ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + (int(limit), int(offset))
        rows = self._query(sql, params)
        return [CertificateRecord.from_dict(dict(r)) for r in rows], total

    def all_certificates(self) -> List[CertificateRecord]:
        rows = self._query("SELECT * FROM certificates ORDER BY created_at ASC, id ASC")
        return [CertificateRecord.from_dict(dict(r)) for r in rows]

    def update_certificate_hash(self, certificate_id: str, certificate_hash: str) -> None:
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE certificates SET certificate_hash=?, updated_at=? WHERE certificate_id=?",
                    (certificate_hash, utc_now_iso(), certificate_id)
                )
                updated = cur.rowcount
        except sqlite3.IntegrityError as e:
            raise DuplicateHashError(certificate_hash) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        if updated != 1:
            raise RecordNotFoundError(f"certificate {certificate_id!r} not found")

    def mark_revoked(self, certificate_id: str) -> bool:
        """
        Mark a certificate revoked.
        Uses atomic UPDATE with WHERE clause so the flag flips only once.
        """
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE certificates SET is_revoked=1, updated_at=? "
                    "WHERE certificate_id=? AND is_revoked=0",
                    (utc_now_iso(), certificate_id)
                )
                return cur.rowcount == 1
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def increment_verification_count(self, certificate_id: str) -> int:
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE certificates SET verification_count=verification_count+1, updated_at=? "
                    "WHERE certificate_id=?",
                    (utc_now_iso(), certificate_id)
                )
                if cur.rowcount != 1:
                    raise RecordNotFoundError(f"certificate {certificate_id!r} not found")
                row = conn.execute(
                    "SELECT verification_count FROM certificates WHERE certificate_id=?",
                    (certificate_id,)
                ).fetchone()
                return int(row["verification_count"])
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def record_verification(self, entry: VerificationRecord) -> VerificationRecord:
        now = utc_now_iso()
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO certificate_verifications(certificate_id, verifier_wallet, "
                    "verified_at, ip_address, user_agent) VALUES(?,?,?,?,?)",
                    (entry.certificate_id, entry.verifier_wallet, now,
                     entry.ip_address, entry.user_agent)
                )
                row_id = cur.lastrowid
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

        stored = VerificationRecord.from_dict(entry.to_dict())
        stored.id = row_id
        stored.verified_at = now
        return stored

    def verification_history(self, certificate_row_id: int) -> List[VerificationRecord]:
        rows = self._query(
            "SELECT * FROM certificate_verifications WHERE certificate_id=? "
            "ORDER BY verified_at DESC, id DESC",
            (certificate_row_id,)
        )
        return [VerificationRecord.from_dict(dict(r)) for r in rows]

    # --- institutions ---

    def insert_institution(self, record: InstitutionRecord) -> InstitutionRecord:
        now = utc_now_iso()
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO institutions(name, location, authority_wallet, is_verified, "
                    "certificates_issued, created_at, updated_at) VALUES(?,?,?,?,?,?,?)",
                    (record.name, record.location, record.authority_wallet,
                     int(record.is_verified), record.certificates_issued, now, now)
                )
                row_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            raise _classify_integrity_error(e, record) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

        stored = InstitutionRecord.from_dict(record.to_dict())
        stored.id = row_id
        stored.created_at = now
        stored.updated_at = now
        return stored

    def get_institution(self, authority_wallet: str) -> Optional[InstitutionRecord]:
        rows = self._query(
            "SELECT * FROM institutions WHERE authority_wallet=?", (authority_wallet,)
        )
        return InstitutionRecord.from_dict(dict(rows[0])) if rows else None

    def list_institutions(self) -> List[InstitutionRecord]:
        rows = self._query("SELECT * FROM institutions ORDER BY created_at DESC, id DESC")
        return [InstitutionRecord.from_dict(dict(r)) for r in rows]

    def mark_institution_verified(self, authority_wallet: str, verified_by: str) -> bool:
        now = utc_now_iso()
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE institutions SET is_verified=1, verified_by=?, verified_at=?, "
                    "updated_at=? WHERE authority_wallet=? AND is_verified=0",
                    (verified_by, now, now, authority_wallet)
                )
                return cur.rowcount == 1
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def increment_certificates_issued(self, authority_wallet: str) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE institutions SET certificates_issued=certificates_issued+1, "
                    "updated_at=? WHERE authority_wallet=?",
                    (utc_now_iso(), authority_wallet)
                )
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    # --- health ---

    def ping(self) -> None:
        self._query("SELECT 1")

    def missing_columns(self) -> Dict[str, List[str]]:
        missing = {}
        for table, columns in REQUIRED_COLUMNS.items():
            present = {row["name"] for row in self._query(f"PRAGMA table_info({table})")}
            missing[table] = [c for c in columns if c not in present]
        return missing

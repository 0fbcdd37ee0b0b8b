"""
Hash uniqueness and collision repair.

`generate_unique_hash` looks up each candidate hash in the store and returns
the first one not already taken. The lookup is check-then-act: two concurrent
issuances can pass it with the same hash, and the store's unique constraint
on certificate_hash catches that at insert time.

`resolve_all_hash_conflicts` repairs stores that already contain duplicates.
It is a sequential loop without a transaction: every record is attempted and
failures are counted, so a partial run leaves some records fixed and others
not. Running it again on a clean store writes nothing.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import CertChainError
from .hashing import CertificateFields, generate_hash, is_valid_hash_format, is_pending
from .logging_config import audit_log
from .records import CertificateRecord
from .store import CertificateStore
from .util import generate_salt, now_epoch_ms

logger = logging.getLogger(__name__)

MAX_HASH_ATTEMPTS = 5
FALLBACK_SALT_BYTES = 32


@dataclass
class UniqueHash:
    certificate_hash: str
    attempts: int
    lookup_failed: bool = False


@dataclass
class HashConflict:
    certificate_hash: str
    records: List[CertificateRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "certificate_hash": self.certificate_hash,
            "count": len(self.records),
            "certificates": [
                {"id": r.id, "certificate_id": r.certificate_id, "created_at": r.created_at}
                for r in self.records
            ],
        }


@dataclass
class HashConflictReport:
    total_hashes: int = 0
    unique_hashes: int = 0
    duplicate_hashes: int = 0
    conflicts: List[HashConflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_hashes": self.total_hashes,
            "unique_hashes": self.unique_hashes,
            "duplicate_hashes": self.duplicate_hashes,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass
class ConflictResolution:
    resolved: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, **asdict(self)}


class HashConflictResolver:
    """
    Generates store-unique certificate hashes and repairs duplicates.
    """

    def __init__(self, store: CertificateStore, max_attempts: int = MAX_HASH_ATTEMPTS):
        self._store = store
        self._max_attempts = max_attempts

    def generate_unique_hash(
        self,
        fields: CertificateFields,
        certificate_id: Optional[str] = None,
        force_new_salt: bool = False
    ) -> UniqueHash:
        """
        Generate a hash not currently present in the store.

        Every attempt after the first, or every attempt when
        `force_new_salt` is set, draws a new random salt. If the store
        cannot be queried the current candidate is returned and the insert
        decides. If all attempts collide, a hash with a 32-byte salt is
        returned without a lookup.
        """
        label = certificate_id or fields.certificate_id
        salt = generate_salt()

        for attempt in range(1, self._max_attempts + 1):
            if force_new_salt or attempt > 1:
                salt = generate_salt()
            candidate = generate_hash(fields, salt=salt, timestamp=now_epoch_ms())

            try:
                taken = self._store.hash_exists(candidate)
            except CertChainError as e:
                logger.warning(
                    "Hash lookup failed for %s on attempt %d, using candidate: %s",
                    label, attempt, e
                )
                return UniqueHash(candidate, attempt, lookup_failed=True)

            if not taken:
                if attempt > 1:
                    logger.info("Unique hash for %s found after %d attempts", label, attempt)
                return UniqueHash(candidate, attempt)

            logger.warning("Hash collision for %s on attempt %d", label, attempt)

        logger.error(
            "No unique hash for %s after %d attempts, falling back to long salt",
            label, self._max_attempts
        )
        fallback = generate_hash(
            fields, salt=generate_salt(FALLBACK_SALT_BYTES), timestamp=now_epoch_ms()
        )
        return UniqueHash(fallback, self._max_attempts + 1)

    def find_hash_conflicts(self) -> HashConflictReport:
        """
        Group every certificate by its current hash.

        Raises:
            StoreError: if the certificates cannot be read
        """
        records = self._store.all_certificates()
        groups: "OrderedDict[str, List[CertificateRecord]]" = OrderedDict()
        for record in records:
            groups.setdefault(record.certificate_hash, []).append(record)

        report = HashConflictReport(total_hashes=len(records), unique_hashes=len(groups))
        for certificate_hash, members in groups.items():
            if len(members) > 1:
                members.sort(key=lambda r: (r.created_at or "", r.id or 0))
                report.conflicts.append(HashConflict(certificate_hash, members))
                report.duplicate_hashes += len(members) - 1
        return report

    def resolve_all_hash_conflicts(self) -> ConflictResolution:
        """
        Keep the earliest record's hash in each duplicate group and give
        every later record a fresh hash.
        """
        result = ConflictResolution()
        try:
            report = self.find_hash_conflicts()
        except CertChainError as e:
            logger.error("Could not scan for hash conflicts: %s", e)
            result.failed += 1
            result.errors.append(f"scan failed: {e}")
            return result

        if not report.has_conflicts:
            logger.info("No hash conflicts found")
            return result

        logger.info("Resolving %d hash conflict group(s)", len(report.conflicts))
        for conflict in report.conflicts:
            keeper, *later = conflict.records
            logger.debug(
                "Keeping %s for %s", conflict.certificate_hash, keeper.certificate_id
            )
            for record in later:
                try:
                    self._regenerate(record)
                    result.resolved += 1
                except CertChainError as e:
                    result.failed += 1
                    result.errors.append(f"{record.certificate_id}: {e}")
                    logger.error("Failed to regenerate hash for %s: %s", record.certificate_id, e)
        return result

    def resolve_hash_conflict(self, certificate_id: str) -> Dict[str, Any]:
        """Give a single certificate a fresh unique hash."""
        try:
            record = self._store.get_certificate(certificate_id)
            if record is None:
                return {"success": False, "error": f"Certificate {certificate_id} not found"}
            new_hash = self._regenerate(record)
            return {"success": True, "old_hash": record.certificate_hash, "new_hash": new_hash}
        except CertChainError as e:
            logger.error("Failed to resolve hash for %s: %s", certificate_id, e)
            return {"success": False, "error": str(e)}

    def regenerate_invalid_hashes(self) -> ConflictResolution:
        """
        Replace empty or malformed hashes. Pending-marked hashes are left
        for the sync routine.
        """
        result = ConflictResolution()
        try:
            records = self._store.all_certificates()
        except CertChainError as e:
            result.failed += 1
            result.errors.append(f"scan failed: {e}")
            return result

        for record in records:
            if is_pending(record.certificate_hash) or is_valid_hash_format(record.certificate_hash):
                continue
            try:
                self._regenerate(record)
                result.resolved += 1
            except CertChainError as e:
                result.failed += 1
                result.errors.append(f"{record.certificate_id}: {e}")
        return result

    def _regenerate(self, record: CertificateRecord) -> str:
        unique = self.generate_unique_hash(
            record.hash_fields(), record.certificate_id, force_new_salt=True
        )
        self._store.update_certificate_hash(record.certificate_id, unique.certificate_hash)
        audit_log.hash_conflict_resolved(
            record.certificate_id, record.certificate_hash, unique.certificate_hash
        )
        return unique.certificate_hash

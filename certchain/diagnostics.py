"""
Operational diagnostics for CertChain.

Hash inspection, per-certificate debugging, database/chain integrity
comparison, connectivity, schema and policy checks, and read-only batch
verification. Nothing here writes to the store or the chain.
"""

import logging
import time
from collections import Counter
from typing import Any, Dict, List, Optional

from .anchor import is_valid_pubkey
from .chain import BatchVerification, ChainCertificate, ChainTransactionManager
from .errors import CertChainError, ChainError
from .hashing import (
    HashComparator,
    generate_deterministic_hash,
    is_pending,
    is_valid_hash_format,
    strip_pending,
)
from .records import CertificateRecord
from .signing import Signer
from .store import CertificateStore
from .util import constant_time_compare

logger = logging.getLogger(__name__)

INTEGRITY_CHECKS = ("student_name", "course_name", "grade", "certificate_id", "certificate_hash")


def integrity_check(record: CertificateRecord, chain_certificate: ChainCertificate) -> Dict[str, Any]:
    """
    Compare a database record with its chain copy.

    Confidence is the fraction of the five checks (student, course, grade,
    certificate id, hash) that agree.
    """
    account = chain_certificate.account
    discrepancies = []
    for name in INTEGRITY_CHECKS[:-1]:
        db_value, chain_value = getattr(record, name), getattr(account, name)
        if db_value != chain_value:
            discrepancies.append({"field": name, "database": db_value, "blockchain": chain_value})

    db_hash = strip_pending(record.certificate_hash)
    chain_hash = chain_certificate.certificate_hash
    if not chain_hash or not HashComparator.compare(db_hash, chain_hash):
        discrepancies.append({"field": "certificate_hash", "database": db_hash, "blockchain": chain_hash})

    checks = len(INTEGRITY_CHECKS)
    return {
        "certificate_id": record.certificate_id,
        "is_consistent": not discrepancies,
        "discrepancies": discrepancies,
        "confidence": max(0.0, (checks - len(discrepancies)) / checks),
        "revocation_matches": record.is_revoked == account.is_revoked,
        "deterministic_hash": generate_deterministic_hash(record.hash_fields()),
    }


class CertificateDiagnostics:
    """
    Read-only diagnostics over a store and an optional chain manager.
    """

    def __init__(self, store: CertificateStore, chain: Optional[ChainTransactionManager] = None):
        self._store = store
        self._chain = chain

    # --- hashes ---

    def check_hash(self, certificate_hash: str) -> Dict[str, Any]:
        records = self._store.find_by_hash(certificate_hash)
        return {
            "certificate_hash": certificate_hash,
            "valid_format": is_valid_hash_format(strip_pending(certificate_hash)),
            "exists": bool(records),
            "count": len(records),
            "is_duplicate": len(records) > 1,
            "certificates": [
                {"certificate_id": r.certificate_id, "created_at": r.created_at} for r in records
            ],
        }

    def validate_all_hashes(self) -> Dict[str, Any]:
        records = self._store.all_certificates()
        invalid, pending = [], []
        for r in records:
            if is_pending(r.certificate_hash):
                pending.append(r.certificate_id)
            elif not is_valid_hash_format(r.certificate_hash):
                invalid.append({"certificate_id": r.certificate_id, "certificate_hash": r.certificate_hash})
        return {
            "total": len(records),
            "valid": len(records) - len(invalid) - len(pending),
            "invalid": len(invalid),
            "pending": len(pending),
            "invalid_certificates": invalid,
            "pending_certificates": pending,
        }

    def hash_statistics(self) -> Dict[str, Any]:
        records = self._store.all_certificates()
        hashes = [strip_pending(r.certificate_hash) for r in records]
        counts = Counter(hashes)
        duplicates = sum(n - 1 for n in counts.values() if n > 1)
        well_formed = [h for h in hashes if is_valid_hash_format(h)]
        prefixes = Counter(h[:2].lower() for h in well_formed)
        return {
            "total_certificates": len(records),
            "unique_hashes": len(counts),
            "duplicate_hashes": duplicates,
            "invalid_hashes": len(hashes) - len(well_formed),
            "pending_hashes": sum(1 for r in records if is_pending(r.certificate_hash)),
            "collision_rate": round(duplicates / len(records) * 100, 4) if records else 0.0,
            "prefix_distribution": dict(sorted(prefixes.items())),
        }

    def debug_certificate(self, certificate_id: str) -> Dict[str, Any]:
        record = self._store.get_certificate(certificate_id)
        if record is None:
            return {"found": False, "certificate_id": certificate_id,
                    "recommendations": ["Check the certificate id; no such record"]}

        stored_hash = strip_pending(record.certificate_hash)
        sharing = [r for r in self._store.find_by_hash(record.certificate_hash)
                   if r.certificate_id != certificate_id]
        recommendations = []
        if not is_valid_hash_format(stored_hash):
            recommendations.append("Regenerate the hash: stored value is malformed")
        if sharing:
            recommendations.append("Resolve hash conflict: hash shared with other certificates")
        if is_pending(record.certificate_hash):
            recommendations.append("Run sync: certificate is missing on chain")

        report = {
            "found": True,
            "certificate": record.to_dict(),
            "hash": {
                "stored": record.certificate_hash,
                "valid_format": is_valid_hash_format(stored_hash),
                "pending": is_pending(record.certificate_hash),
                "deterministic": generate_deterministic_hash(record.hash_fields()),
            },
            "conflicts": [r.certificate_id for r in sharing],
            "recommendations": recommendations,
        }

        if self._chain is not None:
            lookup = self._chain.get_certificate_with_metadata(certificate_id, record.issued_by)
            report["blockchain"] = {
                "found": lookup.found,
                "error": lookup.error,
                "address": self._chain.certificate_address(record.issued_by, certificate_id),
            }
            if lookup.found:
                report["integrity"] = integrity_check(record, lookup.certificate)
                if not report["integrity"]["is_consistent"]:
                    recommendations.append("Inspect discrepancies between database and chain")
            elif not lookup.error and not is_pending(record.certificate_hash):
                recommendations.append("Run sync: certificate is missing on chain")

        if not recommendations:
            recommendations.append("No issues found")
        return report

    # --- batch verification ---

    def batch_verify(self, items: List[Dict[str, str]]) -> BatchVerification:
        """
        Classify (certificate_id, certificate_hash, institution) items.

        The database decides not_found and revoked; the hash is compared
        against the chain copy when a chain is configured, else against the
        stored hash.
        """
        result = BatchVerification()
        for item in items:
            certificate_id = item.get("certificate_id", "")
            provided = item.get("certificate_hash", "")
            if not is_valid_hash_format(provided):
                result.failed.append({**item, "reason": "Malformed hash"})
                continue
            try:
                record = self._store.get_certificate(certificate_id)
            except CertChainError as e:
                result.failed.append({**item, "reason": f"Database error: {e}"})
                continue

            if record is None:
                result.not_found.append({**item, "reason": "Certificate not found"})
                continue
            institution = item.get("institution")
            if institution and institution != record.issued_by:
                result.failed.append({**item, "reason": "Issuer mismatch"})
                continue
            if record.is_revoked:
                result.revoked.append({**item, "reason": "Certificate has been revoked"})
                continue

            expected = strip_pending(record.certificate_hash)
            if self._chain is not None:
                lookup = self._chain.get_certificate_with_metadata(certificate_id, record.issued_by)
                if lookup.error:
                    result.failed.append({**item, "reason": lookup.error})
                    continue
                if not lookup.found:
                    result.not_found.append({**item, "reason": "Certificate not found on chain"})
                    continue
                if lookup.certificate.is_revoked:
                    result.revoked.append({**item, "reason": "Certificate is revoked on chain"})
                    continue
                expected = lookup.certificate.certificate_hash or expected

            if constant_time_compare(expected, provided):
                result.verified.append({**item, "reason": None})
            else:
                result.failed.append({**item, "reason": "Hash mismatch"})
        return result

    # --- environment ---

    def check_connectivity(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {}
        start = time.monotonic()
        try:
            self._store.ping()
            report["database"] = {"ok": True, "latency_ms": round((time.monotonic() - start) * 1000, 1)}
        except CertChainError as e:
            report["database"] = {"ok": False, "error": str(e)}

        if self._chain is None:
            report["blockchain"] = {"ok": False, "error": "no chain backend configured"}
            return report

        start = time.monotonic()
        try:
            state = self._chain.program.fetch_global_state()
            report["blockchain"] = {
                "ok": True,
                "latency_ms": round((time.monotonic() - start) * 1000, 1),
                "program_id": self._chain.program.program_id,
                "initialized": state is not None,
                "global_state": state.to_dict() if state else None,
            }
        except ChainError as e:
            report["blockchain"] = {"ok": False, "error": str(e)}
        return report

    def check_schema(self) -> Dict[str, Any]:
        try:
            missing = self._store.missing_columns()
        except CertChainError as e:
            return {"ok": False, "error": str(e)}
        return {"ok": not any(missing.values()),
                "missing_columns": {t: cols for t, cols in missing.items() if cols}}

    def check_policies(
        self,
        admin_wallets: List[str],
        signer: Optional[Signer] = None
    ) -> Dict[str, Any]:
        issues = []
        if not admin_wallets:
            issues.append("No admin wallets configured; institution verification is disabled")
        bad = [w for w in admin_wallets if not is_valid_pubkey(w)]
        if bad:
            issues.append(f"Malformed admin wallet address(es): {', '.join(bad)}")
        if self._chain is not None:
            if signer is None and self._chain.signer is None:
                issues.append("Chain backend configured without a signer; writes will be database-only")
            if not is_valid_pubkey(self._chain.program.program_id):
                issues.append("Program id is not a valid address")
        return {"ok": not issues, "issues": issues, "admin_wallet_count": len(admin_wallets)}

    def run_all(self, admin_wallets: List[str], signer: Optional[Signer] = None) -> Dict[str, Any]:
        report = {
            "connectivity": self.check_connectivity(),
            "schema": self.check_schema(),
            "policies": self.check_policies(admin_wallets, signer),
        }
        try:
            report["hashes"] = self.hash_statistics()
        except CertChainError as e:
            report["hashes"] = {"error": str(e)}
        report["ok"] = (
            report["connectivity"]["database"]["ok"]
            and report["schema"]["ok"]
            and report["policies"]["ok"]
            and report["hashes"].get("duplicate_hashes", 1) == 0
        )
        return report

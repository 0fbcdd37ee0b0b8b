"""
Certificate hashing.

A certificate hash is the SHA-256 digest, as 64 lowercase hex characters,
of the certificate's fields joined with "|" in a fixed order:

    certificate_id | student_name | student_wallet | course_name | grade |
    institution_name | issued_by | issued_date [| timestamp] [| salt]

The deterministic form carries no timestamp or salt, so anyone holding the
plaintext fields can recompute it. The stored form is salted so that two
certificates with identical fields still get distinct hashes.
"""

import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, quote

from .util import sha256_hex, sha256_bytes, generate_salt, constant_time_compare

HASH_PATTERN = re.compile(r'^[a-f0-9]{64}$', re.IGNORECASE)

PENDING_SUFFIX = "_BLOCKCHAIN_PENDING"

FIELD_SEPARATOR = "|"


@dataclass(frozen=True)
class CertificateFields:
    """The ordered fields bound by a certificate hash."""
    certificate_id: str
    student_name: str
    student_wallet: str
    course_name: str
    grade: str
    institution_name: str
    issued_by: str
    issued_date: str

    def ordered(self) -> List[str]:
        return [
            self.certificate_id,
            self.student_name,
            self.student_wallet,
            self.course_name,
            self.grade,
            self.institution_name,
            self.issued_by,
            self.issued_date,
        ]

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "CertificateFields":
        return cls(**{name: str(data.get(name) or "") for name in cls.__dataclass_fields__})


def _hash_input(fields: CertificateFields, *extra: Optional[str]) -> str:
    parts = fields.ordered() + [e for e in extra if e is not None]
    return FIELD_SEPARATOR.join(parts)


def generate_hash(
    fields: CertificateFields,
    salt: Optional[str] = None,
    timestamp: Optional[int] = None
) -> str:
    """
    Generate a salted certificate hash.

    Args:
        fields: Certificate fields to bind
        salt: Salt to append; a fresh 16-byte random salt when omitted
        timestamp: Optional epoch milliseconds, appended before the salt

    Returns:
        64-character lowercase hex SHA-256 digest
    """
    if salt is None:
        salt = generate_salt()
    ts = str(timestamp) if timestamp is not None else None
    return sha256_hex(_hash_input(fields, ts, salt))


def generate_deterministic_hash(fields: CertificateFields) -> str:
    """Hash of the fields alone. Pure: equal fields give equal hashes."""
    return sha256_hex(_hash_input(fields))


def is_valid_hash_format(value: Any) -> bool:
    """True for exactly 64 hex characters (either case)."""
    return isinstance(value, str) and bool(HASH_PATTERN.match(value))


def verify_certificate_hash(
    fields: CertificateFields,
    provided_hash: str,
    salt: Optional[str] = None
) -> bool:
    """
    Check a hash against certificate fields.

    Matches the deterministic hash, or the salted hash when the salt is known.
    The comparison is exact: hashes travel as lowercase hex.
    """
    if not is_valid_hash_format(provided_hash):
        return False
    if constant_time_compare(generate_deterministic_hash(fields), provided_hash):
        return True
    if salt is not None:
        return constant_time_compare(generate_hash(fields, salt=salt), provided_hash)
    return False


# ============================================================
# Pending marker
# ============================================================

def mark_pending(certificate_hash: str) -> str:
    """Flag a stored hash whose chain mirror has not been written."""
    if is_pending(certificate_hash):
        return certificate_hash
    return certificate_hash + PENDING_SUFFIX


def is_pending(certificate_hash: Optional[str]) -> bool:
    return bool(certificate_hash) and certificate_hash.endswith(PENDING_SUFFIX)


def strip_pending(certificate_hash: str) -> str:
    if is_pending(certificate_hash):
        return certificate_hash[:-len(PENDING_SUFFIX)]
    return certificate_hash


# ============================================================
# Comparison
# ============================================================

class HashComparator:
    """Case-insensitive comparison of well-formed hashes."""

    @staticmethod
    def compare(hash1: str, hash2: str) -> bool:
        if not is_valid_hash_format(hash1) or not is_valid_hash_format(hash2):
            return False
        return constant_time_compare(hash1.lower(), hash2.lower())

    @classmethod
    def batch_compare(cls, pairs: List[Tuple[str, str]]) -> List[bool]:
        return [cls.compare(a, b) for a, b in pairs]


# ============================================================
# Verification links
# ============================================================

def build_verification_url(
    base_url: str,
    certificate_id: str,
    institution: str,
    certificate_hash: str
) -> str:
    """
    Shareable verification link:
    <base>/verify/<certificate_id>?institution=<key>&hash=<hash>
    """
    query = urlencode({"institution": institution, "hash": certificate_hash})
    return f"{base_url.rstrip('/')}/verify/{quote(certificate_id, safe='')}?{query}"


def build_qr_payload(
    base_url: str,
    certificate_id: str,
    institution: str,
    certificate_hash: str,
    student_name: str = "",
    course_name: str = ""
) -> Dict[str, str]:
    """Data embedded in a certificate QR code."""
    return {
        "type": "certificate_verification",
        "certificate_id": certificate_id,
        "institution": institution,
        "certificate_hash": certificate_hash,
        "student_name": student_name,
        "course_name": course_name,
        "verification_url": build_verification_url(
            base_url, certificate_id, institution, certificate_hash
        ),
    }


# ============================================================
# Merkle proofs
# ============================================================

def _merkle_parent(left: bytes, right: bytes) -> bytes:
    return sha256_bytes(left + right)


def build_merkle_proof(hashes: List[str]) -> Dict[str, Any]:
    """
    Build a Merkle tree over certificate hashes.

    An odd node at any level is paired with itself.

    Returns:
        {"root": hex, "proofs": {leaf_hash: [{"position": "left"|"right", "hash": hex}, ...]}}

    Raises:
        ValueError: if `hashes` is empty or contains a malformed hash
    """
    if not hashes:
        raise ValueError("cannot build a Merkle tree over zero hashes")
    for h in hashes:
        if not is_valid_hash_format(h):
            raise ValueError(f"malformed certificate hash: {h!r}")

    level = [bytes.fromhex(h) for h in hashes]
    # leaf index -> path
    paths: List[List[Dict[str, str]]] = [[] for _ in hashes]
    # position of each leaf in the current level
    positions = list(range(len(hashes)))

    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        for leaf, pos in enumerate(positions):
            if pos % 2 == 0:
                paths[leaf].append({"position": "right", "hash": level[pos + 1].hex()})
            else:
                paths[leaf].append({"position": "left", "hash": level[pos - 1].hex()})
        level = [_merkle_parent(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        positions = [pos // 2 for pos in positions]

    return {
        "root": level[0].hex(),
        "proofs": {h.lower(): paths[i] for i, h in enumerate(hashes)},
    }


def verify_merkle_proof(leaf_hash: str, proof: List[Dict[str, str]], root: str) -> bool:
    node = bytes.fromhex(leaf_hash)
    for step in proof:
        sibling = bytes.fromhex(step["hash"])
        if step["position"] == "left":
            node = _merkle_parent(sibling, node)
        else:
            node = _merkle_parent(node, sibling)
    return constant_time_compare(node.hex(), root.lower())

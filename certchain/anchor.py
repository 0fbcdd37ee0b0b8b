"""
Wire format of the certificate registry program.

The program is an Anchor program. Instruction data is an 8-byte
discriminator `sha256("global:<instruction>")[:8]` followed by the
borsh-encoded arguments. Accounts start with `sha256("account:<Name>")[:8]`
followed by borsh fields. Record addresses are program-derived from fixed
seeds:

    global state   ["global_state"]
    institution    ["institution", authority]
    certificate    ["certificate", institution address, certificate_id]

These must match the deployed program byte for byte.
"""

import struct
from dataclasses import dataclass, asdict
from typing import Any, Dict, Tuple, Union

from solders.pubkey import Pubkey

from .util import sha256_bytes, utf8_len

DEFAULT_PROGRAM_ID = "BssezJKJhhZfQo6EWUHVrfonpdJba54ptgRyG4v5wzb3"

GLOBAL_STATE_SEED = b"global_state"
INSTITUTION_SEED = b"institution"
CERTIFICATE_SEED = b"certificate"

# Limits enforced by the program (UTF-8 bytes)
MAX_CERTIFICATE_ID_BYTES = 32
MAX_STUDENT_NAME_BYTES = 100
MAX_COURSE_NAME_BYTES = 100
MAX_GRADE_BYTES = 20
MAX_INSTITUTION_NAME_BYTES = 100
MAX_LOCATION_BYTES = 100

# Program error codes
ERROR_CERTIFICATE_REVOKED = 6000

PROGRAM_ERRORS = {
    ERROR_CERTIFICATE_REVOKED: "Certificate has been revoked",
}

PubkeyLike = Union[str, Pubkey]


def to_pubkey(value: PubkeyLike) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def is_valid_pubkey(value: Any) -> bool:
    """True for a base58 string decoding to 32 bytes."""
    if not isinstance(value, str) or not value:
        return False
    try:
        Pubkey.from_string(value)
        return True
    except ValueError:
        return False


# ============================================================
# Address derivation
# ============================================================

def find_global_state_address(program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([GLOBAL_STATE_SEED], to_pubkey(program_id))


def find_institution_address(authority: PubkeyLike, program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [INSTITUTION_SEED, bytes(to_pubkey(authority))], to_pubkey(program_id)
    )


def find_certificate_address(
    institution: PubkeyLike,
    certificate_id: str,
    program_id: PubkeyLike
) -> Tuple[Pubkey, int]:
    """
    Raises:
        ValueError: if certificate_id exceeds the 32-byte seed limit
    """
    seed = certificate_id.encode("utf-8")
    if len(seed) > MAX_CERTIFICATE_ID_BYTES:
        raise ValueError(
            f"certificate_id is {len(seed)} bytes; at most {MAX_CERTIFICATE_ID_BYTES} allowed"
        )
    return Pubkey.find_program_address(
        [CERTIFICATE_SEED, bytes(to_pubkey(institution)), seed], to_pubkey(program_id)
    )


def certificate_address_for_authority(
    authority: PubkeyLike,
    certificate_id: str,
    program_id: PubkeyLike
) -> Pubkey:
    """Certificate address from the issuing authority (via its institution address)."""
    institution, _ = find_institution_address(authority, program_id)
    address, _ = find_certificate_address(institution, certificate_id, program_id)
    return address


# ============================================================
# Discriminators and borsh
# ============================================================

def instruction_discriminator(name: str) -> bytes:
    return sha256_bytes(f"global:{name}")[:8]


def account_discriminator(name: str) -> bytes:
    return sha256_bytes(f"account:{name}")[:8]


def encode_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("<I", len(data)) + data


def encode_instruction(name: str, *string_args: str) -> bytes:
    """Instruction data for an instruction whose arguments are all strings."""
    return instruction_discriminator(name) + b"".join(encode_string(a) for a in string_args)


class BorshReader:
    """Sequential reader over borsh-encoded bytes."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = data
        self._offset = offset

    def _take(self, n: int) -> bytes:
        end = self._offset + n
        if end > len(self._data):
            raise ValueError("account data truncated")
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(32)))

    def string(self) -> str:
        (length,) = struct.unpack("<I", self._take(4))
        return self._take(length).decode("utf-8")

    def boolean(self) -> bool:
        return self._take(1) != b"\x00"

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self._take(8))[0]


def _reader_for(name: str, data: bytes) -> BorshReader:
    if data[:8] != account_discriminator(name):
        raise ValueError(f"account is not a {name}")
    return BorshReader(data, 8)


# ============================================================
# Accounts
# ============================================================

@dataclass
class GlobalStateAccount:
    authority: str
    total_institutions: int
    total_certificates: int
    total_verifications: int

    @classmethod
    def decode(cls, data: bytes) -> "GlobalStateAccount":
        r = _reader_for("GlobalState", data)
        return cls(r.pubkey(), r.u64(), r.u64(), r.u64())

    def encode(self) -> bytes:
        return (
            account_discriminator("GlobalState")
            + bytes(to_pubkey(self.authority))
            + struct.pack("<QQQ", self.total_institutions,
                          self.total_certificates, self.total_verifications)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InstitutionAccount:
    authority: str
    name: str
    location: str
    is_verified: bool
    certificates_issued: int
    created_at: int

    @classmethod
    def decode(cls, data: bytes) -> "InstitutionAccount":
        r = _reader_for("Institution", data)
        return cls(r.pubkey(), r.string(), r.string(), r.boolean(), r.u64(), r.i64())

    def encode(self) -> bytes:
        return (
            account_discriminator("Institution")
            + bytes(to_pubkey(self.authority))
            + encode_string(self.name)
            + encode_string(self.location)
            + struct.pack("<?Qq", self.is_verified, self.certificates_issued, self.created_at)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CertificateAccount:
    institution: str
    student_name: str
    course_name: str
    grade: str
    certificate_id: str
    is_revoked: bool
    verification_count: int
    issued_at: int

    @classmethod
    def decode(cls, data: bytes) -> "CertificateAccount":
        r = _reader_for("Certificate", data)
        return cls(
            r.pubkey(), r.string(), r.string(), r.string(), r.string(),
            r.boolean(), r.u64(), r.i64()
        )

    def encode(self) -> bytes:
        return (
            account_discriminator("Certificate")
            + bytes(to_pubkey(self.institution))
            + encode_string(self.student_name)
            + encode_string(self.course_name)
            + encode_string(self.grade)
            + encode_string(self.certificate_id)
            + struct.pack("<?Qq", self.is_revoked, self.verification_count, self.issued_at)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def check_issue_limits(
    certificate_id: str,
    student_name: str,
    course_name: str,
    grade: str
) -> None:
    """
    Raises:
        ValueError: naming the first argument over its byte limit
    """
    for label, value, limit in (
        ("certificate_id", certificate_id, MAX_CERTIFICATE_ID_BYTES),
        ("student_name", student_name, MAX_STUDENT_NAME_BYTES),
        ("course_name", course_name, MAX_COURSE_NAME_BYTES),
        ("grade", grade, MAX_GRADE_BYTES),
    ):
        if utf8_len(value) > limit:
            raise ValueError(f"{label} exceeds {limit} bytes")

"""
Security module for CertChain.

Provides input validation, sanitization, and admin request authentication.
"""

import re
from typing import Any, Iterable, Optional

from .anchor import is_valid_pubkey, MAX_CERTIFICATE_ID_BYTES
from .errors import ValidationError
from .hashing import is_valid_hash_format
from .logging_config import audit_log
from .signing import verify_signature
from .util import b58d, utf8_len

CERTIFICATE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]+$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100


# ============================================================
# Input Validation
# ============================================================

def validate_string_length(
    value: Any,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate and trim a string.

    Raises:
        ValidationError: If value is not a string or its trimmed length is out of range
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.strip()

    if len(value) < min_length:
        if min_length == 1:
            raise ValidationError(field_name, "cannot be empty")
        raise ValidationError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(field_name, f"must be at most {max_length} characters")

    return value


def validate_name(value: Any, field_name: str) -> str:
    """Names of people, courses and institutions: trimmed, at least 2 characters."""
    return validate_string_length(value, field_name, MIN_NAME_LENGTH, MAX_NAME_LENGTH)


def validate_wallet(value: Any, field_name: str = "wallet") -> str:
    """A base58 public key (32 bytes once decoded)."""
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip()
    if not is_valid_pubkey(value):
        raise ValidationError(field_name, "must be a valid wallet address")
    return value


def validate_certificate_id(value: Any) -> str:
    value = validate_string_length(value, "certificate_id")
    if utf8_len(value) > MAX_CERTIFICATE_ID_BYTES:
        raise ValidationError("certificate_id", f"must be at most {MAX_CERTIFICATE_ID_BYTES} bytes")
    if not CERTIFICATE_ID_PATTERN.match(value):
        raise ValidationError("certificate_id", "contains invalid characters")
    return value


def validate_certificate_hash(value: Any, field_name: str = "certificate_hash") -> str:
    """64 hex characters, returned lowercased."""
    if not is_valid_hash_format(value):
        raise ValidationError(field_name, "must be 64 hexadecimal characters")
    return value.lower()


def validate_issued_date(value: Any) -> str:
    value = validate_string_length(value, "issued_date", max_length=10)
    if not DATE_PATTERN.match(value):
        raise ValidationError("issued_date", "must be YYYY-MM-DD")
    return value


def sanitize_for_logging(value: Any, max_length: int = 200) -> str:
    """
    Render a value for logs: control characters stripped, length capped.
    """
    text = str(value)
    text = re.sub(r'[\x00-\x1f\x7f]', '', text)
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


# ============================================================
# Admin Authentication
# ============================================================

def admin_message(method: str, path: str, timestamp: str) -> bytes:
    """The bytes an admin wallet signs to authenticate a request."""
    return f"{method.upper()} {path} {timestamp}".encode("utf-8")


def verify_admin_request(
    wallet: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
    method: str,
    path: str,
    admin_wallets: Iterable[str],
    now_epoch: int,
    max_age: int
) -> bool:
    """
    Check an admin request signed by an allowlisted wallet.

    The wallet must be in `admin_wallets`, the timestamp within `max_age`
    seconds of `now_epoch`, and the base58 signature must verify over
    `admin_message(method, path, timestamp)`.
    """
    if not wallet or not timestamp or not signature:
        return False

    if wallet not in set(admin_wallets):
        audit_log.security_event("admin_wallet_not_allowed", severity="medium",
                                 wallet=sanitize_for_logging(wallet), path=path)
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False
    if abs(now_epoch - ts) > max_age:
        audit_log.security_event("admin_signature_stale", severity="low",
                                 wallet=wallet, path=path)
        return False

    try:
        sig = b58d(signature)
    except ValueError:
        return False

    if not verify_signature(wallet, admin_message(method, path, timestamp), sig):
        audit_log.security_event("admin_signature_invalid", severity="high",
                                 wallet=wallet, path=path)
        return False
    return True

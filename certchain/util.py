"""
Utility functions for CertChain.

Provides hashing, salts, canonical JSON, encoding, and time helpers.
"""

import json
import hashlib
import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Union

import base58


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 hash and return as bytes."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def generate_salt(nbytes: int = 16) -> str:
    """Generate a random salt of `nbytes` bytes, hex encoded."""
    return secrets.token_hex(nbytes)


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def now_epoch_ms() -> int:
    """Get current Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds (sortable as text)."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def today_iso() -> str:
    """Current UTC date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')


def utf8_len(value: str) -> int:
    """Length of a string in UTF-8 bytes."""
    return len(value.encode('utf-8'))


def b58e(b: bytes) -> str:
    """Base58 encode bytes to string."""
    return base58.b58encode(b).decode('ascii')


def b58d(s: str) -> bytes:
    """Base58 decode string to bytes."""
    return base58.b58decode(s.encode('ascii'))


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


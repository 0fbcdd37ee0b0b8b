"""
Signing capability for chain transactions.

Everything that writes to the chain takes a `Signer`: a public identity plus
the ability to sign one message or many. Wallet integrations with a richer
surface are wrapped in `CallbackSigner` at the boundary.
"""

import json
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from .util import b58d, b58e

SECRET_KEY_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


class Signer(ABC):
    """Abstract signing capability."""

    @property
    @abstractmethod
    def public_key(self) -> str:
        """Base58 Ed25519 public key of the signer."""

    @abstractmethod
    def sign_message(self, message: bytes) -> bytes:
        """Return the 64-byte Ed25519 signature over `message`."""

    def sign_messages(self, messages: Sequence[bytes]) -> List[bytes]:
        return [self.sign_message(m) for m in messages]


class KeypairSigner(Signer):
    """
    Signer holding an Ed25519 keypair in memory.

    Accepts the Solana secret-key layout: 32-byte seed followed by the
    32-byte public key.
    """

    def __init__(self, signing_key: SigningKey):
        self._sk = signing_key
        self._public_key = b58e(bytes(signing_key.verify_key))

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(SigningKey.generate())

    @classmethod
    def from_secret_key(cls, secret: bytes) -> "KeypairSigner":
        if len(secret) != SECRET_KEY_LENGTH:
            raise ValueError(f"secret key must be {SECRET_KEY_LENGTH} bytes, got {len(secret)}")
        signer = cls(SigningKey(secret[:32]))
        if b58d(signer.public_key) != secret[32:]:
            raise ValueError("secret key does not match its embedded public key")
        return signer

    @classmethod
    def from_base58(cls, value: str) -> "KeypairSigner":
        return cls.from_secret_key(b58d(value.strip()))

    @classmethod
    def from_json_file(cls, path: str) -> "KeypairSigner":
        """Load a keypair file as written by `solana-keygen` (JSON array of 64 ints)."""
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls.from_secret_key(bytes(raw))

    @property
    def public_key(self) -> str:
        return self._public_key

    def secret_key(self) -> bytes:
        return bytes(self._sk) + bytes(self._sk.verify_key)

    def secret_key_base58(self) -> str:
        return b58e(self.secret_key())

    def sign_message(self, message: bytes) -> bytes:
        return self._sk.sign(message).signature


class CallbackSigner(Signer):
    """
    Adapts an external wallet (browser wallet bridge, HSM, remote signer)
    to the `Signer` interface.

    `sign_many` is optional; without it each message is signed in turn.
    """

    def __init__(
        self,
        public_key: str,
        sign_one: Callable[[bytes], bytes],
        sign_many: Optional[Callable[[Sequence[bytes]], List[bytes]]] = None
    ):
        self._public_key = public_key
        self._sign_one = sign_one
        self._sign_many = sign_many

    @property
    def public_key(self) -> str:
        return self._public_key

    def sign_message(self, message: bytes) -> bytes:
        return bytes(self._sign_one(message))

    def sign_messages(self, messages: Sequence[bytes]) -> List[bytes]:
        if self._sign_many is not None:
            return [bytes(s) for s in self._sign_many(list(messages))]
        return super().sign_messages(messages)


def load_signer(private_key: str = "", keypair_path: str = "") -> Optional[Signer]:
    """
    Build the service signer from configuration.

    Returns None when neither a base58 secret key nor a keypair file is set.
    """
    if private_key:
        return KeypairSigner.from_base58(private_key)
    if keypair_path:
        return KeypairSigner.from_json_file(keypair_path)
    return None


def verify_signature(public_key: str, message: bytes, signature: bytes) -> bool:
    """
    Verify an Ed25519 signature against a base58 public key.
    """
    try:
        key_bytes = b58d(public_key)
        if len(key_bytes) != PUBLIC_KEY_LENGTH:
            return False
        VerifyKey(key_bytes).verify(message, signature)
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False

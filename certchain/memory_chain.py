"""
In-process certificate registry with the program's rules.

Used for local development and tests in place of a cluster. Accounts are
stored by their derived addresses and encoded in the program's account
layout, so reads go through the same decoders as the RPC adapter.
"""

import copy
import threading
from typing import Any, Dict, List, Optional

from .anchor import (
    DEFAULT_PROGRAM_ID,
    ERROR_CERTIFICATE_REVOKED,
    MAX_INSTITUTION_NAME_BYTES,
    MAX_LOCATION_BYTES,
    PROGRAM_ERRORS,
    account_discriminator,
    CertificateAccount,
    GlobalStateAccount,
    InstitutionAccount,
    check_issue_limits,
    encode_instruction,
    find_certificate_address,
    find_global_state_address,
    find_institution_address,
)
from .chain import ChainProgram
from .errors import ChainError
from .signing import Signer
from .util import b58e, now_epoch, sha256_bytes, utf8_len

# Anchor framework error codes
ERROR_CONSTRAINT_HAS_ONE = 2001
ERROR_ACCOUNT_NOT_INITIALIZED = 3012

CERTIFICATE_DISCRIMINATOR = account_discriminator("Certificate")


class InMemoryChainProgram(ChainProgram):
    """
    Thread-safe in-memory ledger.

    Enforces: single initialization, institution registration before
    issuance, unique certificate ids per institution, issuer-only
    revocation, no verification or revocation of revoked certificates,
    and global-authority-only institution verification.
    """

    def __init__(self, program_id: str = DEFAULT_PROGRAM_ID):
        self._program_id = program_id
        self._accounts: Dict[str, bytes] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._tx_count = 0

    @property
    def program_id(self) -> str:
        return self._program_id

    def _global_address(self) -> str:
        return str(find_global_state_address(self._program_id)[0])

    def _institution_address(self, authority: str) -> str:
        return str(find_institution_address(authority, self._program_id)[0])

    def _certificate_address(self, authority: str, certificate_id: str) -> str:
        institution = self._institution_address(authority)
        return str(find_certificate_address(institution, certificate_id, self._program_id)[0])

    def _sign(self, signer: Signer, instruction: bytes) -> str:
        self._tx_count += 1
        digest = sha256_bytes(instruction + self._tx_count.to_bytes(8, "little"))
        return b58e(signer.sign_message(digest))

    def _load_global(self) -> GlobalStateAccount:
        data = self._accounts.get(self._global_address())
        if data is None:
            raise ChainError("AccountNotInitialized: global_state", code=ERROR_ACCOUNT_NOT_INITIALIZED)
        return GlobalStateAccount.decode(data)

    def _load_institution(self, authority: str) -> InstitutionAccount:
        data = self._accounts.get(self._institution_address(authority))
        if data is None:
            raise ChainError("AccountNotInitialized: institution", code=ERROR_ACCOUNT_NOT_INITIALIZED)
        return InstitutionAccount.decode(data)

    def _load_certificate(self, address: str) -> CertificateAccount:
        data = self._accounts.get(address)
        if data is None:
            raise ChainError("AccountNotInitialized: certificate", code=ERROR_ACCOUNT_NOT_INITIALIZED)
        return CertificateAccount.decode(data)

    def _save_global(self, state: GlobalStateAccount) -> None:
        self._accounts[self._global_address()] = state.encode()

    # --- writes ---

    def initialize(self, signer: Signer) -> str:
        with self._lock:
            address = self._global_address()
            if address in self._accounts:
                raise ChainError(f"Allocate: account {address} already in use")
            self._save_global(GlobalStateAccount(signer.public_key, 0, 0, 0))
            return self._sign(signer, encode_instruction("initialize"))

    def register_institution(self, signer: Signer, name: str, location: str) -> str:
        if utf8_len(name) > MAX_INSTITUTION_NAME_BYTES or utf8_len(location) > MAX_LOCATION_BYTES:
            raise ChainError("institution name or location too long")
        with self._lock:
            state = self._load_global()
            address = self._institution_address(signer.public_key)
            if address in self._accounts:
                raise ChainError(f"Allocate: account {address} already in use")
            self._accounts[address] = InstitutionAccount(
                signer.public_key, name, location, False, 0, now_epoch()
            ).encode()
            state.total_institutions += 1
            self._save_global(state)
            return self._sign(signer, encode_instruction("register_institution", name, location))

    def verify_institution(self, signer: Signer, authority: str) -> str:
        with self._lock:
            state = self._load_global()
            if state.authority != signer.public_key:
                raise ChainError("ConstraintHasOne: not the global authority",
                                 code=ERROR_CONSTRAINT_HAS_ONE)
            institution = self._load_institution(authority)
            institution.is_verified = True
            self._accounts[self._institution_address(authority)] = institution.encode()
            return self._sign(signer, encode_instruction("verify_institution") + authority.encode())

    def issue_certificate(
        self,
        signer: Signer,
        student_name: str,
        course_name: str,
        grade: str,
        certificate_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        try:
            check_issue_limits(certificate_id, student_name, course_name, grade)
        except ValueError as e:
            raise ChainError(str(e))
        with self._lock:
            state = self._load_global()
            institution = self._load_institution(signer.public_key)
            institution_address = self._institution_address(signer.public_key)
            address = self._certificate_address(signer.public_key, certificate_id)
            if address in self._accounts:
                raise ChainError(f"Allocate: account {address} already in use")

            self._accounts[address] = CertificateAccount(
                institution_address, student_name, course_name, grade,
                certificate_id, False, 0, now_epoch()
            ).encode()
            if metadata:
                self._metadata[address] = copy.deepcopy(metadata)

            institution.certificates_issued += 1
            self._accounts[institution_address] = institution.encode()
            state.total_certificates += 1
            self._save_global(state)
            return self._sign(signer, encode_instruction(
                "issue_certificate", student_name, course_name, grade, certificate_id
            ))

    def verify_certificate(self, signer: Signer, issuer: str, certificate_id: str) -> str:
        with self._lock:
            state = self._load_global()
            address = self._certificate_address(issuer, certificate_id)
            certificate = self._load_certificate(address)
            if certificate.is_revoked:
                raise ChainError(PROGRAM_ERRORS[ERROR_CERTIFICATE_REVOKED],
                                 code=ERROR_CERTIFICATE_REVOKED)
            certificate.verification_count += 1
            self._accounts[address] = certificate.encode()
            state.total_verifications += 1
            self._save_global(state)
            return self._sign(signer, encode_instruction("verify_certificate") + address.encode())

    def revoke_certificate(self, signer: Signer, certificate_id: str) -> str:
        with self._lock:
            address = self._certificate_address(signer.public_key, certificate_id)
            certificate = self._load_certificate(address)
            if certificate.institution != self._institution_address(signer.public_key):
                raise ChainError("ConstraintHasOne: not the issuing institution",
                                 code=ERROR_CONSTRAINT_HAS_ONE)
            if certificate.is_revoked:
                raise ChainError(PROGRAM_ERRORS[ERROR_CERTIFICATE_REVOKED],
                                 code=ERROR_CERTIFICATE_REVOKED)
            certificate.is_revoked = True
            self._accounts[address] = certificate.encode()
            return self._sign(signer, encode_instruction("revoke_certificate") + address.encode())

    # --- reads ---

    def fetch_global_state(self) -> Optional[GlobalStateAccount]:
        data = self._accounts.get(self._global_address())
        return GlobalStateAccount.decode(data) if data else None

    def fetch_institution(self, authority: str) -> Optional[InstitutionAccount]:
        data = self._accounts.get(self._institution_address(authority))
        return InstitutionAccount.decode(data) if data else None

    def fetch_certificate(self, issuer: str, certificate_id: str) -> Optional[CertificateAccount]:
        data = self._accounts.get(self._certificate_address(issuer, certificate_id))
        return CertificateAccount.decode(data) if data else None

    def fetch_certificate_metadata(self, issuer: str, certificate_id: str) -> Optional[Dict[str, Any]]:
        metadata = self._metadata.get(self._certificate_address(issuer, certificate_id))
        return copy.deepcopy(metadata) if metadata else None

    def fetch_institution_certificates(self, authority: str) -> List[CertificateAccount]:
        institution = self._institution_address(authority)
        with self._lock:
            accounts = [
                CertificateAccount.decode(data) for data in self._accounts.values()
                if data[:8] == CERTIFICATE_DISCRIMINATOR
            ]
        return [a for a in accounts if a.institution == institution]

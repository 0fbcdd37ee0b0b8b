"""
Solana JSON-RPC adapter for the certificate registry program.

Transactions are built and serialized with solders, signed through the
`Signer` capability, and submitted over plain JSON-RPC with requests.
Issuance metadata (including the certificate hash) travels in an SPL Memo
instruction inside the issue transaction; it is read back from the oldest
transaction touching the certificate account.
"""

import base64
import itertools
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional

import requests
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction

from .anchor import (
    DEFAULT_PROGRAM_ID,
    PROGRAM_ERRORS,
    CertificateAccount,
    GlobalStateAccount,
    InstitutionAccount,
    account_discriminator,
    encode_instruction,
    find_certificate_address,
    find_global_state_address,
    find_institution_address,
    to_pubkey,
)
from .chain import ChainProgram
from .errors import ChainError
from .signing import Signer
from .util import b58e, canonicalize

logger = logging.getLogger(__name__)

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")

CUSTOM_ERROR_HEX = re.compile(r'custom program error: (0x[0-9a-fA-F]+)')


def _program_error_code(error: Any) -> Optional[int]:
    """
    Pull the custom program error code out of an RPC error or
    transaction status error.
    """
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and "err" in data:
            code = _program_error_code(data["err"])
            if code is not None:
                return code
        instruction_error = error.get("InstructionError")
        if isinstance(instruction_error, list) and len(instruction_error) == 2:
            detail = instruction_error[1]
            if isinstance(detail, dict) and "Custom" in detail:
                return int(detail["Custom"])
        message = error.get("message")
        if isinstance(message, str):
            match = CUSTOM_ERROR_HEX.search(message)
            if match:
                return int(match.group(1), 16)
    return None


def _chain_error(prefix: str, error: Any) -> ChainError:
    code = _program_error_code(error)
    if code in PROGRAM_ERRORS:
        return ChainError(PROGRAM_ERRORS[code], code=code)
    if isinstance(error, dict) and error.get("message"):
        detail = error["message"]
        logs = (error.get("data") or {}).get("logs") or []
        if any("already in use" in line for line in logs):
            detail = f"{detail} (account already in use)"
    else:
        detail = json.dumps(error, default=str)
    return ChainError(f"{prefix}: {detail}", code=code)


class SolanaRpcProgram(ChainProgram):
    """
    Certificate registry program accessed over a Solana RPC endpoint.

    Args:
        rpc_url: JSON-RPC endpoint
        program_id: deployed program address
        timeout: per-request HTTP timeout in seconds
        confirm_timeout: how long to poll for confirmation
        commitment: commitment level for reads and confirmation
        session: optional requests.Session (connection reuse, testing)
    """

    def __init__(
        self,
        rpc_url: str,
        program_id: str = DEFAULT_PROGRAM_ID,
        timeout: float = 30,
        confirm_timeout: float = 60,
        commitment: str = "confirmed",
        poll_interval: float = 0.5,
        session: Optional[requests.Session] = None
    ):
        self._rpc_url = rpc_url
        self._program_id = to_pubkey(program_id)
        self._timeout = timeout
        self._confirm_timeout = confirm_timeout
        self._commitment = commitment
        self._poll_interval = poll_interval
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    @property
    def program_id(self) -> str:
        return str(self._program_id)

    # --- transport ---

    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._session.post(self._rpc_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            raise ChainError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise ChainError(f"RPC {method} returned invalid JSON") from e

        if "error" in body:
            raise _chain_error(f"RPC {method} error", body["error"])
        return body.get("result")

    def _send(self, signer: Signer, instructions: List[Instruction]) -> str:
        blockhash_info = self._rpc("getLatestBlockhash", [{"commitment": self._commitment}])
        blockhash = Hash.from_string(blockhash_info["value"]["blockhash"])
        payer = to_pubkey(signer.public_key)

        message = Message.new_with_blockhash(instructions, payer, blockhash)
        signature = Signature.from_bytes(signer.sign_message(bytes(message)))
        transaction = Transaction.populate(message, [signature])

        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        tx_signature = self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self._commitment}]
        )
        self._confirm(tx_signature)
        return tx_signature

    def _confirm(self, signature: str) -> None:
        deadline = time.monotonic() + self._confirm_timeout
        while True:
            statuses = self._rpc(
                "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
            status = (statuses or {}).get("value", [None])[0]
            if status is not None:
                if status.get("err"):
                    raise _chain_error("transaction failed", status["err"])
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if time.monotonic() >= deadline:
                raise ChainError(f"transaction {signature} not confirmed within {self._confirm_timeout}s")
            time.sleep(self._poll_interval)

    def _account_data(self, address: Pubkey) -> Optional[bytes]:
        result = self._rpc(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self._commitment}]
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    # --- addresses ---

    def _global_address(self) -> Pubkey:
        return find_global_state_address(self._program_id)[0]

    def _institution_address(self, authority: str) -> Pubkey:
        return find_institution_address(authority, self._program_id)[0]

    def _certificate_address(self, authority: str, certificate_id: str) -> Pubkey:
        return find_certificate_address(
            self._institution_address(authority), certificate_id, self._program_id
        )[0]

    def _instruction(self, data: bytes, accounts: List[AccountMeta]) -> Instruction:
        return Instruction(self._program_id, data, accounts)

    # --- writes ---

    def initialize(self, signer: Signer) -> str:
        authority = to_pubkey(signer.public_key)
        ix = self._instruction(encode_instruction("initialize"), [
            AccountMeta(authority, is_signer=True, is_writable=True),
            AccountMeta(self._global_address(), is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ])
        return self._send(signer, [ix])

    def register_institution(self, signer: Signer, name: str, location: str) -> str:
        authority = to_pubkey(signer.public_key)
        ix = self._instruction(encode_instruction("register_institution", name, location), [
            AccountMeta(authority, is_signer=True, is_writable=True),
            AccountMeta(self._institution_address(signer.public_key), is_signer=False, is_writable=True),
            AccountMeta(self._global_address(), is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ])
        return self._send(signer, [ix])

    def verify_institution(self, signer: Signer, authority: str) -> str:
        ix = self._instruction(encode_instruction("verify_institution"), [
            AccountMeta(self._global_address(), is_signer=False, is_writable=False),
            AccountMeta(to_pubkey(signer.public_key), is_signer=True, is_writable=False),
            AccountMeta(self._institution_address(authority), is_signer=False, is_writable=True),
        ])
        return self._send(signer, [ix])

    def issue_certificate(
        self,
        signer: Signer,
        student_name: str,
        course_name: str,
        grade: str,
        certificate_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        issuer = to_pubkey(signer.public_key)
        data = encode_instruction(
            "issue_certificate", student_name, course_name, grade, certificate_id
        )
        instructions = [self._instruction(data, [
            AccountMeta(issuer, is_signer=True, is_writable=True),
            AccountMeta(self._institution_address(signer.public_key), is_signer=False, is_writable=True),
            AccountMeta(self._certificate_address(signer.public_key, certificate_id),
                        is_signer=False, is_writable=True),
            AccountMeta(self._global_address(), is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ])]
        if metadata:
            instructions.append(Instruction(MEMO_PROGRAM_ID, canonicalize(metadata), []))
        return self._send(signer, instructions)

    def verify_certificate(self, signer: Signer, issuer: str, certificate_id: str) -> str:
        ix = self._instruction(encode_instruction("verify_certificate"), [
            AccountMeta(to_pubkey(signer.public_key), is_signer=True, is_writable=False),
            AccountMeta(self._certificate_address(issuer, certificate_id),
                        is_signer=False, is_writable=True),
            AccountMeta(self._global_address(), is_signer=False, is_writable=True),
        ])
        return self._send(signer, [ix])

    def revoke_certificate(self, signer: Signer, certificate_id: str) -> str:
        ix = self._instruction(encode_instruction("revoke_certificate"), [
            AccountMeta(to_pubkey(signer.public_key), is_signer=True, is_writable=False),
            AccountMeta(self._certificate_address(signer.public_key, certificate_id),
                        is_signer=False, is_writable=True),
            AccountMeta(self._institution_address(signer.public_key),
                        is_signer=False, is_writable=False),
        ])
        return self._send(signer, [ix])

    # --- reads ---

    def fetch_global_state(self) -> Optional[GlobalStateAccount]:
        data = self._account_data(self._global_address())
        return GlobalStateAccount.decode(data) if data else None

    def fetch_institution(self, authority: str) -> Optional[InstitutionAccount]:
        data = self._account_data(self._institution_address(authority))
        return InstitutionAccount.decode(data) if data else None

    def fetch_certificate(self, issuer: str, certificate_id: str) -> Optional[CertificateAccount]:
        data = self._account_data(self._certificate_address(issuer, certificate_id))
        return CertificateAccount.decode(data) if data else None

    def fetch_certificate_metadata(self, issuer: str, certificate_id: str) -> Optional[Dict[str, Any]]:
        address = self._certificate_address(issuer, certificate_id)
        signatures = self._rpc(
            "getSignaturesForAddress",
            [str(address), {"limit": 1000, "commitment": self._commitment}]
        ) or []
        if not signatures:
            return None

        # newest first; the issue transaction is the oldest
        oldest = signatures[-1]["signature"]
        tx = self._rpc(
            "getTransaction",
            [oldest, {"encoding": "jsonParsed", "commitment": self._commitment,
                      "maxSupportedTransactionVersion": 0}]
        )
        if not tx:
            return None
        for ix in tx["transaction"]["message"]["instructions"]:
            if ix.get("programId") == str(MEMO_PROGRAM_ID) or ix.get("program") == "spl-memo":
                memo = ix.get("parsed")
                try:
                    return json.loads(memo)
                except (TypeError, ValueError):
                    logger.warning("Unreadable metadata memo on %s", address)
                    return None
        return None

    def fetch_institution_certificates(self, authority: str) -> List[CertificateAccount]:
        filters = [
            {"memcmp": {"offset": 0, "bytes": b58e(account_discriminator("Certificate"))}},
            {"memcmp": {"offset": 8, "bytes": str(self._institution_address(authority))}},
        ]
        accounts = self._rpc(
            "getProgramAccounts",
            [str(self._program_id),
             {"encoding": "base64", "commitment": self._commitment, "filters": filters}]
        ) or []
        return [
            CertificateAccount.decode(base64.b64decode(a["account"]["data"][0]))
            for a in accounts
        ]

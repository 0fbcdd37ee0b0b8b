"""
Backend selection from configuration.

STORE_BACKEND picks the certificate store, CHAIN_BACKEND the chain program,
and SOLANA_PRIVATE_KEY / SOLANA_KEYPAIR_PATH the service signer.
"""

from typing import Optional

from . import config
from .chain import ChainProgram, ChainTransactionManager
from .memory_chain import InMemoryChainProgram
from .service import UnifiedCertificateService
from .signing import Signer, load_signer
from .store import CertificateStore, SqliteCertificateStore


def get_store() -> CertificateStore:
    if config.STORE_BACKEND == "supabase":
        from .supabase_store import SupabaseCertificateStore
        return SupabaseCertificateStore(url=config.SUPABASE_URL, key=config.SUPABASE_KEY)
    store = SqliteCertificateStore(config.DATABASE_PATH)
    store.init_db()
    return store


def get_chain_program() -> Optional[ChainProgram]:
    if config.CHAIN_BACKEND == "solana":
        from .solana_rpc import SolanaRpcProgram
        return SolanaRpcProgram(
            rpc_url=config.SOLANA_RPC_URL,
            program_id=config.PROGRAM_ID,
            timeout=config.RPC_TIMEOUT_SECONDS,
            confirm_timeout=config.CONFIRM_TIMEOUT_SECONDS,
        )
    if config.CHAIN_BACKEND == "memory":
        return InMemoryChainProgram(program_id=config.PROGRAM_ID)
    return None


def get_signer() -> Optional[Signer]:
    return load_signer(config.SOLANA_PRIVATE_KEY, config.SOLANA_KEYPAIR_PATH)


def build_service(
    store: Optional[CertificateStore] = None,
    program: Optional[ChainProgram] = None,
    signer: Optional[Signer] = None
) -> UnifiedCertificateService:
    """Assemble the service; any argument left as None comes from configuration."""
    store = store or get_store()
    program = program or get_chain_program()
    signer = signer or get_signer()
    chain = None
    if program is not None:
        chain = ChainTransactionManager(
            program, signer=signer, batch_delay=config.BATCH_ISSUE_DELAY_SECONDS
        )
    return UnifiedCertificateService(
        store, chain=chain, base_url=config.PUBLIC_BASE_URL, signer=signer
    )

"""
Configuration module for CertChain.

Centralizes all configuration with environment variable support,
validation, and caching for file-backed settings such as the admin
wallet allowlist.
"""

import os
import json
import threading
import time
from typing import Dict, Any, Optional, List
from pathlib import Path

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CERTCHAIN_ENV", "dev")  # dev|stage|prod

# Certificate store
STORE_BACKEND = os.getenv("STORE_BACKEND", "sqlite")  # sqlite|supabase
DATABASE_PATH = os.getenv("DATABASE_PATH", "data/certchain.db")
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

# Chain program
CHAIN_BACKEND = os.getenv("CHAIN_BACKEND", "none")  # solana|memory|none
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
PROGRAM_ID = os.getenv("PROGRAM_ID", "BssezJKJhhZfQo6EWUHVrfonpdJba54ptgRyG4v5wzb3")
SOLANA_PRIVATE_KEY = os.getenv("SOLANA_PRIVATE_KEY", "")
SOLANA_KEYPAIR_PATH = os.getenv("SOLANA_KEYPAIR_PATH", "")
RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "30"))
CONFIRM_TIMEOUT_SECONDS = float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60"))

# Batch issuance throttle between sequential chain writes
BATCH_ISSUE_DELAY_SECONDS = float(os.getenv("BATCH_ISSUE_DELAY_SECONDS", "1.0"))

# Admin allowlist: comma separated env value and/or a JSON file
ADMIN_WALLETS = os.getenv("ADMIN_WALLETS", "")
ADMIN_WALLETS_PATH = os.getenv("ADMIN_WALLETS_PATH", "")
ADMIN_SIGNATURE_MAX_AGE = int(os.getenv("ADMIN_SIGNATURE_MAX_AGE", "300"))

# Base URL for shareable verification links
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.time() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Any:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.time()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


# Global cached config instance
_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Any:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


def invalidate_config_cache() -> None:
    """Invalidate all cached configuration."""
    _config_cache.invalidate()


def load_admin_wallets(
    env_value: Optional[str] = None,
    path: Optional[str] = None
) -> List[str]:
    """
    Load the set of wallets allowed to perform admin actions.

    Merges the comma separated ADMIN_WALLETS value with the JSON file at
    ADMIN_WALLETS_PATH. The file holds either a list of addresses or an
    object with an "admin_wallets" list. Order is preserved, duplicates
    dropped.
    """
    env_value = ADMIN_WALLETS if env_value is None else env_value
    path = ADMIN_WALLETS_PATH if path is None else path

    wallets = [w.strip() for w in env_value.split(",") if w.strip()]
    if path:
        data = load_json_cached(path)
        if isinstance(data, dict):
            data = data.get("admin_wallets", [])
        wallets.extend(str(w).strip() for w in data if str(w).strip())

    seen = set()
    unique = []
    for wallet in wallets:
        if wallet not in seen:
            seen.add(wallet)
            unique.append(wallet)
    return unique


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of setting -> ok.
    """
    checks = {
        "store_backend": STORE_BACKEND in ("sqlite", "supabase"),
        "chain_backend": CHAIN_BACKEND in ("solana", "memory", "none"),
    }

    if STORE_BACKEND == "supabase":
        checks["supabase_credentials"] = bool(SUPABASE_URL and SUPABASE_KEY)

    if CHAIN_BACKEND == "solana":
        checks["program_id"] = bool(PROGRAM_ID)
        if SOLANA_KEYPAIR_PATH:
            checks["keypair_file"] = Path(SOLANA_KEYPAIR_PATH).exists()

    if ADMIN_WALLETS_PATH:
        checks["admin_wallets_file"] = Path(ADMIN_WALLETS_PATH).exists()

    if is_production():
        checks["admin_wallets"] = bool(ADMIN_WALLETS or ADMIN_WALLETS_PATH)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CERTCHAIN_DEBUG", "").lower() in ("1", "true", "yes")

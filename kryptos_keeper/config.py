from __future__ import annotations

import json
from pathlib import Path

import base58
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.keypair import Keypair

from kryptos_keeper.errors import KeeperStartupError


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="KRYPTOS_", extra="allow")

    # Solana
    sol_rpc_url: str = "https://api.mainnet-beta.solana.com"
    sol_network: str = "mainnet-beta"
    program_id: str = "F7gyohBLEMJFkMtQDkhqtEZmpABNPE3t32aL8LTXYjy2"

    # Keeper key material (one of the two is required)
    keeper_keypair_path: str | None = None  # JSON byte array, solana-keygen format
    keeper_private_key: str | None = None  # base58 secret key
    min_keeper_balance_lamports: int = 100_000_000  # warn below 0.1 SOL

    # Jupiter
    jupiter_ultra_url: str = "https://lite-api.jup.ag/ultra/v1"
    jupiter_price_url: str = "https://lite-api.jup.ag/price/v2"
    http_timeout_sec: float = 30.0
    swap_timeout_sec: float = 60.0
    quote_ttl_sec: float = 30.0
    price_cache_ttl_sec: float = 10.0

    # Polling
    dca_check_interval_sec: float = 60.0
    intent_check_interval_sec: float = 30.0
    max_concurrency: int = 4

    # Execution journal
    database_url: str = "sqlite+pysqlite:///kryptos_keeper.db"

    # Execution
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"

    # --- Validators to coerce empty strings in optional envs to None ---
    @field_validator("keeper_keypair_path", "keeper_private_key", mode="before")
    @classmethod
    def _empty_str_to_none(cls, v):
        if v == "":
            return None
        return v

    @field_validator("max_concurrency")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    def explorer_url(self, signature: str) -> str:
        cluster = "" if self.sol_network == "mainnet-beta" else f"?cluster={self.sol_network}"
        return f"https://solscan.io/tx/{signature}{cluster}"

    def load_keypair(self) -> Keypair:
        """Load the keeper signing key, preferring the keypair file over the inline key.

        Raises KeeperStartupError when no key is configured or the material is malformed.
        """
        if self.keeper_keypair_path:
            path = Path(self.keeper_keypair_path)
            if not path.exists():
                raise KeeperStartupError(f"Keeper keypair file not found: {path}")
            try:
                secret = bytes(json.loads(path.read_text()))
                return Keypair.from_bytes(secret)
            except Exception as e:
                raise KeeperStartupError(f"Invalid keeper keypair file {path}: {e}") from e
        if self.keeper_private_key:
            try:
                secret = base58.b58decode(self.keeper_private_key.strip())
            except Exception as e:
                raise KeeperStartupError(f"Keeper private key is not valid base58: {e}") from e
            if len(secret) != 64:
                raise KeeperStartupError(
                    f"Keeper private key decoded to {len(secret)} bytes, expected 64"
                )
            return Keypair.from_bytes(secret)
        raise KeeperStartupError(
            "No keeper key configured. Set KRYPTOS_KEEPER_KEYPAIR_PATH or KRYPTOS_KEEPER_PRIVATE_KEY"
        )

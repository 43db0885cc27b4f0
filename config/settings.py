"""Pydantic BaseSettings — relayer configuration, token amounts as raw integers."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration loaded from env / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────────
    APP_ENV: Literal["dev", "staging", "prod"] = "dev"
    APP_NAME: str = "erc20-bridge-relayer"
    LOG_LEVEL: str = "INFO"

    # ── EVM chain ───────────────────────────────────────────────
    # Comma-separated; the first URL is the primary endpoint.
    EVM_RPC_URLS: str = "https://ethereum-sepolia-rpc.publicnode.com"
    EVM_CHAIN_ID: int = 11155111
    EVM_FALLBACK_PRIORITY_FEE_GWEI: int = 2
    EVM_FALLBACK_MAX_FEE_GWEI: int = 20
    EVM_GAS_BUFFER_PCT: int = Field(default=20, ge=0, le=200)
    EVM_RECEIPT_TIMEOUT_SECONDS: float = 120.0

    # ── Custody ledger (Solana) ─────────────────────────────────
    SOLANA_RPC_URL: str = "https://api.devnet.solana.com"
    SOLANA_COMMITMENT: Literal["processed", "confirmed", "finalized"] = "confirmed"
    BRIDGE_PROGRAM_ID: str = "3si68i2yXFAGy5k8BpqGpPJR5wE27id1Jenx3uN8GCws"
    CHAIN_SIGNATURES_PROGRAM_ID: str = "4uvZW8K4g4jBg7dzPNbb9XDxJLFBK7V6iC76uofmYvEU"

    # ── Credentials (never commit real values) ──────────────────
    # Base58 string or JSON array of the 64-byte secret key.
    RELAYER_PRIVATE_KEY: str = ""

    # ── MPC signer ──────────────────────────────────────────────
    MPC_BASE_PUBLIC_KEY: str = (
        "0x04bb50e2d89a4ed70663d080659fe0ad4b9bc3e06c17a227433966cb59ceee02"
        "0decddbf6e00192011648d13b1c00af770c0c1bb609d4d3a5c98a43772e0e18ef4"
    )
    MPC_ROOT_SIGNER_ADDRESS: str = "0x00A40C2661293d5134E53Da52951A3F7767836Ef"
    MPC_RESPONDER_ADDRESS: str = "Dewq9xyD1MZi1rE588XZFvK7uUqkcHLgCnDsn9Ns4H9M"
    VAULT_ROOT_PATH: str = "root"

    # ── Flow timing ─────────────────────────────────────────────
    WITHDRAWAL_SIGNATURE_TIMEOUT_SECONDS: float = 60.0
    DEPOSIT_SIGNATURE_TIMEOUT_SECONDS: float = 300.0
    SIGNATURE_POLL_INTERVAL_SECONDS: float = 2.0
    EVENT_SCAN_INTERVAL_SECONDS: float = 10.0
    EVENT_SCAN_LIMIT: int = 100
    EVENT_INBOX_TTL_SECONDS: float = 900.0
    DEPOSIT_INITIAL_DELAY_SECONDS: float = 12.0
    DEPOSIT_BALANCE_POLL_SECONDS: float = 5.0
    DEPOSIT_BALANCE_TIMEOUT_SECONDS: float = 60.0
    DEPOSIT_AMOUNT_JITTER_MAX: int = Field(default=100, ge=0)

    # ── Retry ───────────────────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BACKOFF_BASE_MS: int = Field(default=500, ge=0)

    # ── Read cache ──────────────────────────────────────────────
    CACHE_TRANSACTION_TTL_SECONDS: float = 120.0
    CACHE_SIGNATURES_TTL_SECONDS: float = 30.0

    # ── HTTP API ────────────────────────────────────────────────
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    API_MAX_BODY_BYTES: int = 64 * 1024

    @property
    def evm_rpc_urls(self) -> list[str]:
        """EVM RPC endpoints in priority order."""
        return [u.strip() for u in self.EVM_RPC_URLS.split(",") if u.strip()]


settings = Settings()

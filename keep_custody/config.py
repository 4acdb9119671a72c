"""Keep Custody — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class KeepSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "KEEP_",
        "extra": "ignore",
    }

    # ── Unit identity ──────────────────────────────────────────
    keep_address: str = "0x00000000000000000000000000000000000000ee"
    chain_id: int = 1

    # ── Ledger storage ─────────────────────────────────────────
    database_url: str = "sqlite+pysqlite:///:memory:"

    # ── Metadata fallback source ───────────────────────────────
    metadata_base_url: str = ""
    metadata_timeout: float = 10.0

    # ── API ────────────────────────────────────────────────────
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = KeepSettings()

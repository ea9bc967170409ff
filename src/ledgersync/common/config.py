"""ledgersync configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
    "evidence_encryption_key": "insecure-evidence-key-change-me",
}


class LedgerSyncSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEDGERSYNC_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/ledgersync.db"

    # API
    api_title: str = "ledgersync"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Evidence encryption, hashed to a 256-bit AES key
    evidence_encryption_key: str = "insecure-evidence-key-change-me"

    # Ledger ingestion
    ledger_url: str = "http://localhost:8000"
    contract_ids: list[str] = []
    listener_service_name: str = "ledger_listener"
    start_position: int = 1  # used when no cursor is stored yet
    batch_size: int = 100
    poll_interval: float = 5.0  # seconds between empty fetches
    fetch_timeout: float = 10.0
    shutdown_timeout: float = 30.0

    # Retry / dead-letter
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1  # seconds, multiplied by the attempt number

    # Milestone deadline sweep, 0 disables the background sweeper
    expiration_sweep_interval: float = 60.0

    # Webhooks
    webhook_max_retries: int = 3
    webhook_retry_delay: float = 1.0

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"LEDGERSYNC_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys, set LEDGERSYNC_API_KEY and "
                "LEDGERSYNC_EVIDENCE_ENCRYPTION_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> LedgerSyncSettings:
    settings = LedgerSyncSettings()
    settings.validate_for_production()
    return settings

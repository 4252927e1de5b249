"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class StatementExtractorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="STATEMENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # IMAP account (app-specific password, not the account password)
    email_address: str = ""
    app_password: str = ""
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    mailbox: str = "INBOX"
    connect_timeout_seconds: float = 30.0

    # Discovery & extraction
    subject_term: str = "statement"
    lookback_days: int = 730
    fetch_batch_size: int = 10

    # PDF table heuristic (layout units)
    table_row_bucket: float = 5.0
    fragment_gap: float = 8.0

    # Persistence
    cache_path: Path = Path("data/credential_cache.json")
    cache_write_retries: int = 1
    output_dir: Path = Path("output/extracted")

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and output directories if they don't exist."""
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

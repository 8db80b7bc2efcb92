"""MetaSync — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_ad_account_id: str = ""  # Single-account override for every sync
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_max_retries: int = 3
    meta_retry_base_delay: float = 1.0  # seconds, doubled per attempt
    meta_max_pages: int = 100
    meta_page_size: int = 100

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"

    # ── Sync ──
    sync_timeout_seconds: int = 600
    sync_batch_size: int = 10
    sync_structural_since: str = "2025-01-01"
    sync_lookback_days: int = 90

    @property
    def meta_api_base(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/metasync.db"
        return "sqlite:///./metasync.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

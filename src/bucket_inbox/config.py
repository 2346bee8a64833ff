"""Runtime settings, read from ``BUCKET_INBOX_*`` environment variables or ``.env``"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ============ Storage ============
    storage_uri: str = Field(default="./bucket-inbox-data",
                             description="Local directory, file:// URI or s3://<endpoint-host>")
    s3_endpoint_url: Optional[str] = None
    s3_region: str = "us-east-1"

    # ============ Addressing ============
    ss58_prefix: int = 42
    chat_bucket_prefix: str = "chat-"
    profile_bucket_prefix: str = "profile-"

    # ============ Retries ============
    retry_attempts: int = 3
    retry_base_delay_ms: int = 300

    # ============ Polling ============
    poll_interval_ms: int = 3000
    burst_interval_ms: int = 1000
    burst_polls: int = 3
    error_backoff_ms: int = 5000
    error_jitter_ms: int = 1000

    # ============ History ============
    initial_history_lines: int = 100
    backfill_history_lines: int = 150
    recent_incoming_lookback_ms: int = 10 * 60 * 1000
    recent_incoming_sample: int = 50

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BUCKET_INBOX_",
        env_file=".env",
        extra="ignore",
    )

    def chat_bucket(self, address: str) -> str:
        return f"{self.chat_bucket_prefix}{address.strip()}"

    def profile_bucket(self, address: str) -> str:
        return f"{self.profile_bucket_prefix}{address.strip()}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

from typing import Optional

from pydantic_settings import BaseSettings

from freightsync.models.sync import RetryConfig


class Settings(BaseSettings):
    database_url: str = "sqlite:///./freightsync.db"
    sync_max_retries: int = 3
    sync_base_delay_ms: int = 1000
    sync_max_delay_ms: int = 30000
    sync_concurrency: int = 1  # records dispatched at once per batch
    token_expiry_buffer_seconds: int = 300
    full_sync_hour: int = 2
    http_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.sync_max_retries,
            base_delay_ms=self.sync_base_delay_ms,
            max_delay_ms=self.sync_max_delay_ms,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

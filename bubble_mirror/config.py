"""Mirror configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class MirrorSettings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///bubble_mirror.db"
    echo_sql: bool = False
    app_title: str = "Bubble Mirror"
    log_level: str = "INFO"

    # Remote Bubble Data API
    remote_base_url: str = "https://example.bubbleapps.io/api/1.1/obj"
    remote_api_key: str = ""
    remote_timeout_seconds: float = 30.0
    remote_page_size: int = 100
    # Upper bound on concurrent by-id fetches against the remote API.
    remote_concurrency: int = 10
    remote_max_pages: int = 10000

    idlist_batch_size: int = 100
    file_sync_limit: int = 100

    progress_retention_seconds: int = 86400
    progress_write_timeout_seconds: float = 2.0

    model_config = {"env_prefix": "BUBBLE_MIRROR_", "env_file": ".env", "extra": "ignore"}

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_base_url and self.remote_api_key)


settings = MirrorSettings()

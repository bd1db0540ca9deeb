from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    acumatica_url: str = ""
    acumatica_username: str = ""
    acumatica_password: str = ""
    acumatica_company: str = ""
    acumatica_branch: str = ""
    acumatica_api_version: str = "24.200.001"
    database_url: str = "sqlite:///./acusync.db"
    attachments_dir: str = "./attachments"

    # Acumatica drops idle API sessions after ~30 minutes; expire ours first
    session_ttl_minutes: int = 25
    request_timeout_seconds: float = 60.0
    page_size: int = 500
    prefetch_depth: int = 2
    progress_batch_size: int = 5
    job_expiry_minutes: int = 30
    max_job_errors: int = 50
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    sync_time_budget_seconds: float = 20.0

    scheduled_sync_minutes: int = 5
    scheduled_lookback_hours: int = 2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

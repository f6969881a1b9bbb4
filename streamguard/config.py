# streamguard/config.py

from typing import Optional
from pydantic_settings import BaseSettings
from urllib.parse import quote_plus


class Settings(BaseSettings):
    # MySQL connection
    db_host: str = "localhost"
    db_port: int = 3306
    db_user: str = "streamguard"
    db_password: str = "changeme"
    db_name: str = "streamguard"

    # Any SQLAlchemy URL (sqlite, postgresql) replaces the MySQL settings above
    database_url_override: Optional[str] = None

    # Connection pool
    db_pool_size: int = 10
    db_pool_overflow: int = 20

    # Polling
    default_poll_interval_seconds: int = 15

    # Inactivity scan
    inactivity_enabled: bool = True
    inactivity_interval_hours: int = 6

    # Session tracking
    resume_window_hours: int = 24
    recent_session_window_hours: int = 24

    # Violations
    dedup_window_hours: int = 24
    lock_timeout_seconds: int = 5
    initial_trust_score: int = 100

    # Outbound events
    event_queue_size: int = 1000

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        password = quote_plus(self.db_password)
        return (
            f"mysql+pymysql://{self.db_user}:{password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    class Config:
        env_file = ".env"
        env_prefix = "STREAMGUARD_"


settings = Settings()

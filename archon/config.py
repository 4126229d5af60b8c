"""Configuration settings for Archon mission control."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "archon"
    db_user: str = "archon"
    db_password: str = "archon"
    database_url: str | None = None  # full async URL, e.g. sqlite+aiosqlite:///archon.db
    db_echo: bool = False
    db_auto_create: bool = False  # create tables on API startup (development only)

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"

    # Redis fan-out of lifecycle events
    redis_url: str = "redis://localhost:6379/0"
    redis_events_enabled: bool = False

    # Read-side display
    activity_log_page_size: int = 50
    uptime_display: str = "99.9%"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "ARCHON_"
        env_file = ".env"


# Global settings instance
settings = Settings()

"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str
    DB_READY_TIMEOUT: int = 60

    # Serverless functions (create-story, create-series)
    FUNCTIONS_BASE_URL: str = "http://localhost:54321/functions/v1"
    FUNCTIONS_API_KEY: str = ""
    FUNCTIONS_TIMEOUT: float = 30.0

    # Request tracking
    VISIBILITY_WINDOW_SECONDS: int = 600  # 10 minutes
    RECONCILE_POLL_INTERVAL: float = 15.0
    AUTO_START_GENERATION: bool = True
    TRACKER_IDLE_SECONDS: float = 900.0  # 0 keeps trackers until shutdown

    # Realtime webhook (empty disables the check)
    REALTIME_WEBHOOK_SECRET: str = ""

    # Presentation
    DEFAULT_LOCALE: str = "de"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()

"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./cardflow.db"

    # OpenRouter (empty key selects the stand-in generator)
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_MODEL: str = "meta-llama/llama-3.3-70b-instruct:free"
    SITE_URL: str = ""
    SITE_NAME: str = "Cardflow"

    # Continuation trigger
    APP_BASE_URL: str = "http://localhost:8000"
    BATCH_SECRET: str = "dev-batch-secret-not-for-production"
    TRIGGER_TIMEOUT_SECONDS: float = 10.0
    TRIGGER_MAX_ATTEMPTS: int = 3

    # Stale-run recovery
    STALE_THRESHOLD_SECONDS: int = 120
    CRON_SECRET: str = ""

    # Generation
    GENERATION_MAX_RETRIES: int = 2

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()

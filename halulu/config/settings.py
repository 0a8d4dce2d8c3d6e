from pydantic_settings import BaseSettings
from functools import lru_cache

_DEFAULT_DATABASE_URL = "sqlite:///./halulu.db"


class Settings(BaseSettings):
    database_url: str = _DEFAULT_DATABASE_URL
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # Lemon Squeezy signing secret (Settings > Webhooks in the store dashboard)
    lemon_squeezy_webhook_secret: str = ""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def validate_production(self) -> None:
        """Raise if production is using insecure defaults."""
        if self.is_production and not self.lemon_squeezy_webhook_secret:
            raise ValueError("LEMON_SQUEEZY_WEBHOOK_SECRET must be set in production")
        if self.is_production and self.database_url == _DEFAULT_DATABASE_URL:
            raise ValueError("DATABASE_URL must be set in production")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()

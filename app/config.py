from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

_env_path = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_path),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str
    REDIS_URL: str
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    FIND_OR_CREATE_ATTEMPTS: int = 3
    STORAGE_READ_RETRIES: int = 2
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 200
    SEARCH_RESULT_LIMIT: int = 10
    NOTIFICATION_PREVIEW_CHARS: int = 100
    REDELIVERY_GRACE_SECONDS: int = 60

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


settings = Settings()

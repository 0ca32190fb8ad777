from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, read from TASKBOARD_* environment variables or .env."""

    model_config = SettingsConfigDict(env_prefix="TASKBOARD_", env_file=".env", extra="ignore")

    APP_NAME: str = Field(default="Taskboard API", description="Title shown in the OpenAPI docs")
    VERSION: str = Field(default="1.0.0")

    DATABASE_URL: str = Field(
        default="sqlite:///./taskboard.db",
        description="SQLAlchemy URL of the task store",
    )

    DISPLAY_TIMEZONE: str = Field(
        default="Europe/Madrid",
        description="Timezone used to bucket report days and format CSV dates",
    )

    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_FORMAT: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    LOG_FILE: Optional[str] = Field(default=None, description="Rotating log file; stderr only when unset")

    DEFAULT_PAGE_SIZE: int = Field(default=50, ge=1, le=1000)


@lru_cache
def get_settings() -> Settings:
    return Settings()

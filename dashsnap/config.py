from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class ScheduleConfig(BaseModel):
    name: str
    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    max_retries: int = Field(default=3, ge=1)
    retry_interval_ms: int = Field(default=10 * 60 * 1000, gt=0)
    created_by: str | None = None

def _default_schedules() -> list[ScheduleConfig]:
    return [
        ScheduleConfig(name="evening", hour=18, minute=0, max_retries=6, retry_interval_ms=10 * 60 * 1000),
        ScheduleConfig(name="night", hour=23, minute=30, max_retries=2, retry_interval_ms=10 * 60 * 1000),
    ]

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True)
    db_path: str = Field(default="./data/snapshots.db", alias="DB_PATH")
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_busy_timeout_seconds: float = Field(default=30.0, alias="DB_BUSY_TIMEOUT_SECONDS")
    local_tz: str = Field(default="Asia/Jakarta", alias="LOCAL_TZ")
    source_base_url: str = Field(default="http://localhost:4000/api", alias="SOURCE_BASE_URL")
    source_timeout_seconds: float = Field(default=120.0, alias="SOURCE_TIMEOUT_SECONDS")
    scheduler_enabled: int = Field(default=1, alias="SCHEDULER_ENABLED")
    scheduler_check_interval_seconds: int = Field(default=60, alias="SCHEDULER_CHECK_INTERVAL_SECONDS")
    snapshot_schedules: list[ScheduleConfig] = Field(default_factory=_default_schedules, alias="SNAPSHOT_SCHEDULES")
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str | None = Field(default=None, alias="TELEGRAM_CHAT_ID")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

settings = Settings()

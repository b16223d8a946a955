from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional
from pathlib import Path

class Settings(BaseSettings):
    app_name: str = Field(default="Deadswitch API", alias="APP_NAME")
    env: str = Field(default="dev", alias="ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    secret_key: str = Field(default="devsecret", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    cors_origins_raw: Optional[str] = Field(default=None, alias="CORS_ORIGINS", description="Comma separated list of allowed CORS origins")

    # Dispatch loop
    dispatch_enabled: bool = Field(default=True, alias="DISPATCH_ENABLED")
    dispatch_interval_seconds: float = Field(default=30.0, alias="DISPATCH_INTERVAL_SECONDS")
    dispatch_batch_size: int = Field(default=200, alias="DISPATCH_BATCH_SIZE")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    final_delivery_max_retries: int = Field(default=5, alias="FINAL_DELIVERY_MAX_RETRIES")
    retry_backoff_seconds: int = Field(default=30, alias="RETRY_BACKOFF_SECONDS")
    retry_backoff_max_seconds: int = Field(default=900, alias="RETRY_BACKOFF_MAX_SECONDS")
    # pending entries overdue longer than this are considered stuck by the repair job
    stuck_after_seconds: int = Field(default=300, alias="STUCK_AFTER_SECONDS")

    # Scheduling
    schedule_match_tolerance_seconds: float = Field(default=1.0, alias="SCHEDULE_MATCH_TOLERANCE_SECONDS")
    critical_offset_minutes: int = Field(default=60, alias="CRITICAL_OFFSET_MINUTES")

    # Events / cache
    event_quiet_period_seconds: float = Field(default=2.0, alias="EVENT_QUIET_PERIOD_SECONDS")
    condition_cache_ttl_seconds: float = Field(default=30.0, alias="CONDITION_CACHE_TTL_SECONDS")

    # Delivery channel: "log" (dev) or "in_app"
    notification_channel: str = Field(default="in_app", alias="NOTIFICATION_CHANNEL")

    class Config:
        # Load env from backend/.env regardless of CWD
        env_file = str(Path(__file__).resolve().parents[2] / ".env")
        case_sensitive = False

    def _parse_list(self, v: Optional[str]) -> List[str]:
        if v is None:
            return []
        s = v.strip()
        if not s:
            return []
        return [e.strip() for e in s.split(",") if e.strip()]

    @property
    def cors_origins(self) -> List[str]:
        items = self._parse_list(self.cors_origins_raw)
        # Fallback dev defaults if none provided
        if not items:
            return ["http://localhost:5173", "http://127.0.0.1:5173"]
        return items

settings = Settings()  # type: ignore

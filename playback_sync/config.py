from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Supabase / PostgREST
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_ACCESS_TOKEN: Optional[str] = None
    PROGRESS_TABLE: str = "watch_progress"
    TRY_DURATION_COLUMN: bool = True

    # Progress Logic
    NEAR_END_SECONDS: int = 45
    PROGRESS_THROTTLE_SECONDS: float = 5.0
    MIN_PROGRESS_SECONDS: int = 1
    RESTORE_END_GUARD_SECONDS: int = 3

    # Player
    FEEDBACK_SECONDS: float = 0.7
    SEEK_STEP_SECONDS: int = 10

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()

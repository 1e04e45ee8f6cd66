# ============================================================================
# CaliLights - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the CaliLights mission
engine, including:
- API/CORS settings
- Database connection and pooling
- JWT authentication and the shared cron trigger secret
- Mission window limits and submission thresholds
- Retry presets for external services
- Generation (Veo), notification (OneSignal) and vision provider settings
- Scheduler and bridge evaluation tuning

Environment Variables:
    Every field maps to the upper-cased environment variable of the same name.

Usage:
    from calilights.config import settings
    window = settings.default_window_seconds
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # API SETTINGS
    # =========================================================================
    api_title: str = "CaliLights API"
    api_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Enable verbose logging & dev helpers")

    # =========================================================================
    # CORS SETTINGS
    # =========================================================================
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed origins for CORS",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./calilights.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg in production)",
    )
    db_pool_size: int = Field(default=20, description="Connection pool size (PostgreSQL)")
    db_max_overflow: int = Field(default=40, description="Extra connections allowed at peak")
    db_pool_recycle: int = Field(default=3600, description="Recycle connections after N seconds")
    db_sqlite_busy_timeout: float = Field(
        default=30.0,
        description="Seconds a SQLite writer waits for a competing transaction to finish",
    )

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================
    jwt_secret_key: str = Field(default="change-me-in-production", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_access_token_expire_minutes: int = Field(default=60, description="Access token TTL")
    cron_secret: Optional[str] = Field(
        default=None, description="Shared secret expected in the X-Cron-Secret header"
    )

    # =========================================================================
    # MISSIONS
    # =========================================================================
    mission_min_window_minutes: int = Field(default=5, description="Shortest capture window")
    mission_max_window_minutes: int = Field(default=120, description="Longest capture window")
    default_window_seconds: int = Field(default=3600, description="Capture window when none given")
    default_submissions_required: int = Field(default=3, description="Entries needed to auto-lock")

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================
    use_celery: bool = Field(default=True, description="Dispatch entry analysis through Celery")

    # =========================================================================
    # RETRY PRESETS
    # =========================================================================
    retry_fast_max_attempts: int = Field(default=3, description="Attempts for quick calls")
    retry_fast_initial_delay: float = Field(default=0.5, description="First backoff delay (s)")
    retry_fast_max_delay: float = Field(default=4.0, description="Backoff ceiling (s)")
    retry_fast_backoff_factor: float = Field(default=2.0, description="Backoff multiplier")
    retry_slow_max_attempts: int = Field(default=3, description="Attempts for slow calls")
    retry_slow_initial_delay: float = Field(default=1.0, description="First backoff delay (s)")
    retry_slow_max_delay: float = Field(default=10.0, description="Backoff ceiling (s)")
    retry_slow_backoff_factor: float = Field(default=2.0, description="Backoff multiplier")

    # =========================================================================
    # VIDEO GENERATION (VEO)
    # =========================================================================
    veo_api_base: Optional[str] = Field(default=None, description="Override for the regional generation endpoint")
    veo_project_id: Optional[str] = Field(default=None, description="Generation project id")
    veo_location: str = Field(default="us-central1", description="Generation service region")
    veo_model: str = Field(
        default="publishers/google/models/veo-3.0-generate-preview",
        description="Generation model path",
    )
    veo_api_key: Optional[str] = Field(default=None, description="Bearer token for the generator")
    generation_aspect_ratio: str = Field(default="9:16", description="Requested aspect ratio")
    generation_length_seconds: int = Field(default=8, description="Requested clip length")
    generation_timeout: float = Field(default=30.0, description="Timeout (s) for generator calls")
    job_poll_max_age_minutes: int = Field(default=60, description="Stop polling jobs older than this")
    job_poll_batch_size: int = Field(default=50, description="Jobs examined per poll sweep")

    # =========================================================================
    # SCHEDULER
    # =========================================================================
    schedule_tolerance_minutes: int = Field(
        default=5, description="Start missions within +/- this many minutes of the target time"
    )

    # =========================================================================
    # BRIDGES
    # =========================================================================
    bridge_window_hours: int = Field(default=6, description="Recap-ready window for candidates")
    bridge_candidate_limit: int = Field(default=12, description="Candidates compared per evaluation")
    bridge_hue_threshold: float = Field(default=20.0, description="Max hue distance for a match")
    bridge_connected_only: bool = Field(
        default=False, description="Only compare against already connected chains"
    )
    bridge_dedup_hours: int = Field(default=6, description="One bridge per chain pair in this window")

    # =========================================================================
    # NOTIFICATIONS (ONESIGNAL)
    # =========================================================================
    onesignal_app_id: Optional[str] = Field(default=None, description="OneSignal app id")
    onesignal_api_key: Optional[str] = Field(default=None, description="OneSignal REST key")
    onesignal_api_url: str = Field(
        default="https://onesignal.com/api/v1/notifications", description="OneSignal endpoint"
    )
    notification_timeout: float = Field(default=10.0, description="Timeout (s) for push calls")

    # =========================================================================
    # ENTRY ANALYSIS (VISION)
    # =========================================================================
    vision_api_key: Optional[str] = Field(default=None, description="Vision API key")
    vision_api_url: str = Field(
        default="https://vision.googleapis.com/v1/images:annotate", description="Vision endpoint"
    )
    vision_timeout: float = Field(default=20.0, description="Timeout (s) for vision calls")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance (imported elsewhere)
settings = Settings()

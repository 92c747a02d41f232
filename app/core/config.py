from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STREAM_TYPES = [
    "time",
    "distance",
    "latlng",
    "altitude",
    "velocity_smooth",
    "heartrate",
    "cadence",
    "watts",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, case_sensitive=False)

    app_env: Literal["development", "test", "production"] = "development"
    database_url: str | None = None
    log_level: str = "INFO"
    log_json: bool = False

    strava_client_id: str
    strava_client_secret: str
    strava_redirect_uri: AnyHttpUrl
    strava_verify_token: str
    strava_scope: str = "read,activity:read_all"
    strava_authorize_base: AnyHttpUrl = "https://www.strava.com/oauth/authorize"
    strava_token_url: AnyHttpUrl = "https://www.strava.com/oauth/token"
    strava_api_base: str = "https://www.strava.com/api/v3"

    strava_request_timeout_seconds: float = Field(default=10.0)
    strava_rate_limit_base_delay_seconds: float = Field(default=1.0)
    strava_rate_limit_max_retries: int = Field(default=3)
    strava_token_refresh_margin_seconds: int = Field(default=300)

    webhook_response_timeout_seconds: float = Field(default=1.5)
    webhook_max_attempts: int = Field(default=3)
    webhook_stale_processing_seconds: int = Field(default=900)
    webhook_worker_threads: int = Field(default=4)

    event_processing_interval_seconds: float = Field(default=30.0)
    event_processing_batch_size: int = Field(default=50)

    polling_enabled: bool = Field(default=True)
    polling_interval_seconds: float = Field(default=14_400.0)
    polling_activity_limit: int = Field(default=10)

    initial_sync_days: int = Field(default=7)
    initial_sync_max_activities: int = Field(default=200)
    initial_sync_batch_size: int = Field(default=10)
    initial_sync_batch_delay_seconds: float = Field(default=1.0)

    activity_fetch_streams: bool = Field(default=True)
    activity_stream_types: list[str] = Field(default_factory=lambda: list(DEFAULT_STREAM_TYPES))
    activity_process_heart_rate: bool = Field(default=True)
    heart_rate_batch_size: int = Field(default=1000)

    task_queue_url: str | None = Field(default=None)
    task_queue_name: str = Field(default="sync-tasks")
    task_queue_job_timeout_seconds: int = Field(default=300)
    task_queue_force_inline: bool = Field(default=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()

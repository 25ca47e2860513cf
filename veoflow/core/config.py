from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Model ids the Vertex AI publisher endpoint accepts for long-running video generation.
DEFAULT_MODEL_ORDER = [
    "veo-3.1-generate-001",
    "veo-3.1-fast-generate-001",
    "veo-3.0-generate-001",
    "veo-3.0-fast-generate-001",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    log_level: str = "INFO"

    # Bound every HTTP call so a stalled endpoint cannot hang a generation forever.
    ext_call_timeout_ms: int = 60000

    # Vertex AI region hosting the Veo publisher models.
    veo_location: str = "us-central1"
    veo_api_host_template: str = "https://{location}-aiplatform.googleapis.com"
    # Comma-delimited fallback order; empty keeps DEFAULT_MODEL_ORDER.
    veo_model_order: str = ""
    # Candidates outside this list are dropped from the fallback order.
    veo_known_models: list[str] = list(DEFAULT_MODEL_ORDER)

    # Per-model admission control over a rolling window.
    veo_rate_window_s: float = 60.0
    # Model id prefix -> submissions per window; longest matching prefix wins.
    veo_rate_limits: dict[str, int] = {"veo-3.0": 10, "veo-3.1": 50}
    veo_rate_limit_default: int = 50
    veo_rate_min_wait_ms: int = 100

    # Exponential backoff applied after quota exhaustion before switching models.
    veo_backoff_initial_ms: int = 250
    veo_backoff_max_ms: int = 8000

    # Operation polling cadence: initial + step * attempts, capped at max.
    veo_poll_initial_ms: int = 2000
    veo_poll_step_ms: int = 250
    veo_poll_max_ms: int = 5000
    # Give up on an operation after this many seconds; 0 polls until done.
    veo_poll_timeout_s: float = 0

    # Refresh bearer tokens this long before they expire.
    token_refresh_margin_s: int = 60
    # Lifetime requested for self-signed assertions.
    token_lifetime_s: int = 3600
    token_scope: str = "https://www.googleapis.com/auth/cloud-platform"
    default_token_uri: str = "https://oauth2.googleapis.com/token"

    gcs_api_base: str = "https://storage.googleapis.com/storage/v1"
    # Downloaded Cloud Storage artifacts are materialized here.
    video_output_dir: str = "var/videos"


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""
Configuration loader for the image resize / palette service.

Environment variables are centralized here to keep the rest of the code
focused on business logic. Core components never read the environment
themselves: they receive a `Settings` instance (or a policy value derived
from it) when they are constructed.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings

DEFAULT_FAL_TASK_URL = (
    "https://router.huggingface.co/fal-ai/fal-ai/bria/background/remove?_subdomain=queue"
)


def _strip_quotes(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().strip("'\"").strip()


@dataclass(frozen=True)
class PollPolicy:
    """Backoff schedule and wall-clock budget for one remote job."""

    initial_delay_ms: int = 500
    backoff_factor: float = 1.7
    max_delay_ms: int = 2500
    deadline_seconds: float = 60.0
    request_timeout_seconds: float = 30.0


class Settings(BaseSettings):
    # S3 / S3-compatible storage
    bucket_name: Optional[str] = None
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # Resize outputs
    output_prefix: str = "thumbs/"
    max_dimension: int = 4096
    resize_url_ttl_seconds: int = 3600
    output_cache_control: str = "private, max-age=31536000"
    jpeg_quality: int = 90

    # Remote background removal (fal-ai queue behind the HF router)
    hf_token: Optional[str] = None
    fal_task_url: Optional[str] = DEFAULT_FAL_TASK_URL
    poll_initial_delay_ms: int = 500
    poll_backoff_factor: float = 1.7
    poll_max_delay_ms: int = 2500
    poll_deadline_seconds: float = 60.0
    request_timeout_seconds: float = 30.0

    # Palette extraction
    palette_prefix: str = "palettes/"
    palette_size: int = 5
    palette_max_iterations: int = 12
    palette_sample_size: int = 180
    palette_alpha_threshold: int = 10
    signed_url_ttl_seconds: int = 900
    swatch_width: int = 1000
    swatch_height: int = 200

    # API
    log_level: str = "INFO"
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])

    class Config:
        env_file = ".env"
        case_sensitive = False
        frozen = True

    @validator("bucket_name", "hf_token", "fal_task_url", pre=True)
    def strip_wrapping_quotes(cls, v):  # noqa: B902
        # Values pasted from consoles often arrive quoted.
        if isinstance(v, str):
            return _strip_quotes(v) or None
        return v

    @validator("output_prefix", "palette_prefix")
    def normalize_prefix(cls, v: str) -> str:  # noqa: B902
        stripped = v.strip().strip("/")
        return f"{stripped}/" if stripped else ""

    @validator("max_dimension")
    def validate_max_dimension(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("MAX_DIMENSION must be at least 1")
        return v

    @validator("poll_backoff_factor")
    def validate_backoff(cls, v: float) -> float:  # noqa: B902
        if v < 1.0:
            raise ValueError("POLL_BACKOFF_FACTOR must be >= 1")
        return v

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            initial_delay_ms=self.poll_initial_delay_ms,
            backoff_factor=self.poll_backoff_factor,
            max_delay_ms=self.poll_max_delay_ms,
            deadline_seconds=self.poll_deadline_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()

"""
Configuration loader for the cutout service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

INFERENCE_DEVICES = {"auto", "cuda", "mps", "cpu"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Normalization
    max_image_dimension: int = Field(1024, gt=0)

    # Metered remote service (remove.bg)
    remote_service_name: str = "remove.bg"
    remove_bg_api_url: str = "https://api.remove.bg/v1.0/removebg"
    remove_bg_api_key: Optional[str] = None
    remote_jpeg_quality: float = 0.95
    remote_timeout_seconds: float = 30.0

    # Quota accounting
    monthly_api_limit: int = Field(49, ge=0)
    quota_database_url: str = "sqlite:///./cutout_usage.db"
    quota_create_tables: bool = True

    # Local segmentation fallback
    segmentation_model_id: str = "nvidia/segformer-b0-finetuned-ade-512-512"
    local_inference_device: str = "auto"
    local_inference_timeout_seconds: float = 120.0
    local_inference_workers: int = Field(1, ge=1)

    # API
    source_fetch_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    @field_validator("remote_jpeg_quality")
    @classmethod
    def validate_jpeg_quality(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("REMOTE_JPEG_QUALITY must be in (0, 1]")
        return v

    @field_validator("local_inference_device")
    @classmethod
    def validate_device(cls, v: str) -> str:
        v = v.lower()
        if v not in INFERENCE_DEVICES:
            raise ValueError("LOCAL_INFERENCE_DEVICE must be one of auto|cuda|mps|cpu")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()

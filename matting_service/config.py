"""
Configuration loader for the matting service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Model + preprocessing
    model_id_small: str = "ZhengPeng7/BiRefNet_lite"
    model_id_medium: str = "ZhengPeng7/BiRefNet-portrait"
    default_model_profile: str = "medium"
    model_working_size: int = Field(1024, gt=0)
    hf_token: Optional[str] = None
    default_quality: int = 90

    # Timeouts
    model_load_timeout_seconds: float = Field(600.0, gt=0)
    inference_timeout_seconds: float = Field(120.0, gt=0)
    request_timeout_seconds: float = Field(30.0, gt=0)
    connect_timeout_seconds: float = Field(5.0, gt=0)

    # Sources + storage
    uploads_root: Path = Path("public")
    storage_category: str = "background-removed"
    local_storage_dir: Path = Path("/tmp/matting_service/output")
    local_storage_base_url: str = "/static"

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None
    presigned_url_ttl_seconds: int = 3600

    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/matting_service_debug")

    @field_validator("default_model_profile")
    @classmethod
    def validate_model_profile(cls, v: str) -> str:
        if v not in {"small", "medium"}:
            raise ValueError("DEFAULT_MODEL_PROFILE must be one of small|medium")
        return v

    @field_validator("default_quality")
    @classmethod
    def validate_quality(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("DEFAULT_QUALITY must be between 1 and 100")
        return v

    @property
    def r2_configured(self) -> bool:
        required = [
            self.r2_endpoint,
            self.r2_access_key_id,
            self.r2_secret_access_key,
            self.r2_bucket_name,
        ]
        return all(v for v in required)

    def model_id_for(self, profile: str) -> str:
        """Return the Hugging Face repo id backing a model profile."""
        if profile == "small":
            return self.model_id_small
        if profile == "medium":
            return self.model_id_medium
        raise ValueError(f"Unknown model profile: {profile}")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def quality_to_compress_level(quality: int) -> int:
    """
    Translate a 1-100 quality value into a zlib level for PNG output.

    PNG is lossless, so quality never touches pixels; it only decides how
    much effort goes into shrinking the file.
    """
    quality = min(max(int(quality), 1), 100)
    return round(quality / 100 * 9)

"""
Configuration loader for the U2Net background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_GENERAL_MODEL = Path("models/u2net.onnx")


class RemovalMode(str, Enum):
    GENERAL = "general"
    PORTRAIT = "portrait"


def parse_mode(value: Optional[str]) -> RemovalMode:
    """Parse a user-supplied mode string; unknown or empty values mean general."""
    if not value or not value.strip():
        return RemovalMode.GENERAL
    try:
        return RemovalMode(value.strip().lower())
    except ValueError:
        logger.warning("Unknown removal mode '%s', falling back to general", value)
        return RemovalMode.GENERAL


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Models + preprocessing
    u2net_model_path_general: Optional[Path] = None
    # Older deployments only set U2NET_MODEL_PATH for the general model.
    u2net_model_path: Optional[Path] = None
    u2net_model_path_portrait: Path = Path("models/u2net_human_seg.onnx")
    content_root: Path = Path(".")
    u2net_input_size: int = Field(320, gt=0)
    max_pixel_count: int = Field(40_000_000, gt=0)

    # Inference admission
    max_concurrent_inferences: int = Field(2, ge=1)
    enable_telemetry: bool = True

    # Portrait refinement tunables
    portrait_alpha_base_low: int = 8
    portrait_alpha_base_high: int = 40
    portrait_alpha_low_range: int = 6
    portrait_alpha_high_range: int = 20
    portrait_alpha_gamma_base: float = Field(1.0, gt=0)
    portrait_alpha_gamma_range: float = 0.1
    default_portrait_edge_strength: int = 50

    # Result storage
    result_storage: str = "local"
    temp_results_dir: Path = Path("/tmp/u2net_results")
    temp_results_ttl_seconds: int = Field(1800, gt=0)
    cleanup_interval_seconds: int = Field(300, gt=0)

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None

    # API
    max_upload_bytes: int = Field(10 * 1024 * 1024, gt=0)
    max_image_dimension: int = Field(10_000, gt=0)
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    @field_validator("result_storage")
    @classmethod
    def validate_result_storage(cls, v: str) -> str:
        v = v.lower()
        if v not in {"local", "r2"}:
            raise ValueError("RESULT_STORAGE must be one of local|r2")
        return v

    @field_validator("portrait_alpha_gamma_range")
    @classmethod
    def validate_gamma_range(cls, v: float, info: ValidationInfo) -> float:
        base = info.data.get("portrait_alpha_gamma_base", 1.0)
        if abs(v) >= base:
            raise ValueError("PORTRAIT_ALPHA_GAMMA_RANGE must be smaller than the gamma base")
        return v

    def model_path_for(self, mode: RemovalMode) -> Path:
        """Resolve the model file for `mode`; relative paths hang off `content_root`."""
        if mode == RemovalMode.PORTRAIT:
            path = self.u2net_model_path_portrait
        else:
            path = self.u2net_model_path_general or self.u2net_model_path or DEFAULT_GENERAL_MODEL
        if path.is_absolute():
            return path
        return self.content_root / path


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()

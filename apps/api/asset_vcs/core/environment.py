"""
Runtime configuration for the asset version control service.

Values are read from the environment (prefix ``ASSET_VCS_``) and optional
``.env`` files through pydantic-settings.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


DEFAULT_ALLOWED_FORMATS = [
    "application/vnd.asset-scene+json",
    "model/gltf-binary",
    "model/gltf+json",
    "model/obj",
    "model/fbx",
    "model/usd",
]


class VersionControlSettings(BaseSettings):
    """Settings for version control, approvals and storage."""

    model_config = SettingsConfigDict(
        env_prefix="ASSET_VCS_",
        env_file=[".env", ".env.local"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: EnvironmentMode = Field(default=EnvironmentMode.DEVELOPMENT)
    service_name: str = Field(default="asset-vcs")
    log_level: str = Field(default="INFO")

    # Workflow policy
    require_approval: bool = Field(default=True, description="Versions and merges need approval")
    min_approvers: int = Field(default=1, ge=1)
    allow_force_push: bool = Field(
        default=False,
        description="Allow committing with a parent other than the head of a protected branch",
    )
    default_approvers: List[str] = Field(default_factory=list)
    approval_deadline_hours: Optional[float] = Field(default=None, gt=0)
    auto_approve_after_hours: Optional[float] = Field(default=None, gt=0)

    # Retention and limits
    retention_days: int = Field(default=365, ge=1)
    max_versions_per_model: int = Field(default=1000, ge=1)
    max_payload_bytes: int = Field(default=512 * 1024 * 1024, ge=1)
    allowed_formats: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_FORMATS))
    compression_enabled: bool = Field(default=True)
    diffing_enabled: bool = Field(default=True)

    # Concurrency
    cas_max_retries: int = Field(default=1, ge=0)
    store_timeout_seconds: float = Field(default=30.0, gt=0)
    compute_timeout_seconds: float = Field(default=300.0, gt=0)
    worker_pool_size: int = Field(default=4, ge=1, le=64)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)

    # Infrastructure
    blob_storage_path: str = Field(default="./asset_vcs_blobs")
    database_url: str = Field(default="sqlite:///./asset_vcs.db")
    celery_broker_url: str = Field(default="memory://")
    celery_result_backend: Optional[str] = Field(default=None)
    telemetry_enabled: bool = Field(default=False)
    otlp_endpoint: str = Field(default="http://localhost:4317")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("allowed_formats")
    @classmethod
    def normalize_formats(cls, v: List[str]) -> List[str]:
        return [fmt.strip().lower() for fmt in v if fmt.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == EnvironmentMode.PRODUCTION


@lru_cache()
def get_settings() -> VersionControlSettings:
    """Settings built from the process environment, cached per process."""
    return VersionControlSettings()

"""Configuration management for faultlab."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from faultlab.core.models import RetentionPolicy


class FlagdSettings(BaseSettings):
    """flagd feature flag backend settings."""

    host: str = Field(default="localhost", alias="FLAGD_HOST")
    port: int = Field(default=8013, alias="FLAGD_PORT")
    ofrep_port: int = Field(default=8016, alias="FLAGD_OFREP_PORT")
    timeout_ms: int = Field(default=5000, alias="FLAGD_TIMEOUT_MS")
    config_path: Path = Field(
        default=Path("demo/otel-demo-app/src/flagd/demo.flagd.json"),
        alias="FLAGD_CONFIG_PATH",
    )
    # flagd has no list API, so listing evaluates this set.
    known_flags: list[str] = Field(
        default_factory=lambda: [
            "productCatalogFailure",
            "recommendationCache",
            "adServiceFailure",
            "cartServiceFailure",
            "paymentServiceFailure",
            "loadgeneratorFloodHomepage",
        ],
        alias="FLAGD_KNOWN_FLAGS",
    )

    @property
    def ofrep_url(self) -> str:
        """Get OFREP base URL."""
        return f"http://{self.host}:{self.ofrep_port}"


class ObjectStoreSettings(BaseSettings):
    """S3 / MinIO object store settings."""

    endpoint: Optional[str] = Field(default="http://localhost:9010", alias="S3_ENDPOINT")
    bucket: str = Field(default="otel-data", alias="S3_BUCKET")
    region: str = Field(default="us-east-1", alias="S3_REGION")
    access_key_id: str = Field(default="otel-ai", alias="S3_ACCESS_KEY_ID")
    secret_access_key: str = Field(default="otel-ai-secret", alias="S3_SECRET_ACCESS_KEY")
    enable_encryption: bool = Field(default=False, alias="S3_ENABLE_ENCRYPTION")
    connect_timeout_seconds: int = Field(default=5, alias="S3_CONNECT_TIMEOUT")
    read_timeout_seconds: int = Field(default=30, alias="S3_READ_TIMEOUT")


class SessionSettings(BaseSettings):
    """Diagnostics session defaults."""

    capture_interval_ms: int = Field(default=30000, alias="SESSION_CAPTURE_INTERVAL_MS")
    warmup_delay_ms: int = Field(default=5000, alias="SESSION_WARMUP_DELAY_MS")
    test_duration_ms: int = Field(default=60000, alias="SESSION_TEST_DURATION_MS")
    analysis_delay_ms: int = Field(default=2000, alias="SESSION_ANALYSIS_DELAY_MS")

    # Off by default: a failed session leaves the flag as-is so the fault
    # state can be inspected.
    compensate_flag_on_failure: bool = Field(default=False, alias="SESSION_COMPENSATE_FLAG")


class RetentionSettings(BaseSettings):
    """Retention engine tunables and default policy."""

    cleanup_page_cap: int = Field(default=5000, alias="RETENTION_CLEANUP_PAGE_CAP")
    delete_concurrency: int = Field(default=10, alias="RETENTION_DELETE_CONCURRENCY")
    usage_sample_cap: int = Field(default=1000, alias="RETENTION_USAGE_SAMPLE_CAP")
    session_scan_cap: int = Field(default=5000, alias="RETENTION_SESSION_SCAN_CAP")
    job_interval_hours: float = Field(default=24.0, alias="RETENTION_JOB_INTERVAL_HOURS")
    policy_path: Optional[Path] = Field(default=None, alias="RETENTION_POLICY_PATH")

    # Default policy (used when no policy file is given)
    continuous_retention_days: int = Field(default=7, alias="RETENTION_CONTINUOUS_DAYS")
    continuous_enabled: bool = Field(default=True, alias="RETENTION_CONTINUOUS_ENABLED")
    session_default_retention_days: int = Field(default=30, alias="RETENTION_SESSION_DEFAULT_DAYS")
    session_max_retention_days: int = Field(default=90, alias="RETENTION_SESSION_MAX_DAYS")
    session_archive_after_days: Optional[int] = Field(default=None, alias="RETENTION_SESSION_ARCHIVE_DAYS")
    session_cleanup_enabled: bool = Field(default=True, alias="RETENTION_SESSION_CLEANUP_ENABLED")

    @property
    def job_interval_seconds(self) -> float:
        return self.job_interval_hours * 3600.0

    def default_policy(self) -> RetentionPolicy:
        """Build the policy described by these settings."""
        return RetentionPolicy.model_validate(
            {
                "continuous": {
                    "retention_days": self.continuous_retention_days,
                    "enabled": self.continuous_enabled,
                },
                "sessions": {
                    "default_retention_days": self.session_default_retention_days,
                    "max_retention_days": self.session_max_retention_days,
                    "archive_after_days": self.session_archive_after_days,
                    "cleanup_enabled": self.session_cleanup_enabled,
                },
            }
        )


class AnnotationSettings(BaseSettings):
    """Annotation store settings."""

    db_path: Path = Field(default=Path("data/annotations.db"), alias="ANNOTATION_DB_PATH")
    service_name: str = Field(default="diagnostics-session", alias="ANNOTATION_SERVICE_NAME")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Path = Field(default=Path("logs/faultlab"), alias="FAULTLAB_LOG_DIR")

    # Sub-settings
    flagd: FlagdSettings = Field(default_factory=FlagdSettings)
    object_store: ObjectStoreSettings = Field(default_factory=ObjectStoreSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    annotations: AnnotationSettings = Field(default_factory=AnnotationSettings)

    # Paths
    project_root: Path = Field(default_factory=lambda: Path(__file__).parent.parent.parent)

    @property
    def config_dir(self) -> Path:
        """Get config directory."""
        return self.project_root / "config"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_retention_policy(path: Optional[Union[str, Path]] = None) -> RetentionPolicy:
    """Load a retention policy from YAML.

    Falls back to ``RETENTION_POLICY_PATH`` and then to the policy built from
    the retention settings when no file is configured.
    """
    settings = get_settings()
    policy_path = Path(path) if path else settings.retention.policy_path
    if policy_path is None:
        return settings.retention.default_policy()

    with open(policy_path) as f:
        raw: Any = yaml.safe_load(f) or {}

    if "retention" in raw and isinstance(raw["retention"], dict):
        raw = raw["retention"]
    return RetentionPolicy.model_validate(raw)

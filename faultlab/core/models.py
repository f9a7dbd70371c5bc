"""Pydantic models for faultlab."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SessionPhase(str, Enum):
    """Diagnostics session phases, in orchestration order."""

    CREATED = "created"
    STARTED = "started"
    FLAG_ENABLED = "flag_enabled"
    CAPTURING = "capturing"
    FLAG_DISABLED = "flag_disabled"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class SignalType(str, Enum):
    """Telemetry signals an annotation can target."""

    TRACE = "trace"
    METRIC = "metric"
    LOG = "log"
    ANY = "any"


class AnnotationType(str, Enum):
    """Annotation families; each key must start with ``<type>.``."""

    TEST = "test"
    DIAG = "diag"
    HUMAN = "human"
    LLM = "llm"
    META = "meta"
    TRAIN = "train"


ANNOTATION_KEY_PREFIXES = tuple(f"{t.value}." for t in AnnotationType)


class CaptureStatus(str, Enum):
    """Capture session status written to ``metadata.json``."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Diagnostics sessions
# =============================================================================

class SessionConfig(BaseModel):
    """Input to ``SessionOrchestrator.create_session``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    flag_name: str = Field(min_length=1)
    name: Optional[str] = None
    capture_interval_ms: int = Field(default=30000, gt=0)
    warmup_delay_ms: int = Field(default=5000, ge=0)
    test_duration_ms: int = Field(default=60000, ge=0)
    metadata: Optional[dict[str, Any]] = None


class DiagnosticsSession(BaseModel):
    """One controlled fault-injection experiment."""

    id: str
    name: str
    flag_name: str
    phase: SessionPhase = SessionPhase.CREATED
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    capture_interval_ms: int = 30000
    warmup_delay_ms: int = 5000
    test_duration_ms: int = 60000
    annotation_ids: list[str] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in (SessionPhase.COMPLETED, SessionPhase.FAILED)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


# =============================================================================
# Annotations
# =============================================================================

class TimeRange(BaseModel):
    """Closed/open time window."""

    start: datetime
    end: Optional[datetime] = None


class Annotation(BaseModel):
    """Timestamped, typed marker attached to telemetry."""

    annotation_id: Optional[str] = None

    # Signal targeting
    signal_type: SignalType

    # Signal-specific references (all optional)
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    metric_name: Optional[str] = None
    metric_labels: dict[str, str] = Field(default_factory=dict)
    log_timestamp: Optional[datetime] = None
    log_body_hash: Optional[str] = None

    # Time range
    time_range_start: datetime
    time_range_end: Optional[datetime] = None

    # Service/resource targeting
    service_name: Optional[str] = None
    resource_attributes: dict[str, str] = Field(default_factory=dict)

    # Content
    annotation_type: AnnotationType
    annotation_key: str
    annotation_value: str  # JSON encoded
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    # Provenance
    created_at: Optional[datetime] = None
    created_by: str
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    parent_annotation_id: Optional[str] = None

    @field_validator("annotation_key")
    @classmethod
    def _check_key_prefix(cls, v: str) -> str:
        if not v.startswith(ANNOTATION_KEY_PREFIXES):
            raise ValueError(
                "Annotation key must start with valid prefix "
                f"({', '.join(ANNOTATION_KEY_PREFIXES)})"
            )
        return v


class AnnotationFilter(BaseModel):
    """Query filter for ``AnnotationRecorder.query``."""

    signal_type: Optional[SignalType] = None
    trace_id: Optional[str] = None
    metric_name: Optional[str] = None
    service_name: Optional[str] = None
    annotation_type: Optional[AnnotationType] = None
    annotation_key: Optional[str] = None
    time_range: Optional[TimeRange] = None
    session_id: Optional[str] = None
    limit: int = Field(default=100, ge=1)


# =============================================================================
# Feature flags
# =============================================================================

class FeatureFlag(BaseModel):
    """Flag as reported by the backend."""

    name: str
    value: bool
    default_value: bool = False
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class FlagEvaluation(BaseModel):
    """Detailed flag evaluation."""

    value: bool
    variant: Optional[str] = None
    reason: str = "DEFAULT"
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# =============================================================================
# Retention
# =============================================================================

class _PolicyModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContinuousRetention(_PolicyModel):
    """Policy for date-partitioned continuous data."""

    retention_days: int = Field(default=7, ge=0)
    enabled: bool = True


class SessionRetention(_PolicyModel):
    """Policy for session-scoped data."""

    default_retention_days: int = Field(default=30, ge=0)
    max_retention_days: int = Field(default=90, ge=0)
    archive_after_days: Optional[int] = Field(default=None, ge=0)
    cleanup_enabled: bool = True


class RetentionPolicy(_PolicyModel):
    """Retention policy for continuous and session data."""

    continuous: ContinuousRetention = Field(default_factory=ContinuousRetention)
    sessions: SessionRetention = Field(default_factory=SessionRetention)


class CleanupResult(BaseModel):
    """Aggregate outcome of a cleanup batch. Failures are listed, not raised."""

    deleted_objects: int = 0
    freed_space_bytes: int = 0
    processed_paths: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    def merge(self, other: "CleanupResult") -> "CleanupResult":
        return CleanupResult(
            deleted_objects=self.deleted_objects + other.deleted_objects,
            freed_space_bytes=self.freed_space_bytes + other.freed_space_bytes,
            processed_paths=self.processed_paths + [
                p for p in other.processed_paths if p not in self.processed_paths
            ],
            errors=self.errors + other.errors,
            duration_ms=self.duration_ms + other.duration_ms,
        )


class SessionRetentionOutcome(BaseModel):
    """What ``manage_session_data`` decided for one session."""

    session_id: str
    age_days: float
    archive_eligible: bool = False
    deleted: bool = False
    cleanup: Optional[CleanupResult] = None


class ContinuousPathMetrics(BaseModel):
    total_objects: int = 0
    total_size_bytes: int = 0
    oldest_object_date: Optional[datetime] = None
    newest_object_date: Optional[datetime] = None
    truncated: bool = False


class SessionsPathMetrics(BaseModel):
    total_objects: int = 0
    total_size_bytes: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    truncated: bool = False


class StorageMetrics(BaseModel):
    """Approximate storage usage derived from a bounded listing sample.

    ``exact`` is always False: counts only cover the first ``sample_cap``
    objects under each root prefix.
    """

    continuous: ContinuousPathMetrics = Field(default_factory=ContinuousPathMetrics)
    sessions: SessionsPathMetrics = Field(default_factory=SessionsPathMetrics)
    total_size_bytes: int = 0
    sample_cap: int = 0
    exact: bool = False


# =============================================================================
# Capture
# =============================================================================

class CaptureSessionMetadata(BaseModel):
    """Descriptor stored at ``sessions/{id}/metadata.json`` (camelCase JSON)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    diagnostic_session_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: CaptureStatus = CaptureStatus.ACTIVE
    enabled_flags: list[str] = Field(default_factory=list)
    captured_traces: int = 0
    captured_metrics: int = 0
    captured_logs: int = 0
    total_size_bytes: int = 0
    s3_prefix: str = ""
    created_by: str = "system:otlp-capture"
    description: Optional[str] = None

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")


class CapturedDataReference(BaseModel):
    """Pointer to one stored raw telemetry blob."""

    session_id: Optional[str] = None
    signal_type: str
    key: str
    size_bytes: int
    compressed_size_bytes: int
    captured_at: datetime = Field(default_factory=utcnow)

"""Retention of captured telemetry in the object store."""

from faultlab.retention.engine import RetentionEngine, continuous_key_date
from faultlab.retention.scheduler import RetentionScheduler

__all__ = ["RetentionEngine", "RetentionScheduler", "continuous_key_date"]

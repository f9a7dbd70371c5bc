"""faultlab: diagnostic-session orchestration and telemetry retention."""

__version__ = "0.1.0"

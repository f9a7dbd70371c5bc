"""Raw telemetry capture into the object store."""

from faultlab.capture.service import CaptureService, metadata_key, session_prefix

__all__ = ["CaptureService", "metadata_key", "session_prefix"]

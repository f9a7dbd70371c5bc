"""Custom exceptions for faultlab."""

from typing import Any, Optional


class FaultLabError(Exception):
    """Base exception for faultlab."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Session layer
# =============================================================================


class SessionError(FaultLabError):
    """Diagnostics session errors.

    ``reason`` is one of ``SessionNotFound``, ``InvalidState``,
    ``OrchestrationFailure`` or ``TimeoutError``.
    """

    reason: str = "OrchestrationFailure"

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.session_id = session_id

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"reason": self.reason, "message": self.message}
        if self.session_id:
            d["session_id"] = self.session_id
        return d


class SessionNotFound(SessionError):
    """No session (or session data) exists for the given id."""

    reason = "SessionNotFound"

    def __init__(self, session_id: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Session {session_id} not found", session_id, context)


class InvalidState(SessionError):
    """Operation not allowed in the session's current phase."""

    reason = "InvalidState"


class OrchestrationFailure(SessionError):
    """A step of the background orchestration failed."""

    reason = "OrchestrationFailure"


class SessionTimeoutError(SessionError):
    """Waiting on a session exceeded its deadline."""

    reason = "TimeoutError"


# =============================================================================
# Collaborator layer
# =============================================================================


class FlagError(FaultLabError):
    """Feature flag backend errors."""

    reason: str = "EvaluationError"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable


class FlagConnectionFailure(FlagError):
    """Flag backend unreachable."""

    reason = "ConnectionFailure"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, retryable=True, context=context)


class FlagNotFound(FlagError):
    """Flag is not defined in the backend."""

    reason = "FlagNotFound"

    def __init__(self, flag_name: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Flag {flag_name} not found", retryable=False, context=context)
        self.flag_name = flag_name


class FlagEvaluationError(FlagError):
    """Flag could not be evaluated."""

    reason = "EvaluationError"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, retryable=True, context=context)


class FlagInvalidValue(FlagError):
    """Flag did not take the requested value."""

    reason = "InvalidValue"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, retryable=False, context=context)


class StorageFailure(FaultLabError):
    """Object store errors."""

    reason = "StorageFailure"

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        retryable: bool = True,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.session_id = session_id
        self.retryable = retryable


class ObjectNotFound(StorageFailure):
    """Key does not exist in the object store."""

    reason = "ObjectNotFound"

    def __init__(self, key: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Object {key} not found", retryable=False, context=context)
        self.key = key


class AnnotationError(FaultLabError):
    """Annotation store errors."""

    def __init__(
        self,
        message: str,
        reason: str = "StorageFailure",
        retryable: bool = True,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.reason = reason
        self.retryable = retryable


class CaptureSessionAlreadyActive(FaultLabError):
    """Capture was started twice for the same session."""

    reason = "SessionAlreadyActive"

    def __init__(self, session_id: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Capture session {session_id} is already active", context)
        self.session_id = session_id

"""
Error Taxonomy for parler-serve.

Every failure a client can observe maps to one ServiceError subclass with a
stable machine-readable code. The API layer turns these into JSON bodies and
HTTP status codes; nothing below the API layer knows about HTTP.

Error families:
    Client input (400):     InvalidParameterError, TextTooLongError
    Capacity / load:        QueueFullError (503), JobTimeoutError (504),
                            ModelNotReadyError (503)
    Server side (500):      EngineFailure, EncodingFailure
    Internal signalling:    GenerationCancelled, JobCancelledError
    Startup (fatal):        DeviceInitError

Propagation:
    Validation errors are raised before a job exists, so they never reach the
    scheduler. Scheduler errors (queue full, timeout) are raised before or
    instead of a generate() call. Engine and encoding errors are caught at
    their own boundary and recorded as the job's terminal state.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Error codes returned in the ``error`` field of API error bodies."""
    INVALID_PARAMETER = "INVALID_PARAMETER"
    TEXT_TOO_LONG = "TEXT_TOO_LONG"
    QUEUE_FULL = "QUEUE_FULL"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    ENGINE_FAILURE = "ENGINE_FAILURE"
    ENCODING_FAILURE = "ENCODING_FAILURE"
    MODEL_NOT_READY = "MODEL_NOT_READY"
    DEVICE_INIT_FAILED = "DEVICE_INIT_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """
    Base exception for all parler-serve errors.

    Attributes:
        message: Human-readable error message.
        code: One of the ErrorCode constants.
        details: Optional extra context, included in API responses.
    """

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the standard error response body."""
        result: Dict[str, Any] = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidParameterError(ServiceError):
    """A request parameter is missing, malformed or not a finite number."""

    def __init__(self, field: str, message: str, code: str = ErrorCode.INVALID_PARAMETER):
        self.field = field
        super().__init__(message, code, {"field": field})

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["field"] = self.field
        return result


class TextTooLongError(InvalidParameterError):
    """A text field exceeds its configured maximum length."""

    def __init__(self, field: str, length: int, max_length: int):
        self.length = length
        self.max_length = max_length
        super().__init__(
            field,
            f"{field} exceeds maximum length ({length} > {max_length})",
            ErrorCode.TEXT_TOO_LONG,
        )


class QueueFullError(ServiceError):
    """The admission queue is at capacity; retry later."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.QUEUE_FULL, details)


class JobTimeoutError(ServiceError):
    """A job exceeded its wait-plus-run deadline."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.TIMEOUT, details)


class JobCancelledError(ServiceError):
    """A job was cancelled before it produced a result."""

    def __init__(self, message: str = "Job cancelled", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.CANCELLED, details)


class EngineFailure(ServiceError):
    """The synthesis engine failed (backend error, OOM, bad output)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.ENGINE_FAILURE, details)


class GenerationCancelled(ServiceError):
    """Raised by an engine that stopped early because its cancel event was set."""

    def __init__(self, message: str = "Generation aborted"):
        super().__init__(message, ErrorCode.CANCELLED)


class EncodingFailure(ServiceError):
    """The waveform could not be encoded into a playable container."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.ENCODING_FAILURE, details)


class ModelNotReadyError(ServiceError):
    """The synthesis resource is not loaded (startup still running or stopped)."""

    def __init__(self, message: str = "Model not ready"):
        super().__init__(message, ErrorCode.MODEL_NOT_READY)


class DeviceInitError(ServiceError):
    """The selected compute backend could not be initialized. Fatal at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.DEVICE_INIT_FAILED, details)

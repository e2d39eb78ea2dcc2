"""
Error taxonomy and error envelopes for the Ibex server.

Every failure surfaced to an HTTP caller is rendered through `error_envelope`
so clients get one consistent shape regardless of where the failure occurred.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    VALIDATION_ERROR = "validation_error"
    EMPTY_INPUT = "empty_input"
    MODEL_NOT_LOADED = "model_not_loaded"
    MODEL_LOAD_FAILED = "model_load_failed"
    ENGINE_FAILURE = "engine_failure"
    INTERNAL_ERROR = "internal_error"


ERROR_TYPE_TO_HTTP_STATUS: Dict[ErrorType, int] = {
    ErrorType.VALIDATION_ERROR: 400,
    ErrorType.EMPTY_INPUT: 400,
    ErrorType.MODEL_NOT_LOADED: 503,
    ErrorType.MODEL_LOAD_FAILED: 500,
    ErrorType.ENGINE_FAILURE: 500,
    ErrorType.INTERNAL_ERROR: 500,
}


@dataclass
class IbexError:
    """Serializable error description (the `error` member of an envelope)."""

    type: ErrorType
    message: str
    detail: Optional[Any] = None
    retryable: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type.value,
            "message": self.message,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        if self.retryable is not None:
            result["retryable"] = self.retryable
        return result

    def to_http_status(self) -> int:
        return ERROR_TYPE_TO_HTTP_STATUS.get(self.type, 500)


def error_envelope(
    error: IbexError,
    request_id: Optional[str] = None,
    data: Optional[Any] = None,
) -> Dict[str, Any]:
    """Wrap an error in the standard response envelope."""
    envelope: Dict[str, Any] = {
        "status": "error",
        "error": error.to_dict(),
        "request_id": request_id,
    }
    if data is not None:
        envelope["data"] = data
    return envelope


class IbexException(Exception):
    """Base class for failures raised by the serving layer."""

    error_type: ErrorType = ErrorType.INTERNAL_ERROR
    retryable: Optional[bool] = None

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_error(self) -> IbexError:
        return IbexError(
            type=self.error_type,
            message=self.message,
            detail=self.detail,
            retryable=self.retryable,
        )

    @property
    def status_code(self) -> int:
        return ERROR_TYPE_TO_HTTP_STATUS[self.error_type]


class BadRequestError(IbexException):
    """Client payload is invalid. Never retried."""

    error_type = ErrorType.VALIDATION_ERROR
    retryable = False


class EmptyInputError(BadRequestError):
    """Embedding input is empty or blank."""

    error_type = ErrorType.EMPTY_INPUT


class ModelNotLoadedError(IbexException):
    """A slot was used while it held no model handle."""

    error_type = ErrorType.MODEL_NOT_LOADED
    retryable = True

    def __init__(self, kind: str, identity: Optional[str] = None, resident: Optional[str] = None):
        if identity is None:
            message = f"No {kind} model loaded"
        else:
            message = f"{kind.capitalize()} model '{identity}' is not loaded"
            if resident is not None:
                message += f" (slot holds '{resident}')"
        super().__init__(message)
        self.kind = kind
        self.identity = identity


class ModelLoadError(IbexException):
    """The inference engine could not load a model identity."""

    error_type = ErrorType.MODEL_LOAD_FAILED
    retryable = False

    def __init__(self, identity: str, reason: str):
        super().__init__(f"Model '{identity}' failed to load: {reason}")
        self.identity = identity
        self.reason = reason


class EngineFailure(IbexException):
    """The inference engine failed while producing output."""

    error_type = ErrorType.ENGINE_FAILURE


def validation_error(message: str, detail: Optional[Any] = None) -> IbexError:
    return IbexError(type=ErrorType.VALIDATION_ERROR, message=message, detail=detail, retryable=False)

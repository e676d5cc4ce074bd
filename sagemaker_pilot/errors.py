"""sagemaker_pilot.errors — Error taxonomy and ClientError classification.

Every branch on a remote failure goes through :func:`classify_error`, which
turns botocore error codes and messages into an :class:`ErrorKind` tag.
"""

from __future__ import annotations

import enum
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

__all__ = [
    "BatchDisabledError",
    "ConfigurationError",
    "ErrorKind",
    "InvocationTimeoutError",
    "JobWaitCancelledError",
    "JobWaitTimeoutError",
    "ResponseValidationError",
    "SageMakerPilotError",
    "classify_error",
    "error_code",
    "is_remote_failure",
    "is_retryable",
]


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    FATAL = "fatal"


class SageMakerPilotError(RuntimeError):
    """Base class for errors raised by this package."""

    kind = ErrorKind.FATAL


class InvocationTimeoutError(SageMakerPilotError):
    kind = ErrorKind.TIMEOUT


class ResponseValidationError(SageMakerPilotError):
    kind = ErrorKind.VALIDATION


class ConfigurationError(SageMakerPilotError, ValueError):
    kind = ErrorKind.CONFIGURATION


class BatchDisabledError(ConfigurationError):
    pass


class JobWaitTimeoutError(SageMakerPilotError, TimeoutError):
    kind = ErrorKind.TIMEOUT


class JobWaitCancelledError(SageMakerPilotError):
    pass


_NOT_FOUND_CODES = {
    "ResourceNotFound",
    "ResourceNotFoundException",
    "NoSuchKey",
    "NoSuchBucket",
    "NotFound",
    "404",
}
_ALREADY_EXISTS_CODES = {
    "ResourceInUse",
    "ResourceAlreadyExistsException",
    "EntityAlreadyExists",
}
_TRANSIENT_CODES = {
    "InternalFailure",
    "InternalServerError",
    "InternalServerException",
    "ModelError",
    "ModelNotReadyException",
    "RequestLimitExceeded",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}
_VALIDATION_CODES = {"ValidationException", "ValidationError"}

_NOT_FOUND_MARKERS = ("could not find", "not found", "does not exist")
_ALREADY_EXISTS_MARKERS = ("already exist",)


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _error_message(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Message") or "").lower()


def _http_status(exc: ClientError) -> int:
    try:
        return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
    except (TypeError, ValueError):
        return 0


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a remote call to an :class:`ErrorKind`."""
    if isinstance(exc, SageMakerPilotError):
        return exc.kind
    if isinstance(exc, ClientError):
        code = error_code(exc)
        message = _error_message(exc)
        if code in _NOT_FOUND_CODES:
            return ErrorKind.NOT_FOUND
        if code in _ALREADY_EXISTS_CODES:
            return ErrorKind.ALREADY_EXISTS
        if code in _VALIDATION_CODES:
            # SageMaker reports missing and duplicate resources as validation errors.
            if any(marker in message for marker in _NOT_FOUND_MARKERS):
                return ErrorKind.NOT_FOUND
            if any(marker in message for marker in _ALREADY_EXISTS_MARKERS):
                return ErrorKind.ALREADY_EXISTS
            return ErrorKind.FATAL
        if code in _TRANSIENT_CODES or _http_status(exc) >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL
    # Connection drops, read timeouts and other SDK-level failures.
    if isinstance(exc, BotoCoreError):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def is_retryable(kind: Optional[ErrorKind]) -> bool:
    return kind in {ErrorKind.TRANSIENT, ErrorKind.TIMEOUT}


def is_remote_failure(exc: BaseException) -> bool:
    """True for failures of the remote call itself: any service error, SDK error or attempt timeout.

    Response validation and local errors (decoding, caller transforms) are not
    remote failures.
    """
    return isinstance(exc, (ClientError, BotoCoreError, InvocationTimeoutError))

"""
Shared error handling for the client sync layer.
"""

import asyncio
from enum import Enum
from typing import Dict, Any, Optional

import httpx
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    classification: Optional[str] = None
    details: Dict[str, Any] = {}


class ErrorClassification(str, Enum):
    """Stable error categories produced once at the transport boundary."""
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    TRANSIENT = "transient"
    OTHER = "other"


class SyncLayerException(Exception):
    """Base exception for the client sync layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ClassifiedError(SyncLayerException):
    """Remote call failure tagged with an ErrorClassification."""

    def __init__(
        self,
        classification: ErrorClassification,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(f"REMOTE_{classification.name}", message, details)
        self.classification = classification
        self.status_code = status_code

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        response.classification = self.classification.value
        return response


class StructuralError(SyncLayerException):
    """Malformed payload, e.g. an invalid locale bundle."""

    def __init__(self, message: str = "Malformed payload", details: Optional[Dict[str, Any]] = None):
        super().__init__("STRUCTURAL_ERROR", message, details)


class SessionError(SyncLayerException):
    """Session lifecycle misuse."""

    def __init__(self, message: str = "Sync session is not initialized", details: Optional[Dict[str, Any]] = None):
        super().__init__("SESSION_ERROR", message, details)


def classify_status(status_code: int) -> ErrorClassification:
    """Map an HTTP status code to an ErrorClassification."""
    if status_code == 401:
        return ErrorClassification.UNAUTHORIZED
    if status_code == 404:
        return ErrorClassification.NOT_FOUND
    if status_code == 400:
        return ErrorClassification.BAD_REQUEST
    if status_code >= 500 or status_code in (408, 429):
        return ErrorClassification.TRANSIENT
    return ErrorClassification.OTHER


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Wrap any exception raised by a fetcher as a ClassifiedError."""
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ClassifiedError(ErrorClassification.TRANSIENT, "Request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        return ClassifiedError(classify_status(status_code), str(exc), status_code=status_code)
    if isinstance(exc, httpx.TransportError):
        return ClassifiedError(ErrorClassification.TRANSIENT, str(exc) or exc.__class__.__name__)
    return ClassifiedError(
        ErrorClassification.OTHER,
        str(exc) or exc.__class__.__name__,
        details={"exception": exc.__class__.__name__}
    )

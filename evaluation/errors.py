"""
Error Classifier — maps any raw failure onto a small retry-aware taxonomy.

Classification is pattern based (error text, exception class name and
error codes) so call sites never need provider-specific exception types.
Only validation failures are non-retryable. Backoff is exponential:
    delay = retry_after_seconds * 2 ** retry_count
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = structlog.get_logger()


class ErrorKind(str, Enum):
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    EVALUATION_FAILED = "EVALUATION_FAILED"
    STORAGE_FAILED = "STORAGE_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN = "UNKNOWN_ERROR"


USER_MESSAGES = {
    ErrorKind.TRANSCRIPTION_FAILED: "Failed to transcribe audio. Please check the audio file format and try again.",
    ErrorKind.EVALUATION_FAILED: "Failed to evaluate the call. Please try again later.",
    ErrorKind.STORAGE_FAILED: "Failed to access storage. Please try uploading again.",
    ErrorKind.VALIDATION_FAILED: "Invalid input. Please check your file and metadata.",
    ErrorKind.NETWORK_ERROR: "Network error occurred. Please check your connection and try again.",
    ErrorKind.TIMEOUT_ERROR: "Request timed out. The file might be too large. Please try again.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again or contact support.",
}

RETRY_AFTER = {
    ErrorKind.TRANSCRIPTION_FAILED: 60,
    ErrorKind.EVALUATION_FAILED: 60,
    ErrorKind.STORAGE_FAILED: 60,
    ErrorKind.VALIDATION_FAILED: 0,
    ErrorKind.NETWORK_ERROR: 30,
    ErrorKind.TIMEOUT_ERROR: 120,
    ErrorKind.UNKNOWN: 60,
}

# Ordered: first match wins. Timeouts precede generic network failures.
_PATTERNS: list[tuple[ErrorKind, tuple[str, ...], tuple[Any, ...]]] = [
    (ErrorKind.TRANSCRIPTION_FAILED, ("transcription", "whisper", "stt"), (3016, 5006, "3016", "5006")),
    (ErrorKind.TIMEOUT_ERROR, ("timeout", "timed out"), ("ETIMEDOUT",)),
    (ErrorKind.NETWORK_ERROR, ("network", "econnrefused", "connecterror", "connectionerror", "connection error",
                              "connection refused", "service unavailable", "overloaded"), ("ECONNREFUSED",)),
    (ErrorKind.STORAGE_FAILED, ("storage", "file", "r2", "enoent"), ("ENOENT",)),
    (ErrorKind.VALIDATION_FAILED, ("validation", "invalid", "required"), ()),
    (ErrorKind.EVALUATION_FAILED, ("evaluation",), ()),
]


@dataclass
class ClassifiedError:
    kind: ErrorKind
    retryable: bool
    retry_after_seconds: int
    user_message: str
    technical_message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self, retry_count: int = 0) -> dict[str, Any]:
        """Structured error stored on a failed record."""
        return {
            "type": self.kind.value,
            "message": self.user_message,
            "technicalMessage": self.technical_message,
            "retryable": self.retryable,
            "retryAfter": self.retry_after_seconds,
            "retryCount": retry_count,
            "details": self.details,
        }


def _error_codes(error: BaseException) -> list[Any]:
    codes = []
    code = getattr(error, "code", None)
    if code is not None:
        codes.append(code)
    for attr in ("errno",):
        value = getattr(error, attr, None)
        if value is not None:
            codes.append(value)
    # httpx.HTTPStatusError bodies shaped {"errors": [{"code": ...}]}
    response = getattr(error, "response", None)
    if response is not None:
        try:
            body = response.json()
            codes.extend(e.get("code") for e in body.get("errors", []) if isinstance(e, dict))
        except Exception:
            pass
    return codes


class ErrorClassifier:

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    def classify(self, error: BaseException) -> ClassifiedError:
        message = str(error) or type(error).__name__
        haystack = f"{type(error).__name__} {message}".lower()
        codes = _error_codes(error)

        kind = ErrorKind.UNKNOWN
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            kind = ErrorKind.TIMEOUT_ERROR
        else:
            for candidate, words, known_codes in _PATTERNS:
                if any(w in haystack for w in words) or any(c in known_codes for c in codes):
                    kind = candidate
                    break

        details = getattr(error, "details", None)
        return ClassifiedError(
            kind=kind,
            retryable=kind != ErrorKind.VALIDATION_FAILED,
            retry_after_seconds=RETRY_AFTER[kind],
            user_message=USER_MESSAGES[kind],
            technical_message=message,
            details=details if isinstance(details, dict) else {},
        )

    def should_retry(self, error: ClassifiedError, retry_count: int,
                     max_retries: Optional[int] = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        return error.retryable and retry_count < limit

    @staticmethod
    def retry_delay(error: ClassifiedError, retry_count: int) -> int:
        base = error.retry_after_seconds or 60
        return base * (2 ** retry_count)

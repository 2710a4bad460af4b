"""Preview error taxonomy, classification and retry bookkeeping.

Every failure that leaves the preview subsystem is turned into a
``PreviewError`` by ``PreviewErrorHandler.classify``. The handler also owns the
per-operation retry counters used for exponential backoff.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_RETRY_DELAY_MS = 2000
MAX_RETRY_DELAY_MS = 8000

Severity = Literal["warning", "error", "critical"]


class PreviewErrorType(str, Enum):
    SERVER_START_FAILED = "SERVER_START_FAILED"
    FILE_WRITE_FAILED = "FILE_WRITE_FAILED"
    BUILD_FAILED = "BUILD_FAILED"
    PORT_IN_USE = "PORT_IN_USE"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    DEPLOYMENT_FAILED = "DEPLOYMENT_FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PreviewError:
    type: PreviewErrorType
    message: str
    details: str | None
    recoverable: bool
    retryable: bool
    context: str | None = None
    technical_details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "context": self.context,
        }


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Discriminated result for operations with expected failure modes."""

    success: bool
    error: PreviewError | None = None
    value: T | None = None

    @classmethod
    def ok(cls, value: T | None = None) -> OperationResult[T]:
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: PreviewError) -> OperationResult[T]:
        return cls(success=False, error=error)


class PreviewOperationError(RuntimeError):
    """Raised by ``retry_with_backoff`` once an operation gives up."""

    def __init__(self, error: PreviewError) -> None:
        super().__init__(f"[{error.type.value}] {error.message}")
        self.error = error


@dataclass(frozen=True)
class _Rule:
    type: PreviewErrorType
    pattern: re.Pattern[str]
    message: str
    details: str


# Order matters: the first matching rule wins.
_RULES: tuple[_Rule, ...] = (
    _Rule(
        PreviewErrorType.PORT_IN_USE,
        re.compile(r"eaddrinuse|address already in use|port", re.IGNORECASE),
        "Preview port is already in use",
        "Another preview might be running. Try stopping other previews first.",
    ),
    _Rule(
        PreviewErrorType.FILE_WRITE_FAILED,
        re.compile(
            r"enoent|eacces|eisdir|enotdir|enospc|erofs|no such file|permission denied|file",
            re.IGNORECASE,
        ),
        "Failed to write preview files",
        "There was an issue saving files to the preview directory.",
    ),
    _Rule(
        PreviewErrorType.BUILD_FAILED,
        re.compile(r"build|compilation|syntaxerror", re.IGNORECASE),
        "Preview build failed",
        "The application code has errors. Check the code viewer for issues.",
    ),
    _Rule(
        PreviewErrorType.TIMEOUT,
        re.compile(r"timeout|timed out|etimedout", re.IGNORECASE),
        "Preview took too long to start",
        "The preview server didn't respond in time. This might be a temporary issue.",
    ),
    _Rule(
        PreviewErrorType.NETWORK_ERROR,
        re.compile(
            r"network|fetch|econnrefused|econnreset|connection refused", re.IGNORECASE
        ),
        "Network connection failed",
        "Could not connect to the preview server. Check your internet connection.",
    ),
    _Rule(
        PreviewErrorType.DEPLOYMENT_FAILED,
        re.compile(r"deploy|vercel", re.IGNORECASE),
        "Deployment failed",
        "The app couldn't be deployed. This might be a temporary Vercel issue.",
    ),
)

_ACTIONABLE: dict[PreviewErrorType, str] = {
    PreviewErrorType.PORT_IN_USE: "Try refreshing the page or wait a moment for the previous preview to shut down.",
    PreviewErrorType.FILE_WRITE_FAILED: 'Click "Clear Cache & Retry" to reset the preview system.',
    PreviewErrorType.BUILD_FAILED: "Review the generated code in the code viewer for syntax errors or missing dependencies.",
    PreviewErrorType.TIMEOUT: "The preview server might be overloaded. Try again in a few moments.",
    PreviewErrorType.NETWORK_ERROR: "Check your internet connection and try again.",
    PreviewErrorType.DEPLOYMENT_FAILED: "Wait a moment and try redeploying. The issue is likely temporary.",
    PreviewErrorType.SERVER_START_FAILED: "The preview server could not start. Try again, or stop other previews first.",
}


def raw_error_message(error: Any) -> str:
    """Flatten an arbitrary error into the text the classifier matches on."""
    if isinstance(error, BaseException):
        text = str(error) or type(error).__name__
        if isinstance(error, OSError) and error.errno in errno.errorcode:
            text = f"{errno.errorcode[error.errno]}: {text}"
        elif isinstance(error, (TimeoutError, asyncio.TimeoutError)) and not str(error):
            text = "Operation timed out"
        return text
    return str(error)


class PreviewErrorHandler:
    def __init__(self, *, max_retries: int = MAX_RETRIES) -> None:
        self.max_retries = max_retries
        self._retry_attempts: dict[str, int] = {}

    def classify(self, error: Any, context: str | None = None) -> PreviewError:
        message = raw_error_message(error)

        for rule in _RULES:
            if rule.pattern.search(message):
                build = rule.type is PreviewErrorType.BUILD_FAILED
                return PreviewError(
                    type=rule.type,
                    message=rule.message,
                    details=rule.details,
                    recoverable=not build,
                    retryable=not build,
                    context=context,
                    technical_details=message,
                )

        if context == "server start":
            return PreviewError(
                type=PreviewErrorType.SERVER_START_FAILED,
                message="Preview server failed to start",
                details=message[:200],
                recoverable=True,
                retryable=True,
                context=context,
                technical_details=message,
            )

        return PreviewError(
            type=PreviewErrorType.UNKNOWN,
            message=f"Preview error: {context}" if context else "An unexpected error occurred",
            details=message[:200],
            recoverable=True,
            retryable=True,
            context=context,
            technical_details=message,
        )

    def should_retry(self, error: PreviewError, operation_id: str) -> bool:
        if not error.retryable:
            return False
        return self.get_retry_attempt(operation_id) < self.max_retries

    def get_retry_delay(self, operation_id: str) -> int:
        """Backoff delay in milliseconds: 2s, 4s, 8s, then capped at 8s."""
        attempts = self.get_retry_attempt(operation_id)
        # Clamp the exponent so long-lived counters cannot overflow into huge ints.
        return min(BASE_RETRY_DELAY_MS * 2 ** min(attempts, 16), MAX_RETRY_DELAY_MS)

    def record_retry(self, operation_id: str) -> None:
        self._retry_attempts[operation_id] = self.get_retry_attempt(operation_id) + 1

    def reset_retries(self, operation_id: str) -> None:
        self._retry_attempts.pop(operation_id, None)

    def clear_all_retries(self) -> None:
        self._retry_attempts.clear()

    def get_retry_attempt(self, operation_id: str) -> int:
        return self._retry_attempts.get(operation_id, 0)

    def get_actionable_message(self, error: PreviewError) -> str:
        if error.context == "memory":
            return "Reduce the number or size of generated files, then try again."
        return _ACTIONABLE.get(
            error.type,
            "Try refreshing the page or contact support if the problem persists.",
        )

    def get_severity(self, error: PreviewError) -> Severity:
        if not error.recoverable:
            return "critical"
        if error.type is PreviewErrorType.SERVER_START_FAILED:
            return "error"
        return "warning"

    def format_for_logging(self, error: PreviewError) -> str:
        suffix = f" - {error.details}" if error.details else ""
        return f"[{error.type.value}] {error.message}{suffix}"


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    operation_id: str,
    *,
    handler: PreviewErrorHandler,
    context: str | None = None,
    on_retry: Callable[[int, int], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the retry policy gives up.

    ``on_retry`` receives ``(attempt_number, delay_ms)`` before each sleep.
    """
    while True:
        try:
            result = await operation()
        except Exception as exc:
            err = handler.classify(exc, context)
            if not handler.should_retry(err, operation_id):
                logger.warning(
                    "Giving up on %s after %d retries: %s",
                    operation_id,
                    handler.get_retry_attempt(operation_id),
                    handler.format_for_logging(err),
                )
                raise PreviewOperationError(err) from exc

            delay_ms = handler.get_retry_delay(operation_id)
            attempt = handler.get_retry_attempt(operation_id) + 1
            logger.info(
                "Retry attempt %d/%d for %s in %dms",
                attempt,
                handler.max_retries,
                operation_id,
                delay_ms,
            )
            if on_retry is not None:
                on_retry(attempt, delay_ms)
            handler.record_retry(operation_id)
            await sleep(delay_ms / 1000)
            continue

        handler.reset_retries(operation_id)
        return result

"""Error Classifier — maps raw failures to classified, user-facing errors.

Classification is priority ordered and deterministic:
  1. numeric HTTP-like status (from the exception or its response)
  2. exception type (timeouts, transport/connection failures, a full admission queue)
  3. message substring heuristics

Categories ``rate-limit``, ``server-error``, ``network`` and ``timeout`` are
retryable; everything else is terminal.

The classifier keeps a bounded FIFO history of classified errors for
aggregate queries (counts by category/backend, most common, resolution rate).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http import HTTPStatus

import httpx

from genrelay.gateway.types import RETRYABLE_CATEGORIES, ErrorCategory, RetryContext

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DispatchError(Exception):
    """Base class for every error that crosses the dispatcher boundary."""

    user_message: str = "An unexpected error occurred. Please try again."
    remediation: list[str] = []
    retryable: bool = False

    def to_dict(self) -> dict:
        return {
            "name": type(self).__name__,
            "message": str(self),
            "user_message": self.user_message,
            "retryable": self.retryable,
            "remediation": list(self.remediation),
        }


class NoBackendAvailableError(DispatchError):
    """No registered, credentialed backend supports the operation."""

    def __init__(self, operation: str, tried: list[str]):
        super().__init__(f"No backend available for {operation} (tried: {', '.join(tried) or 'none'})")
        self.operation = operation
        self.tried = list(tried)
        self.user_message = "No AI backend is configured for this operation."
        self.remediation = [
            "Register an adapter for the primary backend or a fallback",
            "Check that the backend has credentials configured",
        ]


class TokenBudgetExceededError(DispatchError):
    """Every candidate backend denied the pre-flight token budget."""

    def __init__(self, operation: str, estimated_tokens: int, denied: list[str]):
        super().__init__(
            f"Token budget exceeded for {operation} ({estimated_tokens} tokens) on: {', '.join(denied)}"
        )
        self.operation = operation
        self.estimated_tokens = estimated_tokens
        self.denied = list(denied)
        self.user_message = "Token budget exceeded. Please try again shortly."
        self.remediation = [
            "Reduce the request size",
            "Configure a fallback backend with available budget",
            "Raise tokens_per_minute for the backend",
        ]


class AdmissionClosedError(DispatchError):
    """Raised to work still queued when its backend limiter is removed."""

    def __init__(self, backend_id: str):
        super().__init__(f"Admission queue for {backend_id} was closed")
        self.backend_id = backend_id


class AdmissionQueueFullError(DispatchError):
    """The backend already has ``limit`` requests waiting for admission."""

    def __init__(self, backend_id: str, limit: int):
        super().__init__(f"Admission queue for {backend_id} is full ({limit} waiting)")
        self.backend_id = backend_id
        self.limit = limit


class ClassifiedError(DispatchError):
    """A raw failure normalized into a category with remediation hints.

    The original exception is kept as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        retryable: bool,
        status: int | None = None,
        user_message: str = "",
        remediation: list[str] | None = None,
        backend_id: str = "",
        operation: str = "",
        model: str = "",
        attempt: int = 0,
    ):
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.status = status
        self.user_message = user_message or _USER_MESSAGES[category]
        self.remediation = list(remediation if remediation is not None else _REMEDIATION.get(category, []))
        self.backend_id = backend_id
        self.operation = operation
        self.model = model
        self.attempt = attempt
        self.timestamp = datetime.now(timezone.utc)

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "category": self.category.value,
                "status": self.status,
                "backend_id": self.backend_id,
                "operation": self.operation,
                "model": self.model,
                "attempt": self.attempt,
                "timestamp": self.timestamp.isoformat(),
            }
        )
        return data

    def to_http(self) -> dict:
        """HTTP-style error payload for callers that surface errors over HTTP."""
        status = self.status or 500
        try:
            reason = HTTPStatus(status).phrase
        except ValueError:
            reason = "Unknown Error"
        return {
            "status_code": status,
            "error": reason,
            "message": self.user_message,
            "category": self.category.value,
            "retryable": self.retryable,
            "remediation": list(self.remediation),
        }


# ---------------------------------------------------------------------------
# Category tables
# ---------------------------------------------------------------------------

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.AUTHENTICATION: "Authentication failed. Please check your API key.",
    ErrorCategory.RATE_LIMIT: "Rate limit exceeded. Please try again later.",
    ErrorCategory.BILLING: "The backend account has a billing or quota problem.",
    ErrorCategory.INVALID_REQUEST: "Invalid request. Please check your input.",
    ErrorCategory.NOT_FOUND: "The requested resource was not found.",
    ErrorCategory.PERMISSION: "You do not have permission to perform this action.",
    ErrorCategory.SERVER_ERROR: "Server error. Please try again later.",
    ErrorCategory.NETWORK: "Network error. Please check your connection.",
    ErrorCategory.TIMEOUT: "Request timed out. Please try again.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Please try again.",
}

_REMEDIATION: dict[ErrorCategory, list[str]] = {
    ErrorCategory.AUTHENTICATION: [
        "Verify your API key is correct",
        "Check if the API key has the necessary permissions",
    ],
    ErrorCategory.RATE_LIMIT: [
        "Implement request throttling",
        "Consider upgrading your API plan",
    ],
    ErrorCategory.BILLING: [
        "Check the account balance and payment method",
        "Review usage quotas for the backend",
    ],
    ErrorCategory.INVALID_REQUEST: [
        "Review the API documentation",
        "Validate input data before sending",
    ],
    ErrorCategory.NOT_FOUND: ["Check the model name and endpoint"],
    ErrorCategory.PERMISSION: ["Check the access scopes of the credentials"],
    ErrorCategory.SERVER_ERROR: ["Retry later or switch to a fallback backend"],
    ErrorCategory.NETWORK: [
        "Check your internet connection",
        "Verify firewall settings",
    ],
    ErrorCategory.TIMEOUT: [
        "Reduce request size",
        "Increase timeout settings",
    ],
}

_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    400: ErrorCategory.INVALID_REQUEST,
    401: ErrorCategory.AUTHENTICATION,
    402: ErrorCategory.BILLING,
    403: ErrorCategory.PERMISSION,
    404: ErrorCategory.NOT_FOUND,
    408: ErrorCategory.TIMEOUT,
    409: ErrorCategory.INVALID_REQUEST,
    413: ErrorCategory.INVALID_REQUEST,
    422: ErrorCategory.INVALID_REQUEST,
    429: ErrorCategory.RATE_LIMIT,
}

# Checked in order; first match wins
_MESSAGE_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.AUTHENTICATION, ("unauthorized", "api key", "authentication", "invalid_api_key")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "rate_limit", "too many requests")),
    (ErrorCategory.BILLING, ("billing", "insufficient_quota", "quota exceeded", "payment required")),
    (ErrorCategory.INVALID_REQUEST, ("invalid", "validation")),
    (ErrorCategory.NOT_FOUND, ("not found",)),
    (ErrorCategory.PERMISSION, ("forbidden", "permission denied")),
    (ErrorCategory.SERVER_ERROR, ("internal server", "service unavailable", "bad gateway", "overloaded")),
    (ErrorCategory.NETWORK, ("network", "econnrefused", "enotfound", "econnreset", "connection refused", "connection reset")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "etimedout")),
)


def extract_status(error: BaseException) -> int | None:
    """Find a numeric HTTP-like status on an exception, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def _category_from_status(status: int | None) -> ErrorCategory | None:
    if status is None:
        return None
    if status in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status]
    if status >= 500:
        return ErrorCategory.SERVER_ERROR
    return None


def _category_from_type(error: BaseException) -> ErrorCategory | None:
    if isinstance(error, AdmissionQueueFullError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorCategory.NETWORK
    return None


def _category_from_message(message: str) -> ErrorCategory:
    lowered = message.lower()
    for category, needles in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


@dataclass
class ErrorRecord:
    """One entry of the classifier history."""

    error: ClassifiedError
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved: bool = False


class ErrorClassifier:
    """Classifies raw failures and keeps a bounded history of them.

    Usage:
        classifier = ErrorClassifier()
        classified = classifier.classify(exc, RetryContext(backend_id="openai", operation="embed"))
        if classified.retryable:
            ...
    """

    def __init__(self, history_size: int = 1000):
        self._history: deque[ErrorRecord] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @property
    def history_size(self) -> int:
        return self._history.maxlen or 0

    def classify(self, error: BaseException, context: RetryContext | None = None) -> ClassifiedError:
        """Classify without recording. Already-classified errors pass through."""
        if isinstance(error, ClassifiedError):
            return error

        context = context or RetryContext()
        status = extract_status(error)
        category = (
            _category_from_status(status)
            or _category_from_type(error)
            or _category_from_message(str(error) or type(error).__name__)
        )

        remediation = list(_REMEDIATION.get(category, []))
        if context.attempt > 1:
            remediation.append(f"This was attempt {context.attempt}. Consider using a fallback backend.")

        detail = str(error) or type(error).__name__
        where = f" on {context.backend_id}" if context.backend_id else ""
        message = f"{context.operation or 'operation'} failed{where} (attempt {context.attempt}): {detail}"

        classified = ClassifiedError(
            message,
            category=category,
            retryable=category in RETRYABLE_CATEGORIES,
            status=status,
            remediation=remediation,
            backend_id=context.backend_id,
            operation=context.operation,
            model=context.model,
            attempt=context.attempt,
        )
        classified.__cause__ = error
        return classified

    def record(self, error: ClassifiedError) -> ErrorRecord:
        """Append a classified error to the bounded history."""
        entry = ErrorRecord(error=error)
        with self._lock:
            self._history.append(entry)
        return entry

    def handle(self, error: BaseException, context: RetryContext | None = None) -> ClassifiedError:
        """Classify and record in one step."""
        classified = self.classify(error, context)
        self.record(classified)
        return classified

    # -- History queries ----------------------------------------------------

    def _snapshot(self, window_seconds: float | None = None) -> list[ErrorRecord]:
        with self._lock:
            entries = list(self._history)
        if window_seconds is None:
            return entries
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)
        return [e for e in entries if e.timestamp > cutoff]

    def count_by_category(self, window_seconds: float | None = None) -> dict[str, int]:
        return dict(Counter(e.error.category.value for e in self._snapshot(window_seconds)))

    def count_by_backend(self, window_seconds: float | None = None) -> dict[str, int]:
        return dict(Counter(e.error.backend_id or "unknown" for e in self._snapshot(window_seconds)))

    def most_common(self, limit: int = 5) -> list[dict]:
        """Most frequent (category, status) pairs, most frequent first."""
        groups: dict[str, dict] = {}
        for entry in self._snapshot():
            key = f"{entry.error.category.value}:{entry.error.status or 'unknown'}"
            group = groups.setdefault(
                key,
                {"key": key, "count": 0, "category": entry.error.category.value, "last_occurred": entry.timestamp},
            )
            group["count"] += 1
            group["last_occurred"] = max(group["last_occurred"], entry.timestamp)

        ranked = sorted(groups.values(), key=lambda g: g["count"], reverse=True)[:limit]
        return [{**g, "last_occurred": g["last_occurred"].isoformat()} for g in ranked]

    def resolution_rate(self, window_seconds: float | None = None) -> float:
        entries = self._snapshot(window_seconds)
        if not entries:
            return 0.0
        return sum(1 for e in entries if e.resolved) / len(entries)

    def mark_resolved(self, error: ClassifiedError) -> bool:
        with self._lock:
            for entry in self._history:
                if entry.error is error:
                    entry.resolved = True
                    return True
        return False

    def stats(self, window_seconds: float | None = None) -> dict:
        entries = self._snapshot(window_seconds)
        return {
            "total": len(entries),
            "by_category": dict(Counter(e.error.category.value for e in entries)),
            "by_backend": dict(Counter(e.error.backend_id or "unknown" for e in entries)),
            "resolution_rate": (sum(1 for e in entries if e.resolved) / len(entries)) if entries else 0.0,
            "recent": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "category": e.error.category.value,
                    "backend_id": e.error.backend_id or "unknown",
                    "message": str(e.error),
                }
                for e in entries[-10:]
            ],
        }

    def trends(self, interval_seconds: float = 86400.0, limit: int = 7) -> list[dict]:
        """Error counts per time bucket, oldest bucket first."""
        entries = self._snapshot()
        now = datetime.now(timezone.utc)
        step = timedelta(seconds=interval_seconds)
        buckets = []
        for i in range(limit):
            end = now - step * i
            start = end - step
            in_bucket = [e for e in entries if start < e.timestamp <= end]
            buckets.append(
                {
                    "period_end": end.isoformat(),
                    "errors": len(in_bucket),
                    "by_category": dict(Counter(e.error.category.value for e in in_bucket)),
                }
            )
        buckets.reverse()
        return buckets

    def export_history(self) -> list[dict]:
        return [
            {"timestamp": e.timestamp.isoformat(), "error": e.error.to_dict(), "resolved": e.resolved}
            for e in self._snapshot()
        ]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

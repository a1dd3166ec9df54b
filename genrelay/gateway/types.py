"""Core types, enums and configuration models for the dispatch pipeline."""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, SecretStr, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorCategory(str, Enum):
    """Closed taxonomy of classified failures."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate-limit"
    BILLING = "billing"
    INVALID_REQUEST = "invalid-request"
    NOT_FOUND = "not-found"
    PERMISSION = "permission"
    SERVER_ERROR = "server-error"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.NETWORK,
        ErrorCategory.TIMEOUT,
    }
)


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RateLimitStrategy(str, Enum):
    """Request-rate admission strategies."""

    SLIDING_WINDOW = "sliding_window"  # Leaky bucket: fixed spacing between requests
    FIXED_WINDOW = "fixed_window"  # Reservoir refilled to N every minute
    TOKEN_BUCKET = "token_bucket"  # Reservoir refilled continuously


class RequestPriority(int, Enum):
    """Priority levels for the admission queue (lower = higher priority)."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


class EventType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CACHE_HIT = "cache_hit"
    RATE_LIMITED = "rate_limited"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OperationSpec:
    """Describes an abstract operation the dispatcher can route.

    ``method`` is the adapter coroutine (or async generator for streaming
    operations) invoked with the request's args and options.
    """

    name: str
    cacheable: bool = False
    streaming: bool = False
    method: str = ""

    @property
    def adapter_method(self) -> str:
        return self.method or self.name


BUILTIN_OPERATIONS: Mapping[str, OperationSpec] = MappingProxyType(
    {
        spec.name: spec
        for spec in (
            OperationSpec("generate_text", cacheable=True),
            OperationSpec("stream_text", streaming=True),
            OperationSpec("embed", cacheable=True),
            OperationSpec("classify", cacheable=True),
            OperationSpec("summarize", cacheable=True),
            OperationSpec("generate_image"),
            OperationSpec("transcribe"),
            OperationSpec("generate_speech"),
            OperationSpec("generate_code"),
        )
    }
)


@dataclass(frozen=True)
class OperationRequest:
    """A single call site's request. Immutable once issued."""

    operation: str
    args: tuple = ()
    options: Mapping[str, Any] = field(default_factory=dict)
    cache_key: str | None = None
    skip_cache: bool = False
    estimated_tokens: int | None = None
    priority: RequestPriority = RequestPriority.NORMAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def input_text(self) -> str:
        """Text-valued arguments joined, used for token accounting."""
        return " ".join(a for a in self.args if isinstance(a, str))


@dataclass(frozen=True)
class BackendHandle:
    """Registry view of a backend: identifier, capabilities, configured model."""

    backend_id: str
    capabilities: frozenset[str]
    model: str = ""


@dataclass
class RetryContext:
    """State of one retry sequence."""

    backend_id: str = ""
    operation: str = ""
    model: str = ""
    attempt: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Usage events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageEvent:
    """Event emitted to the usage/analytics sink."""

    type: EventType
    operation: str
    backend_id: str | None = None
    model: str | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    latency_ms: float | None = None
    error_category: ErrorCategory | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    monotonic: float = field(default_factory=time.monotonic, repr=False)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict."""
        return {
            "type": self.type.value,
            "backend_id": self.backend_id,
            "operation": self.operation,
            "model": self.model,
            "tokens": self.tokens.total_tokens if self.tokens else None,
            "input_tokens": self.tokens.input_tokens if self.tokens else None,
            "output_tokens": self.tokens.output_tokens if self.tokens else None,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "error_category": self.error_category.value if self.error_category else None,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Admission settings for one backend."""

    requests_per_minute: int = Field(60, gt=0)
    tokens_per_minute: int | None = Field(None, ge=0)  # None = no token budget gate
    concurrent: int = Field(5, gt=0)
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW
    max_queue: int | None = Field(None, gt=0)  # None = max(100, 2 * requests_per_minute)

    model_config = {"frozen": True}

    @property
    def queue_limit(self) -> int:
        """Most requests allowed to wait for admission at once."""
        if self.max_queue is not None:
            return self.max_queue
        return max(100, 2 * self.requests_per_minute)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)  # seconds
    max_delay: float = Field(30.0, ge=0)  # seconds
    backoff: BackoffKind = BackoffKind.EXPONENTIAL

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_delays(self) -> RetryPolicy:
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class CacheConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: float = Field(600.0, gt=0)
    max_items: int = Field(1000, gt=0)
    max_size_mb: float = Field(100, gt=0)
    namespace: str = Field("genrelay", min_length=1)

    model_config = {"frozen": True}

    @property
    def max_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


class BackendConfig(BaseModel):
    """Per-backend dispatch settings (credentials live on the adapter)."""

    model: str | None = None
    api_key: SecretStr | None = None
    timeout_seconds: float | None = Field(None, gt=0)  # None = dispatcher default
    rate_limit: RateLimitConfig | None = None  # None = dispatcher default

    model_config = {"frozen": True}


class DispatcherConfig(BaseModel):
    """Everything the Dispatcher needs at construction time."""

    primary: str = Field(min_length=1)
    fallbacks: list[str] = Field(default_factory=list)
    backends: dict[str, BackendConfig] = Field(default_factory=dict)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    timeout_seconds: float = Field(60.0, gt=0)

    @model_validator(mode="after")
    def _check_backend_order(self) -> DispatcherConfig:
        order = [self.primary, *self.fallbacks]
        if any(not backend_id for backend_id in order):
            raise ValueError("backend identifiers must be non-empty")
        if len(set(order)) != len(order):
            raise ValueError(f"duplicate backend in primary/fallbacks: {order}")
        return self

    @property
    def backend_order(self) -> list[str]:
        return [self.primary, *self.fallbacks]

    def backend(self, backend_id: str) -> BackendConfig:
        return self.backends.get(backend_id) or BackendConfig()

    def rate_limit_for(self, backend_id: str) -> RateLimitConfig:
        return self.backend(backend_id).rate_limit or self.rate_limit

    def timeout_for(self, backend_id: str) -> float:
        return self.backend(backend_id).timeout_seconds or self.timeout_seconds

    @classmethod
    def from_settings(cls, primary: str, fallbacks: list[str] | None = None, **overrides) -> DispatcherConfig:
        """Build a config whose defaults come from the process settings."""
        from genrelay.core.config import settings

        values = settings.dispatcher_defaults()
        values.update(overrides)
        return cls(primary=primary, fallbacks=fallbacks or [], **values)

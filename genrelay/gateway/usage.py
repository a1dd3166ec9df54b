"""Usage Ledger — running request/token/cost counters per backend and model.

Counters are additive; they only decrease on ``reset()``.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from genrelay.gateway.types import EventType, UsageEvent

logger = logging.getLogger(__name__)


@dataclass
class BackendUsage:
    requests: int = 0  # Terminal outcomes: successes + errors
    successes: int = 0
    errors: int = 0
    tokens: int = 0
    cost: float = 0.0
    average_latency_ms: float = 0.0
    cache_hits: int = 0
    rate_limited: int = 0

    @property
    def error_rate(self) -> float:
        return self.errors / self.requests if self.requests else 0.0

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "errors": self.errors,
            "tokens": self.tokens,
            "cost": round(self.cost, 8),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "error_rate": round(self.error_rate, 4),
            "cache_hits": self.cache_hits,
            "rate_limited": self.rate_limited,
        }


@dataclass
class ModelUsage:
    requests: int = 0
    tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "tokens": self.tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": round(self.cost, 8),
        }


@dataclass
class _Totals:
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0
    cache_hits: int = 0
    errors: Counter = field(default_factory=Counter)


class UsageLedger:
    """Thread-safe aggregation of dispatch usage events.

    Usage:
        ledger = UsageLedger()
        ledger.record(event)
        ledger.snapshot()["by_backend"]["openai"]["cost"]
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._totals = _Totals()
        self._by_backend: dict[str, BackendUsage] = {}
        self._by_model: dict[str, ModelUsage] = {}
        self._by_operation: Counter = Counter()
        self._last_reset = datetime.now(timezone.utc)

    def record(self, event: UsageEvent) -> None:
        with self._lock:
            backend = self._by_backend.setdefault(event.backend_id or "cache", BackendUsage())

            if event.type == EventType.SUCCESS:
                self._record_success(backend, event)
            elif event.type == EventType.ERROR:
                backend.requests += 1
                backend.errors += 1
                category = event.error_category.value if event.error_category else "unknown"
                self._totals.errors[category] += 1
            elif event.type == EventType.CACHE_HIT:
                backend.cache_hits += 1
                self._totals.cache_hits += 1
            elif event.type == EventType.RATE_LIMITED:
                backend.rate_limited += 1

    def _record_success(self, backend: BackendUsage, event: UsageEvent) -> None:
        tokens = event.tokens.total_tokens if event.tokens else 0
        cost = event.cost or 0.0

        backend.requests += 1
        backend.successes += 1
        backend.tokens += tokens
        backend.cost += cost
        if event.latency_ms is not None:
            # Running mean over successful calls
            backend.average_latency_ms += (event.latency_ms - backend.average_latency_ms) / backend.successes

        if event.model:
            model = self._by_model.setdefault(event.model, ModelUsage())
            model.requests += 1
            model.tokens += tokens
            model.cost += cost
            if event.tokens:
                model.input_tokens += event.tokens.input_tokens
                model.output_tokens += event.tokens.output_tokens

        self._by_operation[event.operation] += 1
        self._totals.requests += 1
        self._totals.tokens += tokens
        self._totals.cost += cost

    def backend(self, backend_id: str) -> dict:
        with self._lock:
            return (self._by_backend.get(backend_id) or BackendUsage()).to_dict()

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests": self._totals.requests,
                "tokens": self._totals.tokens,
                "cost": round(self._totals.cost, 8),
                "cache_hits": self._totals.cache_hits,
                "errors_by_category": dict(self._totals.errors),
                "by_backend": {k: v.to_dict() for k, v in self._by_backend.items()},
                "by_model": {k: v.to_dict() for k, v in self._by_model.items()},
                "by_operation": dict(self._by_operation),
                "last_reset": self._last_reset.isoformat(),
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_state()
        logger.info("Usage ledger reset")

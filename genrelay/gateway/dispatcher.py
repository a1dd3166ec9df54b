"""Dispatcher — routes abstract operations to backends through the resilience pipeline.

Flow for one ``perform`` call:
  1. Cacheable operation and not skipped -> cache read; a hit returns immediately
  2. Candidate backends: primary, then fallbacks (registered, credentialed, supporting the operation)
  3. Estimated tokens -> token budget pre-flight; denial moves to the next candidate
  4. Retry Controller -> Admission Controller (per attempt) -> backend call under timeout
  5. Success -> cache write, usage ledger, success event
  6. Terminal failure -> usage ledger, error event, ClassifiedError raised

Streaming operations skip the cache, hold one admission slot for the
life of the stream and are never retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from typing import Any

from genrelay.core.config import settings
from genrelay.core.metrics import record_budget_denial, record_cache_lookup, record_dispatch, record_retry
from genrelay.gateway.backends import BackendAdapter, BackendRegistry
from genrelay.gateway.cache import MISS, CacheStore
from genrelay.gateway.errors import (
    ClassifiedError,
    ErrorClassifier,
    NoBackendAvailableError,
    TokenBudgetExceededError,
)
from genrelay.gateway.rate_limiter import AdmissionController
from genrelay.gateway.retry import RetryController, ShouldRetry
from genrelay.gateway.tokens import TokenAccountant
from genrelay.gateway.types import (
    BUILTIN_OPERATIONS,
    DispatcherConfig,
    EventType,
    OperationRequest,
    OperationSpec,
    RequestPriority,
    RetryContext,
    UsageEvent,
)
from genrelay.gateway.usage import UsageLedger

logger = logging.getLogger(__name__)

Listener = Callable[[UsageEvent], Any]

# Keyword arguments of the convenience methods that steer dispatch instead of the backend
_DISPATCH_KWARGS = ("cache_key", "skip_cache", "estimated_tokens", "priority", "should_retry")


def _split_kwargs(options: dict) -> tuple[dict, dict]:
    dispatch = {k: options.pop(k) for k in _DISPATCH_KWARGS if k in options}
    return options, dispatch


class Dispatcher:
    """Resilient dispatch over interchangeable backends.

    Usage:
        registry = BackendRegistry([OpenAICompatibleBackend(api_key="sk-..."), MockBackend("local")])
        dispatcher = Dispatcher(registry, DispatcherConfig(primary="openai", fallbacks=["local"]))

        text = await dispatcher.generate_text("Write a haiku", temperature=0.2)
        vector = await dispatcher.perform("embed", ("hello",), estimated_tokens=2)

        async for chunk in dispatcher.stream_text("Tell me a story"):
            ...
    """

    def __init__(
        self,
        registry: BackendRegistry,
        config: DispatcherConfig,
        *,
        cache: CacheStore | None = None,
        admission: AdmissionController | None = None,
        retry: RetryController | None = None,
        classifier: ErrorClassifier | None = None,
        accountant: TokenAccountant | None = None,
        ledger: UsageLedger | None = None,
    ):
        self.registry = registry
        self.config = config
        self.classifier = classifier or ErrorClassifier(settings.error_history_size)
        self.cache = cache or CacheStore(config.cache)
        self.admission = admission or AdmissionController()
        self.retry = retry or RetryController(config.retry, self.classifier)
        self.accountant = accountant or TokenAccountant()
        self.ledger = ledger or UsageLedger()
        self._operations: dict[str, OperationSpec] = dict(BUILTIN_OPERATIONS)
        self._listeners: list[Listener] = []

        for backend_id in config.backend_order:
            if not self.admission.has(backend_id):
                self.admission.register(backend_id, config.rate_limit_for(backend_id))

    # -- Operations ---------------------------------------------------------

    def register_operation(self, spec: OperationSpec) -> None:
        """Make a custom operation routable (adapters implement ``spec.adapter_method``)."""
        self._operations[spec.name] = spec

    def operation(self, name: str) -> OperationSpec:
        try:
            return self._operations[name]
        except KeyError:
            raise ValueError(f"Unknown operation: {name}") from None

    # -- Events -------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Receive every UsageEvent. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: UsageEvent) -> None:
        self.ledger.record(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Usage listener %r failed on %s event", listener, event.type.value)

    # -- Backend selection --------------------------------------------------

    def _candidates(self, operation: str) -> list[tuple[str, BackendAdapter]]:
        candidates = []
        for backend_id in self.config.backend_order:
            adapter = self.registry.get(backend_id)
            if adapter is None:
                logger.debug("Backend %s is not registered", backend_id)
            elif not adapter.is_available():
                logger.debug("Backend %s has no credentials", backend_id)
            elif not adapter.supports(operation):
                logger.debug("Backend %s does not support %s", backend_id, operation)
            else:
                candidates.append((backend_id, adapter))
        return candidates

    def available_backends(self, operation: str | None = None) -> list[str]:
        """Backends in fallback order that could serve ``operation`` (any operation if None)."""
        if operation is not None:
            return [backend_id for backend_id, _ in self._candidates(operation)]
        return [
            backend_id
            for backend_id in self.config.backend_order
            if (adapter := self.registry.get(backend_id)) is not None and adapter.is_available()
        ]

    def _select_backend(self, request: OperationRequest) -> tuple[str, BackendAdapter]:
        candidates = self._candidates(request.operation)
        if not candidates:
            raise NoBackendAvailableError(request.operation, self.config.backend_order)

        if request.estimated_tokens is None:
            return candidates[0]

        denied: list[str] = []
        for backend_id, adapter in candidates:
            if self.admission.consume_token_budget(backend_id, request.estimated_tokens):
                if denied:
                    logger.info(
                        "Falling back to %s for %s after token budget denial on %s",
                        backend_id,
                        request.operation,
                        ", ".join(denied),
                        extra={"backend_id": backend_id, "operation": request.operation},
                    )
                return backend_id, adapter

            denied.append(backend_id)
            record_budget_denial(backend_id)
            self._emit(
                UsageEvent(
                    type=EventType.RATE_LIMITED,
                    operation=request.operation,
                    backend_id=backend_id,
                    model=self._model_for(backend_id, adapter, request),
                )
            )

        logger.warning(
            "Token budget denied %d tokens for %s on every backend",
            request.estimated_tokens,
            request.operation,
            extra={"operation": request.operation},
        )
        raise TokenBudgetExceededError(request.operation, request.estimated_tokens, denied)

    def _model_for(self, backend_id: str, adapter: BackendAdapter, request: OperationRequest) -> str:
        return request.options.get("model") or self.config.backend(backend_id).model or adapter.model

    def _call_options(self, backend_id: str, request: OperationRequest) -> dict:
        options = dict(request.options)
        configured = self.config.backend(backend_id).model
        if configured and "model" not in options:
            options["model"] = configured
        return options

    # -- Dispatch -----------------------------------------------------------

    async def perform(
        self,
        operation: str,
        args: tuple | list = (),
        options: dict | None = None,
        *,
        cache_key: str | None = None,
        skip_cache: bool = False,
        estimated_tokens: int | None = None,
        priority: RequestPriority | None = None,
        should_retry: ShouldRetry | None = None,
    ) -> Any:
        """Run ``operation`` on the first backend that can take it.

        Raises:
            ValueError: Unknown or streaming operation
            NoBackendAvailableError: No registered, credentialed backend supports it
            TokenBudgetExceededError: Every candidate denied ``estimated_tokens``
            ClassifiedError: The backend call failed terminally
        """
        request = OperationRequest(
            operation=operation,
            args=tuple(args),
            options=options or {},
            cache_key=cache_key,
            skip_cache=skip_cache,
            estimated_tokens=estimated_tokens,
            priority=priority if priority is not None else RequestPriority.NORMAL,
        )
        return await self.dispatch(request, should_retry=should_retry)

    async def dispatch(self, request: OperationRequest, *, should_retry: ShouldRetry | None = None) -> Any:
        spec = self.operation(request.operation)
        if spec.streaming:
            raise ValueError(f"{request.operation} is a streaming operation; use stream()")

        # 1. Cache
        key = None
        if spec.cacheable and not request.skip_cache and self.cache.enabled:
            key = request.cache_key or self.cache.key(request.operation, request.args, dict(request.options))
            cached = self.cache.get(key)
            record_cache_lookup(request.operation, cached is not MISS)
            if cached is not MISS:
                logger.debug("Cache hit for %s", request.operation, extra={"operation": request.operation})
                self._emit(UsageEvent(type=EventType.CACHE_HIT, operation=request.operation))
                return cached

        # 2-3. Backend selection and token budget
        backend_id, adapter = self._select_backend(request)
        model = self._model_for(backend_id, adapter, request)
        method = getattr(adapter, spec.adapter_method)
        call_options = self._call_options(backend_id, request)
        timeout = self.config.timeout_for(backend_id)

        async def attempt() -> Any:
            return await self.admission.schedule(
                backend_id,
                lambda: asyncio.wait_for(method(*request.args, **call_options), timeout),
                request.priority,
            )

        def on_retry(error: ClassifiedError, attempt_number: int) -> None:
            record_retry(backend_id, error.category.value)
            logger.warning(
                "Attempt %d of %s on %s failed (%s)%s",
                attempt_number,
                request.operation,
                backend_id,
                error.category.value,
                ", retrying" if attempt_number < self.retry.policy.max_attempts else "",
                extra={
                    "backend_id": backend_id,
                    "operation": request.operation,
                    "attempt": attempt_number,
                    "error_category": error.category.value,
                },
            )

        # 4. Retry around per-attempt admission
        context = RetryContext(backend_id=backend_id, operation=request.operation, model=model)
        started = time.monotonic()
        try:
            result = await self.retry.execute(attempt, context, on_retry=on_retry, should_retry=should_retry)
        except ClassifiedError as error:
            # 6. Terminal failure
            elapsed = time.monotonic() - started
            self._fail(error, request.operation, backend_id, model, elapsed)
            raise

        # 5. Success
        elapsed = time.monotonic() - started
        usage = self.accountant.measure(request.input_text(), result, model)
        cost = self.accountant.usage_cost(usage, model)
        if key is not None:
            self.cache.set(key, result, {"backend_id": backend_id, "model": model, "operation": request.operation})

        self._emit(
            UsageEvent(
                type=EventType.SUCCESS,
                operation=request.operation,
                backend_id=backend_id,
                model=model,
                tokens=usage,
                cost=cost,
                latency_ms=round(elapsed * 1000, 2),
            )
        )
        record_dispatch(backend_id, request.operation, "success", elapsed)
        logger.info(
            "%s served by %s in %.0fms (%d tokens)",
            request.operation,
            backend_id,
            elapsed * 1000,
            usage.total_tokens,
            extra={"backend_id": backend_id, "operation": request.operation, "attempt": context.attempt},
        )
        return result

    def _fail(self, error: ClassifiedError, operation: str, backend_id: str, model: str, elapsed: float) -> None:
        self.classifier.record(error)
        self._emit(
            UsageEvent(
                type=EventType.ERROR,
                operation=operation,
                backend_id=backend_id,
                model=model,
                latency_ms=round(elapsed * 1000, 2),
                error_category=error.category,
            )
        )
        record_dispatch(backend_id, operation, "error", elapsed)
        logger.error(
            "%s failed on %s after %d attempt(s): %s",
            operation,
            backend_id,
            error.attempt,
            error.category.value,
            extra={
                "backend_id": backend_id,
                "operation": operation,
                "attempt": error.attempt,
                "error_category": error.category.value,
            },
        )

    async def stream(
        self,
        operation: str = "stream_text",
        args: tuple | list = (),
        options: dict | None = None,
        *,
        estimated_tokens: int | None = None,
        priority: RequestPriority | None = None,
    ) -> AsyncIterator[Any]:
        """Stream a streaming operation's fragments from the first suitable backend.

        Each fragment must arrive within the backend's timeout. Closing the
        iterator early closes the backend stream, releases the admission slot
        and still records the partial usage. Failures are classified and
        raised, never retried.
        """
        spec = self.operation(operation)
        if not spec.streaming:
            raise ValueError(f"{operation} is not a streaming operation; use perform()")

        request = OperationRequest(
            operation=operation,
            args=tuple(args),
            options=options or {},
            skip_cache=True,
            estimated_tokens=estimated_tokens,
            priority=priority if priority is not None else RequestPriority.NORMAL,
        )
        backend_id, adapter = self._select_backend(request)
        model = self._model_for(backend_id, adapter, request)
        method = getattr(adapter, spec.adapter_method)
        call_options = self._call_options(backend_id, request)
        context = RetryContext(backend_id=backend_id, operation=operation, model=model, attempt=1)

        fragments: list[str] = []
        timeout = self.config.timeout_for(backend_id)
        started = time.monotonic()
        try:
            async with self.admission.slot(backend_id, request.priority):
                logger.debug("Stream %s started on %s", operation, backend_id)
                async with aclosing(method(*request.args, **call_options)) as source:
                    while True:
                        # Each fragment, the first included, must arrive within the timeout
                        try:
                            async with asyncio.timeout(timeout):
                                fragment = await anext(source)
                        except StopAsyncIteration:
                            break
                        if isinstance(fragment, str):
                            fragments.append(fragment)
                        yield fragment
        except GeneratorExit:
            self._finish_stream(request, backend_id, model, fragments, time.monotonic() - started, closed=True)
            raise
        except Exception as exc:
            error = self.classifier.classify(exc, context)
            self._fail(error, operation, backend_id, model, time.monotonic() - started)
            if error is exc:
                raise
            raise error from exc

        self._finish_stream(request, backend_id, model, fragments, time.monotonic() - started)

    def _finish_stream(
        self,
        request: OperationRequest,
        backend_id: str,
        model: str,
        fragments: list[str],
        elapsed: float,
        closed: bool = False,
    ) -> None:
        """Account for a stream that ran to completion or was closed by its consumer."""
        usage = self.accountant.measure(request.input_text(), "".join(fragments), model)
        self._emit(
            UsageEvent(
                type=EventType.SUCCESS,
                operation=request.operation,
                backend_id=backend_id,
                model=model,
                tokens=usage,
                cost=self.accountant.usage_cost(usage, model),
                latency_ms=round(elapsed * 1000, 2),
            )
        )
        record_dispatch(backend_id, request.operation, "closed" if closed else "success", elapsed)
        logger.debug(
            "Stream %s on %s %s after %d fragment(s) in %.0fms",
            request.operation,
            backend_id,
            "closed by consumer" if closed else "finished",
            len(fragments),
            elapsed * 1000,
        )

    # -- Convenience methods ------------------------------------------------

    async def generate_text(self, prompt: str, **options) -> str:
        options, dispatch = _split_kwargs(options)
        return await self.perform("generate_text", (prompt,), options, **dispatch)

    def stream_text(self, prompt: str, **options) -> AsyncIterator[str]:
        options, dispatch = _split_kwargs(options)
        dispatch.pop("cache_key", None)
        dispatch.pop("skip_cache", None)
        dispatch.pop("should_retry", None)
        return self.stream("stream_text", (prompt,), options, **dispatch)

    async def embed(self, text: str, **options) -> list[float]:
        options, dispatch = _split_kwargs(options)
        return await self.perform("embed", (text,), options, **dispatch)

    async def classify(self, text: str, labels: list[str], **options) -> dict:
        options, dispatch = _split_kwargs(options)
        return await self.perform("classify", (text, list(labels)), options, **dispatch)

    async def summarize(self, text: str, **options) -> str:
        options, dispatch = _split_kwargs(options)
        return await self.perform("summarize", (text,), options, **dispatch)

    async def generate_image(self, prompt: str, **options) -> dict:
        options, dispatch = _split_kwargs(options)
        return await self.perform("generate_image", (prompt,), options, **dispatch)

    async def transcribe(self, audio: bytes, **options) -> str:
        options, dispatch = _split_kwargs(options)
        return await self.perform("transcribe", (audio,), options, **dispatch)

    async def generate_speech(self, text: str, **options) -> bytes:
        options, dispatch = _split_kwargs(options)
        return await self.perform("generate_speech", (text,), options, **dispatch)

    async def generate_code(self, prompt: str, language: str = "python", **options) -> dict:
        options, dispatch = _split_kwargs(options)
        return await self.perform("generate_code", (prompt,), {**options, "language": language}, **dispatch)

    # -- Introspection ------------------------------------------------------

    def stats(self) -> dict:
        return {
            "backends": self.available_backends(),
            "cache": self.cache.stats(),
            "admission": self.admission.all_stats(),
            "usage": self.ledger.snapshot(),
            "errors": self.classifier.stats(),
        }

    def reset(self) -> None:
        """Clear the cache, usage counters and error history."""
        self.cache.clear()
        self.ledger.reset()
        self.classifier.clear_history()
        logger.info("Dispatcher state reset")

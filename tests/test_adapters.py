"""Tests for backend adapters (mocked HTTP) and the backend registry."""

from __future__ import annotations

import json
from contextlib import aclosing
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from pydantic import SecretStr

from genrelay.gateway.adapters import MockBackend, OpenAICompatibleBackend
from genrelay.gateway.backends import BackendRegistry
from genrelay.gateway.dispatcher import Dispatcher
from genrelay.gateway.errors import ClassifiedError, ErrorClassifier
from genrelay.gateway.rate_limiter import AdmissionController
from genrelay.gateway.retry import RetryController
from genrelay.gateway.types import BackendConfig, DispatcherConfig, ErrorCategory, RetryPolicy


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set (needed for raise_for_status)."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        resp = httpx.Response(status_code, json=json_data, request=request)
    else:
        resp = httpx.Response(status_code, text=text, request=request)
    return resp


def _mock_chat_response(text="Hello world", model="gpt-4o-mini"):
    return _make_httpx_response(
        200,
        json_data={
            "choices": [{"message": {"content": text}, "finish_reason": "stop"}],
            "model": model,
            "usage": {"prompt_tokens": 10, "completion_tokens": 20},
        },
    )


def _mock_client(mock_client_cls, **post_kwargs) -> AsyncMock:
    mock_client = AsyncMock()
    for name, value in post_kwargs.items():
        setattr(mock_client.post, name, value)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestOpenAICompatibleBackend:
    @pytest.mark.asyncio
    async def test_generate_text(self):
        backend = OpenAICompatibleBackend(api_key="test-key")

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, return_value=_mock_chat_response())
            result = await backend.generate_text("Hello", system_prompt="Be brief", temperature=0.1)

        assert result == "Hello world"
        url = mock_client.post.call_args.args[0]
        payload = mock_client.post.call_args.kwargs["json"]
        headers = mock_client.post.call_args.kwargs["headers"]
        assert url == "https://api.openai.com/v1/chat/completions"
        assert payload["model"] == "gpt-4o-mini"
        assert payload["temperature"] == 0.1
        assert payload["messages"][0] == {"role": "system", "content": "Be brief"}
        assert headers["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_custom_base_url_and_model(self):
        backend = OpenAICompatibleBackend(api_key="k", model="local-llama", base_url="http://localhost:8000/v1/")

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, return_value=_mock_chat_response())
            await backend.generate_text("Hello")

        assert mock_client.post.call_args.args[0] == "http://localhost:8000/v1/chat/completions"
        assert mock_client.post.call_args.kwargs["json"]["model"] == "local-llama"

    @pytest.mark.asyncio
    async def test_embed(self):
        backend = OpenAICompatibleBackend(api_key="test-key")
        response = _make_httpx_response(200, json_data={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, return_value=response)
            vector = await backend.embed("hello")

        assert vector == [0.1, 0.2, 0.3]
        assert mock_client.post.call_args.kwargs["json"]["model"] == "text-embedding-3-small"

    @pytest.mark.asyncio
    async def test_classify_matches_label(self):
        backend = OpenAICompatibleBackend(api_key="test-key")

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, return_value=_mock_chat_response("Negative"))
            result = await backend.classify("awful", ["positive", "negative"])

        assert result == {"label": "negative", "confidence": 1.0, "labels": ["positive", "negative"]}

    @pytest.mark.asyncio
    async def test_generate_speech_returns_bytes(self):
        backend = OpenAICompatibleBackend(api_key="test-key")
        request = httpx.Request("POST", "https://example.com")
        response = httpx.Response(200, content=b"ID3audio", request=request)

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, return_value=response)
            assert await backend.generate_speech("hi") == b"ID3audio"

    @pytest.mark.asyncio
    async def test_rate_limited_raises_classifiable_error(self):
        backend = OpenAICompatibleBackend(api_key="test-key")

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, return_value=_make_httpx_response(429, text="rate limited"))
            with pytest.raises(httpx.HTTPStatusError) as exc_info:
                await backend.generate_text("Hello")

        classified = ErrorClassifier().classify(exc_info.value)
        assert classified.category == ErrorCategory.RATE_LIMIT
        assert classified.status == 429

    @pytest.mark.asyncio
    async def test_timeout_propagates(self):
        backend = OpenAICompatibleBackend(api_key="test-key")

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, side_effect=httpx.TimeoutException("timeout"))
            with pytest.raises(httpx.TimeoutException):
                await backend.generate_text("Hello")

    @pytest.mark.asyncio
    async def test_stream_text_parses_sse(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            chunks = [
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}}]},
            ]
            body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
            return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})

        backend = OpenAICompatibleBackend(api_key="test-key", transport=httpx.MockTransport(handler))

        async with aclosing(backend.stream_text("Hi")) as stream:
            fragments = [fragment async for fragment in stream]

        assert fragments == ["Hel", "lo"]
        assert seen[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_error_status(self):
        backend = OpenAICompatibleBackend(
            api_key="test-key",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded")),
        )

        with pytest.raises(httpx.HTTPStatusError):
            async for _fragment in backend.stream_text("Hi"):
                pass

    def test_availability_requires_key(self):
        assert OpenAICompatibleBackend(api_key="k").is_available() is True
        assert OpenAICompatibleBackend(api_key=None).is_available() is False

    def test_from_config(self):
        config = BackendConfig(model="gpt-4o", api_key=SecretStr("secret"), timeout_seconds=12)
        backend = OpenAICompatibleBackend.from_config("azure-east", config)

        assert backend.name == "azure-east"
        assert backend.model == "gpt-4o"
        assert backend.api_key == "secret"
        assert backend.timeout == 12

    def test_supports(self):
        backend = OpenAICompatibleBackend(api_key="k")
        assert backend.supports("embed")
        assert not backend.supports("teleport")


class TestOpenAIThroughDispatcher:
    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_classified(self, clock):
        backend = OpenAICompatibleBackend(api_key="test-key")
        classifier = ErrorClassifier()
        policy = RetryPolicy(max_attempts=2, base_delay=0.1, max_delay=0.1)
        dispatcher = Dispatcher(
            BackendRegistry([backend]),
            DispatcherConfig(primary="openai", retry=policy),
            admission=AdmissionController(clock=clock, sleep=clock.sleep),
            retry=RetryController(policy, classifier, sleep=clock.sleep),
            classifier=classifier,
        )

        with patch("genrelay.gateway.adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, return_value=_make_httpx_response(429, text="slow down"))
            with pytest.raises(ClassifiedError) as exc_info:
                await dispatcher.generate_text("Hello")

        assert exc_info.value.category == ErrorCategory.RATE_LIMIT
        assert exc_info.value.attempt == 2
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        assert mock_client.post.call_count == 2


class TestMockBackend:
    @pytest.mark.asyncio
    async def test_canned_response(self):
        backend = MockBackend("m", responses={"ping": "pong"})
        assert await backend.generate_text("ping") == "pong"
        assert backend.calls["generate_text"] == 1

    @pytest.mark.asyncio
    async def test_scripted_failures_then_success(self):
        backend = MockBackend("m", failures=[RuntimeError("first")])
        with pytest.raises(RuntimeError):
            await backend.generate_text("x")
        assert (await backend.generate_text("x")).startswith("Mock response")
        assert backend.invocations == 2

    @pytest.mark.asyncio
    async def test_deterministic_embedding(self):
        backend = MockBackend("m")
        assert await backend.embed("same") == await backend.embed("same")
        assert len(await backend.embed("x", dimensions=4)) == 4

    @pytest.mark.asyncio
    async def test_stream_closed_on_early_exit(self):
        backend = MockBackend("m", responses={"p": "a b c"})
        async with aclosing(backend.stream_text("p")) as stream:
            async for _fragment in stream:
                break
        assert backend.streams_closed == 1

    def test_limited_capabilities(self):
        backend = MockBackend("m", capabilities={"embed"})
        assert backend.supports("embed")
        assert not backend.supports("generate_text")


class TestBackendRegistry:
    def test_register_and_lookup(self):
        registry = BackendRegistry()
        backend = MockBackend("a")
        assert registry.register(backend) == "a"
        assert registry.get("a") is backend
        assert "a" in registry
        assert len(registry) == 1

    def test_register_under_alias(self):
        registry = BackendRegistry()
        registry.register(MockBackend("a"), backend_id="alias")
        assert registry.ids() == ["alias"]
        assert registry.handles()[0].backend_id == "alias"

    def test_unregister(self):
        registry = BackendRegistry([MockBackend("a")])
        assert registry.unregister("a") is True
        assert registry.unregister("a") is False
        assert registry.get("a") is None

    def test_supporting_skips_unavailable(self):
        registry = BackendRegistry(
            [
                MockBackend("a", capabilities={"embed"}),
                MockBackend("b", api_key=None),
                MockBackend("c"),
            ]
        )
        assert registry.supporting("embed") == ["a", "c"]
        assert registry.supporting("generate_text") == ["c"]

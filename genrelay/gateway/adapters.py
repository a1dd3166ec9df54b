"""Backend adapters — an in-process mock and an OpenAI-compatible HTTP backend.

Both raise on failure so the Error Classifier sees the real exception:
  - MockBackend: deterministic responses, scripted failures, invocation counters
  - OpenAICompatibleBackend: OpenAI REST protocol over httpx (chat, embeddings,
    images, audio); usable with any OpenAI-compatible endpoint
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
from collections import Counter
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx

from genrelay.gateway.backends import BackendAdapter
from genrelay.gateway.types import BUILTIN_OPERATIONS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------


class MockBackend(BackendAdapter):
    """In-process backend for tests and local development.

    Args:
        name: Backend identifier
        model: Reported model name
        responses: Canned results keyed by the first positional argument
        failures: Exceptions raised by successive calls, in order, before succeeding
        fail_with: Exception raised by every call once ``failures`` is exhausted
        delay: Seconds to sleep inside each call
        stream_fail_after: Raise ``stream_error`` after this many stream chunks
        stream_error: Mid-stream exception (RuntimeError when unset)
    """

    def __init__(
        self,
        name: str = "mock",
        model: str = "mock-model",
        *,
        api_key: str | None = "mock-key",
        capabilities: Iterable[str] | None = None,
        responses: dict[Any, Any] | None = None,
        failures: Iterable[BaseException] | None = None,
        fail_with: BaseException | None = None,
        delay: float = 0.0,
        stream_fail_after: int | None = None,
        stream_error: BaseException | None = None,
    ):
        super().__init__(model=model, api_key=api_key)
        self.name = name
        self.capabilities = frozenset(capabilities if capabilities is not None else BUILTIN_OPERATIONS)
        self.responses = dict(responses or {})
        self.failures = list(failures or [])
        self.fail_with = fail_with
        self.delay = delay
        self.stream_fail_after = stream_fail_after
        self.stream_error = stream_error
        self.calls: Counter = Counter()
        self.call_log: list[tuple[str, tuple, dict]] = []
        self.streams_closed = 0

    @property
    def invocations(self) -> int:
        return sum(self.calls.values())

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _invoke(self, operation: str, args: tuple, options: dict) -> None:
        self.calls[operation] += 1
        self.call_log.append((operation, args, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if self.fail_with is not None:
            raise self.fail_with

    def _canned(self, key: Any, default: Any) -> Any:
        try:
            return self.responses.get(key, default)
        except TypeError:
            return default

    async def generate_text(self, prompt: str, **options) -> str:
        await self._invoke("generate_text", (prompt,), options)
        return self._canned(prompt, f'Mock response to: "{prompt[:50]}" ({self.name})')

    async def stream_text(self, prompt: str, **options) -> AsyncIterator[str]:
        await self._invoke("stream_text", (prompt,), options)
        text = self._canned(prompt, f"Mock stream for {prompt[:50]}")
        try:
            for i, word in enumerate(text.split(" ")):
                if self.stream_fail_after is not None and i >= self.stream_fail_after:
                    raise self.stream_error or RuntimeError("Mock stream interrupted")
                await asyncio.sleep(0)
                yield word + " "
        finally:
            self.streams_closed += 1

    async def embed(self, text: str, **options) -> list[float]:
        await self._invoke("embed", (text,), options)
        canned = self._canned(text, None)
        if canned is not None:
            return canned
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [round(math.sin(b) * 0.1, 6) for b in digest[: options.get("dimensions", 8)]]

    async def classify(self, text: str, labels: list[str] | None = None, **options) -> dict:
        await self._invoke("classify", (text, labels), options)
        labels = labels or ["positive", "negative", "neutral"]
        lowered = text.lower()
        if "positive" in labels and any(w in lowered for w in ("good", "great", "excellent", "love")):
            label = "positive"
        elif "negative" in labels and any(w in lowered for w in ("bad", "terrible", "hate", "awful")):
            label = "negative"
        else:
            label = labels[len(text) % len(labels)]
        return {"label": label, "confidence": 0.9, "labels": list(labels)}

    async def summarize(self, text: str, **options) -> str:
        await self._invoke("summarize", (text,), options)
        first = text.split(". ")[0].strip()
        return self._canned(text, f"Summary: {first}")

    async def generate_image(self, prompt: str, **options) -> dict:
        await self._invoke("generate_image", (prompt,), options)
        digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12]
        return {"url": f"mock://images/{digest}.png", "prompt": prompt, "size": options.get("size", "1024x1024")}

    async def transcribe(self, audio: bytes, **options) -> str:
        await self._invoke("transcribe", (audio,), options)
        return f"Mock transcription of {len(audio)} bytes"

    async def generate_speech(self, text: str, **options) -> bytes:
        await self._invoke("generate_speech", (text,), options)
        return f"MOCK-AUDIO:{text}".encode("utf-8")

    async def generate_code(self, prompt: str, **options) -> dict:
        await self._invoke("generate_code", (prompt,), options)
        language = options.get("language", "python")
        return {"code": f"# {prompt}\npass\n", "language": language, "explanation": "Mock code"}


# ---------------------------------------------------------------------------
# OpenAI-compatible backend
# ---------------------------------------------------------------------------


class OpenAICompatibleBackend(BackendAdapter):
    """OpenAI REST protocol over httpx.

    Failures surface as httpx exceptions (``HTTPStatusError`` via
    ``raise_for_status``, ``TimeoutException``, ``TransportError``) for the
    Error Classifier to categorize.
    """

    name = "openai"
    capabilities = frozenset(
        {
            "generate_text",
            "stream_text",
            "embed",
            "classify",
            "summarize",
            "generate_image",
            "transcribe",
            "generate_speech",
            "generate_code",
        }
    )
    default_model = "gpt-4o-mini"
    default_embedding_model = "text-embedding-3-small"
    base_url = "https://api.openai.com/v1"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        name: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model=model or self.default_model, api_key=api_key)
        if name:
            self.name = name
        if base_url:
            self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, backend_id: str, config, **kwargs) -> OpenAICompatibleBackend:
        """Build from a ``BackendConfig``."""
        return cls(
            api_key=config.api_key.get_secret_value() if config.api_key else None,
            model=config.model,
            name=backend_id,
            timeout=config.timeout_seconds or 60.0,
            **kwargs,
        )

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return httpx.AsyncClient(timeout=self.timeout)

    async def _post(self, path: str, payload: dict) -> dict:
        async with self._client() as client:
            resp = await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    @staticmethod
    def _messages(prompt: str, system_prompt: str | None) -> list[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _chat_payload(self, prompt: str, options: dict, stream: bool = False) -> dict:
        payload = {
            "model": options.get("model") or self.model,
            "messages": self._messages(prompt, options.get("system_prompt")),
            "temperature": options.get("temperature", 0.7),
        }
        if options.get("max_tokens"):
            payload["max_tokens"] = options["max_tokens"]
        if stream:
            payload["stream"] = True
        return payload

    async def _chat(self, prompt: str, options: dict) -> str:
        data = await self._post("/chat/completions", self._chat_payload(prompt, options))
        return data["choices"][0]["message"]["content"] or ""

    # -- Operations ---------------------------------------------------------

    async def generate_text(self, prompt: str, **options) -> str:
        return await self._chat(prompt, options)

    async def stream_text(self, prompt: str, **options) -> AsyncIterator[str]:
        payload = self._chat_payload(prompt, options, stream=True)
        async with self._client() as client:
            async with client.stream(
                "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)
                    choices = chunk.get("choices") or [{}]
                    delta = choices[0].get("delta", {}).get("content")
                    if delta:
                        yield delta

    async def embed(self, text: str, **options) -> list[float]:
        payload = {"model": options.get("model") or self.default_embedding_model, "input": text}
        data = await self._post("/embeddings", payload)
        return data["data"][0]["embedding"]

    async def classify(self, text: str, labels: list[str] | None = None, **options) -> dict:
        labels = labels or ["positive", "negative", "neutral"]
        prompt = (
            f"Classify the following text into one of these categories: {', '.join(labels)}.\n"
            f"Respond with only the category name.\n\nText: {text}"
        )
        answer = (await self._chat(prompt, {**options, "temperature": 0})).strip().lower()
        label = next((l for l in labels if l.lower() == answer), None)
        if label is None:
            label = next((l for l in labels if l.lower() in answer), labels[0])
        return {"label": label, "confidence": 1.0 if answer == label.lower() else 0.5, "labels": list(labels)}

    async def summarize(self, text: str, **options) -> str:
        length = options.pop("max_length", None)
        limit = f" in at most {length} words" if length else ""
        return await self._chat(f"Summarize the following text{limit}:\n\n{text}", options)

    async def generate_code(self, prompt: str, **options) -> dict:
        language = options.pop("language", "python")
        code = await self._chat(
            prompt,
            {**options, "system_prompt": f"You are an expert {language} programmer. Respond with code only."},
        )
        return {"code": code, "language": language}

    async def generate_image(self, prompt: str, **options) -> dict:
        payload = {
            "model": options.get("model", "dall-e-3"),
            "prompt": prompt,
            "size": options.get("size", "1024x1024"),
            "n": 1,
        }
        data = await self._post("/images/generations", payload)
        image = data["data"][0]
        return {"url": image.get("url"), "revised_prompt": image.get("revised_prompt"), "prompt": prompt}

    async def transcribe(self, audio: bytes, **options) -> str:
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data={"model": options.get("model", "whisper-1")},
                files={"file": (options.get("filename", "audio.wav"), audio)},
            )
        resp.raise_for_status()
        return resp.json()["text"]

    async def generate_speech(self, text: str, **options) -> bytes:
        payload = {
            "model": options.get("model", "tts-1"),
            "input": text,
            "voice": options.get("voice", "alloy"),
        }
        async with self._client() as client:
            resp = await client.post(f"{self.base_url}/audio/speech", json=payload, headers=self._headers())
        resp.raise_for_status()
        return resp.content

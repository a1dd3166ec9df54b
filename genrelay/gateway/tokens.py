"""Token Accountant — token counting, cost estimation, truncation and chunking.

Counting uses a fallback chain:
  1. tokenizer registered for the longest matching model prefix
  2. tiktoken (OpenAI models by name; Anthropic and Google approximated with cl100k_base)
  3. ceil(len / 4) character heuristic

Counting never raises.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import tiktoken

from genrelay.gateway.types import TokenUsage

logger = logging.getLogger(__name__)

ELLIPSIS = "..."
MESSAGE_OVERHEAD_TOKENS = 4  # Role separators per chat message
DEFAULT_TOKEN_LIMIT = 4096

# Pricing per 1M tokens (USD)
MODEL_PRICING: dict[str, dict[str, float]] = {
    # OpenAI
    "gpt-4": {"input": 30.00, "output": 60.00},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
    "text-embedding-3-small": {"input": 0.02, "output": 0.0},
    "text-embedding-3-large": {"input": 0.13, "output": 0.0},
    # Anthropic
    "claude-3-opus": {"input": 15.00, "output": 75.00},
    "claude-3-sonnet": {"input": 3.00, "output": 15.00},
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    # Google
    "gemini-pro": {"input": 0.50, "output": 1.50},
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.60},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
}

MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4-turbo-preview": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4.1": 1047576,
    "gpt-3.5-turbo": 4096,
    "gpt-3.5-turbo-16k": 16384,
    "claude-3-opus": 200000,
    "claude-3-sonnet": 200000,
    "claude-3-haiku": 200000,
    "claude-2.1": 200000,
    "claude-2": 100000,
    "gemini-pro": 30720,
    "gemini-pro-vision": 30720,
    "gemini-2.0-flash": 1048576,
    "palm-2": 8192,
}

_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4", "text-embedding-", "davinci", "babbage", "turbo")
_CL100K_PREFIXES = ("claude", "gemini", "palm")

# Lowercase, without the trailing period
_ABBREVIATIONS = frozenset(
    {
        "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "vs", "etc",
        "e.g", "i.e", "inc", "ltd", "co", "corp", "no", "fig", "approx", "dept",
    }
)

_SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")


def _longest_prefix(model: str, table: Iterable[str]) -> str | None:
    matches = [name for name in table if model.startswith(name)]
    return max(matches, key=len) if matches else None


def split_sentences(text: str) -> list[str]:
    """Split on sentence terminators, keeping known abbreviations inside sentences."""
    sentences: list[str] = []
    start = 0
    for match in _SENTENCE_END.finditer(text):
        candidate = text[start : match.end()].strip()
        if match.group() == ".":
            words = candidate[:-1].split()
            if words and words[-1].lower() in _ABBREVIATIONS:
                continue
        if candidate:
            sentences.append(candidate)
        start = match.end()

    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


@dataclass(frozen=True)
class TokenInfo:
    count: int
    limit: int
    truncated: bool  # True when count exceeds limit
    original_length: int


class TokenAccountant:
    """Token counting and cost estimation per model family.

    Usage:
        accountant = TokenAccountant()
        n = accountant.count_tokens("Hello, world!", "gpt-4o-mini")
        cost = accountant.estimate_cost(n, "gpt-4o-mini", "input")
        chunks = accountant.split_into_chunks(long_text, "gpt-4o-mini", chunk_size=500, overlap=50)
    """

    def __init__(
        self,
        pricing: dict[str, dict[str, float]] | None = None,
        token_limits: dict[str, int] | None = None,
    ):
        self.pricing = {**MODEL_PRICING, **(pricing or {})}
        self.token_limits = {**MODEL_TOKEN_LIMITS, **(token_limits or {})}
        self._tokenizers: dict[str, Callable[[str], int]] = {}
        self._encodings: dict[str, Any] = {}
        self._lock = threading.Lock()

    def register_tokenizer(self, model_prefix: str, tokenizer: Callable[[str], int]) -> None:
        """Use ``tokenizer`` for every model starting with ``model_prefix``."""
        self._tokenizers[model_prefix.lower()] = tokenizer

    # -- Counting -----------------------------------------------------------

    def _encoding(self, model: str) -> Any:
        """tiktoken encoding for a model, or None. Failed lookups are remembered."""
        if model.startswith(_OPENAI_PREFIXES):
            key = model
        elif model.startswith(_CL100K_PREFIXES):
            key = "cl100k_base"
        else:
            return None

        with self._lock:
            if key in self._encodings:
                return self._encodings[key]

        encoding = None
        try:
            if key == "cl100k_base":
                encoding = tiktoken.get_encoding("cl100k_base")
            else:
                try:
                    encoding = tiktoken.encoding_for_model(key)
                except KeyError:
                    encoding = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            logger.debug("tiktoken encoding unavailable for %s: %s", model, e)

        with self._lock:
            self._encodings[key] = encoding
        return encoding

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Character heuristic: ~4 characters per token."""
        return math.ceil(len(text) / 4)

    def count_tokens(self, text: str, model: str = "") -> int:
        if not text:
            return 0
        model = (model or "").lower()

        prefix = _longest_prefix(model, self._tokenizers)
        if prefix is not None:
            try:
                return int(self._tokenizers[prefix](text))
            except Exception as e:
                logger.debug("Registered tokenizer for %s failed: %s", prefix, e)
                return self.estimate_tokens(text)

        encoding = self._encoding(model)
        if encoding is not None:
            try:
                return len(encoding.encode(text))
            except Exception as e:
                logger.debug("tiktoken failed for %s: %s", model, e)

        return self.estimate_tokens(text)

    def estimate_conversation_tokens(self, messages: list[dict[str, str]], model: str = "") -> int:
        return sum(
            self.count_tokens(f"{m.get('role', '')}: {m.get('content', '')}", model) + MESSAGE_OVERHEAD_TOKENS
            for m in messages
        )

    # -- Pricing and limits -------------------------------------------------

    def _price(self, model: str) -> dict[str, float] | None:
        model = (model or "").lower()
        if model in self.pricing:
            return self.pricing[model]
        prefix = _longest_prefix(model, self.pricing)
        return self.pricing[prefix] if prefix else None

    def estimate_cost(self, tokens: int, model: str, direction: str = "input") -> float:
        """USD cost of ``tokens`` for the model. Unknown models cost 0.0."""
        if direction not in ("input", "output"):
            raise ValueError(f"direction must be 'input' or 'output', got {direction!r}")
        pricing = self._price(model)
        if pricing is None:
            return 0.0
        return round(tokens * pricing[direction] / 1_000_000, 8)

    def usage_cost(self, usage: TokenUsage, model: str) -> float:
        return round(
            self.estimate_cost(usage.input_tokens, model, "input")
            + self.estimate_cost(usage.output_tokens, model, "output"),
            8,
        )

    def model_token_limit(self, model: str) -> int:
        model = (model or "").lower()
        if model in self.token_limits:
            return self.token_limits[model]
        prefix = _longest_prefix(model, self.token_limits)
        return self.token_limits[prefix] if prefix else DEFAULT_TOKEN_LIMIT

    def all_model_limits(self) -> dict[str, int]:
        return dict(self.token_limits)

    def token_info(self, text: str, model: str, max_tokens: int | None = None) -> TokenInfo:
        count = self.count_tokens(text, model)
        limit = max_tokens if max_tokens is not None else self.model_token_limit(model)
        return TokenInfo(count=count, limit=limit, truncated=count > limit, original_length=len(text))

    def validate_token_limits(
        self,
        text: str,
        model: str,
        max_tokens: int | None = None,
        response_tokens: int = 1000,
    ) -> dict:
        """Whether the prompt plus the expected response fits the model window."""
        prompt_tokens = self.count_tokens(text, model)
        limit = max_tokens if max_tokens is not None else self.model_token_limit(model)
        return {
            "valid": prompt_tokens + response_tokens <= limit,
            "prompt_tokens": prompt_tokens,
            "available_tokens": max(0, limit - prompt_tokens),
        }

    # -- Truncation and chunking --------------------------------------------

    def truncate_to_limit(self, text: str, model: str, max_tokens: int, preserve_end: bool = False) -> str:
        """Longest prefix (or suffix) of ``text`` that fits ``max_tokens`` with the ellipsis marker.

        Text that already fits is returned unchanged. The marker is counted
        against the limit; if not even the marker fits, returns "".
        """
        if self.count_tokens(text, model) <= max_tokens:
            return text

        def candidate(length: int) -> str:
            if preserve_end:
                return ELLIPSIS + (text[len(text) - length :] if length else "")
            return text[:length] + ELLIPSIS

        low, high = 0, len(text)
        best = ""
        while low <= high:
            mid = (low + high) // 2
            attempt = candidate(mid)
            if self.count_tokens(attempt, model) <= max_tokens:
                best = attempt
                low = mid + 1
            else:
                high = mid - 1
        return best

    def split_into_chunks(self, text: str, model: str, chunk_size: int, overlap: int = 0) -> list[str]:
        """Greedy sentence packing into chunks of at most ``chunk_size`` tokens.

        A sentence larger than ``chunk_size`` forms its own chunk. With
        ``overlap`` > 0, each new chunk starts with the trailing sentences of
        the previous one that fit in ``overlap`` tokens.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        chunks: list[str] = []
        current: list[tuple[str, int]] = []
        current_tokens = 0

        for sentence in split_sentences(text):
            tokens = self.count_tokens(sentence, model)
            if current and current_tokens + tokens > chunk_size:
                chunks.append(" ".join(s for s, _ in current))
                current = self._overlap_tail(current, overlap, chunk_size - tokens) if overlap > 0 else []
                current_tokens = sum(n for _, n in current)
            current.append((sentence, tokens))
            current_tokens += tokens

        if current:
            chunks.append(" ".join(s for s, _ in current))
        return chunks

    @staticmethod
    def _overlap_tail(sentences: list[tuple[str, int]], overlap: int, room: int) -> list[tuple[str, int]]:
        budget = min(overlap, room)
        tail: list[tuple[str, int]] = []
        used = 0
        for sentence, tokens in reversed(sentences):
            if used + tokens > budget:
                break
            tail.insert(0, (sentence, tokens))
            used += tokens
        return tail

    # -- Usage measurement --------------------------------------------------

    def measure(self, input_text: str, result: Any, model: str) -> TokenUsage:
        """Token usage of a completed call; non-text results count zero output tokens."""
        if isinstance(result, str):
            output = result
        elif isinstance(result, (list, tuple)) and all(isinstance(r, str) for r in result):
            output = " ".join(result)
        else:
            output = ""
        return TokenUsage(
            input_tokens=self.count_tokens(input_text, model),
            output_tokens=self.count_tokens(output, model),
        )

"""Tests for the Token Accountant.

Deterministic assertions use the unknown model "mock-model", which always
takes the ceil(len / 4) heuristic.
"""

from __future__ import annotations

import pytest

from genrelay.gateway.tokens import ELLIPSIS, TokenAccountant, split_sentences
from genrelay.gateway.types import TokenUsage

MODEL = "mock-model"


@pytest.fixture
def accountant():
    return TokenAccountant()


class TestCounting:
    def test_heuristic_for_unknown_model(self, accountant):
        assert accountant.count_tokens("abcdefgh", MODEL) == 2
        assert accountant.count_tokens("abcdefghi", MODEL) == 3

    def test_empty_text(self, accountant):
        assert accountant.count_tokens("", MODEL) == 0
        assert accountant.count_tokens("", "gpt-4o") == 0

    def test_known_model_counts(self, accountant):
        # tiktoken when its encoding data is reachable, heuristic otherwise
        assert accountant.count_tokens("Hello, world! This is a test.", "gpt-4o-mini") > 0
        assert accountant.count_tokens("Hello, world!", "claude-3-haiku") > 0

    def test_registered_tokenizer_by_prefix(self, accountant):
        accountant.register_tokenizer("words-", lambda text: len(text.split()))
        assert accountant.count_tokens("one two three", "words-v1") == 3

    def test_longest_prefix_tokenizer_wins(self, accountant):
        accountant.register_tokenizer("acme", lambda text: 1)
        accountant.register_tokenizer("acme-large", lambda text: 99)
        assert accountant.count_tokens("text", "acme-large-2") == 99
        assert accountant.count_tokens("text", "acme-small") == 1

    def test_failing_tokenizer_falls_back(self, accountant):
        def broken(text):
            raise RuntimeError("tokenizer crashed")

        accountant.register_tokenizer("broken", broken)
        assert accountant.count_tokens("abcdefgh", "broken-model") == 2

    def test_conversation_tokens(self, accountant):
        messages = [
            {"role": "user", "content": "hello"},  # "user: hello" -> 3
            {"role": "assistant", "content": "hi there"},  # "assistant: hi there" -> 5
        ]
        assert accountant.estimate_conversation_tokens(messages, MODEL) == 3 + 4 + 5 + 4


class TestCost:
    def test_exact_match(self, accountant):
        assert accountant.estimate_cost(1_000_000, "gpt-4o", "input") == 2.5
        assert accountant.estimate_cost(1_000_000, "gpt-4o", "output") == 10.0

    def test_longest_prefix_match(self, accountant):
        assert accountant.estimate_cost(1_000_000, "gpt-4o-mini-2024-07-18", "input") == 0.15
        assert accountant.estimate_cost(1_000_000, "gpt-4o-2024-08-06", "input") == 2.5

    def test_unknown_model_is_free(self, accountant):
        assert accountant.estimate_cost(5000, MODEL, "input") == 0.0

    def test_invalid_direction(self, accountant):
        with pytest.raises(ValueError):
            accountant.estimate_cost(10, "gpt-4o", "sideways")

    def test_usage_cost(self, accountant):
        usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000)
        assert accountant.usage_cost(usage, "gpt-4o-mini") == pytest.approx(0.75)

    def test_custom_pricing(self):
        accountant = TokenAccountant(pricing={"acme-1": {"input": 1.0, "output": 2.0}})
        assert accountant.estimate_cost(500_000, "acme-1", "output") == 1.0


class TestLimits:
    def test_model_token_limit(self, accountant):
        assert accountant.model_token_limit("gpt-4") == 8192
        assert accountant.model_token_limit("gpt-4o-2024-08-06") == 128000
        assert accountant.model_token_limit(MODEL) == 4096

    def test_token_info(self, accountant):
        info = accountant.token_info("x" * 40, MODEL, max_tokens=5)
        assert info.count == 10
        assert info.limit == 5
        assert info.truncated is True
        assert info.original_length == 40

    def test_validate_token_limits(self, accountant):
        result = accountant.validate_token_limits("x" * 400, MODEL, max_tokens=1000)
        assert result == {"valid": False, "prompt_tokens": 100, "available_tokens": 900}
        assert accountant.validate_token_limits("x" * 400, MODEL, max_tokens=2000)["valid"] is True


class TestTruncation:
    @pytest.mark.parametrize("model", [MODEL, "gpt-4o-mini"])
    def test_truncation_safety(self, accountant, model):
        result = accountant.truncate_to_limit("A B C D E.", model, max_tokens=2)
        assert accountant.count_tokens(result, model) <= 2
        assert result.endswith(ELLIPSIS)

    def test_fitting_text_unchanged(self, accountant):
        assert accountant.truncate_to_limit("short", MODEL, max_tokens=10) == "short"

    def test_longest_prefix_kept(self, accountant):
        assert accountant.truncate_to_limit("A B C D E.", MODEL, max_tokens=2) == "A B C..."

    def test_preserve_end(self, accountant):
        result = accountant.truncate_to_limit("A B C D E.", MODEL, max_tokens=2, preserve_end=True)
        assert result == "... D E."
        assert accountant.count_tokens(result, MODEL) <= 2

    def test_nothing_fits(self, accountant):
        assert accountant.truncate_to_limit("A B C D E.", MODEL, max_tokens=0) == ""


class TestChunking:
    TEXT = "Dr. Smith arrived. He sat down. Then he left."

    def test_sentence_split_respects_abbreviations(self):
        assert split_sentences(self.TEXT) == ["Dr. Smith arrived.", "He sat down.", "Then he left."]

    def test_sentence_split_keeps_trailing_fragment(self):
        assert split_sentences("First one! Second one? trailing") == ["First one!", "Second one?", "trailing"]

    def test_single_chunk_when_it_fits(self, accountant):
        assert accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=100) == [self.TEXT]

    def test_greedy_packing(self, accountant):
        # Sentence sizes: 5, 3, 4 tokens
        chunks = accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=8)
        assert chunks == ["Dr. Smith arrived. He sat down.", "Then he left."]

    def test_overlap_carries_trailing_sentences(self, accountant):
        chunks = accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=8, overlap=3)
        assert chunks == ["Dr. Smith arrived. He sat down.", "He sat down. Then he left."]

    def test_oversized_sentence_is_own_chunk(self, accountant):
        text = "Short. " + "x" * 80 + ". End."
        chunks = accountant.split_into_chunks(text, MODEL, chunk_size=5)
        assert len(chunks) == 3
        assert chunks[0] == "Short."
        assert chunks[2] == "End."

    def test_pure_and_restartable(self, accountant):
        first = accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=8, overlap=3)
        second = accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=8, overlap=3)
        assert first == second

    def test_empty_text(self, accountant):
        assert accountant.split_into_chunks("", MODEL, chunk_size=10) == []

    def test_invalid_chunk_size(self, accountant):
        with pytest.raises(ValueError):
            accountant.split_into_chunks(self.TEXT, MODEL, chunk_size=0)


class TestMeasure:
    def test_text_result(self, accountant):
        usage = accountant.measure("abcdefgh", "abcd", MODEL)
        assert usage == TokenUsage(input_tokens=2, output_tokens=1)

    def test_non_text_result(self, accountant):
        usage = accountant.measure("abcdefgh", [0.1, 0.2], MODEL)
        assert usage.output_tokens == 0
        assert usage.total_tokens == 2

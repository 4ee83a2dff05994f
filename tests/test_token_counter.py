"""
Unit tests for token estimation.

Tests per-model multipliers, content adjustments and conversation overhead.
"""

import pytest

from ai_stream_meter.core.token_counter import (
    TokenCount,
    estimate_conversation_tokens,
    estimate_tokens,
    get_model_multiplier,
    parse_token_usage_from_response
)


class TestTokenCount:
    """Test TokenCount data structure."""

    def test_total_is_input_plus_output(self):
        """Test total tokens are always the sum of input and output."""
        count = TokenCount(input_tokens=120, output_tokens=45)
        assert count.total_tokens == 165

    def test_to_dict_uses_wire_names(self):
        """Test serialization for the usage frame."""
        count = TokenCount(input_tokens=3, output_tokens=4)
        assert count.to_dict() == {"inputTokens": 3, "outputTokens": 4, "totalTokens": 7}

    def test_negative_counts_rejected(self):
        """Test negative token counts are invalid."""
        with pytest.raises(ValueError, match="input_tokens"):
            TokenCount(input_tokens=-1, output_tokens=0)
        with pytest.raises(ValueError, match="output_tokens"):
            TokenCount(input_tokens=0, output_tokens=-1)


class TestEstimateTokens:
    """Test single-text token estimation."""

    def test_plain_text(self):
        """11 characters at 0.25 tokens each rounds up to 3."""
        assert estimate_tokens("Hello world", "gpt-4.1-mini") == 3

    def test_empty_text_is_zero(self):
        """Test empty and missing text return 0."""
        assert estimate_tokens("", "gpt-4") == 0
        assert estimate_tokens(None, "gpt-4") == 0

    def test_is_deterministic(self):
        """Test repeated calls give the same result."""
        text = "Visit https://example.com/docs for 42 examples!\n```py\nx = 1\n```"
        results = {estimate_tokens(text, "claude-3-opus") for _ in range(20)}
        assert len(results) == 1

    def test_model_multipliers(self):
        """Test model families use their own multiplier."""
        text = "a" * 40
        assert estimate_tokens(text, "gpt-4o") == 10
        assert estimate_tokens(text, "claude-3-5-sonnet") == 12
        assert estimate_tokens(text, "gemini-1.5-pro") == 11
        assert estimate_tokens(text, "deepseek-chat") == 11

    def test_unknown_model_uses_default(self):
        """Test unrecognized models fall back to the default multiplier."""
        assert get_model_multiplier("some-new-model") == 0.25
        assert get_model_multiplier("anthropic/claude-3-haiku") == 0.285

    def test_digit_runs_add_half_token(self):
        """Each run of digits adds 0.5 tokens."""
        # base ceil(8 * 0.25) = 2, plus 3 runs * 0.5
        assert estimate_tokens("1 22 333", "gpt-4") == 4

    def test_punctuation_adds_cost(self):
        """Each non-word, non-space character adds 0.2 tokens."""
        # base ceil(0.75) = 1, plus 0.2
        assert estimate_tokens("hi!", "gpt-4") == 2

    def test_urls_add_cost(self):
        """Each URL adds 3 tokens on top of its punctuation."""
        # base 4, url 3, punctuation ':' '/' '/' '.' 0.8
        assert estimate_tokens("see https://x.io", "gpt-4") == 8

    def test_code_blocks_add_ten_percent(self):
        """Fenced code blocks add 10% of their length."""
        text = "```" + "a" * 97 + "```"
        # base ceil(103 * 0.25) = 26, code 10.3, backticks 6 * 0.2
        assert estimate_tokens(text, "gpt-4") == 38

    def test_counts_code_points(self):
        """Characters outside the BMP count once each."""
        # base ceil(4 * 0.25) = 1, four symbols * 0.2
        assert estimate_tokens("\U0001F600" * 4, "gpt-4") == 2


class TestEstimateConversationTokens:
    """Test conversation token estimation."""

    def test_single_message(self):
        """Role, content, separator and base overhead."""
        messages = [{"role": "user", "content": "Hello world"}]
        # 1 + ceil(11 * 0.285) + 2 + 4
        assert estimate_conversation_tokens(messages, "claude-3-opus") == 11

    def test_gpt4_overhead(self):
        """GPT-4 family models carry a larger fixed overhead."""
        assert estimate_conversation_tokens([], "gpt-4.1") == 7
        assert estimate_conversation_tokens([], "gpt-3.5-turbo") == 4

    def test_sums_messages(self):
        """Test each message contributes its own cost."""
        messages = [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": ""},
        ]
        expected = sum(
            1 + estimate_tokens(m["content"], "gpt-4o") + 2 for m in messages
        ) + 7
        assert estimate_conversation_tokens(messages, "gpt-4o") == expected


class TestParseTokenUsage:
    """Test provider-reported usage parsing."""

    def test_openai_usage(self):
        response = {"usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}}
        usage = parse_token_usage_from_response(response, "openai")
        assert usage == TokenCount(input_tokens=10, output_tokens=5)

    def test_anthropic_usage(self):
        response = {"usage": {"input_tokens": 3, "output_tokens": 4}}
        usage = parse_token_usage_from_response(response, "anthropic")
        assert usage.total_tokens == 7

    def test_missing_fields_default_to_zero(self):
        response = {"usage": {"prompt_tokens": 8}}
        usage = parse_token_usage_from_response(response, "openai")
        assert usage == TokenCount(input_tokens=8, output_tokens=0)

    def test_unparseable_responses_return_none(self):
        """Test unknown providers and payloads without usage give None."""
        assert parse_token_usage_from_response({"usage": {"prompt_tokens": 1}}, "mistral") is None
        assert parse_token_usage_from_response({"id": "x"}, "openai") is None
        assert parse_token_usage_from_response("not a dict", "openai") is None
        assert parse_token_usage_from_response({"usage": {"prompt_tokens": "lots"}}, "openai") is None

"""
Token counting and usage estimation.

Estimates token counts for text and conversations without calling a
tokenizer API. Results are deterministic so the same numbers can be
computed wherever the estimate is needed.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional


DEFAULT_MULTIPLIER = 0.25  # ~4 characters per token

# Checked in order; the first family marker found in the model id wins.
MODEL_MULTIPLIERS = (
    ("claude", 0.285),  # ~3.5 characters per token
    ("gemini", 0.27),
    ("deepseek", 0.26),
)

ROLE_TOKENS = 1
SEPARATOR_TOKENS = 2
GPT4_OVERHEAD_TOKENS = 7
BASE_OVERHEAD_TOKENS = 4

NUMBER_COST = 0.5
URL_COST = 3
CODE_BLOCK_RATIO = 0.1
SPECIAL_CHAR_COST = 0.2

_NUMBER_RE = re.compile(r"[0-9]+")
_URL_RE = re.compile(r"https?://\S+")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_SPECIAL_CHAR_RE = re.compile(r"[^A-Za-z0-9_\s]")


@dataclass(frozen=True)
class TokenCount:
    """Input/output token counts for a single generation.

    Never persisted as an object; only its fields feed the usage sink.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        """Wire representation used in the emitted usage frame."""
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


def get_model_multiplier(model: str) -> float:
    """Return the tokens-per-character multiplier for a model id."""
    for marker, multiplier in MODEL_MULTIPLIERS:
        if marker in (model or ""):
            return multiplier
    return DEFAULT_MULTIPLIER


def estimate_tokens(text: Optional[str], model: str) -> int:
    """Estimate the token count of a text blob for the given model.

    The base estimate is the code point count times the model multiplier.
    Digit runs, URLs, fenced code blocks and punctuation add to it.

    Args:
        text: Text to estimate (empty or None returns 0)
        model: Model identifier

    Returns:
        Estimated token count, rounded up
    """
    if not text:
        return 0

    # len() on str counts code points, not UTF-16 units
    tokens: float = math.ceil(len(text) * get_model_multiplier(model))

    tokens += len(_NUMBER_RE.findall(text)) * NUMBER_COST
    tokens += len(_URL_RE.findall(text)) * URL_COST

    for block in _CODE_BLOCK_RE.findall(text):
        tokens += len(block) * CODE_BLOCK_RATIO

    tokens += len(_SPECIAL_CHAR_RE.findall(text)) * SPECIAL_CHAR_COST

    return math.ceil(tokens)


def estimate_conversation_tokens(messages: Iterable[Mapping[str, Any]], model: str) -> int:
    """Estimate the input tokens of a full conversation.

    Each message costs its role marker, its content and a separator.
    A model-family overhead is added once.

    Args:
        messages: Sequence of role/content mappings
        model: Model identifier

    Returns:
        Estimated input token count
    """
    total = 0
    for message in messages:
        total += ROLE_TOKENS
        total += estimate_tokens(message.get("content"), model)
        total += SEPARATOR_TOKENS

    if "gpt-4" in (model or ""):
        total += GPT4_OVERHEAD_TOKENS
    else:
        total += BASE_OVERHEAD_TOKENS

    return total


def parse_token_usage_from_response(response: Any, provider: str) -> Optional[TokenCount]:
    """Read provider-reported token usage from a response payload.

    Supports the OpenAI (prompt/completion) and Anthropic (input/output)
    usage shapes. Missing fields count as 0.

    Args:
        response: Decoded response payload
        provider: Provider name ("openai" or "anthropic")

    Returns:
        TokenCount, or None for unknown providers or payloads without usage
    """
    if not isinstance(response, Mapping):
        return None
    usage = response.get("usage")
    if not isinstance(usage, Mapping) or not usage:
        return None

    if provider == "openai":
        input_key, output_key = "prompt_tokens", "completion_tokens"
    elif provider == "anthropic":
        input_key, output_key = "input_tokens", "output_tokens"
    else:
        return None

    try:
        return TokenCount(
            input_tokens=int(usage.get(input_key) or 0),
            output_tokens=int(usage.get(output_key) or 0),
        )
    except (TypeError, ValueError):
        return None

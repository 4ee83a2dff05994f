"""
Content extraction from provider stream payloads.

Each extractor takes a decoded JSON payload and returns the textual delta
it carries, or None. Extractors are tried in order; the first hit wins.
"""

from typing import Any, Callable, Optional, Sequence

from ..core.token_counter import TokenCount, parse_token_usage_from_response

DeltaExtractor = Callable[[Any], Optional[str]]


def extract_flat_content(payload: Any) -> Optional[str]:
    """``{"content": "..."}``"""
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def extract_choice_delta(payload: Any) -> Optional[str]:
    """``{"choices": [{"delta": {"content": "..."}}]}`` (OpenAI chat chunks)"""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


DEFAULT_EXTRACTORS = (extract_flat_content, extract_choice_delta)


def extract_delta(
    payload: Any,
    extractors: Sequence[DeltaExtractor] = DEFAULT_EXTRACTORS
) -> Optional[str]:
    """Return the first delta any extractor finds in the payload."""
    for extractor in extractors:
        content = extractor(payload)
        if content:
            return content
    return None


def extract_reported_usage(payload: Any) -> Optional[TokenCount]:
    """Return provider-reported usage carried by a payload, if any."""
    if not isinstance(payload, dict) or not isinstance(payload.get("usage"), dict):
        return None
    usage = payload["usage"]
    if "input_tokens" in usage or "output_tokens" in usage:
        return parse_token_usage_from_response(payload, "anthropic")
    return parse_token_usage_from_response(payload, "openai")

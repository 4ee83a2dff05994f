"""
Streaming token tracking.

Accumulates output text as stream chunks arrive and estimates usage on read.
"""

from typing import Any, List, Mapping, Sequence

from .token_counter import TokenCount, estimate_conversation_tokens, estimate_tokens


class StreamingTokenTracker:
    """Tracks token usage for one in-flight generation.

    Input tokens are fixed at construction. Output tokens are estimated
    from the concatenation of every chunk seen so far, so the estimate
    never decreases as chunks are added.
    """

    def __init__(self, messages: Sequence[Mapping[str, Any]], model: str):
        """Initialize the tracker.

        Args:
            messages: Input conversation (role/content mappings)
            model: Model identifier
        """
        self.model = model
        self.input_tokens = estimate_conversation_tokens(messages, model)
        self._chunks: List[str] = []

    def add_chunk(self, text: str) -> None:
        """Append a textual delta; tokens are computed on read."""
        self._chunks.append(text)

    @property
    def output_text(self) -> str:
        """Concatenated output seen so far."""
        return "".join(self._chunks)

    def get_current_usage(self) -> TokenCount:
        """Usage so far; safe to call mid-stream."""
        return TokenCount(
            input_tokens=self.input_tokens,
            output_tokens=estimate_tokens(self.output_text, self.model),
        )

    def get_token_count(self) -> TokenCount:
        """Final usage, read once the stream has ended."""
        return self.get_current_usage()

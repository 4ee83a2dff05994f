"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class UsageRecord:
    """Finalized token usage for one assistant message.
    
    Written once per completed stream; the ledger is append-only.
    """
    user_id: str
    conversation_id: str
    message_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cached: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

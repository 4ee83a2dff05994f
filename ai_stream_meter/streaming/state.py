"""
Stream state tracking.

Durable record of in-flight generations, keyed by stream id, used to
detect interrupted streams and estimate how far they got.
"""

import json
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config.loader import MeterConfig
from ..storage.kv import KeyValueStore

logger = logging.getLogger(__name__)


class StreamStatus(Enum):
    """Lifecycle of a single stream.

    COMPLETED and RESUMED streams have no stored record; a resumed
    generation continues as ACTIVE under a new stream id.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"
    RESUMED = "resumed"


@dataclass
class StreamState:
    """One in-flight or recently settled generation.

    A state with neither ``error`` nor ``abort_reason`` set is incomplete.
    """
    stream_id: str
    conversation_id: str
    message_id: str
    model: str
    started_at: datetime
    messages: List[Dict[str, str]] = field(default_factory=list)
    last_chunk_at: Optional[datetime] = None
    tokens_generated: int = 0
    total_tokens: Optional[int] = None
    abort_reason: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_incomplete(self) -> bool:
        return not self.error and not self.abort_reason

    @property
    def status(self) -> StreamStatus:
        """Status derived from the terminal markers of a stored record."""
        if self.error:
            return StreamStatus.ERRORED
        if self.abort_reason:
            return StreamStatus.ABORTED
        return StreamStatus.ACTIVE

    @property
    def last_update(self) -> datetime:
        """Time of the last save, or the start time if never saved."""
        return self.last_chunk_at or self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape kept in the store."""
        data: Dict[str, Any] = {
            "streamId": self.stream_id,
            "conversationId": self.conversation_id,
            "messageId": self.message_id,
            "model": self.model,
            "startedAt": self.started_at.isoformat(),
            "tokensGenerated": self.tokens_generated,
            "messages": [dict(message) for message in self.messages],
        }
        if self.last_chunk_at is not None:
            data["lastChunkAt"] = self.last_chunk_at.isoformat()
        if self.total_tokens is not None:
            data["totalTokens"] = self.total_tokens
        if self.abort_reason is not None:
            data["abortReason"] = self.abort_reason
        if self.error is not None:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamState":
        """Deserialize a stored record.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a timestamp or count is malformed
        """
        last_chunk_at = data.get("lastChunkAt")
        total_tokens = data.get("totalTokens")
        return cls(
            stream_id=str(data["streamId"]),
            conversation_id=str(data["conversationId"]),
            message_id=str(data["messageId"]),
            model=str(data["model"]),
            started_at=_parse_timestamp(data["startedAt"]),
            messages=[dict(message) for message in data.get("messages") or []],
            last_chunk_at=_parse_timestamp(last_chunk_at) if last_chunk_at else None,
            tokens_generated=int(data.get("tokensGenerated") or 0),
            total_tokens=int(total_tokens) if total_tokens is not None else None,
            abort_reason=data.get("abortReason"),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
        )


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp as naive local time.

    Offset-aware values are converted so they compare with the manager clock.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class StreamStateManager:
    """Keyed store of stream states on top of a key-value store.

    The whole collection lives under one key as JSON. Entries past the
    expiry window are treated as absent, and every save trims the
    collection to the most recently updated ``max_states`` entries.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[MeterConfig] = None,
        now: Callable[[], datetime] = datetime.now
    ):
        """Initialize the manager.

        Args:
            store: Key-value store holding the collection
            config: Meter configuration (defaults if omitted)
            now: Clock used for timestamps, expiry and progress
        """
        self.store = store
        self.config = config or MeterConfig.default()
        self.now = now

    @staticmethod
    def create_stream_id() -> str:
        """Return a fresh unique stream id."""
        return f"stream_{uuid.uuid4().hex}"

    def save_stream_state(self, state: StreamState) -> StreamState:
        """Upsert a state stamped with the current time.

        Returns:
            The stored copy, with ``last_chunk_at`` set
        """
        states = self._load_all()
        saved = replace(state, last_chunk_at=self.now())
        states[saved.stream_id] = saved
        self._persist(self._cleanup(states))
        return saved

    def get_stream_state(self, stream_id: str) -> Optional[StreamState]:
        """Return a stored state, or None if missing or expired.

        Expired states are deleted as a side effect.
        """
        state = self._load_all().get(stream_id)
        if state is None:
            return None
        if self._is_expired(state):
            logger.debug("Stream state %s expired, removing", stream_id)
            self.remove_stream_state(stream_id)
            return None
        return state

    def remove_stream_state(self, stream_id: str) -> None:
        states = self._load_all()
        states.pop(stream_id, None)
        self._persist(states)

    def get_incomplete_streams(self, conversation_id: Optional[str] = None) -> List[StreamState]:
        """List unsettled, unexpired states, most recently updated first.

        Args:
            conversation_id: Optional filter for a single conversation
        """
        incomplete = [
            state for state in self._load_all().values()
            if state.is_incomplete
            and not self._is_expired(state)
            and (conversation_id is None or state.conversation_id == conversation_id)
        ]
        return sorted(incomplete, key=lambda s: s.last_update, reverse=True)

    def mark_stream_complete(self, stream_id: str) -> None:
        """Forget a stream that finished successfully."""
        if self.get_stream_state(stream_id) is not None:
            self.remove_stream_state(stream_id)

    def mark_stream_error(self, stream_id: str, error: str) -> Optional[StreamState]:
        """Record that a stream failed; the record is kept until it expires."""
        state = self.get_stream_state(stream_id)
        if state is None:
            return None
        state.error = error
        return self.save_stream_state(state)

    def mark_stream_aborted(self, stream_id: str, reason: str) -> Optional[StreamState]:
        """Record that a stream was aborted; the record is kept until it expires."""
        state = self.get_stream_state(stream_id)
        if state is None:
            return None
        state.abort_reason = reason
        return self.save_stream_state(state)

    def estimate_progress(self, state: StreamState) -> float:
        """Estimate completion of a stream as a fraction in [0, 1].

        With a known total this is ``tokens_generated / total_tokens``.
        Otherwise the expected token count is derived from elapsed time at
        a fixed generation rate, and the result is capped below 1 so an
        open-ended stream never reads as done.
        """
        if state.total_tokens:
            return min(state.tokens_generated / state.total_tokens, 1.0)

        progress = self.config.progress
        elapsed = (self.now() - state.started_at).total_seconds()
        estimated_tokens = math.floor(elapsed * progress.tokens_per_second)
        ratio = state.tokens_generated / max(estimated_tokens, state.tokens_generated + 100)
        return min(ratio, progress.indeterminate_cap)

    def _is_expired(self, state: StreamState) -> bool:
        age = (self.now() - state.last_update).total_seconds()
        return age > self.config.streams.expiry_seconds

    def _cleanup(self, states: Dict[str, StreamState]) -> Dict[str, StreamState]:
        """Drop expired states and keep only the most recent ``max_states``."""
        valid = [state for state in states.values() if not self._is_expired(state)]
        valid.sort(key=lambda s: s.last_update, reverse=True)
        kept = valid[:self.config.streams.max_states]
        if len(kept) < len(states):
            logger.debug("Evicted %d stream states", len(states) - len(kept))
        return {state.stream_id: state for state in kept}

    def _load_all(self) -> Dict[str, StreamState]:
        key = self.config.streams.storage_key
        raw = self.store.get(key)
        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stream state store at %r is corrupt, treating as empty", key)
            return {}
        if not isinstance(data, dict):
            logger.warning("Stream state store at %r is not a mapping, treating as empty", key)
            return {}

        states = {}
        for stream_id, record in data.items():
            try:
                states[stream_id] = StreamState.from_dict(record)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("Dropping malformed stream state %r", stream_id)
        return states

    def _persist(self, states: Dict[str, StreamState]) -> None:
        payload = {stream_id: state.to_dict() for stream_id, state in states.items()}
        self.store.set(self.config.streams.storage_key, json.dumps(payload))

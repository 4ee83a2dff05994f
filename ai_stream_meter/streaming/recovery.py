"""
Stream recovery.

Polls for interrupted streams in a conversation and offers resume and
dismiss actions. Resuming hands the saved state back to the caller, which
restarts generation under a new stream id.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..config.loader import RecoveryConfig
from .state import StreamState, StreamStateManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryCandidate:
    """The stream offered for resumption."""
    state: StreamState
    progress: float

    @property
    def tokens_generated(self) -> int:
        return self.state.tokens_generated


class StreamRecoveryController:
    """Recovery policy for one conversation.

    Call ``check`` to refresh, or run ``poll`` as a task to refresh on an
    interval. ``on_change`` is called with the new list after every check.
    """

    def __init__(
        self,
        manager: StreamStateManager,
        conversation_id: str,
        on_resume: Callable[[StreamState], Any],
        config: Optional[RecoveryConfig] = None,
        on_change: Optional[Callable[[List[StreamState]], Any]] = None,
    ):
        self.manager = manager
        self.conversation_id = conversation_id
        self.on_resume = on_resume
        self.config = config or manager.config.recovery
        self.on_change = on_change
        self.incomplete_streams: List[StreamState] = []
        self.visible = False

    def check(self) -> List[StreamState]:
        """Reload incomplete streams for the conversation."""
        streams = self.manager.get_incomplete_streams(self.conversation_id)
        self.incomplete_streams = streams
        self.visible = bool(streams)
        if self.on_change is not None:
            self.on_change(streams)
        return streams

    @property
    def primary(self) -> Optional[RecoveryCandidate]:
        """The most recent incomplete stream, if any is offered."""
        if not self.visible or not self.incomplete_streams:
            return None
        latest = self.incomplete_streams[0]
        return RecoveryCandidate(state=latest, progress=self.manager.estimate_progress(latest))

    @property
    def additional_count(self) -> int:
        """Number of incomplete streams beyond the primary candidate."""
        return max(len(self.incomplete_streams) - 1, 0)

    def resume(self, state: Optional[StreamState] = None) -> Optional[StreamState]:
        """Hand a stream back to the caller for restarting.

        Defaults to the primary candidate. Once ``on_resume`` returns, the
        old record is removed; if it raises, the record is kept.
        """
        if state is None:
            candidate = self.primary
            if candidate is None:
                return None
            state = candidate.state

        self.on_resume(state)
        self.manager.remove_stream_state(state.stream_id)
        self.incomplete_streams = [
            s for s in self.incomplete_streams if s.stream_id != state.stream_id
        ]
        self.visible = False
        return state

    def dismiss(self, stream_id: str) -> None:
        self.manager.remove_stream_state(stream_id)
        self.incomplete_streams = [
            s for s in self.incomplete_streams if s.stream_id != stream_id
        ]
        self.visible = bool(self.incomplete_streams)

    def dismiss_all(self) -> None:
        for state in self.incomplete_streams:
            self.manager.remove_stream_state(state.stream_id)
        self.incomplete_streams = []
        self.visible = False

    async def poll(self, stop: Optional[asyncio.Event] = None) -> None:
        """Check now, then again every poll interval until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while True:
            try:
                self.check()
            except Exception:
                logger.exception(
                    "Checking incomplete streams failed for conversation %s", self.conversation_id
                )
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
            return

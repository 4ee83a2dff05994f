"""
Metered OpenAI streaming client.

Streams chat completions as server-sent events with token accounting and
resumable stream state, without altering the streamed content.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from ..config.loader import MeterConfig
from ..storage.usage_sink import UsageSink
from ..streaming.state import StreamState, StreamStateManager
from ..streaming.wrapper import DONE_FRAME, TokenTrackingStream

logger = logging.getLogger(__name__)

ABORT_REASON_CLOSED = "stream closed by consumer"


async def openai_sse_stream(
    client: AsyncOpenAI,
    model: str,
    messages: List[Dict[str, str]],
    **kwargs: Any
) -> AsyncIterator[bytes]:
    """Stream a chat completion as ``data: <chunk json>`` frames.

    Ends with the ``[DONE]`` frame. API errors propagate unchanged.
    """
    response = await client.chat.completions.create(
        model=model,
        messages=messages,
        stream=True,
        **kwargs
    )
    async for chunk in response:
        yield f"data: {chunk.model_dump_json()}\n\n".encode("utf-8")
    yield DONE_FRAME


class MeteredChatStream:
    """One metered generation; iterate it for the SSE bytes."""

    def __init__(
        self,
        wrapper: TokenTrackingStream,
        state: StreamState,
        state_manager: Optional[StreamStateManager] = None
    ):
        self.wrapper = wrapper
        self.state = state
        self.state_manager = state_manager

    @property
    def stream_id(self) -> str:
        return self.state.stream_id

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        manager = self.state_manager
        try:
            async for frame in self.wrapper:
                if manager is not None:
                    self._save_progress(manager)
                yield frame
        except (GeneratorExit, asyncio.CancelledError):
            if manager is not None:
                manager.mark_stream_aborted(self.stream_id, ABORT_REASON_CLOSED)
            raise
        except Exception as e:
            if manager is not None:
                manager.mark_stream_error(self.stream_id, str(e) or type(e).__name__)
            raise
        else:
            if manager is not None:
                manager.mark_stream_complete(self.stream_id)

    def _save_progress(self, manager: StreamStateManager) -> None:
        tokens = self.wrapper.tracker.get_current_usage().output_tokens
        if tokens != self.state.tokens_generated:
            self.state = manager.save_stream_state(
                replace(self.state, tokens_generated=tokens)
            )


class MeteredOpenAI:
    """OpenAI streaming client that meters usage and records stream state.

    Usage is estimated from the streamed content and handed to the usage
    sink when a stream completes. With a state manager, each stream is
    tracked so interrupted generations can be resumed.
    """

    def __init__(
        self,
        model: str,
        usage_sink: Optional[UsageSink] = None,
        state_manager: Optional[StreamStateManager] = None,
        config: Optional[MeterConfig] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize metered client.

        Args:
            model: OpenAI model name (required)
            usage_sink: Destination for finalized usage
            state_manager: Stream state manager for resumable streams
            config: Meter configuration (defaults if omitted)
            client: OpenAI client (a new AsyncOpenAI if omitted)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.usage_sink = usage_sink
        self.state_manager = state_manager
        self.config = config or (state_manager.config if state_manager else MeterConfig.default())
        self.client = client or AsyncOpenAI()

    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        user_id: str,
        conversation_id: str,
        message_id: str,
        model: Optional[str] = None,
        total_tokens: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any
    ) -> MeteredChatStream:
        """Start a metered streaming chat completion.

        Nothing is sent to the API until the returned stream is iterated.

        Args:
            messages: List of message dictionaries (required)
            user_id: User the usage is billed to
            conversation_id: Owning conversation
            message_id: Placeholder assistant message
            model: Override of the client's model
            total_tokens: Expected total output tokens, if known
            metadata: Free-form data kept with the stream state
            **kwargs: Additional OpenAI parameters

        Raises:
            ValueError: If messages or any identifier is empty
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        for name, value in (
            ("user_id", user_id),
            ("conversation_id", conversation_id),
            ("message_id", message_id),
        ):
            if not value:
                raise ValueError(f"{name} is required and cannot be empty")

        model = model or self.model
        state = StreamState(
            stream_id=StreamStateManager.create_stream_id(),
            conversation_id=conversation_id,
            message_id=message_id,
            model=model,
            started_at=datetime.now() if self.state_manager is None else self.state_manager.now(),
            messages=[dict(message) for message in messages],
            total_tokens=total_tokens,
            metadata=dict(metadata or {}),
        )
        if self.state_manager is not None:
            state = self.state_manager.save_stream_state(state)

        wrapper = TokenTrackingStream(
            openai_sse_stream(self.client, model, messages, **kwargs),
            user_id=user_id,
            conversation_id=conversation_id,
            message_id=message_id,
            model=model,
            messages=messages,
            exempt=self.config.accounting.is_exempt(model),
            usage_sink=self.usage_sink,
        )
        return MeteredChatStream(wrapper, state, self.state_manager)

    def resume(
        self,
        state: StreamState,
        user_id: str,
        message_id: Optional[str] = None,
        **kwargs: Any
    ) -> MeteredChatStream:
        """Restart an interrupted generation under a new stream id.

        The saved messages and model are re-sent; the old record is removed.
        """
        if self.state_manager is not None:
            self.state_manager.remove_stream_state(state.stream_id)
        logger.info("Resuming stream %s for conversation %s", state.stream_id, state.conversation_id)

        metadata = dict(state.metadata)
        metadata["resumedFrom"] = state.stream_id
        return self.stream_chat(
            messages=state.messages,
            user_id=user_id,
            conversation_id=state.conversation_id,
            message_id=message_id or state.message_id,
            model=state.model,
            total_tokens=state.total_tokens,
            metadata=metadata,
            **kwargs
        )

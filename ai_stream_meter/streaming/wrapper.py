"""
Token-tracking stream wrapper.

Wraps a raw server-sent-event byte stream from a model provider. Bytes are
passed through to the consumer unchanged while content deltas are tapped
for token estimation. When the upstream ends, usage is handed to a usage
sink in a detached task and a ``usage`` frame is emitted before the final
``[DONE]`` frame.
"""

import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Mapping, Optional, Sequence, Set

from ..core.token_counter import TokenCount
from ..core.tracker import StreamingTokenTracker
from ..storage.models import UsageRecord
from ..storage.usage_sink import UsageSink
from .extractors import DEFAULT_EXTRACTORS, DeltaExtractor, extract_delta, extract_reported_usage

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"

# Detached usage tasks; the event loop only keeps weak references to tasks.
_background_tasks: Set["asyncio.Task[None]"] = set()


def format_sse_frame(payload: Mapping[str, Any]) -> bytes:
    """Encode a payload as a single ``data: <json>`` frame."""
    return f"{DATA_PREFIX}{json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


def usage_frame(usage: TokenCount) -> bytes:
    """The synthetic frame announcing final usage to the client."""
    return format_sse_frame({"type": "usage", "usage": usage.to_dict()})


class TokenTrackingStream:
    """Async byte iterator wrapping a provider SSE stream.

    Iterate it exactly once. Upstream errors propagate unchanged and skip
    accounting. The usage sink is called at most once per stream, only
    after the upstream is exhausted.
    """

    def __init__(
        self,
        original_stream: AsyncIterable[bytes],
        user_id: str,
        conversation_id: str,
        message_id: str,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        exempt: bool = False,
        usage_sink: Optional[UsageSink] = None,
        extractors: Sequence[DeltaExtractor] = DEFAULT_EXTRACTORS,
    ):
        if not model:
            raise ValueError("model is required and cannot be empty")

        self.original_stream = original_stream
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.model = model
        self.exempt = exempt
        self.usage_sink = usage_sink
        self.extractors = tuple(extractors)

        self.tracker = StreamingTokenTracker(messages, model)
        self.final_usage: Optional[TokenCount] = None
        self.reported_usage: Optional[TokenCount] = None
        self.usage_task: Optional["asyncio.Task[None]"] = None
        self.completed = False

        self._accounted = False
        self._iterated = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial_line = ""
        self._held = b""

        logger.debug(
            "Creating token tracking stream: user=%s conversation=%s message=%s "
            "model=%s exempt=%s messages=%d",
            user_id, conversation_id, message_id, model, exempt, len(messages)
        )

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterated:
            raise RuntimeError("TokenTrackingStream can only be iterated once")
        self._iterated = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.original_stream:
                forward = self._pass_through(chunk)
                self._tap(chunk)
                if forward:
                    yield forward
        except Exception as e:
            logger.warning(
                "Upstream stream failed for message %s, skipping usage accounting: %s",
                self.message_id, e
            )
            raise

        held, self._held = self._held, b""
        if held and not held.startswith(DONE_FRAME.rstrip(b"\n")):
            yield held + b"\n\n"
        self._tap_flush()

        if self.exempt:
            logger.info("Skipping usage accounting for exempt model %s", self.model)
        elif not self._accounted:
            self._accounted = True
            usage = self.tracker.get_token_count()
            self.final_usage = usage
            logger.info(
                "Final token count for message %s: input=%d output=%d total=%d model=%s",
                self.message_id, usage.input_tokens, usage.output_tokens,
                usage.total_tokens, self.model
            )
            if self.reported_usage is not None:
                logger.info(
                    "Provider reported usage for message %s: input=%d output=%d",
                    self.message_id, self.reported_usage.input_tokens,
                    self.reported_usage.output_tokens
                )
            self._record_usage(usage)
            yield usage_frame(usage)

        self.completed = True
        yield DONE_FRAME

    def _pass_through(self, chunk: bytes) -> bytes:
        """Return the bytes to forward for a chunk.

        The upstream ``[DONE]`` frame is withheld since the wrapper emits its
        own after the usage frame. A trailing partial ``[DONE]`` frame is held
        until the next chunk shows whether it completes.
        """
        data = self._held + chunk
        self._held = b""
        if DONE_FRAME in data:
            data = data.replace(DONE_FRAME, b"")

        for size in range(min(len(DONE_FRAME) - 1, len(data)), 0, -1):
            start = len(data) - size
            if DONE_FRAME.startswith(data[start:]) and (start == 0 or data[start - 1:start] == b"\n"):
                self._held = data[start:]
                return data[:start]
        return data

    def _tap(self, chunk: bytes) -> None:
        """Feed content found in a chunk to the tracker; never raises."""
        try:
            text = self._partial_line + self._decoder.decode(chunk)
            lines = text.split("\n")
            self._partial_line = lines.pop()
            for line in lines:
                self._tap_line(line)
        except Exception:
            logger.debug("Ignoring undecodable chunk for message %s", self.message_id, exc_info=True)

    def _tap_flush(self) -> None:
        try:
            line = self._partial_line + self._decoder.decode(b"", final=True)
            self._partial_line = ""
            self._tap_line(line)
        except Exception:
            logger.debug("Ignoring undecodable tail for message %s", self.message_id, exc_info=True)

    def _tap_line(self, line: str) -> None:
        if not line.startswith(DATA_PREFIX):
            return
        data = line[len(DATA_PREFIX):].strip()
        if not data or data == DONE_SENTINEL:
            return
        try:
            payload = json.loads(data)
        except ValueError:
            return

        content = extract_delta(payload, self.extractors)
        if content:
            self.tracker.add_chunk(content)

        reported = extract_reported_usage(payload)
        if reported is not None:
            self.reported_usage = reported

    def _record_usage(self, usage: TokenCount) -> None:
        """Hand usage to the sink in a detached task."""
        if self.usage_sink is None:
            logger.warning("No usage sink configured, usage for message %s not recorded", self.message_id)
            return

        record = UsageRecord(
            user_id=self.user_id,
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            model=self.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached=False,
        )
        try:
            task = asyncio.ensure_future(self.usage_sink.record_usage(record))
        except Exception:
            logger.exception("Failed to start usage recording for message %s", self.message_id)
            return

        self.usage_task = task
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        task.add_done_callback(
            lambda t: _log_usage_result(t, self.message_id)
        )


def _log_usage_result(task: "asyncio.Task[None]", message_id: str) -> None:
    if task.cancelled():
        logger.warning("Usage recording cancelled for message %s", message_id)
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "Failed to record usage for message %s: %s", message_id, error,
            exc_info=(type(error), error, error.__traceback__)
        )
    else:
        logger.debug("Usage recorded for message %s", message_id)


def create_token_tracking_stream(
    original_stream: AsyncIterable[bytes],
    user_id: str,
    conversation_id: str,
    message_id: str,
    model: str,
    messages: Sequence[Mapping[str, Any]],
    exempt: bool = False,
    usage_sink: Optional[UsageSink] = None,
) -> TokenTrackingStream:
    """Wrap a provider stream so its token usage is tracked and recorded."""
    return TokenTrackingStream(
        original_stream,
        user_id=user_id,
        conversation_id=conversation_id,
        message_id=message_id,
        model=model,
        messages=messages,
        exempt=exempt,
        usage_sink=usage_sink,
    )

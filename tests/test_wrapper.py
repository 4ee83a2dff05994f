"""
Unit tests for the token-tracking stream wrapper.

Tests pass-through fidelity, usage accounting and error propagation.
"""

import asyncio
import json
import logging

import pytest

from ai_stream_meter.core.token_counter import TokenCount, estimate_conversation_tokens, estimate_tokens
from ai_stream_meter.storage.usage_sink import InMemoryUsageSink
from ai_stream_meter.streaming.wrapper import (
    DONE_FRAME,
    TokenTrackingStream,
    create_token_tracking_stream,
    usage_frame
)

MESSAGES = [{"role": "user", "content": "Hi"}]
MODEL = "gpt-4.1"


def _frame(payload) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


async def _upstream(chunks, error=None):
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


def _split_frames(output: bytes):
    return [frame + b"\n\n" for frame in output.split(b"\n\n") if frame]


class FailingUsageSink:
    """Usage sink whose backend is unreachable."""

    def __init__(self):
        self.calls = 0

    async def record_usage(self, record):
        self.calls += 1
        raise ConnectionError("ledger unreachable")


class TestTokenTrackingStream:
    """Test the wrapper end to end."""

    def setup_method(self):
        """Set up a sink and content frames."""
        self.sink = InMemoryUsageSink()
        self.content_frames = [
            _frame({"content": "Hello"}),
            _frame({"choices": [{"delta": {"content": " there"}}]}),
            _frame({"content": "!"}),
        ]

    def _wrap(self, chunks, exempt=False, sink=None, error=None):
        return TokenTrackingStream(
            _upstream(chunks, error),
            user_id="user_1",
            conversation_id="conv_1",
            message_id="msg_1",
            model=MODEL,
            messages=MESSAGES,
            exempt=exempt,
            usage_sink=self.sink if sink is None else sink
        )

    def _run(self, stream):
        """Collect the output and wait for the usage task."""
        async def collect():
            output = [chunk async for chunk in stream]
            if stream.usage_task is not None:
                await asyncio.gather(stream.usage_task, return_exceptions=True)
                await asyncio.sleep(0)
            return output
        return asyncio.run(collect())

    def test_emits_content_usage_and_done(self):
        """Three content frames and [DONE] become five output frames."""
        stream = self._wrap(self.content_frames + [DONE_FRAME])
        frames = _split_frames(b"".join(self._run(stream)))

        assert len(frames) == 5
        assert frames[:3] == self.content_frames
        assert json.loads(frames[3][len(b"data: "):]) == {
            "type": "usage",
            "usage": stream.final_usage.to_dict()
        }
        assert frames[4] == DONE_FRAME

    def test_final_usage_from_streamed_content(self):
        """Test usage covers the conversation and every content delta."""
        stream = self._wrap(self.content_frames + [DONE_FRAME])
        self._run(stream)

        expected = TokenCount(
            input_tokens=estimate_conversation_tokens(MESSAGES, MODEL),
            output_tokens=estimate_tokens("Hello there!", MODEL)
        )
        assert stream.final_usage == expected
        assert stream.tracker.output_text == "Hello there!"

    def test_records_usage_once(self):
        """Test the sink receives one record with the routing context."""
        stream = self._wrap(self.content_frames + [DONE_FRAME])
        self._run(stream)

        assert len(self.sink.records) == 1
        record = self.sink.records[0]
        assert record.user_id == "user_1"
        assert record.conversation_id == "conv_1"
        assert record.message_id == "msg_1"
        assert record.model == MODEL
        assert record.input_tokens == stream.final_usage.input_tokens
        assert record.output_tokens == stream.final_usage.output_tokens
        assert record.cached is False

    def test_chunks_pass_through_unchanged(self):
        """Test each upstream chunk is forwarded as-is, in order."""
        chunks = [b'data: {"content": "a"}\n\n', b'data: {"content": "b"}\n\ndata: {"con', b'tent": "c"}\n\n']
        output = self._run(self._wrap(chunks + [DONE_FRAME]))

        assert output[:3] == chunks
        assert output[3:] == [usage_frame(TokenCount(
            input_tokens=estimate_conversation_tokens(MESSAGES, MODEL),
            output_tokens=estimate_tokens("abc", MODEL)
        )), DONE_FRAME]

    def test_malformed_frames_pass_through(self):
        """Unparseable frames are forwarded and skipped by accounting."""
        bad = b"data: {not json\n\n"
        chunks = [self.content_frames[0], bad, b": keep-alive\n\n", self.content_frames[2]]
        stream = self._wrap(chunks + [DONE_FRAME])
        output = self._run(stream)

        assert output[:4] == chunks
        assert stream.tracker.output_text == "Hello!"
        assert len(self.sink.records) == 1

    def test_frame_split_across_chunks(self):
        """Test a frame split mid-JSON and mid-character is still counted."""
        frame = 'data: {"content": "café"}\n\n'.encode("utf-8")
        split = frame.index(b"\xa9")
        stream = self._wrap([frame[:split], frame[split:], DONE_FRAME])
        self._run(stream)

        assert stream.tracker.output_text == "café"

    def test_split_done_frame_is_not_duplicated(self):
        """A [DONE] frame split across chunks is replaced by the wrapper's own."""
        chunks = [self.content_frames[0] + b"data: [DO", b"NE]\n\n"]
        stream = self._wrap(chunks)
        output = b"".join(self._run(stream))

        assert output == self.content_frames[0] + usage_frame(stream.final_usage) + DONE_FRAME

    def test_done_with_single_newline_is_dropped(self):
        """Test a [DONE] line missing its blank line does not merge into the usage frame."""
        stream = self._wrap(self.content_frames + [b"data: [DONE]\n"])
        output = b"".join(self._run(stream))

        assert output == (
            b"".join(self.content_frames) + usage_frame(stream.final_usage) + DONE_FRAME
        )

    def test_truncated_tail_is_terminated(self):
        """Test a partial frame left at the end is closed before the usage frame."""
        stream = self._wrap(self.content_frames + [b"data: [DO"])
        frames = _split_frames(b"".join(self._run(stream)))

        assert frames[3] == b"data: [DO\n\n"
        assert json.loads(frames[4][len(b"data: "):])["type"] == "usage"
        assert frames[5] == DONE_FRAME

    def test_upstream_without_done(self):
        """Test usage and [DONE] are emitted even if upstream omits [DONE]."""
        stream = self._wrap(self.content_frames)
        frames = _split_frames(b"".join(self._run(stream)))

        assert len(frames) == 5
        assert frames[-1] == DONE_FRAME
        assert stream.completed

    def test_exempt_model_skips_accounting(self):
        """Exempt streams get no usage frame and no sink call."""
        stream = self._wrap(self.content_frames + [DONE_FRAME], exempt=True)
        frames = _split_frames(b"".join(self._run(stream)))

        assert frames == self.content_frames + [DONE_FRAME]
        assert stream.final_usage is None
        assert self.sink.records == []

    def test_upstream_error_propagates(self):
        """Upstream failures reach the consumer and skip accounting."""
        stream = self._wrap(self.content_frames[:1], error=RuntimeError("provider down"))
        received = []

        async def consume():
            async for chunk in stream:
                received.append(chunk)

        with pytest.raises(RuntimeError, match="provider down"):
            asyncio.run(consume())

        assert received == self.content_frames[:1]
        assert stream.usage_task is None
        assert self.sink.records == []
        assert not stream.completed

    def test_sink_failure_does_not_break_stream(self, caplog):
        """A failing sink is logged and the client still gets usage."""
        sink = FailingUsageSink()
        stream = self._wrap(self.content_frames + [DONE_FRAME], sink=sink)

        with caplog.at_level(logging.ERROR, logger="ai_stream_meter.streaming.wrapper"):
            frames = _split_frames(b"".join(self._run(stream)))

        assert len(frames) == 5
        assert sink.calls == 1
        assert "Failed to record usage for message msg_1" in caplog.text

    def test_without_sink_still_emits_usage(self):
        stream = TokenTrackingStream(
            _upstream(self.content_frames + [DONE_FRAME]),
            user_id="user_1",
            conversation_id="conv_1",
            message_id="msg_1",
            model=MODEL,
            messages=MESSAGES
        )
        frames = _split_frames(b"".join(self._run(stream)))

        assert len(frames) == 5
        assert stream.usage_task is None

    def test_reported_usage_is_captured(self):
        """Provider-reported usage frames are exposed but not authoritative."""
        usage_chunk = _frame({"choices": [], "usage": {
            "prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12
        }})
        stream = self._wrap(self.content_frames + [usage_chunk, DONE_FRAME])
        self._run(stream)

        assert stream.reported_usage == TokenCount(input_tokens=5, output_tokens=7)
        assert stream.final_usage.output_tokens == estimate_tokens("Hello there!", MODEL)

    def test_reported_usage_is_logged_with_estimate(self, caplog):
        usage_chunk = _frame({"usage": {"input_tokens": 9, "output_tokens": 4}})
        stream = self._wrap(self.content_frames + [usage_chunk, DONE_FRAME])

        with caplog.at_level(logging.INFO, logger="ai_stream_meter.streaming.wrapper"):
            self._run(stream)

        assert "Final token count for message msg_1" in caplog.text
        assert "Provider reported usage for message msg_1: input=9 output=4" in caplog.text

    def test_can_only_iterate_once(self):
        stream = self._wrap(self.content_frames + [DONE_FRAME])
        self._run(stream)

        with pytest.raises(RuntimeError, match="only be iterated once"):
            stream.__aiter__()

    def test_requires_model(self):
        with pytest.raises(ValueError, match="model is required"):
            create_token_tracking_stream(
                _upstream([]), "user_1", "conv_1", "msg_1", "", MESSAGES
            )

    def test_factory_builds_wrapper(self):
        stream = create_token_tracking_stream(
            _upstream(self.content_frames + [DONE_FRAME]),
            "user_1", "conv_1", "msg_1", MODEL, MESSAGES,
            usage_sink=self.sink
        )
        self._run(stream)
        assert len(self.sink.records) == 1

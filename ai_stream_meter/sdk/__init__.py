"""
SDK for AI Stream Meter.

Provides metered, resumable streaming chat completions.
"""

from .openai_client import MeteredChatStream, MeteredOpenAI, openai_sse_stream

__all__ = ["MeteredChatStream", "MeteredOpenAI", "openai_sse_stream"]

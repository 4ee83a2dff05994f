"""
AI Stream Meter.

Token accounting and resumable stream state for streamed LLM responses.
"""

__version__ = "0.1.0"

"""
Streaming modules for AI Stream Meter.

This package contains the token-tracking stream wrapper, stream state
management and stream recovery.
"""

from .recovery import RecoveryCandidate, StreamRecoveryController
from .state import StreamState, StreamStateManager, StreamStatus
from .wrapper import TokenTrackingStream, create_token_tracking_stream

__all__ = [
    "RecoveryCandidate",
    "StreamRecoveryController",
    "StreamState",
    "StreamStateManager",
    "StreamStatus",
    "TokenTrackingStream",
    "create_token_tracking_stream",
]

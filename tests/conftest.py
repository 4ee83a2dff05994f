"""
Shared fixtures for AI Stream Meter tests.
"""

from datetime import datetime, timedelta

import pytest


class FakeClock:
    """Controllable replacement for datetime.now."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    """A fake clock starting at 2024-01-01 12:00."""
    return FakeClock()

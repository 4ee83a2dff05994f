"""
Usage sinks.

Persist finalized token counts against (user, conversation, message).
"""

import asyncio
from typing import List, Protocol

from .db import DEFAULT_DB_PATH
from .models import UsageRecord
from .repository import insert_usage_record


class UsageSink(Protocol):
    """Records finalized usage for billing and metering."""

    async def record_usage(self, record: UsageRecord) -> None:
        ...


class SQLiteUsageSink:
    """Usage sink writing to the SQLite usage ledger.

    The blocking insert runs in a worker thread.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def record_usage(self, record: UsageRecord) -> None:
        await asyncio.to_thread(insert_usage_record, record, self.db_path)


class InMemoryUsageSink:
    """Collects records in a list."""

    def __init__(self):
        self.records: List[UsageRecord] = []

    async def record_usage(self, record: UsageRecord) -> None:
        self.records.append(record)

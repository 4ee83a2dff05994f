"""
Repository pattern for data access.

Handles database operations for the usage ledger and stream state.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord


_SELECT_USAGE = """
    SELECT timestamp, user_id, conversation_id, message_id, model,
           input_tokens, output_tokens, cached
    FROM usage_record
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage ledger and stream state tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cached INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage record into the append-only ledger.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_record
            (timestamp, user_id, conversation_id, message_id, model,
             input_tokens, output_tokens, total_tokens, cached)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.timestamp.isoformat(),
            record.user_id,
            record.conversation_id,
            record.message_id,
            record.model,
            record.input_tokens,
            record.output_tokens,
            record.total_tokens,
            int(record.cached)
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_recent_usage_records(
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch recent usage records, optionally filtered by user and conversation.

    Args:
        user_id: Optional filter for a specific user
        conversation_id: Optional filter for a specific conversation
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = _SELECT_USAGE
        params = []
        conditions = []

        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if conversation_id:
            conditions.append("conversation_id = ?")
            params.append(conversation_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageRecord(
                timestamp=datetime.fromisoformat(row[0]),
                user_id=row[1],
                conversation_id=row[2],
                message_id=row[3],
                model=row[4],
                input_tokens=row[5],
                output_tokens=row[6],
                cached=bool(row[7])
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()

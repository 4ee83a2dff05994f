"""
Storage layer for AI Stream Meter.

SQLite-backed usage ledger and key-value stores for stream state.
"""

"""
Command-line interface for AI Stream Meter.
"""

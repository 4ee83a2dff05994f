"""
Core modules for AI Stream Meter.

This package contains token estimation and streaming usage tracking.
"""

"""
Configuration loading for AI Stream Meter.
"""

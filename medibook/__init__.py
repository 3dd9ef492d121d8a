"""Scheduling and settlement engine for medical appointments."""
__version__ = "1.0.0"

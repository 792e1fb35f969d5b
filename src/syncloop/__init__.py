"""Syncloop - Scheduled sync runs for data connections."""

__version__ = "0.1.0"

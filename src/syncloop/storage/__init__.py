"""Persistent storage for hand-off snapshots."""

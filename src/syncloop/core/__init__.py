"""Connection lifecycle management.

This package holds the controller state machine, the per-connection manager
that runs it, the registry that keeps one manager alive per connection and
drives hand-offs, and the foreground daemon.
"""

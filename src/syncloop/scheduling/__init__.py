"""Scheduling decisions and retry policies.

The scheduler decides how long a connection waits before its next run, and
the retry module holds the backoff curve shared by activity calls and by the
attempts of a job.
"""

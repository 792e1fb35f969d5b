"""Side-effecting collaborators of the connection manager.

This package holds the activity calls the state machine makes (schedule
lookups, max attempt policy, workspace status), the job persistence boundary
and the sync runners. Everything here may fail and is invoked through the
retry policy, so implementations must tolerate duplicate calls.
"""

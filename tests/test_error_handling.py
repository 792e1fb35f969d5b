"""Tests for the error hierarchy and helpers."""

import logging
from unittest.mock import patch

import pytest

from syncloop.config import SyncloopConfig
from syncloop.error_handling import (
    ActivityRetriesExhausted,
    ConfigurationError,
    ConnectionDeletedError,
    DependencyError,
    ErrorCategory,
    ExternalToolError,
    ScheduleComputationFailure,
    SyncloopError,
    TransientActivityFailure,
    check_dependencies,
    handle_error,
    with_error_handling,
)


class TestErrorClasses:
    def test_base_error_carries_context(self):
        error = SyncloopError(
            "boom",
            ErrorCategory.SYSTEM,
            solution="restart",
            details="stack",
        )

        assert str(error) == "boom"
        assert error.solution == "restart"
        assert error.details == "stack"
        assert error.recoverable

    def test_configuration_error_suggests_path(self, tmp_path):
        error = ConfigurationError("bad", config_path=tmp_path / "c.toml")

        assert error.category is ErrorCategory.CONFIGURATION
        assert "c.toml" in error.solution

    def test_dependency_error_is_not_recoverable(self):
        error = DependencyError("rsync", install_command="apt install rsync")

        assert not error.recoverable
        assert error.solution == "Install with: apt install rsync"

    def test_transient_failure_is_recoverable_warning(self):
        error = TransientActivityFailure("get_time_to_wait", "timeout")

        assert error.recoverable
        assert error.log_level == logging.WARNING
        assert "get_time_to_wait" in error.message

    def test_schedule_failure_is_not_retried(self):
        error = ScheduleComputationFailure("conn", "unknown")

        assert not error.recoverable
        assert error.category is ErrorCategory.SCHEDULING

    def test_retries_exhausted_message(self):
        error = ActivityRetriesExhausted("create_job", 6)

        assert error.attempts == 6
        assert "after 6 attempts" in error.message

    def test_external_tool_error_details(self):
        error = ExternalToolError("run-sync", exit_code=2, stderr="no route")

        assert "exit code 2" in error.message
        assert error.details == "no route"

    def test_connection_deleted_error(self):
        error = ConnectionDeletedError("conn")

        assert not error.recoverable
        assert error.category is ErrorCategory.CONNECTION

    def test_display_to_user(self):
        error = SyncloopError("boom", ErrorCategory.NETWORK, solution="retry")

        with patch("syncloop.error_handling.console") as mock_console:
            error.display_to_user()

        printed = " ".join(str(call.args[0]) for call in mock_console.print.call_args_list)
        assert "boom" in printed
        assert "retry" in printed


class TestHelpers:
    def test_handle_error_wraps_generic_exceptions(self):
        with patch.object(SyncloopError, "display_to_user", autospec=True) as display:
            handle_error(FileNotFoundError("missing.toml"))

        wrapped = display.call_args.args[0]
        assert wrapped.category is ErrorCategory.FILESYSTEM
        assert isinstance(wrapped.original_error, FileNotFoundError)

    def test_with_error_handling_reraises(self):
        @with_error_handling(ErrorCategory.SYSTEM)
        def explode():
            raise RuntimeError("bad")

        with patch("syncloop.error_handling.handle_error") as mock_handle:
            with pytest.raises(RuntimeError):
                explode()

        mock_handle.assert_called_once()
        assert explode.__name__ == "explode"

    def test_check_dependencies(self):
        config = SyncloopConfig(
            connections=[
                {"connection_id": "ok", "sync_command": ["sh", "-c", "true"]},
                {"connection_id": "broken", "sync_command": ["definitely-not-installed-xyz"]},
                {"connection_id": "none"},
            ],
        )

        errors = check_dependencies(config)

        assert len(errors) == 1
        assert "definitely-not-installed-xyz" in errors[0].message
        assert "broken" in errors[0].details

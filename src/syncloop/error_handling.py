"""Error handling system for Syncloop."""

import logging
import shutil
import functools
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

if TYPE_CHECKING:
    from syncloop.config import SyncloopConfig

logger = logging.getLogger(__name__)
console = Console()


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    ACTIVITY = "activity"
    SCHEDULING = "scheduling"
    ATTEMPT = "attempt"
    CONNECTION = "connection"
    EXTERNAL_TOOL = "external_tool"
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    SYSTEM = "system"


class SyncloopError(Exception):
    """Base exception for Syncloop with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Display error to user with helpful context."""
        category_styles = {
            ErrorCategory.CONFIGURATION: ("⚙️", "yellow"),
            ErrorCategory.DEPENDENCY: ("📦", "red"),
            ErrorCategory.ACTIVITY: ("🔁", "orange"),
            ErrorCategory.SCHEDULING: ("⏱️", "yellow"),
            ErrorCategory.ATTEMPT: ("🔄", "red"),
            ErrorCategory.CONNECTION: ("🔗", "blue"),
            ErrorCategory.EXTERNAL_TOOL: ("🔧", "red"),
            ErrorCategory.NETWORK: ("🌐", "orange"),
            ErrorCategory.FILESYSTEM: ("📁", "red"),
            ErrorCategory.SYSTEM: ("💻", "red"),
        }

        emoji, color = category_styles.get(self.category, ("❌", "red"))

        console.print(
            f"\n{emoji} [{color}bold]{self.category.value.title()} Error[/{color}bold]",
        )
        console.print(f"[{color}]{self.message}[/{color}]")

        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")

        if self.solution:
            console.print(f"\n[green]💡 Solution:[/green] {self.solution}")

        if self.recoverable:
            console.print(
                "\n[dim]This error may be temporary. You can try again.[/dim]",
            )
        else:
            console.print(
                "\n[dim]This error requires intervention before continuing.[/dim]",
            )

        if self.original_error:
            logger.log(
                self.log_level,
                "%s: %s",
                self.category.value,
                self.message,
                exc_info=self.original_error,
            )
        else:
            logger.log(self.log_level, "%s: %s", self.category.value, self.message)


class ConfigurationError(SyncloopError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            **kwargs,
        )


class DependencyError(SyncloopError):
    """Missing or broken dependency errors."""

    def __init__(
        self,
        dependency: str,
        *,
        install_command: str | None = None,
        **kwargs,
    ):
        message = f"Required dependency '{dependency}' is not available"
        solution = kwargs.pop("solution", None)
        if not solution and install_command:
            solution = f"Install with: {install_command}"
        super().__init__(
            message,
            ErrorCategory.DEPENDENCY,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class TransientActivityFailure(SyncloopError):
    """An activity call failed in a way that is worth retrying."""

    def __init__(self, activity: str, message: str, **kwargs):
        self.activity = activity
        super().__init__(
            f"{activity} failed: {message}",
            ErrorCategory.ACTIVITY,
            log_level=logging.WARNING,
            **kwargs,
        )


class ActivityRetriesExhausted(SyncloopError):
    """An activity kept failing after every retry."""

    def __init__(self, activity: str, attempts: int, **kwargs):
        self.activity = activity
        self.attempts = attempts
        solution = kwargs.pop(
            "solution",
            "Check that the configuration service and job store are reachable",
        )
        super().__init__(
            f"{activity} failed after {attempts} attempts",
            ErrorCategory.ACTIVITY,
            solution=solution,
            **kwargs,
        )


class ScheduleComputationFailure(SyncloopError):
    """The wait before the next run could not be computed."""

    def __init__(self, connection_id: str, message: str, **kwargs):
        self.connection_id = connection_id
        super().__init__(
            f"Cannot compute schedule for {connection_id}: {message}",
            ErrorCategory.SCHEDULING,
            recoverable=False,
            log_level=logging.WARNING,
            **kwargs,
        )


class AttemptFailure(SyncloopError):
    """A sync attempt failed."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs):
        self.retryable = retryable
        super().__init__(message, ErrorCategory.ATTEMPT, **kwargs)


class ExternalToolError(SyncloopError):
    """External sync command execution errors."""

    def __init__(
        self,
        tool: str,
        exit_code: int | None = None,
        stderr: str | None = None,
        **kwargs,
    ):
        message = f"{tool} failed"
        if exit_code is not None:
            message += f" with exit code {exit_code}"

        details = kwargs.pop("details", stderr)
        solution = kwargs.pop(
            "solution",
            f"Check {tool} is properly installed and configured",
        )

        super().__init__(
            message,
            ErrorCategory.EXTERNAL_TOOL,
            details=details,
            solution=solution,
            **kwargs,
        )


class ConnectionNotFoundError(SyncloopError):
    """No manager is running for the connection."""

    def __init__(self, connection_id: str, **kwargs):
        self.connection_id = connection_id
        super().__init__(
            f"No manager is running for connection {connection_id}",
            ErrorCategory.CONNECTION,
            solution="Start the connection before sending it signals",
            **kwargs,
        )


class ConnectionDeletedError(SyncloopError):
    """The connection was deleted and can never run again."""

    def __init__(self, connection_id: str, **kwargs):
        self.connection_id = connection_id
        super().__init__(
            f"Connection {connection_id} has been deleted",
            ErrorCategory.CONNECTION,
            recoverable=False,
            **kwargs,
        )


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Convert generic exceptions to SyncloopError and display to user."""
    if isinstance(error, SyncloopError):
        error.display_to_user()
        return

    if category is None:
        if isinstance(error, FileNotFoundError | PermissionError):
            category = ErrorCategory.FILESYSTEM
        elif isinstance(error, ConnectionError | TimeoutError):
            category = ErrorCategory.NETWORK
        else:
            category = ErrorCategory.SYSTEM

    syncloop_error = SyncloopError(
        message=str(error) or "An unexpected error occurred",
        category=category,
        original_error=error,
        **kwargs,
    )
    syncloop_error.display_to_user()


def check_dependencies(config: "SyncloopConfig") -> list[DependencyError]:
    """Check that every configured sync command can be executed."""
    errors = []

    for entry in config.connections:
        if not entry.sync_command:
            continue
        executable = entry.sync_command[0]
        if not shutil.which(executable):
            errors.append(
                DependencyError(
                    executable,
                    solution="Install the sync command or fix its path in the configuration",
                    details=f"Used by connection {entry.connection_id}",
                ),
            )

    return errors


def with_error_handling(category: ErrorCategory):
    """Decorator to add consistent error handling to functions."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except SyncloopError:
                raise
            except Exception as e:
                handle_error(e, category=category)
                raise

        return wrapper

    return decorator

"""Sync runners: the boundary to the data-movement engine."""

import asyncio
import logging
import os
from collections.abc import Mapping
from typing import Protocol

from syncloop.activities.models import SyncInput, SyncOutput
from syncloop.config import SyncloopConfig
from syncloop.error_handling import AttemptFailure, ExternalToolError

logger = logging.getLogger(__name__)


class SyncRunner(Protocol):
    """Executes one attempt of a sync job.

    Implementations must unwind promptly when the awaiting task is cancelled.
    """

    async def run(self, sync_input: SyncInput) -> SyncOutput: ...


class CommandSyncRunner:
    """Runs the configured sync command of a connection as a subprocess."""

    def __init__(
        self,
        config: SyncloopConfig,
        commands: Mapping[str, list[str]] | None = None,
    ):
        self.config = config
        # Explicit commands override the catalog, which is read on every attempt
        self.commands = dict(commands) if commands is not None else None

    def command_for(self, connection_id: str) -> list[str]:
        if self.commands is not None:
            return self.commands.get(connection_id, [])
        entry = self.config.get_connection(connection_id)
        return list(entry.sync_command) if entry else []

    async def run(self, sync_input: SyncInput) -> SyncOutput:
        """Run one attempt and translate the exit code into a SyncOutput."""
        command = self.command_for(sync_input.connection_id)
        if not command:
            raise AttemptFailure(
                f"No sync command configured for {sync_input.connection_id}",
                retryable=False,
                solution="Add a sync_command to the connection in your configuration",
            )

        env = os.environ.copy()
        env.update(
            {
                "SYNCLOOP_CONNECTION_ID": sync_input.connection_id,
                "SYNCLOOP_JOB_ID": str(sync_input.job_id),
                "SYNCLOOP_ATTEMPT_NUMBER": str(sync_input.attempt_number),
                "SYNCLOOP_RESET": "1" if sync_input.reset else "0",
            },
        )

        logger.info(
            "Running sync for %s (job %s, attempt %s): %s",
            sync_input.connection_id,
            sync_input.job_id,
            sync_input.attempt_number,
            " ".join(command),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(
                command[0],
                solution=f"Install {command[0]} or fix sync_command in your configuration",
                original_error=e,
            ) from e

        try:
            output, _ = await asyncio.wait_for(
                process.communicate(),
                timeout=self.config.sync_attempt_timeout,
            )
        except asyncio.TimeoutError:
            await self._stop(process)
            return SyncOutput.failure(
                f"Sync timed out after {self.config.sync_attempt_timeout}s",
            )
        except asyncio.CancelledError:
            logger.info("Sync for %s cancelled, stopping process", sync_input.connection_id)
            await self._stop(process)
            raise

        if process.returncode == 0:
            return SyncOutput.success()

        tail = output.decode(errors="replace").strip().splitlines()[-5:] if output else []
        reason = f"{command[0]} exited with code {process.returncode}"
        if tail:
            reason += ": " + " | ".join(tail)
        return SyncOutput.failure(reason)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process, killing it well within the manager's grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(
                process.wait(),
                timeout=self.config.cancellation_grace_period / 2,
            )
        except asyncio.TimeoutError:
            logger.warning("Sync process %s ignored SIGTERM, killing it", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

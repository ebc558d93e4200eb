"""
Command Executor Service.

Runs the external commands behind pipeline stages, deployers and health
checks. Each command runs in its own process group so a timeout or a
cancelled run takes the whole process tree down with it.
"""

import asyncio
import contextlib
import os
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = -1
SPAWN_ERROR_EXIT_CODE = -2


@dataclass
class CommandResult:
    """Outcome of one external command."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    is_timeout: bool = False

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0 and not self.is_timeout

    @property
    def output(self) -> str:
        """stdout followed by stderr, for stage logs."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def _terminate_group(process: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group led by ``process``; it may already be gone."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(os.getpgid(process.pid), signal.SIGTERM)


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class CommandExecutor:
    """
    Async subprocess runner with a per-call time limit.

    Failures to run are reported through CommandResult, not raised: a
    timeout gives exit code -1 and a command that cannot be started -2.
    Cancellation is the exception and propagates after the process group
    is terminated.
    """

    def __init__(self, default_timeout: float = 300.0):
        self.default_timeout = default_timeout

    async def run_async(
        self,
        command: str | list[str],
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        shell: bool = False
    ) -> CommandResult:
        """
        Run ``command`` and capture its output.

        Args:
            command: Shell string, or an argument list
            cwd: Working directory
            env: Extra environment variables, layered over os.environ
            timeout: Seconds before the process group is terminated
            shell: Interpret ``command`` with /bin/sh
        """
        limit = self.default_timeout if timeout is None else timeout
        display = command if isinstance(command, str) else " ".join(command)
        started = time.perf_counter()

        def finished(exit_code: int, stdout: str = "", stderr: str = "", is_timeout: bool = False) -> CommandResult:
            return CommandResult(display, exit_code, stdout, stderr, time.perf_counter() - started, is_timeout)

        logger.debug("executing_command", command=display, cwd=str(cwd) if cwd else None, timeout=limit)
        try:
            process = await self._spawn(command, display, cwd, {**os.environ, **(env or {})}, shell)
        except OSError as e:
            logger.error("command_execution_error", command=display, error=str(e))
            return finished(SPAWN_ERROR_EXIT_CODE, stderr=f"Execution error: {e!s}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("command_timeout", command=display, timeout=limit)
            _terminate_group(process)
            with contextlib.suppress(ProcessLookupError):
                await process.wait()
            return finished(TIMEOUT_EXIT_CODE, stderr="Command timed out", is_timeout=True)
        except asyncio.CancelledError:
            if process.returncode is None:
                logger.warning("command_cancelled", command=display)
                _terminate_group(process)
            raise

        result = finished(process.returncode, _decode(stdout), _decode(stderr))
        if result.exit_code != 0:
            logger.warning(
                "command_failed",
                command=display,
                exit_code=result.exit_code,
                stderr_snippet=result.stderr[:200],
            )
        else:
            logger.debug("command_success", command=display, duration=result.duration)
        return result

    @staticmethod
    async def _spawn(
        command: str | list[str],
        display: str,
        cwd: str | Path | None,
        env: dict[str, str],
        shell: bool,
    ) -> asyncio.subprocess.Process:
        options = dict(
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
        if shell:
            return await asyncio.create_subprocess_shell(display, **options)
        args = shlex.split(command) if isinstance(command, str) else list(command)
        return await asyncio.create_subprocess_exec(*args, **options)

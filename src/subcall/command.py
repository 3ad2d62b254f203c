"""Run an external tool with the same lifecycle as a one-shot call."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import InfraError
from .execution.types import LaunchRequest, ProcessExit
from .oneshot import CallState, ProcessCall
from .poller import poll

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """What an external command left behind.

    A non-zero `exit_status` is data, not an error.

    Example:
        ```python
        result = CommandResult(stdout="hi\\n", stderr="", exit_status=0)
        ```
    """

    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        """Tell whether the command exited with status 0.

        Example:
            ```python
            assert CommandResult("", "", 0).ok
            ```
        """
        return self.exit_status == 0


class CommandProcess(ProcessCall):
    """An external command tracked like a one-shot call.

    Example:
        ```python
        proc = CommandProcess("ls", ["-l"]).start()
        print(proc.result().stdout)
        ```
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Prepare a command; nothing is spawned until `start()`.

        Example:
            ```python
            proc = CommandProcess("git", ["status"], cwd="/srv/repo")
            ```
        """
        if timeout_seconds is not None and timeout_seconds <= 0:
            timeout_seconds = None
        super().__init__(label=f"command {command}", timeout_seconds=timeout_seconds)
        self.command = command
        self.args = [str(arg) for arg in args]
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self._result: CommandResult | None = None
        self._error: InfraError | None = None

    def _launch_request(self, workdir: Path) -> LaunchRequest:
        """Describe the command line; tools get no control pipe.

        Example:
            ```python
            request = proc._launch_request(workdir)
            ```
        """
        env = None
        if self.env is not None:
            env = os.environ.copy()
            env.update(self.env)
        return LaunchRequest(
            argv=[self.command, *self.args],
            workdir=workdir,
            cwd=self.cwd,
            env=env,
            control_arg=None,
        )

    def _collect(self, done: ProcessExit) -> None:
        """Record the streams and exit status.

        Example:
            ```python
            proc._collect(process.exit_status())
            ```
        """
        logger.debug("%s exited with status %s", self.label, done.returncode)
        self._result = CommandResult(stdout=done.stdout, stderr=done.stderr, exit_status=done.returncode)
        self.state = CallState.FINISHED

    def _abandon(self, reason: str, done: ProcessExit | None) -> None:
        """Record a timeout or cancellation as an infra error.

        Example:
            ```python
            proc._abandon("timeout", process.exit_status())
            ```
        """
        if reason == "timeout":
            message = f"{self.label} timed out after {self.timeout_seconds}s"
            logger.warning("%s", message)
        else:
            message = f"{self.label} was cancelled"
        self._error = InfraError(
            message,
            reason=reason,
            exit_code=done.returncode if done is not None else None,
            stdout=done.stdout if done is not None else "",
            stderr=done.stderr if done is not None else "",
            timed_out=reason == "timeout",
        )
        self.state = CallState.CRASHED

    def result(self) -> CommandResult:
        """Block until the command is done and return what it produced.

        Example:
            ```python
            result = proc.result()
            ```
        """
        if self.state is CallState.CREATED:
            self.start()
        while not self.is_ready():
            poll([self])
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result


def run_command(
    command: str,
    args: Sequence[str] = (),
    *,
    timeout_seconds: float | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run an external command to completion and collect its output.

    Raises `InfraError` when the executable cannot be started or the
    command outlives `timeout_seconds`.

    Example:
        ```python
        result = run_command("echo", ["hello"])
        assert result.stdout == "hello\\n"
        ```
    """
    with CommandProcess(command, args, timeout_seconds=timeout_seconds, cwd=cwd, env=env) as proc:
        return proc.result()

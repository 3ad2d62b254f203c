from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

from ..errors import DecodeError
from .types import LaunchRequest, ProcessExit

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


def _open_exit_fd(pid: int) -> int | None:
    """Return a descriptor that becomes readable once `pid` exits, if the OS offers one.

    Example:
        ```python
        fd = _open_exit_fd(popen.pid)
        ```
    """
    if not hasattr(os, "pidfd_open"):
        return None
    try:
        return os.pidfd_open(pid)
    except OSError:
        return None


class ControlChannel:
    """Non-blocking reader for the JSON-lines control pipe of one process.

    The pipe reaches end-of-file when the process (and anything that
    inherited the write end) has exited, so it doubles as an exit signal.

    Example:
        ```python
        channel = ControlChannel(read_fd)
        messages = channel.drain()
        ```
    """

    def __init__(self, fd: int) -> None:
        """Take ownership of the read end of a control pipe.

        Example:
            ```python
            channel = ControlChannel(read_fd)
            ```
        """
        os.set_blocking(fd, False)
        self._fd = fd
        self._buffer = b""
        self.eof = False
        self.closed = False

    def fileno(self) -> int:
        """Return the pipe descriptor for selector registration.

        Example:
            ```python
            selector.register(channel.fileno(), selectors.EVENT_READ)
            ```
        """
        return self._fd

    def drain(self) -> list[dict[str, Any]]:
        """Read everything available without blocking and return complete messages.

        Example:
            ```python
            for message in channel.drain():
                print(message["kind"])
            ```
        """
        while not self.eof and not self.closed:
            try:
                chunk = os.read(self._fd, _READ_CHUNK)
            except BlockingIOError:
                break
            if not chunk:
                self.eof = True
                break
            self._buffer += chunk

        messages: list[dict[str, Any]] = []
        while b"\n" in self._buffer:
            line, _, self._buffer = self._buffer.partition(b"\n")
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                raise DecodeError(f"malformed control message: {line[:200]!r}") from exc
            if not isinstance(message, dict) or "kind" not in message:
                raise DecodeError(f"control message without a kind: {line[:200]!r}")
            messages.append(message)
        return messages

    def close(self) -> None:
        """Close the read end; safe to call more than once.

        Example:
            ```python
            channel.close()
            ```
        """
        if self.closed:
            return
        self.closed = True
        os.close(self._fd)


class WorkerProcess:
    """A spawned child with its raw streams logged to files.

    Workers also get a control pipe; external tools get none, so nothing they
    leave running in the background can hold the caller's descriptors open.

    Example:
        ```python
        proc = WorkerProcess.spawn(LaunchRequest(argv=cmd, workdir=workdir))
        proc.kill()
        ```
    """

    def __init__(
        self,
        popen: subprocess.Popen[bytes],
        channel: ControlChannel | None,
        workdir: Path,
    ) -> None:
        """Wrap an already started process.

        Example:
            ```python
            proc = WorkerProcess(popen, ControlChannel(read_fd), workdir)
            ```
        """
        self._popen = popen
        self.channel = channel
        self.workdir = workdir
        self._exit_fd = _open_exit_fd(popen.pid)

    @classmethod
    def spawn(cls, request: LaunchRequest) -> "WorkerProcess":
        """Start a process whose stdout/stderr go to log files in the workdir.

        Example:
            ```python
            proc = WorkerProcess.spawn(LaunchRequest(argv=["python", "-c", "pass"], workdir=workdir, control_arg=None))
            ```
        """
        read_fd: int | None = None
        write_fd: int | None = None
        argv = list(request.argv)
        if request.control_arg is not None:
            read_fd, write_fd = os.pipe()
            argv += [request.control_arg, str(write_fd)]
        argv += request.trailing_args
        try:
            with (
                open(request.workdir / "process.stdout", "wb") as stdout_handle,
                open(request.workdir / "process.stderr", "wb") as stderr_handle,
            ):
                popen = subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=subprocess.PIPE if request.interactive else subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    cwd=request.cwd,
                    env=request.env,
                    pass_fds=() if write_fd is None else (write_fd,),
                )
        except BaseException:
            if read_fd is not None:
                os.close(read_fd)
            raise
        finally:
            if write_fd is not None:
                os.close(write_fd)
        logger.debug("spawned pid %s: %s", popen.pid, argv)
        channel = ControlChannel(read_fd) if read_fd is not None else None
        return cls(popen, channel, request.workdir)

    @property
    def pid(self) -> int:
        """Return the child process id.

        Example:
            ```python
            print(proc.pid)
            ```
        """
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        """Return the exit status without blocking, or None while running.

        Example:
            ```python
            if proc.returncode is None:
                print("still running")
            ```
        """
        return self._popen.poll()

    def exit_fileno(self) -> int:
        """Return a descriptor that turns readable when the child exits, or -1.

        Example:
            ```python
            selector.register(proc.exit_fileno(), selectors.EVENT_READ)
            ```
        """
        return -1 if self._exit_fd is None else self._exit_fd

    def send(self, message: dict[str, Any]) -> None:
        """Write one JSON-lines command to the child's stdin.

        Raises `BrokenPipeError` (an `OSError`) when the child is gone.

        Example:
            ```python
            proc.send({"op": "close"})
            ```
        """
        if self._popen.stdin is None:
            raise OSError("process was not started with an interactive stdin")
        self._popen.stdin.write(json.dumps(message).encode("utf-8") + b"\n")
        self._popen.stdin.flush()

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the child exits, returning None if the timeout elapses.

        Example:
            ```python
            code = proc.wait(timeout=1.0)
            ```
        """
        try:
            return self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def signal(self, signum: int) -> None:
        """Deliver a signal if the child is still running.

        Example:
            ```python
            proc.signal(signal.SIGINT)
            ```
        """
        if self._popen.poll() is None:
            self._popen.send_signal(signum)

    def kill(self) -> int:
        """Force-kill the child and reap it.

        Example:
            ```python
            code = proc.kill()
            ```
        """
        if self._popen.poll() is None:
            try:
                self._popen.kill()
            except OSError:
                pass
        returncode = self._popen.wait()
        logger.debug("reaped pid %s with status %s", self.pid, returncode)
        return returncode

    def terminate(self, grace_seconds: float) -> int:
        """Ask the child to stop, killing it if it outlives the grace period.

        Example:
            ```python
            code = proc.terminate(grace_seconds=2)
            ```
        """
        if self._popen.poll() is None:
            try:
                self._popen.terminate()
            except OSError:
                return self._popen.wait()
            if self.wait(timeout=grace_seconds) is None:
                return self.kill()
        return self._popen.wait()

    def read_stream(self, name: str) -> str:
        """Return what the child wrote to its real stdout or stderr so far.

        Example:
            ```python
            text = proc.read_stream("stderr")
            ```
        """
        path = self.workdir / f"process.{name}"
        try:
            return path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def exit_status(self) -> ProcessExit:
        """Reap the child and collect its exit status and raw output.

        Blocks until the child exits; check `returncode` first to avoid that.

        Example:
            ```python
            done = proc.exit_status()
            ```
        """
        returncode = self._popen.wait()
        return ProcessExit(
            returncode=returncode,
            stdout=self.read_stream("stdout"),
            stderr=self.read_stream("stderr"),
        )

    def close(self) -> None:
        """Release the pipes and exit descriptor held by the caller.

        Example:
            ```python
            proc.close()
            ```
        """
        if self._popen.stdin is not None:
            try:
                self._popen.stdin.close()
            except OSError:
                pass
        if self.channel is not None:
            self.channel.close()
        if self._exit_fd is not None:
            os.close(self._exit_fd)
            self._exit_fd = None

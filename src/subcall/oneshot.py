from __future__ import annotations

import logging
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Mapping, Self

from .codec import CallDescriptor, Outcome, OutcomeStatus, encode, infra_outcome, read_outcome
from .errors import DecodeError, InfraError, LastError, SubcallError
from .execution.engine import ExecutionEngine
from .execution.local_engine import LocalEngine
from .execution.process import WorkerProcess
from .execution.types import LaunchRequest, ProcessExit
from .options import CallOptions, resolve_options
from .poller import poll
from .trace import CallContext, capture_call_context

logger = logging.getLogger(__name__)

PAYLOAD_NAME = "payload.pkl"
OUTCOME_NAME = "outcome.pkl"
# How often to recheck for an exit the platform cannot signal on a descriptor.
EXIT_CHECK_INTERVAL = 0.05


class CallState(str, Enum):
    """Lifecycle of a one-shot call or command process."""

    CREATED = "created"
    LAUNCHED = "launched"
    FINISHED = "finished"
    CRASHED = "crashed"


def describe_exit(returncode: int) -> str:
    """Return a readable description of a process exit status.

    Example:
        ```python
        assert describe_exit(-9) == "was killed by signal 9"
        ```
    """
    if returncode < 0:
        return f"was killed by signal {-returncode}"
    return f"exited with status {returncode}"


class ProcessCall:
    """Lifecycle shared by every single-process watchable.

    Subclasses describe how to launch the process and how to turn its exit
    into a result; this class owns spawning, the timeout, cancellation and
    the temp directory, which is removed on every exit path.

    Example:
        ```python
        call = OneShotCall(descriptor).start()
        call.wait()
        ```
    """

    def __init__(self, *, label: str, timeout_seconds: float | None) -> None:
        """Set up an unlaunched call.

        Example:
            ```python
            ProcessCall(label="subcall jobs.add", timeout_seconds=None)
            ```
        """
        self.label = label
        self.state = CallState.CREATED
        self.timeout_seconds = timeout_seconds
        self._process: WorkerProcess | None = None
        self._workdir: Path | None = None
        self._deadline: float | None = None

    def _launch_request(self, workdir: Path) -> LaunchRequest:
        """Describe the process to spawn inside `workdir`.

        Example:
            ```python
            request = call._launch_request(workdir)
            ```
        """
        raise NotImplementedError

    def _collect(self, done: ProcessExit) -> None:
        """Turn a finished process into the call's result.

        Example:
            ```python
            call._collect(process.exit_status())
            ```
        """
        raise NotImplementedError

    def _abandon(self, reason: str, done: ProcessExit | None) -> None:
        """Record the result of a call that timed out or was cancelled.

        Example:
            ```python
            call._abandon("timeout", process.exit_status())
            ```
        """
        raise NotImplementedError

    @property
    def process(self) -> WorkerProcess | None:
        """Return the underlying process once launched.

        Example:
            ```python
            pid = call.process.pid
            ```
        """
        return self._process

    @property
    def deadline(self) -> float | None:
        """Return the next instant at which `is_ready()` must be rechecked.

        That is the timeout, or sooner while the process runs with no
        descriptor that would report its exit.

        Example:
            ```python
            expires = call.deadline
            ```
        """
        if self._process is None or self.done or self.fileno() >= 0:
            return self._deadline
        recheck = time.monotonic() + EXIT_CHECK_INTERVAL
        return recheck if self._deadline is None else min(self._deadline, recheck)

    @property
    def done(self) -> bool:
        """Tell whether the call reached a terminal state.

        Example:
            ```python
            if call.done:
                print(call.state)
            ```
        """
        return self.state in (CallState.FINISHED, CallState.CRASHED)

    def start(self) -> "ProcessCall":
        """Spawn the process and return immediately.

        Example:
            ```python
            call = OneShotCall(descriptor).start()
            ```
        """
        if self.state is not CallState.CREATED:
            raise SubcallError(f"{self.label} was already started")
        self._workdir = Path(tempfile.mkdtemp(prefix="subcall-"))
        try:
            self._process = WorkerProcess.spawn(self._launch_request(self._workdir))
        except OSError as exc:
            self._cleanup()
            raise InfraError(f"cannot start {self.label}: {exc}", reason="spawn") from exc
        except BaseException:
            self._cleanup()
            raise
        self.state = CallState.LAUNCHED
        if self.timeout_seconds is not None:
            self._deadline = time.monotonic() + self.timeout_seconds
        logger.debug("launched %s as pid %s", self.label, self._process.pid)
        return self

    def fileno(self) -> int:
        """Return a descriptor that turns readable when the process exits, or -1.

        Uses the process exit descriptor where the platform has one, else the
        control pipe until it reaches end-of-file.

        Example:
            ```python
            fd = call.fileno()
            ```
        """
        if self._process is None or self.done:
            return -1
        exit_fd = self._process.exit_fileno()
        if exit_fd >= 0:
            return exit_fd
        channel = self._process.channel
        if channel is not None and not channel.eof:
            return channel.fileno()
        return -1

    def is_ready(self) -> bool:
        """Collect the result if the process exited or timed out; never blocks.

        Example:
            ```python
            while not call.is_ready():
                do_other_work()
            ```
        """
        if self.done:
            return True
        if self._process is None:
            return False
        if self._process.channel is not None:
            self._process.channel.drain()
        # The pipe can close before the process exits; only an exit is final.
        if self._process.returncode is not None:
            self._finish()
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._stop("timeout")
            return True
        return False

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the call is done or `timeout` elapses.

        Example:
            ```python
            finished = call.wait(timeout=0.5)
            ```
        """
        if self.state is CallState.CREATED:
            self.start()
        return bool(poll([self], timeout))

    def kill(self) -> None:
        """Cancel the call, killing and reaping its process; no-op once done.

        Example:
            ```python
            call.kill()
            ```
        """
        if self.done:
            return
        if self._process is None:
            self._abandon("killed", None)
            return
        self._stop("killed")

    cancel = kill

    def _finish(self) -> None:
        """Reap the exited process and collect its result.

        Example:
            ```python
            call._finish()
            ```
        """
        assert self._process is not None
        try:
            self._collect(self._process.exit_status())
        finally:
            self._release()

    def _stop(self, reason: str) -> None:
        """Kill the process and record why.

        Example:
            ```python
            call._stop("timeout")
            ```
        """
        assert self._process is not None
        try:
            self._process.kill()
            self._abandon(reason, self._process.exit_status())
        finally:
            self._release()

    def _release(self) -> None:
        """Close the caller's pipes and remove the temp directory.

        Example:
            ```python
            call._release()
            ```
        """
        if self._process is not None:
            self._process.close()
        self._cleanup()

    def _cleanup(self) -> None:
        """Remove the temp directory if it still exists.

        Example:
            ```python
            call._cleanup()
            ```
        """
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            logger.debug("removed %s", self._workdir)
            self._workdir = None

    def __enter__(self) -> Self:
        """Start the call when used as a context manager.

        Example:
            ```python
            with OneShotCall(descriptor) as call:
                call.wait()
            ```
        """
        if self.state is CallState.CREATED:
            self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Kill the process if it is still running.

        Example:
            ```python
            with OneShotCall(descriptor) as call:
                pass
            ```
        """
        self.kill()


class OneShotCall(ProcessCall):
    """One call executed by its own short-lived worker process.

    Example:
        ```python
        call = OneShotCall(CallDescriptor.build(jobs.add, (1, 2))).start()
        print(call.result())
        ```
    """

    def __init__(
        self,
        descriptor: CallDescriptor,
        *,
        engine: ExecutionEngine | None = None,
        context: CallContext | None = None,
    ) -> None:
        """Prepare a call; nothing is spawned until `start()`.

        Example:
            ```python
            call = OneShotCall(descriptor, engine=LocalEngine())
            ```
        """
        super().__init__(label=descriptor.label, timeout_seconds=descriptor.options.timeout_seconds)
        self.descriptor = descriptor
        self._engine = engine or LocalEngine()
        self._context = context or capture_call_context(descriptor.label)
        self._outcome: Outcome | None = None
        self._decode_error: DecodeError | None = None

    def _launch_request(self, workdir: Path) -> LaunchRequest:
        """Write the payload and describe the worker command line.

        Example:
            ```python
            request = call._launch_request(workdir)
            ```
        """
        payload_path = encode(self.descriptor, workdir, name=PAYLOAD_NAME)
        options = self.descriptor.options
        return LaunchRequest(
            argv=self._engine.command(),
            workdir=workdir,
            cwd=options.cwd,
            env=options.child_env(),
            trailing_args=["once", str(payload_path), str(workdir / OUTCOME_NAME)],
        )

    def _collect(self, done: ProcessExit) -> None:
        """Read the outcome file or synthesize an infra error from the exit.

        Example:
            ```python
            call._collect(process.exit_status())
            ```
        """
        assert self._workdir is not None
        try:
            outcome = read_outcome(
                self._workdir / OUTCOME_NAME,
                self._context,
                exit_code=done.returncode,
            )
        except DecodeError as exc:
            logger.warning("%s produced an unreadable outcome: %s", self.label, exc)
            self._decode_error = exc
            self.state = CallState.CRASHED
            return
        if outcome is None:
            logger.warning("%s %s without an outcome", self.label, describe_exit(done.returncode))
            outcome = infra_outcome(
                f"worker {describe_exit(done.returncode)} before writing an outcome",
                reason="crashed",
                exit_code=done.returncode,
                stdout=done.stdout,
                stderr=done.stderr,
            )
        self._outcome = outcome
        if outcome.status is OutcomeStatus.INFRA_ERROR:
            self.state = CallState.CRASHED
        else:
            self.state = CallState.FINISHED

    def _abandon(self, reason: str, done: ProcessExit | None) -> None:
        """Record a timeout or cancellation as an infra error.

        Example:
            ```python
            call._abandon("killed", None)
            ```
        """
        if reason == "timeout":
            message = f"{self.label} timed out after {self.timeout_seconds}s"
            logger.warning("%s", message)
        else:
            message = f"{self.label} was cancelled"
        self._outcome = infra_outcome(
            message,
            reason=reason,
            exit_code=done.returncode if done is not None else None,
            stdout=done.stdout if done is not None else "",
            stderr=done.stderr if done is not None else "",
            timed_out=reason == "timeout",
        )
        self.state = CallState.CRASHED

    def outcome(self) -> Outcome:
        """Block until the call is done and return its outcome.

        Example:
            ```python
            outcome = call.outcome()
            ```
        """
        if self.state is CallState.CREATED:
            self.start()
        while not self.is_ready():
            poll([self])
        if self._decode_error is not None:
            raise self._decode_error
        assert self._outcome is not None
        return self._outcome

    def result(self) -> Any:
        """Block until the call is done and return its value or raise its error.

        Example:
            ```python
            value = call.result()
            ```
        """
        return self.outcome().result()


def run_async(
    func: Callable[..., Any],
    args: tuple[Any, ...] | list[Any] = (),
    kwargs: Mapping[str, Any] | None = None,
    *,
    options: CallOptions | None = None,
    options_file: str | None = None,
    engine: ExecutionEngine | None = None,
) -> OneShotCall:
    """Start `func(*args, **kwargs)` in a new worker and return its handle.

    Example:
        ```python
        call = run_async(jobs.slow_square, (12,))
        print(call.result())
        ```
    """
    descriptor = CallDescriptor.build(func, args, kwargs, resolve_options(options, options_file))
    call = OneShotCall(descriptor, engine=engine)
    call.start()
    return call


def run(
    func: Callable[..., Any],
    args: tuple[Any, ...] | list[Any] = (),
    kwargs: Mapping[str, Any] | None = None,
    *,
    options: CallOptions | None = None,
    options_file: str | None = None,
    engine: ExecutionEngine | None = None,
    last_error: LastError | None = None,
) -> Any:
    """Run `func(*args, **kwargs)` in a new worker and return its value.

    Raises `ApplicationError` when the function raised and `InfraError` when
    the worker failed or timed out.

    Example:
        ```python
        from subcall import run
        assert run(pow, (2, 10)) == 1024
        ```
    """
    with run_async(func, args, kwargs, options=options, options_file=options_file, engine=engine) as call:
        outcome = call.outcome()
    if last_error is not None:
        last_error.update(outcome)
    return outcome.result()


def run_code_async(
    code: str,
    input_data: Mapping[str, Any] | None = None,
    *,
    options: CallOptions | None = None,
    options_file: str | None = None,
    engine: ExecutionEngine | None = None,
) -> OneShotCall:
    """Start a code snippet in a new worker and return its handle.

    Example:
        ```python
        call = run_code_async("result = x + y", {"x": 1, "y": 2})
        ```
    """
    descriptor = CallDescriptor.snippet(code, input_data, resolve_options(options, options_file))
    call = OneShotCall(descriptor, engine=engine)
    call.start()
    return call


def run_code(
    code: str,
    input_data: Mapping[str, Any] | None = None,
    *,
    options: CallOptions | None = None,
    options_file: str | None = None,
    engine: ExecutionEngine | None = None,
    last_error: LastError | None = None,
) -> Any:
    """Execute a snippet in a new worker and return its `result` variable.

    Example:
        ```python
        assert run_code("result = x ** 0.5", {"x": 81}) == 9.0
        ```
    """
    with run_code_async(
        code,
        input_data,
        options=options,
        options_file=options_file,
        engine=engine,
    ) as call:
        outcome = call.outcome()
    if last_error is not None:
        last_error.update(outcome)
    return outcome.result()

"""Long-lived worker process driven through repeated call cycles."""

from __future__ import annotations

import logging
import selectors
import shutil
import signal
import tempfile
import time
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Mapping

from .codec import CallDescriptor, Outcome, encode, infra_outcome, read_outcome
from .errors import (
    DecodeError,
    InfraError,
    LastError,
    SessionBusyError,
    SessionDeadError,
    SessionStateError,
)
from .execution.engine import ExecutionEngine
from .execution.local_engine import LocalEngine
from .execution.process import WorkerProcess
from .execution.types import LaunchRequest
from .oneshot import describe_exit
from .options import CallOptions, resolve_options
from .poller import poll
from .trace import CallContext, capture_call_context

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Where a session is in its call cycle.

    `READY` is an idle session holding an outcome that has not been read.
    """

    IDLE = "idle"
    BUSY = "busy"
    READY = "ready"
    CRASHED = "crashed"
    CLOSED = "closed"


class PollStatus(str, Enum):
    """Answer of `Session.poll()`."""

    READY = "ready"
    TIMEOUT = "timeout"
    CRASHED = "crashed"
    OUTPUT = "output"


class Session:
    """A persistent worker that runs one call at a time.

    `call()` never blocks, `poll()` waits without consuming anything and
    `read()` hands over the outcome exactly once. `run()` fuses the three.
    Code snippets share one namespace for the session's lifetime.

    Example:
        ```python
        with Session(options=CallOptions(libpath=["/opt/jobs"])) as session:
            session.call(jobs.slow_square, 12)
            if session.poll(timeout=5) is PollStatus.READY:
                print(session.read().value)
            print(session.run(jobs.add, 1, 2))
        ```
    """

    def __init__(
        self,
        *,
        options: CallOptions | None = None,
        options_file: str | None = None,
        engine: ExecutionEngine | None = None,
        start: bool = True,
    ) -> None:
        """Configure a session and, by default, start its worker.

        Example:
            ```python
            session = Session(start=False)
            session.start()
            ```
        """
        self.options = resolve_options(options, options_file)
        self._engine = engine or LocalEngine()
        self._state = SessionState.CLOSED
        self._process: WorkerProcess | None = None
        self._workdir: Path | None = None
        self._next_id = 0
        self._pending_id: int | None = None
        self._pending_context: CallContext | None = None
        self._pending_label = ""
        self._deadline: float | None = None
        self._outcome: Outcome | None = None
        self._crash: Outcome | None = None
        self._output: list[tuple[str, str]] = []
        self._output_read = 0
        self._output_room = 0
        self._timeout: float | None = None
        self._decode_error: DecodeError | None = None
        if start:
            self.start()

    @property
    def state(self) -> SessionState:
        """Return the current state.

        Example:
            ```python
            assert session.state is SessionState.IDLE
            ```
        """
        return self._state

    @property
    def pending_call_id(self) -> int | None:
        """Return the id of the call in flight, if any.

        Example:
            ```python
            call_id = session.pending_call_id
            ```
        """
        return self._pending_id

    @property
    def deadline(self) -> float | None:
        """Return the monotonic instant at which the pending call times out.

        Example:
            ```python
            expires = session.deadline
            ```
        """
        return self._deadline if self._state is SessionState.BUSY else None

    @property
    def pid(self) -> int | None:
        """Return the worker process id while the worker is alive.

        Example:
            ```python
            os.kill(session.pid, signal.SIGKILL)
            ```
        """
        if self._process is None:
            return None
        return self._process.pid

    def start(self) -> None:
        """Spawn the worker and wait for its handshake.

        Raises `InfraError` if the worker dies or stays silent past
        `startup_timeout_seconds`.

        Example:
            ```python
            session.start()
            ```
        """
        if self._state not in (SessionState.CLOSED, SessionState.CRASHED):
            raise SessionStateError(f"session is already running ({self._state.value})")
        self._reset()
        self._workdir = Path(tempfile.mkdtemp(prefix="subcall-session-"))
        request = LaunchRequest(
            argv=self._engine.command(),
            workdir=self._workdir,
            cwd=self.options.cwd,
            env=self.options.child_env(),
            interactive=True,
            trailing_args=["session"],
        )
        try:
            self._process = WorkerProcess.spawn(request)
            self._await_hello()
        except OSError as exc:
            self._discard()
            raise InfraError(f"cannot start session worker: {exc}", reason="spawn") from exc
        except BaseException:
            self._discard()
            raise
        self._state = SessionState.IDLE
        logger.debug("session worker pid %s is ready", self._process.pid)

    def _await_hello(self) -> None:
        """Block until the worker announces itself on the control pipe.

        Example:
            ```python
            session._await_hello()
            ```
        """
        assert self._process is not None
        channel = self._process.channel
        assert channel is not None
        deadline = time.monotonic() + self.options.startup_timeout_seconds
        with selectors.DefaultSelector() as selector:
            selector.register(channel.fileno(), selectors.EVENT_READ)
            while True:
                if any(message["kind"] == "hello" for message in channel.drain()):
                    return
                if channel.eof:
                    done = self._process.exit_status()
                    raise InfraError(
                        f"session worker {describe_exit(done.returncode)} during startup",
                        reason="crashed",
                        exit_code=done.returncode,
                        stdout=done.stdout,
                        stderr=done.stderr,
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._process.kill()
                    done = self._process.exit_status()
                    raise InfraError(
                        "session worker did not start within "
                        f"{self.options.startup_timeout_seconds}s",
                        reason="timeout",
                        exit_code=done.returncode,
                        stdout=done.stdout,
                        stderr=done.stderr,
                        timed_out=True,
                    )
                selector.select(remaining)

    def _check_alive(self) -> None:
        """Fail fast when the session can no longer run calls.

        Example:
            ```python
            session._check_alive()
            ```
        """
        if self._state is SessionState.CRASHED:
            raise SessionDeadError("session worker crashed; start a new session", outcome=self._crash)
        if self._state is SessionState.CLOSED:
            raise SessionDeadError("session is closed")

    def submit(self, descriptor: CallDescriptor) -> int:
        """Send a call to the worker and return its id without waiting.

        Example:
            ```python
            call_id = session.submit(CallDescriptor.build(jobs.add, (1, 2)))
            ```
        """
        self._check_alive()
        self._pump()
        self._check_alive()
        if self._state is SessionState.BUSY:
            raise SessionBusyError(f"session already has call {self._pending_id} in flight")
        if self._state is SessionState.READY:
            raise SessionBusyError(f"outcome of call {self._pending_id} has not been read")

        assert self._process is not None and self._workdir is not None
        call_id = self._next_id + 1
        payload_path = encode(descriptor, self._workdir, name=f"call-{call_id}.payload")
        try:
            self._process.send(
                {
                    "op": "call",
                    "id": call_id,
                    "payload": str(payload_path),
                    "outcome": str(self._outcome_path(call_id)),
                }
            )
        except OSError as exc:
            payload_path.unlink(missing_ok=True)
            self._mark_crashed(f"session worker stopped accepting calls: {exc}")
            raise SessionDeadError("session worker crashed; start a new session", outcome=self._crash) from exc
        self._next_id = call_id
        self._pending_id = call_id
        self._pending_context = capture_call_context(descriptor.label)
        self._pending_label = descriptor.label
        self._output = []
        self._output_read = 0
        self._output_room = descriptor.options.max_output_kb * 1024
        self._timeout = descriptor.options.timeout_seconds
        self._deadline = time.monotonic() + self._timeout if self._timeout is not None else None
        self._state = SessionState.BUSY
        logger.debug("session pid %s running call %s (%s)", self._process.pid, call_id, descriptor.label)
        return call_id

    def call(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> int:
        """Start `func(*args, **kwargs)` in the worker without waiting.

        Example:
            ```python
            session.call(jobs.slow_square, 12)
            ```
        """
        return self.submit(CallDescriptor.build(func, args, kwargs, self.options))

    def call_code(self, code: str, input_data: Mapping[str, Any] | None = None) -> int:
        """Start a code snippet in the session namespace without waiting.

        Example:
            ```python
            session.call_code("total = total + x", {"x": 5})
            ```
        """
        return self.submit(CallDescriptor.snippet(code, input_data, self.options))

    def is_ready(self) -> bool:
        """Report whether `poll()` would return without waiting; never blocks.

        Example:
            ```python
            if session.is_ready():
                print(session.poll(0))
            ```
        """
        self._pump()
        if self._state in (SessionState.READY, SessionState.CRASHED, SessionState.CLOSED):
            return True
        return self._state is SessionState.BUSY and len(self._output) > self._output_read

    def fileno(self) -> int:
        """Return the control pipe descriptor while a call is in flight, else -1.

        An idle session has nothing to become ready for, so it offers no
        descriptor to the poller.

        Example:
            ```python
            fd = session.fileno()
            ```
        """
        if self._state is not SessionState.BUSY or self._process is None:
            return -1
        channel = self._process.channel
        if channel is None or channel.closed:
            return -1
        return channel.fileno()

    def poll(self, timeout: float | None = None) -> PollStatus:
        """Wait up to `timeout` seconds for the pending call; consumes nothing.

        Example:
            ```python
            status = session.poll(timeout=1.0)
            ```
        """
        if self._state is SessionState.CLOSED:
            raise SessionDeadError("session is closed")
        if self._state is SessionState.IDLE:
            raise SessionStateError("no call in flight to poll")
        poll([self], timeout)
        if self._state is SessionState.CRASHED:
            return PollStatus.CRASHED
        if self._state is SessionState.READY:
            return PollStatus.READY
        if len(self._output) > self._output_read:
            return PollStatus.OUTPUT
        return PollStatus.TIMEOUT

    def read(self) -> Outcome:
        """Hand over the outcome of the finished call, exactly once.

        Example:
            ```python
            outcome = session.read()
            ```
        """
        self._check_alive()
        self._pump()
        self._check_alive()
        if self._state is not SessionState.READY:
            raise SessionStateError(f"no outcome is ready to read (session is {self._state.value})")
        outcome, decode_error = self._outcome, self._decode_error
        self._outcome = None
        self._decode_error = None
        self._pending_id = None
        self._pending_context = None
        self._state = SessionState.IDLE
        if decode_error is not None:
            raise decode_error
        assert outcome is not None
        return outcome

    def read_output(self) -> str:
        """Drain the output the pending call has streamed so far.

        Example:
            ```python
            print(session.read_output(), end="")
            ```
        """
        self._check_alive()
        self._pump()
        text = "".join(text for _, text in self._output[self._output_read :])
        self._output_read = len(self._output)
        return text

    def wait(self, timeout: float | None = None) -> Outcome:
        """Block until the pending call finishes and read its outcome.

        A worker that crashed or timed out yields its infra-error outcome;
        the session is then crashed. Raises `TimeoutError` when `timeout`
        elapses first, leaving the call running.

        Example:
            ```python
            session.call(jobs.add, 1, 2)
            outcome = session.wait()
            ```
        """
        self._check_alive()
        give_up = None if timeout is None else time.monotonic() + timeout
        while True:
            self._pump()
            if self._state is SessionState.READY:
                return self.read()
            if self._state is SessionState.CRASHED:
                assert self._crash is not None
                return self._crash
            if self._state is not SessionState.BUSY:
                raise SessionStateError("no call in flight to wait for")
            remaining = None if give_up is None else give_up - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"call {self._pending_id} is still running")
            self._block(remaining)

    def _block(self, timeout: float | None) -> None:
        """Sleep until the control pipe has data, the call deadline or `timeout`.

        Example:
            ```python
            session._block(0.5)
            ```
        """
        instants = [t for t in (self._deadline,) if t is not None]
        if timeout is not None:
            instants.append(time.monotonic() + timeout)
        wait = max(0.0, min(instants) - time.monotonic()) if instants else None
        with selectors.DefaultSelector() as selector:
            selector.register(self.fileno(), selectors.EVENT_READ)
            selector.select(wait)

    def run_descriptor(self, descriptor: CallDescriptor, *, last_error: LastError | None = None) -> Any:
        """Submit a descriptor, wait for it and return its value.

        Example:
            ```python
            value = session.run_descriptor(CallDescriptor.build(jobs.add, (1, 2)))
            ```
        """
        self.submit(descriptor)
        outcome = self.wait()
        if last_error is not None:
            last_error.update(outcome)
        return outcome.result()

    def run(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        """Run `func(*args, **kwargs)` synchronously and return its value.

        Example:
            ```python
            assert session.run(jobs.add, 1, 2) == 3
            ```
        """
        return self.run_descriptor(CallDescriptor.build(func, args, kwargs, self.options))

    def run_code(self, code: str, input_data: Mapping[str, Any] | None = None) -> Any:
        """Run a snippet synchronously in the session namespace.

        Example:
            ```python
            session.run_code("counter = 0")
            assert session.run_code("counter += 1\nresult = counter") == 1
            ```
        """
        return self.run_descriptor(CallDescriptor.snippet(code, input_data, self.options))

    def interrupt(self) -> None:
        """Send SIGINT so the running call fails with KeyboardInterrupt.

        The session stays usable; the interrupted call ends as an
        application error.

        Example:
            ```python
            session.interrupt()
            ```
        """
        self._check_alive()
        if self._state is not SessionState.BUSY:
            raise SessionStateError("no call in flight to interrupt")
        assert self._process is not None
        self._process.signal(signal.SIGINT)

    def close(self, grace_seconds: float | None = None) -> None:
        """Shut the worker down; a busy worker is killed.

        Example:
            ```python
            session.close()
            ```
        """
        if self._state is SessionState.CLOSED:
            return
        process = self._process
        if process is not None and self._state is not SessionState.CRASHED:
            grace = self.options.grace_seconds if grace_seconds is None else grace_seconds
            if self._state is SessionState.BUSY:
                logger.warning("closing session pid %s with call %s in flight", process.pid, self._pending_id)
                process.kill()
            else:
                try:
                    process.send({"op": "close"})
                except OSError:
                    pass
                if process.wait(timeout=grace) is None:
                    process.terminate(grace)
        self._discard()
        self._state = SessionState.CLOSED

    def restart(self) -> None:
        """Replace the worker with a fresh one, dropping all session state.

        Example:
            ```python
            if session.state is SessionState.CRASHED:
                session.restart()
            ```
        """
        self.close()
        self.start()

    def _outcome_path(self, call_id: int) -> Path:
        """Return where the worker writes the outcome of one call.

        Example:
            ```python
            path = session._outcome_path(3)
            ```
        """
        assert self._workdir is not None
        return self._workdir / f"call-{call_id}.outcome"

    def _pump(self) -> None:
        """Apply pending control messages, exits and timeouts to the state.

        Example:
            ```python
            session._pump()
            ```
        """
        if self._process is None or self._state in (SessionState.CRASHED, SessionState.CLOSED):
            return
        assert self._process.channel is not None
        for message in self._process.channel.drain():
            if message.get("id") != self._pending_id or self._state is not SessionState.BUSY:
                continue
            if message["kind"] == "output":
                self._keep_output(str(message.get("stream", "stdout")), str(message.get("text", "")))
            elif message["kind"] == "done":
                self._collect()
        if self._state is SessionState.CRASHED:
            return
        if self._process.channel.eof or self._process.returncode is not None:
            self._mark_crashed("session worker exited unexpectedly")
            return
        if (
            self._state is SessionState.BUSY
            and self._deadline is not None
            and time.monotonic() >= self._deadline
        ):
            self._mark_crashed(
                f"{self._pending_label} timed out after {self._timeout}s",
                reason="timeout",
            )

    def _keep_output(self, stream: str, text: str) -> None:
        """Buffer streamed output up to the call's `max_output_kb` budget.

        Example:
            ```python
            session._keep_output("stdout", "step 1\\n")
            ```
        """
        if self._output_room <= 0 or not text:
            return
        encoded = text.encode("utf-8", errors="replace")
        if len(encoded) > self._output_room:
            text = encoded[: self._output_room].decode("utf-8", errors="ignore")
            encoded = encoded[: self._output_room]
        self._output_room -= len(encoded)
        self._output.append((stream, text))

    def _collect(self) -> None:
        """Read the outcome of the pending call and move to READY.

        Example:
            ```python
            session._collect()
            ```
        """
        assert self._pending_id is not None
        path = self._outcome_path(self._pending_id)
        try:
            outcome = read_outcome(path, self._pending_context)
        except DecodeError as exc:
            # The worker is healthy; only this outcome is lost.
            logger.warning("call %s produced an unreadable outcome: %s", self._pending_id, exc)
            outcome = None
            self._decode_error = exc
        finally:
            path.unlink(missing_ok=True)
        if outcome is None and self._decode_error is None:
            self._mark_crashed("session worker reported a call without writing its outcome")
            return
        self._outcome = outcome
        self._deadline = None
        self._state = SessionState.READY

    def _mark_crashed(self, message: str, *, reason: str = "crashed") -> None:
        """Turn the session into a terminal CRASHED state with an infra outcome.

        Example:
            ```python
            session._mark_crashed("session worker exited unexpectedly")
            ```
        """
        assert self._process is not None
        returncode = self._process.kill()
        streamed = {
            name: "".join(text for stream, text in self._output if stream == name)
            for name in ("stdout", "stderr")
        }
        raw_stdout = self._process.read_stream("stdout")
        raw_stderr = self._process.read_stream("stderr")
        if reason == "crashed":
            message = f"{message}: worker {describe_exit(returncode)}"
        logger.warning("session pid %s: %s", self._process.pid, message)
        self._crash = infra_outcome(
            message,
            reason=reason,
            exit_code=returncode,
            stdout=streamed["stdout"] + raw_stdout,
            stderr=streamed["stderr"] + raw_stderr,
            timed_out=reason == "timeout",
        )
        self._outcome = None
        self._deadline = None
        self._state = SessionState.CRASHED
        self._discard()

    def _discard(self) -> None:
        """Release pipes and remove the session's temp directory.

        Example:
            ```python
            session._discard()
            ```
        """
        if self._process is not None:
            if self._process.returncode is None:
                self._process.kill()
            self._process.close()
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None

    def _reset(self) -> None:
        """Forget everything about the previous worker.

        Example:
            ```python
            session._reset()
            ```
        """
        self._process = None
        self._pending_id = None
        self._pending_context = None
        self._deadline = None
        self._outcome = None
        self._crash = None
        self._output = []
        self._output_read = 0
        self._output_room = 0
        self._decode_error = None

    @property
    def crash_outcome(self) -> Outcome | None:
        """Return the infra-error outcome that crashed the session, if any.

        Example:
            ```python
            print(session.crash_outcome.error)
            ```
        """
        return self._crash

    def __enter__(self) -> "Session":
        """Start the worker if needed and return the session.

        Example:
            ```python
            with Session() as session:
                session.run(jobs.add, 1, 2)
            ```
        """
        if self._state is SessionState.CLOSED and self._process is None:
            self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the session.

        Example:
            ```python
            with Session() as session:
                pass
            ```
        """
        self.close()

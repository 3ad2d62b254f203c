"""Error taxonomy shared by one-shot calls, sessions and the codec."""

from __future__ import annotations

from functools import cached_property
from typing import TYPE_CHECKING, Any, Sequence

from .trace import CallContext, CombinedTrace, Frame, merge_traces

if TYPE_CHECKING:
    from .codec import Outcome


class SubcallError(Exception):
    """Base class for every error raised by subcall.

    `origin` tells which side of the process boundary the failure came from.

    Example:
        ```python
        try:
            run(jobs.fail)
        except SubcallError as exc:
            print(exc.origin)
        ```
    """

    origin = "caller"


class EncodeError(SubcallError):
    """A call descriptor could not be serialized into a payload.

    Example:
        ```python
        raise EncodeError("lambda functions cannot be sent to a worker")
        ```
    """


class DecodeError(SubcallError):
    """A payload or outcome record was truncated or malformed.

    Example:
        ```python
        raise DecodeError("outcome record is truncated")
        ```
    """


class ApplicationError(SubcallError):
    """The invoked callable raised inside the worker.

    Example:
        ```python
        try:
            run(jobs.fail)
        except ApplicationError as exc:
            print(exc.trace.format())
        ```
    """

    origin = "worker"

    def __init__(
        self,
        message: str,
        *,
        error_type: str,
        tags: Sequence[str] = (),
        worker_stack: Sequence[Frame] = (),
        worker_traceback: str = "",
        context: CallContext | None = None,
        exception: BaseException | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Store the worker-side error data and the caller context.

        Example:
            ```python
            err = ApplicationError("boom", error_type="ValueError")
            ```
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.tags = tuple(tags)
        self.worker_stack = tuple(worker_stack)
        self.worker_traceback = worker_traceback
        self.context = context
        self.exception = exception
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        """Render the remote error the way Python prints exceptions.

        Example:
            ```python
            assert str(err) == "ValueError: boom"
            ```
        """
        if not self.message:
            return self.error_type
        return f"{self.error_type}: {self.message}"

    @property
    def caller_stack(self) -> tuple[Frame, ...]:
        """Return the caller-side frames captured when the call was issued.

        Example:
            ```python
            frames = err.caller_stack
            ```
        """
        if self.context is None:
            return ()
        return self.context.frames

    @cached_property
    def trace(self) -> CombinedTrace:
        """Build the combined caller/worker trace on first access.

        Example:
            ```python
            print(err.trace.format())
            ```
        """
        return merge_traces(self.context, self.worker_stack)

    def attach_context(self, context: CallContext | None) -> None:
        """Bind the caller context once the outcome reaches the caller.

        Example:
            ```python
            err.attach_context(capture_call_context("subcall jobs.add"))
            ```
        """
        self.context = context
        self.__dict__.pop("trace", None)

    def is_a(self, tag: str) -> bool:
        """Tell whether the remote exception class hierarchy includes `tag`.

        Example:
            ```python
            assert err.is_a("ArithmeticError")
            ```
        """
        return tag in self.tags


class InfraError(SubcallError):
    """The worker crashed, timed out or exited before producing an outcome.

    Example:
        ```python
        raise InfraError("worker exited with status -9", exit_code=-9, reason="crashed")
        ```
    """

    origin = "worker"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "crashed",
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        """Store the exit status and whatever partial output was captured.

        Example:
            ```python
            err = InfraError("timed out", reason="timeout", timed_out=True)
            ```
        """
        super().__init__(message)
        self.reason = reason
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out


class SessionStateError(SubcallError):
    """A session operation does not fit the session's current state.

    Example:
        ```python
        raise SessionStateError("no outcome is ready to read")
        ```
    """


class SessionBusyError(SessionStateError):
    """A call was issued while another call is still outstanding.

    Example:
        ```python
        raise SessionBusyError("session already has call 3 in flight")
        ```
    """


class SessionDeadError(SessionStateError):
    """The session's worker crashed or the session was closed.

    Example:
        ```python
        raise SessionDeadError("session crashed", outcome=crash_outcome)
        ```
    """

    def __init__(self, message: str, *, outcome: "Outcome | None" = None) -> None:
        """Keep the infra-error outcome that killed the session, if any.

        Example:
            ```python
            err = SessionDeadError("session is closed")
            ```
        """
        super().__init__(message)
        self.outcome = outcome


class LastError:
    """Caller-owned slot for the most recent failed call.

    Set on failure, cleared by the next successful call.

    Example:
        ```python
        last = LastError()
        last.update(call.outcome())
        if last.error is not None:
            print(last.error)
        ```
    """

    def __init__(self) -> None:
        """Start with no recorded failure.

        Example:
            ```python
            last = LastError()
            ```
        """
        self.error: ApplicationError | InfraError | None = None

    def update(self, outcome: "Outcome") -> Any:
        """Record or clear the failure carried by an outcome.

        Example:
            ```python
            last.update(outcome)
            ```
        """
        self.error = outcome.error
        return outcome

    def clear(self) -> None:
        """Forget the recorded failure.

        Example:
            ```python
            last.clear()
            ```
        """
        self.error = None

"""Call descriptors, payload encoding and outcome decoding."""

from __future__ import annotations

import os
import pickle
import tempfile
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .errors import ApplicationError, DecodeError, EncodeError, InfraError
from .options import CallOptions
from .trace import CallContext, Frame
from .worker import FORMAT_VERSION, OUTCOME_FORMAT, PAYLOAD_FORMAT

_STATUSES = {"ok", "error", "infra"}


class OutcomeStatus(str, Enum):
    """How a call ended."""

    OK = "ok"
    APPLICATION_ERROR = "application-error"
    INFRA_ERROR = "infra-error"


@dataclass(frozen=True, slots=True)
class CallDescriptor:
    """One unit of work: a callable with arguments, or a code snippet.

    Callables travel by reference, so they must be importable in the worker.
    Use `functools.partial` to carry explicitly captured values.

    Example:
        ```python
        descriptor = CallDescriptor.build(math.pow, (2, 10))
        snippet = CallDescriptor.snippet("result = x * 2", {"x": 21})
        ```
    """

    func: Callable[..., Any] | None = None
    args: tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)
    code: str | None = None
    input_data: Mapping[str, Any] | None = None
    options: CallOptions = field(default_factory=CallOptions)

    def __post_init__(self) -> None:
        """Require exactly one of `func` and `code`.

        Example:
            ```python
            CallDescriptor(func=len, args=([1, 2],))
            ```
        """
        if (self.func is None) == (self.code is None):
            raise ValueError("CallDescriptor needs exactly one of 'func' or 'code'")
        if self.func is not None and not callable(self.func):
            raise TypeError(f"'func' must be callable, got {type(self.func).__name__}")

    @classmethod
    def build(
        cls,
        func: Callable[..., Any],
        args: tuple[Any, ...] | list[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        options: CallOptions | None = None,
    ) -> "CallDescriptor":
        """Describe a function call.

        Example:
            ```python
            descriptor = CallDescriptor.build(jobs.add, (1, 2))
            ```
        """
        return cls(
            func=func,
            args=tuple(args),
            kwargs=dict(kwargs or {}),
            options=options or CallOptions(),
        )

    @classmethod
    def snippet(
        cls,
        code: str,
        input_data: Mapping[str, Any] | None = None,
        options: CallOptions | None = None,
    ) -> "CallDescriptor":
        """Describe a code snippet whose value is its `result` variable.

        Example:
            ```python
            descriptor = CallDescriptor.snippet("result = 2 + 2")
            ```
        """
        return cls(
            code=code,
            input_data=dict(input_data or {}),
            options=options or CallOptions(),
        )

    @property
    def label(self) -> str:
        """Return a short human label used for the trace boundary.

        Example:
            ```python
            assert CallDescriptor.build(len).label == "subcall builtins.len"
            ```
        """
        if self.code is not None:
            return "subcall <code>"
        func = self.func
        module = getattr(func, "__module__", None) or "?"
        name = getattr(func, "__qualname__", None) or type(func).__name__
        return f"subcall {module}.{name}"


@dataclass(slots=True)
class Outcome:
    """Result of one call as seen by the caller.

    Example:
        ```python
        outcome = call.outcome()
        if outcome.ok:
            print(outcome.value)
        ```
    """

    status: OutcomeStatus
    value: Any = None
    error: ApplicationError | InfraError | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        """Tell whether the call returned normally.

        Example:
            ```python
            assert outcome.ok
            ```
        """
        return self.status is OutcomeStatus.OK

    def result(self) -> Any:
        """Return the value, or raise the application or infra error.

        Example:
            ```python
            value = outcome.result()
            ```
        """
        if self.error is not None:
            raise self.error
        return self.value


def infra_outcome(
    message: str,
    *,
    reason: str,
    exit_code: int | None,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
) -> Outcome:
    """Synthesize an infra-error outcome from whatever the caller observed.

    Example:
        ```python
        outcome = infra_outcome("worker was killed", reason="killed", exit_code=-9)
        ```
    """
    error = InfraError(
        message,
        reason=reason,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
    )
    return Outcome(
        status=OutcomeStatus.INFRA_ERROR,
        error=error,
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
    )


def _call_record(descriptor: CallDescriptor) -> dict[str, Any]:
    """Return the inner call record pickled into a payload.

    Example:
        ```python
        record = _call_record(CallDescriptor.build(len, ([1],)))
        ```
    """
    if descriptor.code is not None:
        return {
            "kind": "code",
            "code": descriptor.code,
            "input_data": dict(descriptor.input_data or {}),
        }
    return {
        "kind": "func",
        "func": descriptor.func,
        "args": tuple(descriptor.args),
        "kwargs": dict(descriptor.kwargs),
    }


def encode_bytes(descriptor: CallDescriptor) -> bytes:
    """Serialize a descriptor into payload bytes.

    Example:
        ```python
        data = encode_bytes(CallDescriptor.build(len, ([1, 2],)))
        ```
    """
    try:
        call = pickle.dumps(_call_record(descriptor))
    except Exception as exc:
        raise EncodeError(
            f"cannot serialize {descriptor.label}: {exc}. Callables must be importable "
            "by reference (module-level functions); pass captured values explicitly, "
            "e.g. with functools.partial."
        ) from exc
    record = {
        "format": PAYLOAD_FORMAT,
        "version": FORMAT_VERSION,
        "options": descriptor.options.worker_preamble(),
        "call": call,
    }
    return pickle.dumps(record)


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes through a temp file and rename so readers see all or nothing.

    Example:
        ```python
        write_atomic(Path("/tmp/out.pkl"), b"...")
        ```
    """
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def encode(
    descriptor: CallDescriptor,
    directory: str | Path | None = None,
    *,
    name: str | None = None,
) -> Path:
    """Write a payload file for a descriptor and return its path.

    The caller owns the file and must remove it once the worker is done.

    Example:
        ```python
        path = encode(CallDescriptor.build(jobs.add, (1, 2)), workdir)
        ```
    """
    data = encode_bytes(descriptor)
    if directory is None:
        fd, raw_path = tempfile.mkstemp(prefix="subcall-payload-", suffix=".pkl")
        os.close(fd)
        path = Path(raw_path)
    else:
        path = Path(directory) / (name or f"payload-{uuid.uuid4().hex}.pkl")
    write_atomic(path, data)
    return path


def _require(record: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    """Fetch a typed field from an outcome record or fail with DecodeError.

    Example:
        ```python
        status = _require(record, "status", str)
        ```
    """
    value = record.get(key)
    if not isinstance(value, kind):
        raise DecodeError(f"outcome field '{key}' is missing or has the wrong type")
    return value


def _decode_error(
    error: Any,
    context: CallContext | None,
    stdout: str,
    stderr: str,
) -> ApplicationError:
    """Turn a worker error record into an ApplicationError.

    Example:
        ```python
        err = _decode_error(record["error"], context, "", "")
        ```
    """
    if not isinstance(error, Mapping):
        raise DecodeError("error outcome has no error record")
    try:
        stack = [Frame.from_record(item) for item in error.get("stack") or []]
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"malformed worker stack: {exc}") from exc
    exception: BaseException | None = None
    raw_exception = error.get("exception")
    if isinstance(raw_exception, bytes):
        try:
            loaded = pickle.loads(raw_exception)
        except Exception:
            loaded = None
        if isinstance(loaded, BaseException):
            exception = loaded
    return ApplicationError(
        str(error.get("message", "")),
        error_type=str(error.get("type", "Exception")),
        tags=[str(tag) for tag in error.get("tags") or []],
        worker_stack=stack,
        worker_traceback=str(error.get("traceback", "")),
        context=context,
        exception=exception,
        stdout=stdout,
        stderr=stderr,
    )


def decode(
    data: bytes,
    context: CallContext | None = None,
    *,
    exit_code: int | None = None,
) -> Outcome:
    """Decode outcome bytes written by a worker.

    Example:
        ```python
        outcome = decode(Path(outcome_path).read_bytes())
        ```
    """
    try:
        record = pickle.loads(data)
    except Exception as exc:
        raise DecodeError(f"outcome is truncated or not a pickle: {exc}") from exc
    if not isinstance(record, Mapping) or record.get("format") != OUTCOME_FORMAT:
        raise DecodeError("data is not a subcall outcome record")
    if record.get("version") != FORMAT_VERSION:
        raise DecodeError(f"unsupported outcome version {record.get('version')!r}")
    status = _require(record, "status", str)
    if status not in _STATUSES:
        raise DecodeError(f"unknown outcome status {status!r}")
    stdout = _require(record, "stdout", str)
    stderr = _require(record, "stderr", str)

    if status == "ok":
        raw_value = _require(record, "value", bytes)
        try:
            value = pickle.loads(raw_value)
        except Exception as exc:
            raise DecodeError(f"result value cannot be loaded in the caller: {exc}") from exc
        return Outcome(
            OutcomeStatus.OK,
            value=value,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )

    if status == "error":
        error = _decode_error(record.get("error"), context, stdout, stderr)
        return Outcome(
            OutcomeStatus.APPLICATION_ERROR,
            error=error,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )

    error_record = record.get("error")
    if not isinstance(error_record, Mapping):
        raise DecodeError("infra outcome has no error record")
    return infra_outcome(
        f"worker could not run the payload: {error_record.get('message', '')}",
        reason="payload",
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr or str(error_record.get("traceback", "")),
    )


def read_outcome(
    path: str | Path,
    context: CallContext | None = None,
    *,
    exit_code: int | None = None,
) -> Outcome | None:
    """Read and decode an outcome file, or return None when it was never written.

    Example:
        ```python
        outcome = read_outcome(workdir / "outcome.pkl", context, exit_code=0)
        ```
    """
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return None
    return decode(data, context, exit_code=exit_code)

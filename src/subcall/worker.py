"""Bootstrap run inside every worker process.

This file is executed as a plain script by the worker interpreter, which may
not have subcall (or anything beyond the standard library) installed. Keep it
standalone: no imports from the rest of the package. `subcall.codec` imports
the format constants below, so both sides always agree on them.
"""

from __future__ import annotations

import argparse
import contextlib
import importlib
import io
import json
import linecache
import os
import pickle
import signal
import sys
import traceback
from typing import Any, Callable, Iterator

PAYLOAD_FORMAT = "subcall/payload"
OUTCOME_FORMAT = "subcall/outcome"
FORMAT_VERSION = 1
INFRA_EXIT_CODE = 70
CODE_FILENAME = "<subcall-code>"

_BOOTSTRAP_FILE = os.path.abspath(__file__)

Forward = Callable[[str, str], None]


class PayloadError(Exception):
    """The payload file could not be turned into a call."""


class ResultSerializationError(Exception):
    """The call returned a value that cannot be pickled."""


class _Channel:
    """JSON-lines writer for the control pipe handed over by the caller."""

    def __init__(self, fd: int | None) -> None:
        self._stream = None
        if fd is not None:
            os.set_inheritable(fd, False)
            self._stream = os.fdopen(fd, "w", encoding="utf-8", buffering=1)

    def send(self, kind: str, **fields: Any) -> None:
        if self._stream is None:
            return
        self._stream.write(json.dumps({"kind": kind, **fields}, default=str) + "\n")
        self._stream.flush()


def _truncate(text: str, limit: int) -> str:
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


class _TeeStream(io.StringIO):
    def __init__(self, name: str, forward: Forward | None, limit: int) -> None:
        super().__init__()
        self._name = name
        self._forward = forward
        self._room = limit

    def write(self, text: str) -> int:
        written = super().write(text)
        if self._forward is not None and text and self._room > 0:
            chunk = _truncate(text, self._room)
            self._room -= len(chunk.encode("utf-8", errors="replace"))
            if chunk:
                self._forward(self._name, chunk)
        return written


def _inject_input_keys(namespace: dict[str, Any], input_data: Any) -> None:
    """
    Convenience: expose input_data keys as top-level variables when safe.

    Example: input_data={"x": 9} enables snippet code `result = x ** 0.5`.
    """
    if not isinstance(input_data, dict):
        return
    reserved = {"__builtins__", "__name__", "input_data", "result"}
    for key, value in input_data.items():
        key_str = str(key)
        if not key_str.isidentifier():
            continue
        if key_str in reserved or key_str.startswith("_"):
            continue
        namespace[key_str] = value


def _normalize_system_exit(exit_code: Any) -> tuple[bool, str | None]:
    if exit_code in (None, 0):
        return True, None
    return False, f"SystemExit: {exit_code}"


def _load_payload(path: str) -> dict[str, Any]:
    try:
        with open(path, "rb") as handle:
            record = pickle.load(handle)
    except Exception as exc:
        raise PayloadError(f"cannot read payload {path}: {exc}") from exc
    if not isinstance(record, dict) or record.get("format") != PAYLOAD_FORMAT:
        raise PayloadError(f"{path} is not a subcall payload")
    if record.get("version") != FORMAT_VERSION:
        raise PayloadError(f"unsupported payload version {record.get('version')!r}")
    with contextlib.suppress(OSError):
        os.unlink(path)
    return record


@contextlib.contextmanager
def _scoped_options(options: dict[str, Any]) -> Iterator[None]:
    for entry in reversed(options.get("libpath") or []):
        if entry not in sys.path:
            sys.path.insert(0, entry)
    for module in options.get("preload") or []:
        importlib.import_module(module)

    previous_cwd = os.getcwd()
    overrides = options.get("env") or {}
    saved_env = {key: os.environ.get(key) for key in overrides}
    if options.get("cwd"):
        os.chdir(options["cwd"])
    os.environ.update(overrides)
    try:
        yield
    finally:
        os.chdir(previous_cwd)
        for key, value in saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


@contextlib.contextmanager
def _sigint_raises(enabled: bool) -> Iterator[None]:
    # Outside this block a session worker ignores SIGINT.
    if not enabled:
        yield
        return
    signal.signal(signal.SIGINT, signal.default_int_handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, signal.SIG_IGN)


def _worker_frames(tb: Any) -> list[tuple[str, int | None, str, str | None]]:
    frames = []
    for summary in traceback.extract_tb(tb):
        if os.path.abspath(summary.filename) == _BOOTSTRAP_FILE:
            continue
        frames.append((summary.filename, summary.lineno, summary.name, summary.line))
    return frames


def _error_record(exc: BaseException, message: str | None = None) -> dict[str, Any]:
    cls = type(exc)
    try:
        exception_bytes: bytes | None = pickle.dumps(exc)
    except Exception:
        exception_bytes = None
    return {
        "type": cls.__name__,
        "module": cls.__module__,
        "message": message if message is not None else str(exc),
        "tags": [klass.__name__ for klass in cls.__mro__ if klass is not object],
        "stack": _worker_frames(exc.__traceback__),
        "traceback": "".join(traceback.format_exception(cls, exc, exc.__traceback__)),
        "exception": exception_bytes,
    }


def _outcome_record(
    status: str,
    *,
    value: bytes | None = None,
    error: dict[str, Any] | None = None,
    stdout: str = "",
    stderr: str = "",
) -> dict[str, Any]:
    return {
        "format": OUTCOME_FORMAT,
        "version": FORMAT_VERSION,
        "status": status,
        "value": value,
        "error": error,
        "stdout": stdout,
        "stderr": stderr,
    }


def _invoke(call: dict[str, Any], namespace: dict[str, Any]) -> Any:
    if call.get("kind") == "code":
        source = call["code"]
        linecache.cache[CODE_FILENAME] = (
            len(source),
            None,
            source.splitlines(keepends=True),
            CODE_FILENAME,
        )
        byte_code = compile(source, CODE_FILENAME, "exec")
        namespace["input_data"] = call.get("input_data")
        namespace["result"] = None
        _inject_input_keys(namespace, call.get("input_data"))
        exec(byte_code, namespace, namespace)
        return namespace.get("result")
    func = call["func"]
    return func(*call.get("args", ()), **call.get("kwargs", {}))


def execute_payload(
    payload_path: str,
    namespace: dict[str, Any],
    forward: Forward | None = None,
    *,
    interruptible: bool = False,
) -> dict[str, Any]:
    """Run one payload and return the outcome record; never raises for user errors.

    With `interruptible`, SIGINT raises KeyboardInterrupt only while the call
    itself runs, where it becomes an application error.
    """
    try:
        record = _load_payload(payload_path)
        options = record.get("options") or {}
    except PayloadError as exc:
        return _outcome_record("infra", error=_error_record(exc))

    max_output_bytes = int(options.get("max_output_kb", 1024)) * 1024
    stdout_buffer = _TeeStream("stdout", forward, max_output_bytes)
    stderr_buffer = _TeeStream("stderr", forward, max_output_bytes)

    try:
        with _scoped_options(options):
            try:
                call = pickle.loads(record["call"])
            except Exception as exc:
                raise PayloadError(f"cannot load call: {type(exc).__name__}: {exc}") from exc

            status = "ok"
            value: Any = None
            error: dict[str, Any] | None = None
            try:
                with (
                    contextlib.redirect_stdout(stdout_buffer),
                    contextlib.redirect_stderr(stderr_buffer),
                    _sigint_raises(interruptible),
                ):
                    value = _invoke(call, namespace)
            except SystemExit as exc:
                # Preserve Python semantics: non-zero/str exits are failures.
                ok, message = _normalize_system_exit(exc.code)
                if not ok:
                    status, error = "error", _error_record(exc, message)
                    if isinstance(exc.code, str):
                        stderr_buffer.write(f"{exc.code}\n")
            except (Exception, KeyboardInterrupt) as exc:
                status, error = "error", _error_record(exc)
    except Exception as exc:
        return _outcome_record(
            "infra",
            error=_error_record(exc),
            stdout=_truncate(stdout_buffer.getvalue(), max_output_bytes),
            stderr=_truncate(stderr_buffer.getvalue(), max_output_bytes),
        )

    value_bytes: bytes | None = None
    if status == "ok":
        try:
            value_bytes = pickle.dumps(value)
        except Exception as exc:
            failure = ResultSerializationError(
                f"cannot pickle result of type {type(value).__name__}: {exc}"
            )
            status, error = "error", _error_record(failure)

    return _outcome_record(
        status,
        value=value_bytes,
        error=error,
        stdout=_truncate(stdout_buffer.getvalue(), max_output_bytes),
        stderr=_truncate(stderr_buffer.getvalue(), max_output_bytes),
    )


def write_outcome(path: str, record: dict[str, Any]) -> None:
    """Write an outcome record so readers never observe a partial file."""
    tmp_path = f"{path}.tmp-{os.getpid()}"
    with open(tmp_path, "wb") as handle:
        pickle.dump(record, handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _echo_to_process_streams(stream: str, text: str) -> None:
    target = sys.__stdout__ if stream == "stdout" else sys.__stderr__
    if target is not None:
        target.write(text)


def run_once(payload_path: str, outcome_path: str, channel: _Channel) -> int:
    record = execute_payload(payload_path, {"__name__": "__subcall__"}, _echo_to_process_streams)
    write_outcome(outcome_path, record)
    channel.send("done")
    if record["status"] == "infra":
        sys.stderr.write(record["error"]["traceback"])
        return INFRA_EXIT_CODE
    return 0


def serve(channel: _Channel) -> int:
    # Commands keep the original stdin; user code sees an empty one.
    commands = os.fdopen(os.dup(0), "r", encoding="utf-8")
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    sys.stdin = open(os.devnull, encoding="utf-8")

    namespace: dict[str, Any] = {"__name__": "__subcall__"}
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    channel.send("hello", pid=os.getpid())
    for line in commands:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        op = request.get("op")
        if op == "close":
            break
        if op != "call":
            raise ValueError(f"unknown session op {op!r}")
        call_id = request["id"]

        def forward(stream: str, text: str, call_id: int = call_id) -> None:
            channel.send("output", id=call_id, stream=stream, text=text)

        record = execute_payload(request["payload"], namespace, forward, interruptible=True)
        write_outcome(request["outcome"], record)
        channel.send("done", id=call_id)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="subcall-worker")
    parser.add_argument("--control-fd", type=int, default=None)
    sub = parser.add_subparsers(dest="mode", required=True)
    once = sub.add_parser("once")
    once.add_argument("payload")
    once.add_argument("outcome")
    sub.add_parser("session")
    args = parser.parse_args(argv)

    # Running as a script puts this package directory first on sys.path,
    # where trace.py would shadow the stdlib module of the same name.
    if sys.path and os.path.abspath(sys.path[0]) == os.path.dirname(_BOOTSTRAP_FILE):
        del sys.path[0]

    channel = _Channel(args.control_fd)
    if args.mode == "once":
        return run_once(args.payload, args.outcome, channel)
    return serve(channel)


if __name__ == "__main__":
    raise SystemExit(main())

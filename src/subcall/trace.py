"""Caller/worker stack capture and the combined trace built from both sides."""

from __future__ import annotations

import os
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

CALLER = "caller"
BOUNDARY = "boundary"
WORKER = "worker"

_PACKAGE_DIR = str(Path(__file__).resolve().parent)


@dataclass(frozen=True, slots=True)
class Frame:
    """One stack frame from either side of the process boundary.

    Example:
        ```python
        frame = Frame("jobs.py", 12, "fail", "raise ValueError(x)", side="worker")
        ```
    """

    filename: str
    lineno: int | None
    name: str
    line: str | None = None
    side: str = CALLER

    @classmethod
    def from_record(cls, record: Sequence[object], side: str = WORKER) -> "Frame":
        """Build a frame from a worker `(filename, lineno, name, line)` record.

        Example:
            ```python
            frame = Frame.from_record(("jobs.py", 3, "boom", "1 / 0"))
            ```
        """
        filename, lineno, name, line = record
        return cls(
            filename=str(filename),
            lineno=int(lineno) if isinstance(lineno, int) else None,
            name=str(name),
            line=str(line) if line else None,
            side=side,
        )

    def location(self) -> str:
        """Return a `file:line` label for this frame.

        Example:
            ```python
            assert Frame("a.py", 3, "f").location() == "a.py:3"
            ```
        """
        if self.lineno is None:
            return self.filename
        return f"{self.filename}:{self.lineno}"


@dataclass(frozen=True, slots=True)
class CallContext:
    """Caller-side stack captured when a call is issued.

    `frames` runs outermost first and excludes the call site itself, which
    is kept separately so the merger can label the boundary with it.

    Example:
        ```python
        context = capture_call_context("subcall jobs.add")
        ```
    """

    frames: tuple[Frame, ...]
    call_site: Frame | None
    label: str


@dataclass(frozen=True, slots=True)
class CombinedTrace:
    """Caller frames, one boundary frame, then worker frames.

    Example:
        ```python
        trace = merge_traces(context, worker_frames)
        print(trace.format())
        ```
    """

    frames: tuple[Frame, ...]

    def __len__(self) -> int:
        """Return the total number of frames.

        Example:
            ```python
            count = len(trace)
            ```
        """
        return len(self.frames)

    @property
    def caller_frames(self) -> tuple[Frame, ...]:
        """Return the frames captured in the calling process.

        Example:
            ```python
            outer = trace.caller_frames
            ```
        """
        return tuple(frame for frame in self.frames if frame.side == CALLER)

    @property
    def boundary(self) -> Frame:
        """Return the synthetic frame marking the process boundary.

        Example:
            ```python
            print(trace.boundary.name)
            ```
        """
        for frame in self.frames:
            if frame.side == BOUNDARY:
                return frame
        raise LookupError("combined trace has no boundary frame")

    @property
    def worker_frames(self) -> tuple[Frame, ...]:
        """Return the frames captured inside the worker.

        Example:
            ```python
            inner = trace.worker_frames
            ```
        """
        return tuple(frame for frame in self.frames if frame.side == WORKER)

    def format(self) -> str:
        """Render the trace in the familiar traceback layout.

        Example:
            ```python
            text = trace.format()
            ```
        """
        lines = ["Traceback (most recent call last):"]
        for frame in self.frames:
            if frame.side == BOUNDARY:
                lines.append(f"  --- {frame.name} at {frame.location()} ---")
                continue
            lines.append(f'  File "{frame.filename}", line {frame.lineno}, in {frame.name}')
            if frame.line:
                lines.append(f"    {frame.line.strip()}")
        return "\n".join(lines) + "\n"


def _is_internal(filename: str) -> bool:
    """Tell whether a frame belongs to this package.

    Example:
        ```python
        _is_internal(__file__)
        ```
    """
    path = str(Path(filename).resolve())
    return path == _PACKAGE_DIR or path.startswith(_PACKAGE_DIR + os.sep)


def capture_call_context(label: str) -> CallContext:
    """Capture the caller stack down to the frame that issued a call.

    Trailing frames inside this package are dropped; the last frame left is
    the call site.

    Example:
        ```python
        context = capture_call_context("subcall jobs.add")
        ```
    """
    stack = [
        Frame(fs.filename, fs.lineno, fs.name, fs.line, side=CALLER)
        for fs in traceback.extract_stack()
    ]
    while stack and _is_internal(stack[-1].filename):
        stack.pop()
    if not stack:
        return CallContext(frames=(), call_site=None, label=label)
    return CallContext(frames=tuple(stack[:-1]), call_site=stack[-1], label=label)


def merge_traces(context: CallContext | None, worker_frames: Iterable[Frame]) -> CombinedTrace:
    """Splice caller frames, a boundary frame and worker frames into one trace.

    Example:
        ```python
        trace = merge_traces(context, [Frame("jobs.py", 3, "boom", side="worker")])
        ```
    """
    if context is None:
        context = CallContext(frames=(), call_site=None, label="subcall")
    site = context.call_site
    boundary = Frame(
        filename=site.filename if site is not None else "<unknown>",
        lineno=site.lineno if site is not None else None,
        name=context.label,
        line=site.line if site is not None else None,
        side=BOUNDARY,
    )
    inner = tuple(
        frame if frame.side == WORKER
        else Frame(frame.filename, frame.lineno, frame.name, frame.line, WORKER)
        for frame in worker_frames
    )
    return CombinedTrace(frames=(*context.frames, boundary, *inner))

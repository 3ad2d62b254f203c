"""Wait on many one-shot calls, sessions and command processes at once."""

from __future__ import annotations

import selectors
import time
from typing import Iterable, Protocol, Sequence, TypeVar, runtime_checkable


@runtime_checkable
class Watchable(Protocol):
    """Anything the poller can wait on.

    `is_ready()` must not block; it drains pending notifications and reports
    whether the handle finished, crashed or has output to hand over.
    `fileno()` returns a selectable descriptor, or -1 when it has none.
    `deadline` is a `time.monotonic()` instant at which `is_ready()` may
    change without the descriptor turning readable (a timeout or an exit
    check), or None.

    Example:
        ```python
        assert isinstance(session, Watchable)
        ```
    """

    @property
    def deadline(self) -> float | None:
        """Return the next instant at which the handle must be rechecked.

        Example:
            ```python
            expires = handle.deadline
            ```
        """
        ...

    def fileno(self) -> int:
        """Return the descriptor that becomes readable on progress.

        Example:
            ```python
            fd = handle.fileno()
            ```
        """
        ...

    def is_ready(self) -> bool:
        """Report readiness without blocking.

        Example:
            ```python
            if handle.is_ready():
                print("done")
            ```
        """
        ...


W = TypeVar("W", bound=Watchable)


def _next_wakeup(deadline: float | None, handles: Sequence[Watchable]) -> float | None:
    """Return the earliest of the poll deadline and every handle deadline.

    Example:
        ```python
        wakeup = _next_wakeup(time.monotonic() + 1, handles)
        ```
    """
    instants = [h.deadline for h in handles if h.deadline is not None]
    if deadline is not None:
        instants.append(deadline)
    return min(instants) if instants else None


def poll(handles: Iterable[W], timeout: float | None = None) -> list[W]:
    """Block until at least one handle is ready or the timeout elapses.

    Returns the ready handles in input order; an empty list means the
    timeout elapsed. Finished handles are reported as ready on every poll.
    `timeout=None` waits without limit.

    Example:
        ```python
        ready = poll([session_a, session_b], timeout=1.0)
        for session in ready:
            print(session.read().value)
        ```
    """
    watched = list(handles)
    deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
    while True:
        ready = [handle for handle in watched if handle.is_ready()]
        if ready:
            return ready

        now = time.monotonic()
        if deadline is not None and now >= deadline:
            return []
        wakeup = _next_wakeup(deadline, watched)
        descriptors = [handle.fileno() for handle in watched]
        descriptors = [fd for fd in descriptors if fd >= 0]
        if not descriptors and wakeup is None:
            raise ValueError("none of the handles can become ready and no timeout was given")

        wait = None if wakeup is None else max(0.0, wakeup - now)
        if not descriptors:
            time.sleep(wait or 0.0)
            continue
        with selectors.DefaultSelector() as selector:
            for fd in dict.fromkeys(descriptors):
                selector.register(fd, selectors.EVENT_READ)
            selector.select(wait)

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LaunchRequest:
    """Normalized request for starting one worker or tool process.

    Example:
        ```python
        req = LaunchRequest(argv=["python", "worker.py", "session"], workdir=Path("/tmp/w"))
        ```
    """

    argv: list[str]
    workdir: Path
    cwd: str | None = None
    env: dict[str, str] | None = None
    interactive: bool = False
    control_arg: str | None = "--control-fd"
    trailing_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProcessExit:
    """Exit status plus the raw stream output a process left behind.

    Example:
        ```python
        done = ProcessExit(returncode=0, stdout="", stderr="")
        ```
    """

    returncode: int
    stdout: str
    stderr: str

from __future__ import annotations

from typing import Protocol


class ExecutionEngine(Protocol):
    def command(self) -> list[str]:
        """Return the interpreter command line that runs the worker bootstrap.

        Example:
            ```python
            argv = engine.command() + ["session"]
            ```
        """
        ...

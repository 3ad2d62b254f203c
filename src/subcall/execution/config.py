from __future__ import annotations

import re
from typing import Iterable

# Unbuffered streams keep partial output on disk if the worker dies;
# faulthandler dumps a native traceback to stderr on fatal signals.
WORKER_PYTHON_FLAGS = ("-u", "-X", "faulthandler")
PACKAGES_MARKER = ".subcall_packages.txt"
VENV_MANAGERS = ("uv", "python")
_PINNED = re.compile(r"^[A-Za-z0-9_.-]+==[^=\s]+$")


def validate_pinned_packages(packages: Iterable[str] | None) -> list[str]:
    """Return the de-duplicated, sorted package pins for a worker venv.

    Every entry must be an exact `name==version` pin so a reused venv
    always matches what was asked for.

    Example:
        ```python
        pins = validate_pinned_packages(["numpy==1.26.4", "numpy==1.26.4"])
        ```
    """
    pins = {spec.strip() for spec in packages or () if spec.strip()}
    unpinned = sorted(spec for spec in pins if not _PINNED.match(spec))
    if unpinned:
        raise ValueError(f"Worker packages must be pinned as 'name==version': {', '.join(unpinned)}")
    return sorted(pins)

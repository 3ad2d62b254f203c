from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

from .config import PACKAGES_MARKER, VENV_MANAGERS, WORKER_PYTHON_FLAGS, validate_pinned_packages

logger = logging.getLogger(__name__)


def _worker_path() -> Path:
    """Return the absolute path to the worker bootstrap file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _run_checked(argv: list[str], what: str) -> None:
    """Run a setup command and raise with its stderr when it fails.

    Example:
        ```python
        _run_checked(["uv", "venv", "/tmp/env"], "create venv with uv")
        ```
    """
    logger.debug("running %s", argv)
    completed = subprocess.run(argv, capture_output=True, text=True, check=False)
    if completed.returncode != 0:
        raise RuntimeError(f"Failed to {what}: {completed.stderr.strip()}")


class LocalEngine:
    """Launch workers with a local interpreter, optionally from a managed venv.

    Without `venv_dir` the worker runs on `python` (default: the current
    interpreter). With `venv_dir` the venv is created on first use and the
    pinned `packages` are installed into it; a marker file records the pins
    so later engines reuse the venv untouched.

    Example:
        ```python
        engine = LocalEngine()
        isolated = LocalEngine(venv_dir="/tmp/jobs_env", packages=["packaging==24.1"])
        session = Session(engine=isolated)
        ```
    """

    def __init__(
        self,
        *,
        python: str | None = None,
        venv_dir: str | None = None,
        venv_manager: str = "uv",
        packages: list[str] | None = None,
    ) -> None:
        """Validate the interpreter choice and prepare the venv if one is used.

        Example:
            ```python
            engine = LocalEngine(python="/usr/bin/python3.12")
            ```
        """
        if venv_manager not in VENV_MANAGERS:
            raise ValueError(f"venv_manager must be one of {', '.join(VENV_MANAGERS)}")
        self._packages = validate_pinned_packages(packages)
        self._venv_manager = venv_manager
        self._venv_dir: Path | None = None
        if venv_dir is not None:
            if not venv_dir.strip():
                raise ValueError("LocalEngine requires a non-empty 'venv_dir' when one is given")
            if python is not None:
                raise ValueError("Provide either 'python' or 'venv_dir', not both")
            self._venv_dir = Path(venv_dir.strip()).expanduser()
        elif self._packages:
            raise ValueError("'packages' can only be installed into a 'venv_dir'")
        self._python = python or sys.executable
        if self._venv_dir is not None:
            self._ensure_venv()
            self._ensure_packages()

    def command(self) -> list[str]:
        """Return the argv prefix that starts the worker bootstrap.

        Example:
            ```python
            argv = engine.command() + ["session"]
            ```
        """
        return [str(self._python_path()), *WORKER_PYTHON_FLAGS, str(_worker_path())]

    def _ensure_venv(self) -> None:
        """Create the venv unless its interpreter already exists.

        Example:
            ```python
            engine._ensure_venv()
            ```
        """
        assert self._venv_dir is not None
        if self._python_path().exists():
            return
        self._venv_dir.mkdir(parents=True, exist_ok=True)
        logger.info("creating worker venv in %s with %s", self._venv_dir, self._venv_manager)
        if self._venv_manager == "uv":
            _run_checked(["uv", "venv", str(self._venv_dir)], "create venv with uv")
        else:
            _run_checked([sys.executable, "-m", "venv", str(self._venv_dir)], "create venv with python")

    def _ensure_packages(self) -> None:
        """Install the pinned packages unless the marker already lists them.

        Example:
            ```python
            engine._ensure_packages()
            ```
        """
        assert self._venv_dir is not None
        if not self._packages:
            return
        marker = self._venv_dir / PACKAGES_MARKER
        desired = "\n".join(self._packages) + "\n"
        if marker.exists() and marker.read_text(encoding="utf-8") == desired:
            return
        python = str(self._python_path())
        # uv-created venvs ship without pip.
        if self._venv_manager == "uv":
            argv = ["uv", "pip", "install", "--python", python, *self._packages]
        else:
            argv = [python, "-m", "pip", "install", *self._packages]
        logger.info("installing %s into %s", ", ".join(self._packages), self._venv_dir)
        _run_checked(argv, "install worker packages")
        marker.write_text(desired, encoding="utf-8")

    def _python_path(self) -> Path:
        """Return the worker interpreter path.

        Example:
            ```python
            py = engine._python_path()
            ```
        """
        if self._venv_dir is not None:
            return self._venv_dir / "bin" / "python"
        return Path(self._python)

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _default_options_path() -> Path:
    """Return bundled default options TOML path.

    Example:
        ```python
        path = _default_options_path()
        ```
    """
    return Path(__file__).with_name("default_options.toml")


def _read_options_toml(path: Path) -> dict[str, Any]:
    """Read options TOML and return the options table.

    Example:
        ```python
        raw = _read_options_toml(Path("/tmp/subcall.toml"))
        ```
    """
    if not path.exists():
        return {
            "timeout_seconds": 0,
            "max_output_kb": 1024,
            "startup_timeout_seconds": 10,
            "grace_seconds": 2,
            "libpath": [],
            "preload": [],
            "env": {},
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    options_obj = raw.get("options", raw)
    if not isinstance(options_obj, dict):
        raise ValueError("Options config must be a TOML table")
    return options_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings options field.

    Example:
        ```python
        libpath = _list_of_str(["/opt/lib"], "libpath")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _str_mapping(value: Any, field_name: str) -> dict[str, str]:
    """Validate and normalize a string-to-string options table.

    Example:
        ```python
        env = _str_mapping({"LANG": "C"}, "env")
        ```
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{field_name}' must be a table of strings")
    out: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' values must be strings")
        out[str(key)] = item
    return out


def _timeout(value: Any) -> float | None:
    """Normalize a timeout where non-positive means "no timeout".

    Example:
        ```python
        assert _timeout(0) is None
        ```
    """
    if value is None:
        return None
    seconds = float(value)
    return seconds if seconds > 0 else None


_DEFAULT_OPTIONS_RAW = _read_options_toml(_default_options_path())
DEFAULT_TIMEOUT_SECONDS = _timeout(_DEFAULT_OPTIONS_RAW.get("timeout_seconds", 0))
DEFAULT_MAX_OUTPUT_KB = int(_DEFAULT_OPTIONS_RAW.get("max_output_kb", 1024))
DEFAULT_STARTUP_TIMEOUT_SECONDS = float(_DEFAULT_OPTIONS_RAW.get("startup_timeout_seconds", 10))
DEFAULT_GRACE_SECONDS = float(_DEFAULT_OPTIONS_RAW.get("grace_seconds", 2))
DEFAULT_LIBPATH = _list_of_str(_DEFAULT_OPTIONS_RAW.get("libpath", []), "libpath")
DEFAULT_PRELOAD = _list_of_str(_DEFAULT_OPTIONS_RAW.get("preload", []), "preload")
DEFAULT_ENV = _str_mapping(_DEFAULT_OPTIONS_RAW.get("env", {}), "env")


@dataclass(slots=True)
class CallOptions:
    """Worker-side options applied to every call.

    Example:
        ```python
        options = CallOptions(timeout_seconds=5, libpath=["/opt/jobs"])
        ```
    """

    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=lambda: DEFAULT_ENV.copy())
    libpath: list[str] = field(default_factory=lambda: DEFAULT_LIBPATH.copy())
    preload: list[str] = field(default_factory=lambda: DEFAULT_PRELOAD.copy())
    startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate numeric fields after dataclass initialization.

        Example:
            ```python
            CallOptions(max_output_kb=64)
            ```
        """
        self.timeout_seconds = _timeout(self.timeout_seconds)
        if self.max_output_kb <= 0:
            raise ValueError("max_output_kb must be positive")
        if self.startup_timeout_seconds <= 0:
            raise ValueError("startup_timeout_seconds must be positive")
        if self.grace_seconds < 0:
            raise ValueError("grace_seconds must not be negative")

    @classmethod
    def from_file(cls, config_path: str) -> "CallOptions":
        """Create an options instance from a TOML file.

        Example:
            ```python
            options = CallOptions.from_file("/tmp/subcall.toml")
            ```
        """
        raw = _read_options_toml(Path(config_path))
        cwd = raw.get("cwd")
        return cls(
            timeout_seconds=_timeout(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            max_output_kb=int(raw.get("max_output_kb", DEFAULT_MAX_OUTPUT_KB)),
            cwd=str(cwd) if cwd is not None else None,
            env=_str_mapping(raw.get("env", {}), "env"),
            libpath=_list_of_str(raw.get("libpath", []), "libpath"),
            preload=_list_of_str(raw.get("preload", []), "preload"),
            startup_timeout_seconds=float(
                raw.get("startup_timeout_seconds", DEFAULT_STARTUP_TIMEOUT_SECONDS)
            ),
            grace_seconds=float(raw.get("grace_seconds", DEFAULT_GRACE_SECONDS)),
            config_path=config_path,
        )

    def child_env(self) -> dict[str, str]:
        """Return the inherited environment with the configured overrides applied.

        Example:
            ```python
            env = CallOptions(env={"LANG": "C"}).child_env()
            ```
        """
        env = os.environ.copy()
        env.update(self.env)
        return env

    def worker_preamble(self) -> dict[str, Any]:
        """Return the builtins-only options record embedded in a payload.

        Example:
            ```python
            preamble = CallOptions().worker_preamble()
            ```
        """
        return {
            "cwd": self.cwd,
            "env": dict(self.env),
            "libpath": list(self.libpath),
            "preload": list(self.preload),
            "max_output_kb": self.max_output_kb,
        }


def resolve_options(options: CallOptions | None, options_file: str | None) -> CallOptions:
    """Resolve the effective options object for a call.

    Example:
        ```python
        options = resolve_options(None, "/tmp/subcall.toml")
        ```
    """
    if options is not None and options_file is not None:
        raise ValueError("Provide either 'options' or 'options_file', not both")
    if options is None and options_file is not None:
        return CallOptions.from_file(options_file)
    if options is None:
        return CallOptions()
    if options.config_path is not None:
        return CallOptions.from_file(options.config_path)
    return options

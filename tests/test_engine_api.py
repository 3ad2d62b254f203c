import subprocess
import sys
from pathlib import Path

import pytest

from subcall import LocalEngine, run_code
from subcall.execution import local_engine
from subcall.execution.config import PACKAGES_MARKER, WORKER_PYTHON_FLAGS


def test_local_engine_requires_venv_dir() -> None:
    with pytest.raises(ValueError, match="venv_dir"):
        LocalEngine(venv_dir="")


def test_local_engine_rejects_unpinned_packages() -> None:
    with pytest.raises(ValueError, match="pinned"):
        LocalEngine(venv_dir="/tmp/subcall_unpinned_local", packages=["pandas"])


def test_local_engine_rejects_python_and_venv_together() -> None:
    with pytest.raises(ValueError, match="either"):
        LocalEngine(python=sys.executable, venv_dir="/tmp/subcall_both")


def test_local_engine_packages_need_a_venv() -> None:
    with pytest.raises(ValueError, match="venv_dir"):
        LocalEngine(packages=["packaging==24.1"])


def test_local_engine_command_runs_worker_bootstrap() -> None:
    argv = LocalEngine().command()
    assert argv[0] == sys.executable
    assert tuple(argv[1:4]) == WORKER_PYTHON_FLAGS
    assert argv[-1].endswith("worker.py")
    assert Path(argv[-1]).exists()


def test_local_engine_custom_python() -> None:
    assert run_code("import sys\nresult = sys.executable", engine=LocalEngine(python=sys.executable)) == sys.executable


def test_local_engine_prepares_venv_once(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    commands: list[list[str]] = []
    venv_dir = tmp_path / "env"

    def fake_run(cmd, **kwargs):
        commands.append(cmd)
        if cmd[:2] == ["uv", "venv"]:
            (venv_dir / "bin").mkdir(parents=True)
            (venv_dir / "bin" / "python").write_text("", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(local_engine.subprocess, "run", fake_run)
    engine = LocalEngine(venv_dir=str(venv_dir), packages=["packaging==24.1"])
    assert commands[0] == ["uv", "venv", str(venv_dir)]
    assert commands[1][:4] == ["uv", "pip", "install", "--python"]
    assert (venv_dir / PACKAGES_MARKER).read_text(encoding="utf-8") == "packaging==24.1\n"
    assert engine.command()[0] == str(venv_dir / "bin" / "python")

    LocalEngine(venv_dir=str(venv_dir), packages=["packaging==24.1"])
    assert len(commands) == 2


def test_local_engine_reports_venv_failure(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="uv: not found")

    monkeypatch.setattr(local_engine.subprocess, "run", failing_run)
    with pytest.raises(RuntimeError, match="uv: not found"):
        LocalEngine(venv_dir=str(tmp_path / "env"))

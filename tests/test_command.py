from __future__ import annotations

import os
import time

import pytest

from subcall import CallState, CommandProcess, InfraError, command, run_command


def test_run_command_collects_streams_and_status() -> None:
    result = run_command("sh", ["-c", "echo out; echo err >&2; exit 3"])
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_status == 3
    assert not result.ok


def test_run_command_success() -> None:
    result = run_command("echo", ["hello", "world"])
    assert result.ok
    assert result.stdout == "hello world\n"


def test_run_command_cwd_and_env(tmp_path) -> None:
    result = run_command(
        "sh",
        ["-c", 'pwd; echo "$SUBCALL_CMD_FLAG"'],
        cwd=str(tmp_path),
        env={"SUBCALL_CMD_FLAG": "set"},
    )
    lines = result.stdout.splitlines()
    assert lines[1] == "set"
    assert lines[0].endswith(tmp_path.name)


def test_missing_executable_is_infra_error() -> None:
    with pytest.raises(InfraError) as excinfo:
        run_command("subcall-no-such-tool-anywhere")
    assert excinfo.value.reason == "spawn"


def test_timeout_is_infra_error() -> None:
    started = time.monotonic()
    with pytest.raises(InfraError) as excinfo:
        run_command("sleep", ["30"], timeout_seconds=0.3)
    assert excinfo.value.timed_out
    assert time.monotonic() - started < 10


def test_command_process_lifecycle() -> None:
    proc = CommandProcess("sh", ["-c", "echo partial; sleep 30"])
    assert proc.state is CallState.CREATED
    proc.start()
    assert proc.state is CallState.LAUNCHED
    assert proc.wait(timeout=0.1) is False
    proc.kill()
    assert proc.state is CallState.CRASHED
    with pytest.raises(InfraError) as excinfo:
        proc.result()
    assert excinfo.value.reason == "killed"


def test_background_child_does_not_hold_command_open() -> None:
    started = time.monotonic()
    result = run_command("sh", ["-c", "sleep 5 & echo hi"], timeout_seconds=30)
    assert result.stdout == "hi\n"
    assert time.monotonic() - started < 3


def test_interrupted_run_command_kills_process(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[CommandProcess] = []

    def interrupted_poll(handles, timeout=None):
        seen.extend(handles)
        raise KeyboardInterrupt

    monkeypatch.setattr(command, "poll", interrupted_poll)
    with pytest.raises(KeyboardInterrupt):
        run_command("sleep", ["30"])

    proc = seen[0]
    assert proc.done
    with pytest.raises(ProcessLookupError):
        os.kill(proc.process.pid, 0)
    assert not proc.process.workdir.exists()

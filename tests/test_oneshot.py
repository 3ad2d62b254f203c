from __future__ import annotations

import dataclasses
import os
import time

import jobs
import pytest

from subcall import (
    ApplicationError,
    CallDescriptor,
    CallOptions,
    CallState,
    InfraError,
    LastError,
    OneShotCall,
    OutcomeStatus,
    SubcallError,
    run,
    run_async,
    run_code,
    run_code_async,
)
from subcall import oneshot
from subcall.poller import poll

LINGERING_THREAD = (
    "import threading, time\n"
    "threading.Thread(target=time.sleep, args=({seconds},)).start()\n"
    "result = 1"
)


def test_run_returns_function_value(options: CallOptions) -> None:
    assert run(jobs.add, (2, 3), options=options) == 5
    assert run(jobs.greet, ("ada",), {"punctuation": "."}, options=options) == "hello ada."


def test_run_builtin_without_libpath() -> None:
    assert run(pow, (2, 10)) == 1024


def test_run_code_returns_result_variable() -> None:
    assert run_code("result = x ** 0.5", {"x": 81}) == 9.0
    assert run_code("y = 1") is None


def test_application_error_carries_combined_trace(options: CallOptions) -> None:
    with pytest.raises(ApplicationError) as excinfo:
        run(jobs.fail, ("bad input",), options=options)

    error = excinfo.value
    assert str(error) == "JobFailure: bad input"
    assert error.origin == "worker"
    assert error.is_a("ValueError")
    assert isinstance(error.exception, jobs.JobFailure)

    trace = error.trace
    assert trace.boundary.name == "subcall jobs.fail"
    assert trace.boundary.filename.endswith("test_oneshot.py")
    assert trace.boundary.line == 'run(jobs.fail, ("bad input",), options=options)'
    assert [frame.name for frame in trace.worker_frames] == ["fail"]
    assert trace.caller_frames
    assert error.caller_stack == trace.caller_frames
    text = trace.format()
    assert "--- subcall jobs.fail at " in text
    assert "raise JobFailure(message)" in text


def test_run_code_error_shows_snippet_lines() -> None:
    with pytest.raises(ApplicationError) as excinfo:
        run_code("values = []\nvalues[3]")
    assert excinfo.value.error_type == "IndexError"
    assert "values[3]" in excinfo.value.trace.format()


def test_outcome_keeps_captured_output(options: CallOptions) -> None:
    call = run_async(jobs.shout, ("hey",), options=options)
    outcome = call.outcome()
    assert outcome.status is OutcomeStatus.OK
    assert outcome.value == 3
    assert outcome.stdout == "hey\n"
    assert outcome.stderr == "warning: hey\n"
    assert outcome.exit_code == 0
    assert call.state is CallState.FINISHED


def test_timeout_kills_worker(options: CallOptions) -> None:
    fast = dataclasses.replace(options, timeout_seconds=0.5)
    started = time.monotonic()
    with pytest.raises(InfraError) as excinfo:
        run(jobs.sleep_and_return, (30, "late"), options=fast)
    assert time.monotonic() - started < 10
    assert excinfo.value.timed_out
    assert excinfo.value.reason == "timeout"


def test_timeout_leaves_no_orphan(options: CallOptions) -> None:
    call = run_async(jobs.sleep_and_return, (30, "late"), options=dataclasses.replace(options, timeout_seconds=0.5))
    pid = call.process.pid
    assert call.outcome().error.timed_out
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert not call.process.workdir.exists()


def test_crash_is_infra_error_with_partial_output(options: CallOptions) -> None:
    call = run_async(jobs.print_then_crash, ("before the crash", 3), options=options)
    outcome = call.outcome()
    assert outcome.status is OutcomeStatus.INFRA_ERROR
    assert call.state is CallState.CRASHED
    assert outcome.error.exit_code == 3
    assert outcome.error.reason == "crashed"
    assert "before the crash" in outcome.error.stdout


def test_signal_death_is_infra_error(options: CallOptions) -> None:
    with pytest.raises(InfraError, match="signal 9") as excinfo:
        run(jobs.kill_self, options=options)
    assert excinfo.value.exit_code == -9


def test_unimportable_function_is_infra_error() -> None:
    with pytest.raises(InfraError) as excinfo:
        run(jobs.add, (1, 2))
    assert excinfo.value.reason == "payload"
    assert "jobs" in excinfo.value.stderr


def test_kill_cancels_running_call(options: CallOptions) -> None:
    call = run_async(jobs.sleep_and_return, (30, "late"), options=options)
    assert call.wait(timeout=0.2) is False
    call.kill()
    outcome = call.outcome()
    assert outcome.error.reason == "killed"
    assert call.process.returncode is not None
    call.cancel()


def test_temp_directory_is_removed(options: CallOptions) -> None:
    call = OneShotCall(CallDescriptor.build(jobs.add, (1, 2), options=options))
    call.start()
    workdir = call.process.workdir
    assert workdir.exists()
    assert call.result() == 3
    assert not workdir.exists()


def test_context_manager_kills_unfinished_call(options: CallOptions) -> None:
    with OneShotCall(CallDescriptor.build(jobs.sleep_and_return, (30, 1), options=options)) as call:
        pid = call.process.pid
    assert call.done
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_start_twice_is_rejected(options: CallOptions) -> None:
    call = run_async(jobs.add, (1, 2), options=options)
    with pytest.raises(SubcallError, match="already started"):
        call.start()
    assert call.result() == 3


def test_last_error_is_set_and_cleared(options: CallOptions) -> None:
    last = LastError()
    with pytest.raises(ApplicationError):
        run(jobs.fail, ("x",), options=options, last_error=last)
    assert isinstance(last.error, ApplicationError)

    assert run_code("result = 1", last_error=last) == 1
    assert last.error is None


def test_options_file_and_env(tmp_path, options: CallOptions) -> None:
    config = tmp_path / "subcall.toml"
    config.write_text(
        '[options]\ntimeout_seconds = 20\n[options.env]\nSUBCALL_TEST_FLAG = "from-file"\n',
        encoding="utf-8",
    )
    assert run_code(
        "import os\nresult = os.environ['SUBCALL_TEST_FLAG']",
        options_file=str(config),
    ) == "from-file"
    with pytest.raises(ValueError, match="either"):
        run_code("result = 1", options=options, options_file=str(config))


def test_cwd_and_preload(tmp_path, options: CallOptions) -> None:
    configured = dataclasses.replace(options, cwd=str(tmp_path), preload=["jobs"])
    value = run_code("import os, sys\nresult = (os.getcwd(), 'jobs' in sys.modules)", options=configured)
    assert value == (os.path.realpath(tmp_path), True)


def test_run_code_async_handle() -> None:
    call = run_code_async("result = sum(range(n))", {"n": 10})
    assert call.wait() is True
    assert call.result() == 45


def test_poll_does_not_wait_for_worker_shutdown(options: CallOptions) -> None:
    # The worker finishes its call but a non-daemon thread keeps it alive.
    with run_code_async(LINGERING_THREAD.format(seconds=4), options=options) as call:
        time.sleep(0.5)
        started = time.monotonic()
        assert poll([call], timeout=0.1) == []
        assert call.is_ready() is False
        assert time.monotonic() - started < 1.0
    assert call.done


def test_timeout_applies_while_worker_lingers(options: CallOptions) -> None:
    fast = dataclasses.replace(options, timeout_seconds=1)
    started = time.monotonic()
    outcome = run_code_async(LINGERING_THREAD.format(seconds=6), options=fast).outcome()
    assert time.monotonic() - started < 4
    assert outcome.status is OutcomeStatus.INFRA_ERROR
    assert outcome.error.timed_out


def test_interrupted_run_kills_worker_and_removes_temp_dir(
    options: CallOptions, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[OneShotCall] = []

    def interrupted_poll(handles, timeout=None):
        seen.extend(handles)
        raise KeyboardInterrupt

    monkeypatch.setattr(oneshot, "poll", interrupted_poll)
    with pytest.raises(KeyboardInterrupt):
        run(jobs.sleep_and_return, (30, "late"), options=options)

    call = seen[0]
    assert call.done
    with pytest.raises(ProcessLookupError):
        os.kill(call.process.pid, 0)
    assert not call.process.workdir.exists()

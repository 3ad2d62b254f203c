from __future__ import annotations

from subcall import ApplicationError, Frame
from subcall.trace import BOUNDARY, CALLER, WORKER, CallContext, capture_call_context, merge_traces


def _issue_call() -> CallContext:
    return capture_call_context("subcall jobs.work")


def test_capture_stops_at_the_call_site() -> None:
    context = _issue_call()
    assert context.label == "subcall jobs.work"
    assert context.call_site is not None
    assert context.call_site.name == "_issue_call"
    assert context.frames[-1].name == "test_capture_stops_at_the_call_site"
    assert all(frame.side == CALLER for frame in context.frames)


def test_merge_orders_caller_boundary_worker() -> None:
    context = CallContext(
        frames=(Frame("main.py", 10, "<module>", "main()"), Frame("main.py", 5, "main", "handle()")),
        call_site=Frame("main.py", 2, "handle", "run(jobs.work)"),
        label="subcall jobs.work",
    )
    worker = [
        Frame.from_record(("jobs.py", 4, "work", "step()")),
        Frame.from_record(("jobs.py", 8, "step", "raise ValueError('x')")),
    ]
    trace = merge_traces(context, worker)

    assert len(trace) == 5
    assert [frame.side for frame in trace.frames] == [CALLER, CALLER, BOUNDARY, WORKER, WORKER]
    assert [frame.name for frame in trace.caller_frames] == ["<module>", "main"]
    assert [frame.name for frame in trace.worker_frames] == ["work", "step"]
    assert trace.boundary.name == "subcall jobs.work"
    assert trace.boundary.location() == "main.py:2"

    text = trace.format()
    assert text.splitlines() == [
        "Traceback (most recent call last):",
        '  File "main.py", line 10, in <module>',
        "    main()",
        '  File "main.py", line 5, in main',
        "    handle()",
        "  --- subcall jobs.work at main.py:2 ---",
        '  File "jobs.py", line 4, in work',
        "    step()",
        '  File "jobs.py", line 8, in step',
        "    raise ValueError('x')",
    ]


def test_merge_without_context() -> None:
    trace = merge_traces(None, [Frame("jobs.py", 1, "f", side=WORKER)])
    assert trace.caller_frames == ()
    assert trace.boundary.filename == "<unknown>"
    assert trace.boundary.location() == "<unknown>"


def test_application_error_builds_trace_lazily() -> None:
    error = ApplicationError(
        "boom",
        error_type="RuntimeError",
        tags=["RuntimeError", "Exception", "BaseException"],
        worker_stack=[Frame("jobs.py", 3, "boom", side=WORKER)],
    )
    assert "trace" not in error.__dict__
    first = error.trace
    assert error.trace is first
    assert error.caller_stack == ()

    context = _issue_call()
    error.attach_context(context)
    assert error.trace is not first
    assert error.trace.boundary.name == "subcall jobs.work"
    assert error.caller_stack == context.frames
    assert str(error) == "RuntimeError: boom"
    assert error.is_a("Exception")
    assert not error.is_a("ValueError")

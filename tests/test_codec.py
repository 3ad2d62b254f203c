from __future__ import annotations

import pickle
from functools import partial

import jobs
import pytest

from subcall import CallDescriptor, CallOptions, DecodeError, EncodeError, OutcomeStatus, decode, encode
from subcall.codec import encode_bytes, read_outcome
from subcall.trace import capture_call_context
from subcall.worker import FORMAT_VERSION, OUTCOME_FORMAT, PAYLOAD_FORMAT


def _outcome_bytes(**fields) -> bytes:
    record = {
        "format": OUTCOME_FORMAT,
        "version": FORMAT_VERSION,
        "status": "ok",
        "value": pickle.dumps(None),
        "error": None,
        "stdout": "",
        "stderr": "",
    }
    record.update(fields)
    return pickle.dumps(record)


def test_descriptor_requires_exactly_one_of_func_and_code() -> None:
    with pytest.raises(ValueError, match="exactly one"):
        CallDescriptor()
    with pytest.raises(ValueError, match="exactly one"):
        CallDescriptor(func=len, code="result = 1")
    with pytest.raises(TypeError, match="callable"):
        CallDescriptor(func=42)


def test_descriptor_labels() -> None:
    assert CallDescriptor.build(jobs.add, (1, 2)).label == "subcall jobs.add"
    assert CallDescriptor.snippet("result = 1").label == "subcall <code>"


def test_encode_writes_payload_with_builtins_only_preamble(tmp_path) -> None:
    options = CallOptions(libpath=["/opt/jobs"], env={"MODE": "test"}, max_output_kb=8)
    path = encode(CallDescriptor.build(jobs.add, (1, 2), options=options), tmp_path, name="p.pkl")

    assert path == tmp_path / "p.pkl"
    record = pickle.loads(path.read_bytes())
    assert record["format"] == PAYLOAD_FORMAT
    assert record["version"] == FORMAT_VERSION
    assert record["options"]["libpath"] == ["/opt/jobs"]
    assert record["options"]["env"] == {"MODE": "test"}
    assert record["options"]["max_output_kb"] == 8
    assert isinstance(record["call"], bytes)

    call = pickle.loads(record["call"])
    assert call["kind"] == "func"
    assert call["func"] is jobs.add
    assert call["args"] == (1, 2)


def test_encode_snippet_keeps_code_and_inputs(tmp_path) -> None:
    path = encode(CallDescriptor.snippet("result = x * 2", {"x": 21}), tmp_path)
    call = pickle.loads(pickle.loads(path.read_bytes())["call"])
    assert call == {"kind": "code", "code": "result = x * 2", "input_data": {"x": 21}}


def test_encode_partial_carries_captured_values(tmp_path) -> None:
    path = encode(CallDescriptor.build(partial(jobs.greet, punctuation="?"), ("ada",)), tmp_path)
    call = pickle.loads(pickle.loads(path.read_bytes())["call"])
    assert call["func"]("ada") == "hello ada?"


def test_encode_rejects_values_that_cannot_cross_the_boundary() -> None:
    with pytest.raises(EncodeError):
        encode_bytes(CallDescriptor.build(lambda: 1))
    with pytest.raises(EncodeError):
        encode_bytes(CallDescriptor.build(jobs.add, (jobs.unpicklable(), 1)))


def test_decode_ok_value() -> None:
    outcome = decode(_outcome_bytes(value=pickle.dumps({"a": [1, 2]}), stdout="hi\n"), exit_code=0)
    assert outcome.status is OutcomeStatus.OK
    assert outcome.ok
    assert outcome.value == {"a": [1, 2]}
    assert outcome.stdout == "hi\n"
    assert outcome.exit_code == 0
    assert outcome.result() == {"a": [1, 2]}


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"not a pickle",
        pickle.dumps({"format": "something/else"}),
        pickle.dumps([1, 2, 3]),
    ],
)
def test_decode_rejects_foreign_or_truncated_data(data: bytes) -> None:
    with pytest.raises(DecodeError):
        decode(data)


def test_decode_rejects_truncated_outcome() -> None:
    data = _outcome_bytes(value=pickle.dumps(list(range(100))))
    with pytest.raises(DecodeError):
        decode(data[: len(data) // 2])


def test_decode_rejects_unknown_version_and_status() -> None:
    with pytest.raises(DecodeError, match="version"):
        decode(_outcome_bytes(version=FORMAT_VERSION + 1))
    with pytest.raises(DecodeError, match="status"):
        decode(_outcome_bytes(status="maybe"))
    with pytest.raises(DecodeError, match="stdout"):
        decode(_outcome_bytes(stdout=None))


def test_decode_value_that_cannot_be_loaded_in_the_caller() -> None:
    with pytest.raises(DecodeError, match="cannot be loaded"):
        decode(_outcome_bytes(value=b"\x80\x04garbage"))


def test_decode_error_record_becomes_application_error() -> None:
    context = capture_call_context("subcall jobs.fail")
    error = {
        "type": "JobFailure",
        "module": "jobs",
        "message": "bad input",
        "tags": ["JobFailure", "ValueError", "Exception", "BaseException"],
        "stack": [("/srv/jobs.py", 21, "fail", "raise JobFailure(message)")],
        "traceback": "Traceback ...\njobs.JobFailure: bad input\n",
        "exception": pickle.dumps(jobs.JobFailure("bad input")),
    }
    outcome = decode(_outcome_bytes(status="error", value=None, error=error, stderr="oops\n"), context)

    assert outcome.status is OutcomeStatus.APPLICATION_ERROR
    exc = outcome.error
    assert str(exc) == "JobFailure: bad input"
    assert exc.is_a("ValueError")
    assert isinstance(exc.exception, jobs.JobFailure)
    assert exc.stderr == "oops\n"
    assert exc.worker_stack[0].name == "fail"
    assert exc.trace.boundary.name == "subcall jobs.fail"
    with pytest.raises(type(exc)):
        outcome.result()


def test_decode_error_record_with_unloadable_exception_still_decodes() -> None:
    error = {
        "type": "Mystery",
        "module": "nowhere",
        "message": "???",
        "tags": ["Mystery", "Exception", "BaseException"],
        "stack": [],
        "traceback": "",
        "exception": b"\x80\x04garbage",
    }
    outcome = decode(_outcome_bytes(status="error", value=None, error=error))
    assert outcome.error.exception is None
    assert outcome.error.error_type == "Mystery"


def test_decode_infra_record_becomes_infra_error() -> None:
    error = {"type": "PayloadError", "message": "cannot load call", "traceback": "tb\n"}
    outcome = decode(_outcome_bytes(status="infra", value=None, error=error), exit_code=70)

    assert outcome.status is OutcomeStatus.INFRA_ERROR
    assert outcome.error.reason == "payload"
    assert outcome.error.exit_code == 70
    assert "cannot load call" in str(outcome.error)


def test_read_outcome_missing_file_returns_none(tmp_path) -> None:
    assert read_outcome(tmp_path / "missing.pkl") is None
    path = tmp_path / "outcome.pkl"
    path.write_bytes(_outcome_bytes(value=pickle.dumps(7)))
    assert read_outcome(path).value == 7

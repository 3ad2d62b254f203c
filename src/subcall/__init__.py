from .codec import CallDescriptor, Outcome, OutcomeStatus, decode, encode
from .command import CommandProcess, CommandResult, run_command
from .errors import (
    ApplicationError,
    DecodeError,
    EncodeError,
    InfraError,
    LastError,
    SessionBusyError,
    SessionDeadError,
    SessionStateError,
    SubcallError,
)
from .execution.local_engine import LocalEngine
from .oneshot import CallState, OneShotCall, run, run_async, run_code, run_code_async
from .options import CallOptions
from .poller import Watchable, poll
from .session import PollStatus, Session, SessionState
from .trace import CombinedTrace, Frame

__all__ = [
    "ApplicationError",
    "CallDescriptor",
    "CallOptions",
    "CallState",
    "CombinedTrace",
    "CommandProcess",
    "CommandResult",
    "DecodeError",
    "EncodeError",
    "Frame",
    "InfraError",
    "LastError",
    "LocalEngine",
    "OneShotCall",
    "Outcome",
    "OutcomeStatus",
    "PollStatus",
    "Session",
    "SessionBusyError",
    "SessionDeadError",
    "SessionState",
    "SessionStateError",
    "SubcallError",
    "Watchable",
    "decode",
    "encode",
    "poll",
    "run",
    "run_async",
    "run_code",
    "run_code_async",
    "run_command",
]

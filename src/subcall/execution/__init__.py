from .engine import ExecutionEngine
from .local_engine import LocalEngine
from .process import ControlChannel, WorkerProcess
from .types import LaunchRequest, ProcessExit

__all__ = [
    "ControlChannel",
    "ExecutionEngine",
    "LaunchRequest",
    "LocalEngine",
    "ProcessExit",
    "WorkerProcess",
]

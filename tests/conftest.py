from __future__ import annotations

from pathlib import Path

import pytest

from subcall import CallOptions

TESTS_DIR = Path(__file__).resolve().parent


@pytest.fixture
def options() -> CallOptions:
    return CallOptions(libpath=[str(TESTS_DIR)], timeout_seconds=30)

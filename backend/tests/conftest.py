# Ensure backend is at sys.path[0] when pytest runs (from repo root or from backend dir)
import socket
import sys
from pathlib import Path
from typing import List

import pytest

_tests_dir = Path(__file__).resolve().parent
_backend = _tests_dir.parent
_str_backend = str(_backend)
if sys.path[0:1] != [_str_backend]:
    sys.path.insert(0, _str_backend)

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


class SleepRecorder:
    """Stand-in for asyncio.sleep that records durations and returns at once."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

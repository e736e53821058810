from __future__ import annotations

import pytest
from support import Recorder

from taskdag.state.store import MemoryStateStore


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()

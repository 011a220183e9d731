from __future__ import annotations

import copy
import sys
from pathlib import Path

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.wf.backend import WorkflowBackend  # noqa: E402
from src.wf.factory import Factory  # noqa: E402


class FakeClock:
    """Settable clock so queue eligibility can be tested without sleeping."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(tmp_path: Path, clock: FakeClock) -> WorkflowBackend:
    b = WorkflowBackend.open(tmp_path / "wf.db", clock=clock)
    try:
        yield b
    finally:
        b.quit()


@pytest.fixture
def factory(backend: WorkflowBackend) -> Factory:
    return Factory(backend)


A_WORKFLOW = {
    "name": "A workflow",
    "chain": [
        {
            "name": "A Task",
            "timeout": 30,
            "retry": 3,
            "body": "function (job, cb) { return cb(null); }",
        }
    ],
    "timeout": 180,
    "onError": [
        {
            "name": "Fallback task",
            "body": "function (job, cb) { return cb('Workflow error'); }",
        }
    ],
}


@pytest.fixture
def workflow_def() -> dict:
    return copy.deepcopy(A_WORKFLOW)

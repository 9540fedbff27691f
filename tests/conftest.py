from datetime import datetime, timedelta, timezone

import pytest

from loopctl.engine import ExecutionEngine
from loopctl.registry import LoopRegistry
from loopctl.schemas import Execution, LoopDef
from loopctl.store import InMemoryRepository, create_repositories


class FixedClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms, **kwargs)
        return self.now


SAMPLE_LOOP = {
    "loop_id": "sample-loop",
    "name": "Sample Loop",
    "version": "1.2.0",
    "description": "Three phases with one gate of each approval type.",
    "default_mode": "greenfield",
    "default_autonomy": "supervised",
    "phases": [
        {
            "name": "PLAN",
            "skills": [
                "outline",
                {"skill_id": "research", "required": False},
                {"skill_id": "legacy-audit", "modes": ["brownfield-polish"]},
            ],
        },
        {"name": "BUILD", "skills": ["code"]},
        {"name": "SHIP", "skills": ["release"]},
    ],
    "gates": [
        {"gate_id": "plan-gate", "name": "Plan review", "after_phase": "PLAN", "approval_type": "human"},
        {"gate_id": "build-gate", "name": "Build checks", "after_phase": "BUILD", "approval_type": "auto"},
        {
            "gate_id": "ship-gate",
            "name": "Release notes",
            "after_phase": "SHIP",
            "approval_type": "conditional",
            "deliverables": ["RELEASE.md"],
        },
    ],
}


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def sample_loop():
    return LoopDef.from_dict(SAMPLE_LOOP)


@pytest.fixture
def registry(tmp_path, sample_loop):
    """Registry over an empty directory with the sample loop registered."""
    reg = LoopRegistry(tmp_path / "definitions")
    reg.register(sample_loop)
    return reg


@pytest.fixture
def executions():
    return InMemoryRepository(Execution, "execution_id")


@pytest.fixture
def engine(registry, executions, clock):
    return ExecutionEngine(loops=registry, executions=executions, clock=clock)


@pytest.fixture
def bundled_engine(clock):
    """Engine over the loop definitions shipped with loopctl."""
    return ExecutionEngine(loops=LoopRegistry(), executions=InMemoryRepository(Execution, "execution_id"), clock=clock)


@pytest.fixture
def repositories():
    return create_repositories()

"""
Skill delegates - the boundary to whatever actually performs a skill.

The autonomous executor never runs skills itself. It hands each pending
skill to a SkillDelegate (a sub-agent, a human-in-the-loop queue, a shell
command...) and records the result:

- SkillResult(success=True): the skill is completed with its deliverables
- SkillResult(success=False) or TransientError: the attempt failed and
  may be retried
- PermanentError: retrying is pointless; the execution is escalated

The DelegateRegistry maps skill ids to delegates with a default fallback.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class SkillContext:
    """What a delegate is told about the skill it is asked to perform."""
    execution_id: str
    loop_id: str
    project: str
    phase: str
    skill_id: str
    attempt: int
    mode: str
    previous_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "loop_id": self.loop_id,
            "project": self.project,
            "phase": self.phase,
            "skill_id": self.skill_id,
            "attempt": self.attempt,
            "mode": self.mode,
            "previous_error": self.previous_error,
        }


@dataclass(frozen=True)
class SkillResult:
    """
    Result returned by a delegate.

    Attributes:
        success: Whether the skill succeeded
        deliverables: Names of the deliverables produced
        score: Optional quality score in [0, 1]
        error: Failure description when success is False
        signals: Free-form signals for the learning recorder
    """
    success: bool
    deliverables: tuple[str, ...] = field(default_factory=tuple)
    score: Optional[float] = None
    error: Optional[str] = None
    signals: dict[str, Any] = field(default_factory=dict)


class SkillDelegate(ABC):
    """
    Abstract base class for skill delegates.

    Delegates may block for a long time; the autonomous executor calls them
    from worker threads so one slow skill never stalls other executions.
    """

    @abstractmethod
    def execute_skill(self, execution_id: str, skill_id: str, context: SkillContext) -> SkillResult:
        """
        Perform a skill.

        Args:
            execution_id: The execution the skill belongs to
            skill_id: The skill to perform
            context: Execution, phase and attempt details

        Returns:
            The SkillResult

        Raises:
            TransientError: The attempt failed but may succeed on retry
            PermanentError: The skill cannot succeed; do not retry
        """
        pass


class NoOpSkillDelegate(SkillDelegate):
    """
    No-op delegate for testing and dry runs.

    Reports every skill as successful without doing anything.
    """

    def execute_skill(self, execution_id: str, skill_id: str, context: SkillContext) -> SkillResult:
        return SkillResult(success=True, signals={"noop": True})


class DelegateRegistry:
    """
    Registry for delegate dispatch by skill id.

    Usage:
        delegates = DelegateRegistry(default=SubAgentDelegate())
        delegates.register("deploy", HumanQueueDelegate())

        result = delegates.dispatch(context)
    """

    def __init__(self, default: Optional[SkillDelegate] = None) -> None:
        """
        Initialize the registry.

        Args:
            default: Delegate for skills without a specific registration
        """
        self._delegates: dict[str, SkillDelegate] = {}
        self._default = default

    def register(self, skill_id: str, delegate: SkillDelegate) -> None:
        """Register a delegate for one skill id."""
        self._delegates[skill_id] = delegate

    def get(self, skill_id: str) -> SkillDelegate:
        """
        Get the delegate for a skill.

        Raises:
            KeyError: If neither a specific nor a default delegate is registered
        """
        if skill_id in self._delegates:
            return self._delegates[skill_id]
        if self._default is not None:
            return self._default
        registered = list(self._delegates.keys())
        raise KeyError(
            f"No delegate registered for skill: {skill_id}. "
            f"Registered: {registered}"
        )

    def has(self, skill_id: str) -> bool:
        return skill_id in self._delegates or self._default is not None

    def list_skills(self) -> list[str]:
        return list(self._delegates.keys())

    def dispatch(self, context: SkillContext) -> SkillResult:
        """Hand a skill to its delegate."""
        delegate = self.get(context.skill_id)
        return delegate.execute_skill(context.execution_id, context.skill_id, context)

    @classmethod
    def create_noop(cls) -> "DelegateRegistry":
        """
        Create a registry whose default delegate succeeds immediately.

        Useful for testing and dry-run mode.
        """
        return cls(default=NoOpSkillDelegate())

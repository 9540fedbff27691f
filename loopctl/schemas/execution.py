"""
Execution schemas - the mutable instance of a loop.

An Execution binds a LoopDef (id + version) to a project and tracks:
- PhaseProgress: per-phase status and per-skill progress
- GateState: approval status of each gate that applies to the execution
- SkillExecution: one record per (phase, skill) that was completed
- ExecutionLogEntry: append-only audit log of engine operations

Executions are only mutated through ExecutionEngine operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from loopctl.utils import parse_datetime

from .loop_def import ApprovalType, AutonomyLevel, LoopMode


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution."""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class SkillStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class GateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogCategory(str, Enum):
    PHASE = "phase"
    SKILL = "skill"
    GATE = "gate"
    SYSTEM = "system"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class SkillProgress:
    """Progress of one skill slot within a phase."""
    skill_id: str
    required: bool = True
    status: SkillStatus = SkillStatus.PENDING
    skip_reason: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def is_done(self) -> bool:
        """Completed, or skipped with a recorded reason."""
        if self.status == SkillStatus.COMPLETED:
            return True
        return self.status == SkillStatus.SKIPPED and bool(self.skip_reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "required": self.required,
            "status": self.status.value,
            "skip_reason": self.skip_reason,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SkillProgress":
        return cls(
            skill_id=data["skill_id"],
            required=data.get("required", True),
            status=SkillStatus(data.get("status", SkillStatus.PENDING.value)),
            skip_reason=data.get("skip_reason"),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
        )


@dataclass
class PhaseProgress:
    """Progress of one phase of an execution."""
    name: str
    order: int
    status: PhaseStatus = PhaseStatus.PENDING
    skills: list[SkillProgress] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def get_skill(self, skill_id: str) -> Optional[SkillProgress]:
        for skill in self.skills:
            if skill.skill_id == skill_id:
                return skill
        return None

    def outstanding_required(self) -> list[str]:
        """Required skills that are neither completed nor skipped with a reason."""
        return [s.skill_id for s in self.skills if s.required and not s.is_done]

    def pending_skills(self) -> list[SkillProgress]:
        return [s for s in self.skills if s.status in (SkillStatus.PENDING, SkillStatus.FAILED)]

    @property
    def is_satisfied(self) -> bool:
        return not self.outstanding_required()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "order": self.order,
            "status": self.status.value,
            "skills": [s.to_dict() for s in self.skills],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseProgress":
        return cls(
            name=data["name"],
            order=data["order"],
            status=PhaseStatus(data.get("status", PhaseStatus.PENDING.value)),
            skills=[SkillProgress.from_dict(s) for s in data.get("skills", [])],
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
        )


@dataclass
class GateState:
    """
    Approval state of a gate within an execution.

    ``enabled`` and ``approval_type_override`` are per-execution
    administration knobs: a disabled gate never blocks advancement, and
    an override replaces the definition's approval type.
    """
    gate_id: str
    name: str
    after_phase: str
    required: bool = True
    approval_type: ApprovalType = ApprovalType.HUMAN
    deliverables: list[str] = field(default_factory=list)
    status: GateStatus = GateStatus.PENDING
    enabled: bool = True
    approval_type_override: Optional[ApprovalType] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    feedback: Optional[str] = None

    @property
    def effective_approval_type(self) -> ApprovalType:
        return self.approval_type_override or self.approval_type

    @property
    def blocks_advance(self) -> bool:
        """Required, enabled and not approved."""
        return self.required and self.enabled and self.status != GateStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "name": self.name,
            "after_phase": self.after_phase,
            "required": self.required,
            "approval_type": self.approval_type.value,
            "deliverables": list(self.deliverables),
            "status": self.status.value,
            "enabled": self.enabled,
            "approval_type_override": (
                self.approval_type_override.value if self.approval_type_override else None
            ),
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GateState":
        override = data.get("approval_type_override")
        return cls(
            gate_id=data["gate_id"],
            name=data.get("name", data["gate_id"]),
            after_phase=data["after_phase"],
            required=data.get("required", True),
            approval_type=ApprovalType(data.get("approval_type", ApprovalType.HUMAN.value)),
            deliverables=list(data.get("deliverables", [])),
            status=GateStatus(data.get("status", GateStatus.PENDING.value)),
            enabled=data.get("enabled", True),
            approval_type_override=ApprovalType(override) if override else None,
            approved_by=data.get("approved_by"),
            approved_at=parse_datetime(data.get("approved_at")),
            feedback=data.get("feedback"),
        )


@dataclass(frozen=True)
class SkillOutcome:
    """
    Outcome reported for a completed skill.

    Attributes:
        success: Whether the skill achieved its goal
        score: Optional quality score in [0, 1]
        signals: Free-form signals forwarded to the learning recorder
    """
    success: bool = True
    score: Optional[float] = None
    signals: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.score is not None and not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "score": self.score, "signals": dict(self.signals)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SkillOutcome":
        return cls(
            success=bool(data.get("success", True)),
            score=data.get("score"),
            signals=dict(data.get("signals") or {}),
        )


@dataclass
class SkillExecution:
    """Record of a completed skill. Unique per (phase, skill_id) within an execution."""
    skill_id: str
    phase: str
    version: Optional[str] = None
    deliverables: list[str] = field(default_factory=list)
    outcome: Optional[SkillOutcome] = None
    retry_count: int = 0
    recorded_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "phase": self.phase,
            "version": self.version,
            "deliverables": list(self.deliverables),
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "retry_count": self.retry_count,
            "recorded_at": _iso(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SkillExecution":
        outcome = data.get("outcome")
        return cls(
            skill_id=data["skill_id"],
            phase=data["phase"],
            version=data.get("version"),
            deliverables=list(data.get("deliverables", [])),
            outcome=SkillOutcome.from_dict(outcome) if outcome else None,
            retry_count=data.get("retry_count", 0),
            recorded_at=parse_datetime(data.get("recorded_at")),
        )


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One entry of an execution's audit log."""
    entry_id: str
    timestamp: datetime
    level: LogLevel
    category: LogCategory
    message: str
    phase: Optional[str] = None
    skill_id: Optional[str] = None
    gate_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "phase": self.phase,
            "skill_id": self.skill_id,
            "gate_id": self.gate_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionLogEntry":
        return cls(
            entry_id=data["entry_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            level=LogLevel(data["level"]),
            category=LogCategory(data["category"]),
            message=data["message"],
            phase=data.get("phase"),
            skill_id=data.get("skill_id"),
            gate_id=data.get("gate_id"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class Execution:
    """
    A running instance of a loop bound to a project.

    Attributes:
        execution_id: ULID of the execution
        loop_id: Bound loop definition id
        loop_version: Bound loop definition version
        project: Project identifier
        mode: Project mode (filters mode-restricted phases, skills, gates)
        autonomy: Autonomy level (full, supervised, manual)
        status: Lifecycle status
        current_phase: Name of the phase being worked on
        phases: Progress records of the applicable phases, in ordinal order
        gates: Gate states of the applicable gates
        skill_executions: One record per completed (phase, skill)
        logs: Audit log entries
        started_at / updated_at / completed_at: Timestamps
        status_reason: Why the execution was blocked or aborted
    """
    execution_id: str
    loop_id: str
    loop_version: str
    project: str
    mode: LoopMode
    autonomy: AutonomyLevel
    status: ExecutionStatus
    current_phase: str
    phases: list[PhaseProgress] = field(default_factory=list)
    gates: list[GateState] = field(default_factory=list)
    skill_executions: list[SkillExecution] = field(default_factory=list)
    logs: list[ExecutionLogEntry] = field(default_factory=list)
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status_reason: Optional[str] = None

    def get_phase(self, name: str) -> Optional[PhaseProgress]:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    @property
    def current(self) -> PhaseProgress:
        """Progress record of the current phase."""
        phase = self.get_phase(self.current_phase)
        if phase is None:
            raise KeyError(f"Execution {self.execution_id} has no phase '{self.current_phase}'")
        return phase

    def next_phase(self) -> Optional[PhaseProgress]:
        """The phase following the current one, or None at the last phase."""
        following = [p for p in self.phases if p.order > self.current.order]
        return min(following, key=lambda p: p.order) if following else None

    def get_gate(self, gate_id: str) -> Optional[GateState]:
        for gate in self.gates:
            if gate.gate_id == gate_id:
                return gate
        return None

    def gates_for_phase(self, phase_name: str) -> list[GateState]:
        return [g for g in self.gates if g.after_phase == phase_name]

    def get_skill_execution(self, phase: str, skill_id: str) -> Optional[SkillExecution]:
        for record in self.skill_executions:
            if record.phase == phase and record.skill_id == skill_id:
                return record
        return None

    def deliverables_for_phase(self, phase: str) -> set[str]:
        produced: set[str] = set()
        for record in self.skill_executions:
            if record.phase == phase:
                produced.update(record.deliverables)
        return produced

    def summary(self) -> "ExecutionSummary":
        all_skills = [s for p in self.phases for s in p.skills]
        return ExecutionSummary(
            execution_id=self.execution_id,
            loop_id=self.loop_id,
            project=self.project,
            status=self.status,
            current_phase=self.current_phase,
            autonomy=self.autonomy,
            phases_completed=sum(1 for p in self.phases if p.status == PhaseStatus.COMPLETED),
            phases_total=len(self.phases),
            skills_completed=sum(1 for s in all_skills if s.status == SkillStatus.COMPLETED),
            skills_total=len(all_skills),
            started_at=self.started_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "execution_id": self.execution_id,
            "loop_id": self.loop_id,
            "loop_version": self.loop_version,
            "project": self.project,
            "mode": self.mode.value,
            "autonomy": self.autonomy.value,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "phases": [p.to_dict() for p in self.phases],
            "gates": [g.to_dict() for g in self.gates],
            "skill_executions": [s.to_dict() for s in self.skill_executions],
            "logs": [entry.to_dict() for entry in self.logs],
            "started_at": _iso(self.started_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "status_reason": self.status_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Execution":
        """Deserialize from dictionary."""
        return cls(
            execution_id=data["execution_id"],
            loop_id=data["loop_id"],
            loop_version=data["loop_version"],
            project=data["project"],
            mode=LoopMode(data["mode"]),
            autonomy=AutonomyLevel(data["autonomy"]),
            status=ExecutionStatus(data["status"]),
            current_phase=data["current_phase"],
            phases=[PhaseProgress.from_dict(p) for p in data.get("phases", [])],
            gates=[GateState.from_dict(g) for g in data.get("gates", [])],
            skill_executions=[SkillExecution.from_dict(s) for s in data.get("skill_executions", [])],
            logs=[ExecutionLogEntry.from_dict(e) for e in data.get("logs", [])],
            started_at=parse_datetime(data.get("started_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            status_reason=data.get("status_reason"),
        )


@dataclass(frozen=True)
class ExecutionSummary:
    """Listing entry for an execution with progress counts."""
    execution_id: str
    loop_id: str
    project: str
    status: ExecutionStatus
    current_phase: str
    autonomy: AutonomyLevel
    phases_completed: int
    phases_total: int
    skills_completed: int
    skills_total: int
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "loop_id": self.loop_id,
            "project": self.project,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "autonomy": self.autonomy.value,
            "progress": {
                "phases_completed": self.phases_completed,
                "phases_total": self.phases_total,
                "skills_completed": self.skills_completed,
                "skills_total": self.skills_total,
            },
            "started_at": _iso(self.started_at),
            "updated_at": _iso(self.updated_at),
        }

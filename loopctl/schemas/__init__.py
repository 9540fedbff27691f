"""
loopctl.schemas - Schema definitions for the loop execution layer.

This module defines the core data structures for loopctl:

LoopDef -> Execution -> SkillExecution / GateState / ExecutionLogEntry

Lifecycle:
1. LoopDef: Static, version-controlled loop template (phases, skills, gates)
2. Execution: Mutable instance of a loop bound to a project
3. PhaseProgress / SkillProgress: Per-phase and per-skill progress
4. GateState: Per-execution approval state of each applicable gate
5. SkillExecution: Record of a completed skill, one per (phase, skill)

Coordination:
- Collaborator / AgentSet: who is working
- Reservation: time-bounded claims over modules, files and path patterns
- MergeRequest: queued integration of an agent set's work

Requests:
- One tagged struct per command, validated at the boundary
"""

from .loop_def import (
    ApprovalType,
    AutonomyLevel,
    GateDef,
    LoopDef,
    LoopMode,
    LoopSummary,
    PhaseDef,
    PhaseSkillDef,
)
from .execution import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    ExecutionSummary,
    GateState,
    GateStatus,
    LogCategory,
    LogLevel,
    PhaseProgress,
    PhaseStatus,
    SkillExecution,
    SkillOutcome,
    SkillProgress,
    SkillStatus,
)
from .coordination import (
    AgentSet,
    AgentSetStatus,
    Collaborator,
    CollaboratorStatus,
    ConflictCheck,
    CoordinatorEvent,
    MergeRequest,
    MergeRequestStatus,
    MergeResult,
    Reservation,
    ReservationConflict,
    ReservationType,
)

__all__ = [
    # Loop Definition
    "ApprovalType",
    "AutonomyLevel",
    "GateDef",
    "LoopDef",
    "LoopMode",
    "LoopSummary",
    "PhaseDef",
    "PhaseSkillDef",
    # Execution
    "Execution",
    "ExecutionLogEntry",
    "ExecutionStatus",
    "ExecutionSummary",
    "GateState",
    "GateStatus",
    "LogCategory",
    "LogLevel",
    "PhaseProgress",
    "PhaseStatus",
    "SkillExecution",
    "SkillOutcome",
    "SkillProgress",
    "SkillStatus",
    # Coordination
    "AgentSet",
    "AgentSetStatus",
    "Collaborator",
    "CollaboratorStatus",
    "ConflictCheck",
    "CoordinatorEvent",
    "MergeRequest",
    "MergeRequestStatus",
    "MergeResult",
    "Reservation",
    "ReservationConflict",
    "ReservationType",
]

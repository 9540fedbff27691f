"""
Request schemas - one tagged struct per command.

Each request is parsed from a plain dict by ``from_dict``, which checks
required keys, string shapes, enum membership and numeric ranges and raises
RequestValidationError. Parsing happens before anything reaches the engine
or coordinator, so domain code only ever sees well-formed input.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar

from loopctl.errors import RequestValidationError

from .coordination import MergeRequestStatus, ReservationType
from .execution import ExecutionStatus, LogCategory, LogLevel, SkillOutcome
from .loop_def import ApprovalType, AutonomyLevel, LoopMode

E = TypeVar("E", bound=Enum)


def _mapping(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RequestValidationError(f"Request params must be an object, got {type(data).__name__}")
    return data


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RequestValidationError(f"'{key}' is required and must be a non-empty string")
    return value.strip()


def _optional_str(data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestValidationError(f"'{key}' must be a string")
    return value.strip() or None


def _enum(data: dict[str, Any], key: str, enum_cls: type[E], required: bool = False) -> Optional[E]:
    value = data.get(key)
    if value is None:
        if required:
            raise RequestValidationError(f"'{key}' is required")
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RequestValidationError(f"'{key}' must be one of: {allowed} (got {value!r})")


def _optional_int(data: dict[str, Any], key: str, minimum: int = 1) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise RequestValidationError(f"'{key}' must be an integer >= {minimum}")
    return value


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise RequestValidationError(f"'{key}' must be a boolean")
    return value


def _str_list(data: dict[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key) or []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise RequestValidationError(f"'{key}' must be a list of strings")
    return tuple(value)


def _outcome(data: dict[str, Any]) -> Optional[SkillOutcome]:
    outcome = data.get("outcome")
    if outcome is None:
        return None
    if not isinstance(outcome, dict):
        raise RequestValidationError("'outcome' must be an object")
    if not isinstance(outcome.get("success", True), bool):
        raise RequestValidationError("'outcome.success' must be a boolean")
    score = outcome.get("score")
    if score is not None and (
        not isinstance(score, (int, float)) or isinstance(score, bool) or not 0 <= score <= 1
    ):
        raise RequestValidationError("'outcome.score' must be a number within [0, 1]")
    signals = outcome.get("signals")
    if signals is not None and not isinstance(signals, dict):
        raise RequestValidationError("'outcome.signals' must be an object")
    return SkillOutcome.from_dict(outcome)


# =============================================================================
# Execution engine requests
# =============================================================================


@dataclass(frozen=True)
class StartExecutionRequest:
    loop_id: str
    project: str
    mode: Optional[LoopMode] = None
    autonomy: Optional[AutonomyLevel] = None

    @classmethod
    def from_dict(cls, data: Any) -> "StartExecutionRequest":
        data = _mapping(data)
        return cls(
            loop_id=_require_str(data, "loop_id"),
            project=_require_str(data, "project"),
            mode=_enum(data, "mode", LoopMode),
            autonomy=_enum(data, "autonomy", AutonomyLevel),
        )


@dataclass(frozen=True)
class ExecutionRef:
    """Request naming a single execution (get, advance, complete_phase, pause, resume)."""
    execution_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "ExecutionRef":
        return cls(execution_id=_require_str(_mapping(data), "execution_id"))


@dataclass(frozen=True)
class ListExecutionsRequest:
    status: Optional[ExecutionStatus] = None
    loop_id: Optional[str] = None
    autonomy: Optional[AutonomyLevel] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ListExecutionsRequest":
        data = _mapping(data)
        return cls(
            status=_enum(data, "status", ExecutionStatus),
            loop_id=_optional_str(data, "loop_id"),
            autonomy=_enum(data, "autonomy", AutonomyLevel),
        )


@dataclass(frozen=True)
class CompleteSkillRequest:
    execution_id: str
    skill_id: str
    deliverables: tuple[str, ...] = ()
    outcome: Optional[SkillOutcome] = None
    version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "CompleteSkillRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            skill_id=_require_str(data, "skill_id"),
            deliverables=_str_list(data, "deliverables"),
            outcome=_outcome(data),
            version=_optional_str(data, "version"),
        )


@dataclass(frozen=True)
class SkipSkillRequest:
    execution_id: str
    skill_id: str
    reason: str

    @classmethod
    def from_dict(cls, data: Any) -> "SkipSkillRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            skill_id=_require_str(data, "skill_id"),
            reason=_require_str(data, "reason"),
        )


@dataclass(frozen=True)
class SkillRef:
    """Request naming one skill of the current phase (reset_skill)."""
    execution_id: str
    skill_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "SkillRef":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            skill_id=_require_str(data, "skill_id"),
        )


@dataclass(frozen=True)
class AddLogRequest:
    execution_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.SYSTEM

    @classmethod
    def from_dict(cls, data: Any) -> "AddLogRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            message=_require_str(data, "message"),
            level=_enum(data, "level", LogLevel) or LogLevel.INFO,
            category=_enum(data, "category", LogCategory) or LogCategory.SYSTEM,
        )


@dataclass(frozen=True)
class ApproveGateRequest:
    execution_id: str
    gate_id: str
    approved_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ApproveGateRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            gate_id=_require_str(data, "gate_id"),
            approved_by=_optional_str(data, "approved_by"),
        )


@dataclass(frozen=True)
class RejectGateRequest:
    execution_id: str
    gate_id: str
    feedback: str

    @classmethod
    def from_dict(cls, data: Any) -> "RejectGateRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            gate_id=_require_str(data, "gate_id"),
            feedback=_require_str(data, "feedback"),
        )


@dataclass(frozen=True)
class AbortExecutionRequest:
    execution_id: str
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AbortExecutionRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            reason=_optional_str(data, "reason"),
        )


@dataclass(frozen=True)
class GetLogsRequest:
    execution_id: str
    level: Optional[LogLevel] = None
    category: Optional[LogCategory] = None
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "GetLogsRequest":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            level=_enum(data, "level", LogLevel),
            category=_enum(data, "category", LogCategory),
            limit=_optional_int(data, "limit"),
        )


@dataclass(frozen=True)
class UpdateGateRequest:
    execution_id: str
    gate_id: str
    enabled: Optional[bool] = None
    approval_type_override: Optional[ApprovalType] = None

    @classmethod
    def from_dict(cls, data: Any) -> "UpdateGateRequest":
        data = _mapping(data)
        enabled = data.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            raise RequestValidationError("'enabled' must be a boolean")
        return cls(
            execution_id=_require_str(data, "execution_id"),
            gate_id=_require_str(data, "gate_id"),
            enabled=enabled,
            approval_type_override=_enum(data, "approval_type_override", ApprovalType),
        )


@dataclass(frozen=True)
class LoopRef:
    loop_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "LoopRef":
        return cls(loop_id=_require_str(_mapping(data), "loop_id"))


# =============================================================================
# Autonomous executor requests
# =============================================================================


@dataclass(frozen=True)
class ConfigureAutonomousRequest:
    tick_interval_ms: Optional[int] = None
    max_parallel_executions: Optional[int] = None
    max_skill_retries: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ConfigureAutonomousRequest":
        data = _mapping(data)
        return cls(
            tick_interval_ms=_optional_int(data, "tick_interval_ms"),
            max_parallel_executions=_optional_int(data, "max_parallel_executions"),
            max_skill_retries=_optional_int(data, "max_skill_retries", minimum=0),
        )


@dataclass(frozen=True)
class GateRef:
    execution_id: str
    gate_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "GateRef":
        data = _mapping(data)
        return cls(
            execution_id=_require_str(data, "execution_id"),
            gate_id=_require_str(data, "gate_id"),
        )


# =============================================================================
# Coordinator requests
# =============================================================================


@dataclass(frozen=True)
class RegisterCollaboratorRequest:
    name: str
    email: Optional[str] = None
    collaborator_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RegisterCollaboratorRequest":
        data = _mapping(data)
        return cls(
            name=_require_str(data, "name"),
            email=_optional_str(data, "email"),
            collaborator_id=_optional_str(data, "collaborator_id"),
        )


@dataclass(frozen=True)
class CreateAgentSetRequest:
    collaborator_id: str
    name: str
    agent_ids: tuple[str, ...] = field(default_factory=tuple)
    module_ids: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Any) -> "CreateAgentSetRequest":
        data = _mapping(data)
        return cls(
            collaborator_id=_require_str(data, "collaborator_id"),
            name=_require_str(data, "name"),
            agent_ids=_str_list(data, "agent_ids"),
            module_ids=_str_list(data, "module_ids"),
        )


@dataclass(frozen=True)
class ListAgentSetsRequest:
    collaborator_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ListAgentSetsRequest":
        return cls(collaborator_id=_optional_str(_mapping(data), "collaborator_id"))


@dataclass(frozen=True)
class CollaboratorRef:
    """Request naming a collaborator (get, touch, disconnect, work)."""
    collaborator_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "CollaboratorRef":
        return cls(collaborator_id=_require_str(_mapping(data), "collaborator_id"))


@dataclass(frozen=True)
class AgentSetRef:
    """Request naming an agent set (get, pause, resume)."""
    agent_set_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "AgentSetRef":
        return cls(agent_set_id=_require_str(_mapping(data), "agent_set_id"))


@dataclass(frozen=True)
class AddAgentRequest:
    agent_set_id: str
    agent_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "AddAgentRequest":
        data = _mapping(data)
        return cls(
            agent_set_id=_require_str(data, "agent_set_id"),
            agent_id=_require_str(data, "agent_id"),
        )


@dataclass(frozen=True)
class AddModuleRequest:
    agent_set_id: str
    module_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "AddModuleRequest":
        data = _mapping(data)
        return cls(
            agent_set_id=_require_str(data, "agent_set_id"),
            module_id=_require_str(data, "module_id"),
        )


@dataclass(frozen=True)
class CreateReservationRequest:
    collaborator_id: str
    type: ReservationType
    target: str
    exclusive: bool = True
    duration_ms: Optional[int] = None
    agent_set_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "CreateReservationRequest":
        data = _mapping(data)
        return cls(
            collaborator_id=_require_str(data, "collaborator_id"),
            type=_enum(data, "type", ReservationType, required=True),
            target=_require_str(data, "target"),
            exclusive=_bool(data, "exclusive", True),
            duration_ms=_optional_int(data, "duration_ms"),
            agent_set_id=_optional_str(data, "agent_set_id"),
            reason=_optional_str(data, "reason"),
        )


@dataclass(frozen=True)
class ReservationRef:
    reservation_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "ReservationRef":
        return cls(reservation_id=_require_str(_mapping(data), "reservation_id"))


@dataclass(frozen=True)
class ExtendReservationRequest:
    reservation_id: str
    additional_ms: int

    @classmethod
    def from_dict(cls, data: Any) -> "ExtendReservationRequest":
        data = _mapping(data)
        additional_ms = _optional_int(data, "additional_ms")
        if additional_ms is None:
            raise RequestValidationError("'additional_ms' is required")
        return cls(
            reservation_id=_require_str(data, "reservation_id"),
            additional_ms=additional_ms,
        )


@dataclass(frozen=True)
class ListReservationsRequest:
    collaborator_id: Optional[str] = None
    include_expired: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "ListReservationsRequest":
        data = _mapping(data)
        return cls(
            collaborator_id=_optional_str(data, "collaborator_id"),
            include_expired=_bool(data, "include_expired", False),
        )


@dataclass(frozen=True)
class CheckResourceRequest:
    type: ReservationType
    target: str

    @classmethod
    def from_dict(cls, data: Any) -> "CheckResourceRequest":
        data = _mapping(data)
        return cls(
            type=_enum(data, "type", ReservationType, required=True),
            target=_require_str(data, "target"),
        )


@dataclass(frozen=True)
class RequestMergeRequest:
    collaborator_id: str
    agent_set_id: str
    module_id: str
    branch_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RequestMergeRequest":
        data = _mapping(data)
        return cls(
            collaborator_id=_require_str(data, "collaborator_id"),
            agent_set_id=_require_str(data, "agent_set_id"),
            module_id=_require_str(data, "module_id"),
            branch_name=_optional_str(data, "branch_name"),
        )


@dataclass(frozen=True)
class MergeRequestRef:
    merge_request_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "MergeRequestRef":
        return cls(merge_request_id=_require_str(_mapping(data), "merge_request_id"))


@dataclass(frozen=True)
class RejectMergeRequest:
    merge_request_id: str
    reason: str

    @classmethod
    def from_dict(cls, data: Any) -> "RejectMergeRequest":
        data = _mapping(data)
        return cls(
            merge_request_id=_require_str(data, "merge_request_id"),
            reason=_require_str(data, "reason"),
        )


@dataclass(frozen=True)
class ListMergeQueueRequest:
    status: Optional[MergeRequestStatus] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ListMergeQueueRequest":
        return cls(status=_enum(_mapping(data), "status", MergeRequestStatus))


@dataclass(frozen=True)
class CheckCanWorkRequest:
    collaborator_id: str
    module_id: str

    @classmethod
    def from_dict(cls, data: Any) -> "CheckCanWorkRequest":
        data = _mapping(data)
        return cls(
            collaborator_id=_require_str(data, "collaborator_id"),
            module_id=_require_str(data, "module_id"),
        )


@dataclass(frozen=True)
class EventsRequest:
    limit: int = 50

    @classmethod
    def from_dict(cls, data: Any) -> "EventsRequest":
        limit = _optional_int(_mapping(data), "limit")
        return cls(limit=limit if limit is not None else 50)

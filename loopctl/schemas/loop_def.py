"""
LoopDef schema - the declarative loop definition.

A LoopDef is the static, version-controlled template of a loop: an ordered
list of phases, each holding skills, and the gates that must be approved
before an execution may leave a phase.

LoopDefs are immutable. Executions bind to a loop id + version and never
mutate the definition.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from loopctl.errors import LoopValidationError


class LoopMode(str, Enum):
    """Project mode. Determines which mode-restricted phases, skills and gates apply."""
    GREENFIELD = "greenfield"
    BROWNFIELD_POLISH = "brownfield-polish"
    BROWNFIELD_ENTERPRISE = "brownfield-enterprise"


class AutonomyLevel(str, Enum):
    """How much of an execution the autonomous executor may drive unattended."""
    FULL = "full"
    SUPERVISED = "supervised"
    MANUAL = "manual"


class ApprovalType(str, Enum):
    """
    Who may approve a gate.

    human: only a person, never auto-approved
    auto: may be approved unattended (full or supervised autonomy)
    conditional: auto-approved under full autonomy once the gate's
        expected deliverables have been produced
    """
    HUMAN = "human"
    AUTO = "auto"
    CONDITIONAL = "conditional"


def _parse_modes(value: Any, owner: str) -> tuple[LoopMode, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    try:
        return tuple(LoopMode(m) for m in value)
    except ValueError as e:
        raise LoopValidationError(f"{owner}: {e}")


def _applies(modes: tuple[LoopMode, ...], mode: LoopMode) -> bool:
    return not modes or mode in modes


@dataclass(frozen=True)
class PhaseSkillDef:
    """
    A skill slot within a phase.

    Attributes:
        skill_id: Skill identifier (resolved by the skill delegate)
        required: Whether the skill must be completed or skipped before
            the phase can complete
        modes: Modes the skill applies to; empty means all modes
    """
    skill_id: str
    required: bool = True
    modes: tuple[LoopMode, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.skill_id or not str(self.skill_id).strip():
            raise LoopValidationError("skill_id must be a non-empty string")

    def applies_to(self, mode: LoopMode) -> bool:
        return _applies(self.modes, mode)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"skill_id": self.skill_id, "required": self.required}
        if self.modes:
            result["modes"] = [m.value for m in self.modes]
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "PhaseSkillDef":
        """Deserialize from a mapping or a bare skill id string."""
        if isinstance(data, str):
            return cls(skill_id=data)
        if not isinstance(data, dict):
            raise LoopValidationError(f"Invalid skill entry: {data!r}")
        skill_id = data.get("skill_id") or data.get("skill")
        return cls(
            skill_id=skill_id,
            required=bool(data.get("required", True)),
            modes=_parse_modes(data.get("modes"), f"skill '{skill_id}'"),
        )


@dataclass(frozen=True)
class PhaseDef:
    """
    A phase of a loop.

    Attributes:
        name: Phase name, unique within the loop (e.g. INIT, IMPLEMENT)
        order: Ordinal; strictly increasing across the loop's phases
        skills: Skills executed in this phase
        required: Non-required phases make all of their skills optional
        parallel: Whether skills of the phase may run concurrently
        modes: Modes the phase applies to; empty means all modes
    """
    name: str
    order: int
    skills: tuple[PhaseSkillDef, ...] = field(default_factory=tuple)
    required: bool = True
    parallel: bool = False
    modes: tuple[LoopMode, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.name:
            raise LoopValidationError("Phase name must be a non-empty string")
        if not self.skills:
            raise LoopValidationError(f"Phase '{self.name}' must declare at least one skill")
        skill_ids = [s.skill_id for s in self.skills]
        if len(skill_ids) != len(set(skill_ids)):
            duplicates = {sid for sid in skill_ids if skill_ids.count(sid) > 1}
            raise LoopValidationError(f"Phase '{self.name}': duplicate skills {duplicates}")

    def applies_to(self, mode: LoopMode) -> bool:
        return _applies(self.modes, mode)

    def get_skill(self, skill_id: str) -> Optional[PhaseSkillDef]:
        for skill in self.skills:
            if skill.skill_id == skill_id:
                return skill
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "order": self.order,
            "skills": [s.to_dict() for s in self.skills],
            "required": self.required,
            "parallel": self.parallel,
        }
        if self.modes:
            result["modes"] = [m.value for m in self.modes]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_order: int = 0) -> "PhaseDef":
        name = data.get("name")
        order = data.get("order", default_order)
        if not isinstance(order, int) or isinstance(order, bool):
            raise LoopValidationError(f"Phase '{name}': order must be an integer")
        return cls(
            name=name,
            order=order,
            skills=tuple(PhaseSkillDef.from_dict(s) for s in data.get("skills", [])),
            required=bool(data.get("required", True)),
            parallel=bool(data.get("parallel", False)),
            modes=_parse_modes(data.get("modes"), f"phase '{name}'"),
        )


@dataclass(frozen=True)
class GateDef:
    """
    An approval checkpoint after a phase.

    Attributes:
        gate_id: Gate identifier, unique within the loop
        name: Human-readable name
        after_phase: Name of the phase this gate follows
        required: Required gates block advance_phase until approved
        approval_type: Who may approve (human, auto, conditional)
        deliverables: Deliverables expected before approval
        modes: Modes the gate applies to; empty means all modes
    """
    gate_id: str
    name: str
    after_phase: str
    required: bool = True
    approval_type: ApprovalType = ApprovalType.HUMAN
    deliverables: tuple[str, ...] = field(default_factory=tuple)
    modes: tuple[LoopMode, ...] = field(default_factory=tuple)

    def applies_to(self, mode: LoopMode) -> bool:
        return _applies(self.modes, mode)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "gate_id": self.gate_id,
            "name": self.name,
            "after_phase": self.after_phase,
            "required": self.required,
            "approval_type": self.approval_type.value,
            "deliverables": list(self.deliverables),
        }
        if self.modes:
            result["modes"] = [m.value for m in self.modes]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GateDef":
        gate_id = data.get("gate_id") or data.get("id")
        if not gate_id:
            raise LoopValidationError(f"Gate is missing gate_id: {data!r}")
        after_phase = data.get("after_phase") or data.get("afterPhase")
        if not after_phase:
            raise LoopValidationError(f"Gate '{gate_id}' is missing after_phase")
        try:
            approval_type = ApprovalType(data.get("approval_type", ApprovalType.HUMAN.value))
        except ValueError as e:
            raise LoopValidationError(f"Gate '{gate_id}': {e}")
        return cls(
            gate_id=gate_id,
            name=data.get("name", gate_id),
            after_phase=after_phase,
            required=bool(data.get("required", True)),
            approval_type=approval_type,
            deliverables=tuple(data.get("deliverables", [])),
            modes=_parse_modes(data.get("modes"), f"gate '{gate_id}'"),
        )


@dataclass(frozen=True)
class LoopDef:
    """
    A loop definition - the declarative template of a loop.

    Attributes:
        loop_id: Unique identifier for the loop
        name: Human-readable name
        version: Semantic version of the definition
        description: Free-form description
        phases: Phases in ascending ordinal order
        gates: Gates, each following one phase
        default_mode: Mode used when start_execution does not name one
        default_autonomy: Autonomy used when start_execution does not name one
        category: Grouping label for listings
    """
    loop_id: str
    name: str
    version: str
    description: str = ""
    phases: tuple[PhaseDef, ...] = field(default_factory=tuple)
    gates: tuple[GateDef, ...] = field(default_factory=tuple)
    default_mode: LoopMode = LoopMode.GREENFIELD
    default_autonomy: AutonomyLevel = AutonomyLevel.SUPERVISED
    category: str = "general"

    def __post_init__(self):
        if not self.loop_id:
            raise LoopValidationError("loop_id must be a non-empty string")
        if not self.phases:
            raise LoopValidationError(f"Loop '{self.loop_id}' must declare at least one phase")

        names = [p.name for p in self.phases]
        if len(names) != len(set(names)):
            duplicates = {n for n in names if names.count(n) > 1}
            raise LoopValidationError(f"Loop '{self.loop_id}': duplicate phase names {duplicates}")

        orders = [p.order for p in self.phases]
        for prev, cur in zip(orders, orders[1:]):
            if cur <= prev:
                raise LoopValidationError(
                    f"Loop '{self.loop_id}': phase ordinals must be unique and strictly "
                    f"increasing, got {orders}"
                )

        gate_ids = [g.gate_id for g in self.gates]
        if len(gate_ids) != len(set(gate_ids)):
            duplicates = {g for g in gate_ids if gate_ids.count(g) > 1}
            raise LoopValidationError(f"Loop '{self.loop_id}': duplicate gate ids {duplicates}")

        for gate in self.gates:
            if gate.after_phase not in names:
                raise LoopValidationError(
                    f"Loop '{self.loop_id}': gate '{gate.gate_id}' follows unknown phase "
                    f"'{gate.after_phase}'"
                )

    def get_phase(self, name: str) -> Optional[PhaseDef]:
        """Get a phase by name."""
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def gates_after(self, phase_name: str) -> tuple[GateDef, ...]:
        """All gates that follow the given phase, in declaration order."""
        return tuple(g for g in self.gates if g.after_phase == phase_name)

    def phases_for_mode(self, mode: LoopMode) -> tuple[PhaseDef, ...]:
        return tuple(p for p in self.phases if p.applies_to(mode))

    @property
    def skill_count(self) -> int:
        return sum(len(p.skills) for p in self.phases)

    def summary(self) -> "LoopSummary":
        return LoopSummary(
            loop_id=self.loop_id,
            name=self.name,
            version=self.version,
            description=self.description,
            category=self.category,
            phase_count=len(self.phases),
            skill_count=self.skill_count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "loop_id": self.loop_id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "category": self.category,
            "default_mode": self.default_mode.value,
            "default_autonomy": self.default_autonomy.value,
            "phases": [p.to_dict() for p in self.phases],
            "gates": [g.to_dict() for g in self.gates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoopDef":
        """
        Deserialize from dictionary.

        Phases without an explicit ``order`` take their 1-based list position.
        """
        if not isinstance(data, dict):
            raise LoopValidationError("Loop definition must be a mapping")
        loop_id = data.get("loop_id") or data.get("id")
        try:
            default_mode = LoopMode(data.get("default_mode", LoopMode.GREENFIELD.value))
            default_autonomy = AutonomyLevel(
                data.get("default_autonomy", AutonomyLevel.SUPERVISED.value)
            )
        except ValueError as e:
            raise LoopValidationError(f"Loop '{loop_id}': {e}")
        return cls(
            loop_id=loop_id,
            name=data.get("name", loop_id),
            version=str(data.get("version", "1.0.0")),
            description=data.get("description", ""),
            phases=tuple(
                PhaseDef.from_dict(p, default_order=i)
                for i, p in enumerate(data.get("phases", []), start=1)
            ),
            gates=tuple(GateDef.from_dict(g) for g in data.get("gates", [])),
            default_mode=default_mode,
            default_autonomy=default_autonomy,
            category=data.get("category", "general"),
        )


@dataclass(frozen=True)
class LoopSummary:
    """Listing entry for a loop definition."""
    loop_id: str
    name: str
    version: str
    description: str
    category: str
    phase_count: int
    skill_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "loop_id": self.loop_id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "category": self.category,
            "phase_count": self.phase_count,
            "skill_count": self.skill_count,
        }

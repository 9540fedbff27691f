"""
ExecutionEngine - the phase/gate/skill state machine.

The engine creates executions from loop definitions and mutates them only
through the operations below:

- start_execution: bind a loop to a project, status pending -> active
- complete_skill / skip_skill: record work within the current phase
- complete_phase: mark the current phase's work done (does not move on)
- approve_gate / reject_gate: record gate decisions; rejecting a required
  gate blocks the execution
- advance_phase: leave the current phase once its work is done and its
  required gates are approved; completes the execution after the last phase
- pause / resume / abort: lifecycle controls

Status state machine:
    pending -> active <-> paused
    active -> blocked -> active      (resume after a fresh approval)
    active -> completed              (advance past the final phase)
    any non-terminal -> failed       (abort)

Atomicity: every operation on one execution id runs under a per-execution
lock, operates on a private copy loaded from the repository and writes it
back only after every precondition has passed. A failed operation leaves
the stored record untouched.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, Protocol

from loopctl.errors import (
    ExecutionNotActiveError,
    ExecutionNotFoundError,
    ExecutionTerminalError,
    GateNotApprovedError,
    GateNotFoundError,
    InvalidTransitionError,
    LoopNotFoundError,
    LoopValidationError,
    PhaseIncompleteError,
    RequestValidationError,
    SkillNotFoundError,
)
from loopctl.schemas import (
    ApprovalType,
    AutonomyLevel,
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    ExecutionSummary,
    GateState,
    GateStatus,
    LogCategory,
    LogLevel,
    LoopDef,
    LoopMode,
    LoopSummary,
    PhaseProgress,
    PhaseStatus,
    SkillExecution,
    SkillOutcome,
    SkillProgress,
    SkillStatus,
)
from loopctl.store import Repository, generate_ulid
from loopctl.utils import utcnow


logger = logging.getLogger(__name__)


class LoopSource(Protocol):
    """What the engine needs from the Loop Definition Store."""

    def get_loop(self, loop_id: str) -> Optional[LoopDef]: ...

    def list_loops(self) -> list[LoopSummary]: ...


_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ExecutionEngine:
    """
    Execution engine for loop executions.

    Usage:
        engine = ExecutionEngine(
            loops=LoopRegistry(),
            executions=InMemoryRepository(Execution, "execution_id"),
        )
        execution = engine.start_execution("engineering-loop", "proj-x")
        engine.complete_skill(execution.execution_id, "requirements")
        engine.complete_phase(execution.execution_id)
        engine.approve_gate(execution.execution_id, "spec-gate", approved_by="alice")
        engine.advance_phase(execution.execution_id)
    """

    def __init__(
        self,
        loops: LoopSource,
        executions: Repository[Execution],
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            loops: Loop definition store (get_loop, list_loops)
            executions: Repository persisting Execution records
            clock: Source of timezone-aware "now" timestamps
        """
        self._loops = loops
        self._executions = executions
        self._clock = clock
        # Entries disappear once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @property
    def loops(self) -> LoopSource:
        return self._loops

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_for(self, execution_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[execution_id] = lock
            return lock

    def _load(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return execution

    @contextmanager
    def _locked(self, execution_id: str) -> Iterator[Execution]:
        """Hold the execution's lock and yield a private copy of its record."""
        with self._lock_for(execution_id):
            yield self._load(execution_id)

    def _save(self, execution: Execution) -> Execution:
        execution.updated_at = self._clock()
        self._executions.put(execution)
        return execution

    def _log(
        self,
        execution: Execution,
        level: LogLevel,
        category: LogCategory,
        message: str,
        phase: Optional[str] = None,
        skill_id: Optional[str] = None,
        gate_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        execution.logs.append(ExecutionLogEntry(
            entry_id=generate_ulid(),
            timestamp=self._clock(),
            level=level,
            category=category,
            message=message,
            phase=phase,
            skill_id=skill_id,
            gate_id=gate_id,
            details=details,
        ))
        logger.log(
            _LOG_LEVELS[level],
            f"[{execution.execution_id}] {message}",
            extra={"execution_id": execution.execution_id, "event": category.value},
        )

    @staticmethod
    def _require_mutable(execution: Execution) -> None:
        if execution.status.is_terminal:
            raise ExecutionTerminalError(
                f"Execution {execution.execution_id} is {execution.status.value}; "
                "no further changes are allowed"
            )

    @staticmethod
    def _current_skill(execution: Execution, skill_id: str) -> SkillProgress:
        skill = execution.current.get_skill(skill_id)
        if skill is None:
            raise SkillNotFoundError(
                f"Skill '{skill_id}' is not part of current phase {execution.current_phase}"
            )
        return skill

    @staticmethod
    def _gate(execution: Execution, gate_id: str) -> GateState:
        gate = execution.get_gate(gate_id)
        if gate is None:
            raise GateNotFoundError(
                f"Gate '{gate_id}' not found in execution {execution.execution_id}"
            )
        return gate

    # =========================================================================
    # Creation and queries
    # =========================================================================

    def start_execution(
        self,
        loop_id: str,
        project: str,
        mode: Optional[LoopMode | str] = None,
        autonomy: Optional[AutonomyLevel | str] = None,
    ) -> Execution:
        """
        Create and activate an execution of a loop.

        Phases, skills and gates restricted to other modes do not apply:
        such phases and gates are left out, such skills start out skipped.

        Args:
            loop_id: Loop definition id
            project: Project identifier
            mode: Project mode (defaults to the loop's default mode)
            autonomy: Autonomy level (defaults to the loop's default autonomy)

        Returns:
            The active Execution, positioned at the first applicable phase

        Raises:
            LoopNotFoundError: If the loop id does not resolve
            RequestValidationError: If project, mode or autonomy are invalid
        """
        if not project or not project.strip():
            raise RequestValidationError("project must be a non-empty string")

        loop_def = self._loops.get_loop(loop_id)
        if loop_def is None:
            raise LoopNotFoundError(f"Loop definition not found: {loop_id}")

        try:
            mode = LoopMode(mode) if mode is not None else loop_def.default_mode
            autonomy = AutonomyLevel(autonomy) if autonomy is not None else loop_def.default_autonomy
        except ValueError as e:
            raise RequestValidationError(str(e))

        phase_defs = loop_def.phases_for_mode(mode)
        if not phase_defs:
            raise LoopValidationError(f"Loop {loop_id} has no phases for mode {mode.value}")

        phases = []
        for phase_def in phase_defs:
            skills = []
            for skill_def in phase_def.skills:
                if skill_def.applies_to(mode):
                    skills.append(SkillProgress(
                        skill_id=skill_def.skill_id,
                        required=phase_def.required and skill_def.required,
                    ))
                else:
                    skills.append(SkillProgress(
                        skill_id=skill_def.skill_id,
                        required=False,
                        status=SkillStatus.SKIPPED,
                        skip_reason=f"not applicable in {mode.value} mode",
                    ))
            phases.append(PhaseProgress(name=phase_def.name, order=phase_def.order, skills=skills))

        phase_names = {p.name for p in phases}
        gates = [
            GateState(
                gate_id=g.gate_id,
                name=g.name,
                after_phase=g.after_phase,
                required=g.required,
                approval_type=g.approval_type,
                deliverables=list(g.deliverables),
            )
            for g in loop_def.gates
            if g.applies_to(mode) and g.after_phase in phase_names
        ]

        now = self._clock()
        execution = Execution(
            execution_id=generate_ulid(),
            loop_id=loop_def.loop_id,
            loop_version=loop_def.version,
            project=project.strip(),
            mode=mode,
            autonomy=autonomy,
            status=ExecutionStatus.PENDING,
            current_phase=phases[0].name,
            phases=phases,
            gates=gates,
            started_at=now,
        )
        self._log(
            execution, LogLevel.INFO, LogCategory.SYSTEM,
            f"Execution created for {loop_def.loop_id} v{loop_def.version} on {execution.project}",
            mode=mode.value, autonomy=autonomy.value,
        )

        execution.status = ExecutionStatus.ACTIVE
        first = execution.current
        first.status = PhaseStatus.IN_PROGRESS
        first.started_at = now
        self._log(
            execution, LogLevel.INFO, LogCategory.PHASE,
            f"Phase {first.name} started", phase=first.name,
        )

        return self._save(execution)

    def get_execution(self, execution_id: str) -> Execution:
        """
        Get an execution by id.

        Raises:
            ExecutionNotFoundError: If no such execution exists
        """
        return self._load(execution_id)

    def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        loop_id: Optional[str] = None,
        autonomy: Optional[AutonomyLevel] = None,
    ) -> list[ExecutionSummary]:
        """List execution summaries, optionally filtered by status, loop and autonomy."""
        executions = self._executions.list(status=status, loop_id=loop_id, autonomy=autonomy)
        return [e.summary() for e in executions]

    def find_executions(self, **filters: Any) -> list[Execution]:
        """Full execution records matching repository filters."""
        return self._executions.list(**filters)

    # =========================================================================
    # Phase operations
    # =========================================================================

    def advance_phase(self, execution_id: str) -> Execution:
        """
        Move the execution past its current phase.

        Preconditions: the execution is active, every required skill of the
        current phase is completed or skipped, and every required, enabled
        gate following the current phase is approved.

        Marks the current phase complete and moves to the next phase, or
        completes the execution when no phase remains. Calling this on a
        completed execution returns it unchanged.

        Raises:
            ExecutionTerminalError: If the execution failed
            ExecutionNotActiveError: If the execution is pending, paused or blocked
            PhaseIncompleteError: If required skills are outstanding
            GateNotApprovedError: If a required gate is not approved
        """
        with self._locked(execution_id) as execution:
            if execution.status == ExecutionStatus.COMPLETED:
                return execution
            self._require_mutable(execution)
            if execution.status != ExecutionStatus.ACTIVE:
                raise ExecutionNotActiveError(
                    f"Cannot advance phase: execution {execution_id} is {execution.status.value}"
                )

            current = execution.current
            outstanding = current.outstanding_required()
            if outstanding:
                raise PhaseIncompleteError(
                    f"Phase {current.name} has incomplete required skills: {', '.join(outstanding)}"
                )

            blocking = [g for g in execution.gates_for_phase(current.name) if g.blocks_advance]
            if blocking:
                details = ", ".join(f"{g.gate_id} ({g.status.value})" for g in blocking)
                raise GateNotApprovedError(
                    f"Cannot leave phase {current.name}: gates not approved: {details}"
                )

            now = self._clock()
            if current.status != PhaseStatus.COMPLETED:
                current.status = PhaseStatus.COMPLETED
                current.completed_at = now
                self._log(
                    execution, LogLevel.INFO, LogCategory.PHASE,
                    f"Phase {current.name} completed", phase=current.name,
                )

            following = execution.next_phase()
            if following is None:
                execution.status = ExecutionStatus.COMPLETED
                execution.completed_at = now
                self._log(execution, LogLevel.INFO, LogCategory.SYSTEM, "Execution completed")
            else:
                execution.current_phase = following.name
                following.status = PhaseStatus.IN_PROGRESS
                following.started_at = now
                self._log(
                    execution, LogLevel.INFO, LogCategory.PHASE,
                    f"Advanced from {current.name} to {following.name}",
                    phase=following.name, previous_phase=current.name,
                )

            return self._save(execution)

    def complete_phase(self, execution_id: str) -> Execution:
        """
        Mark the current phase's work as done without leaving the phase.

        Gate approval happens between complete_phase and advance_phase.
        Idempotent on an already completed phase.

        Raises:
            ExecutionTerminalError: If the execution is completed or failed
            PhaseIncompleteError: If required skills are outstanding
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            current = execution.current
            if current.status == PhaseStatus.COMPLETED:
                return execution

            outstanding = current.outstanding_required()
            if outstanding:
                raise PhaseIncompleteError(
                    f"Phase {current.name} has incomplete required skills: {', '.join(outstanding)}"
                )

            current.status = PhaseStatus.COMPLETED
            current.completed_at = self._clock()
            self._log(
                execution, LogLevel.INFO, LogCategory.PHASE,
                f"Phase {current.name} completed", phase=current.name,
            )
            return self._save(execution)

    # =========================================================================
    # Skill operations
    # =========================================================================

    def complete_skill(
        self,
        execution_id: str,
        skill_id: str,
        deliverables: Optional[list[str] | tuple[str, ...]] = None,
        outcome: Optional[SkillOutcome] = None,
        version: Optional[str] = None,
    ) -> Execution:
        """
        Record a skill of the current phase as completed.

        Re-completing a skill overwrites its SkillExecution record, so there
        is exactly one record per (phase, skill).

        Raises:
            ExecutionTerminalError: If the execution is completed or failed
            SkillNotFoundError: If the skill is not in the current phase
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            skill = self._current_skill(execution, skill_id)

            skill.status = SkillStatus.COMPLETED
            skill.skip_reason = None
            skill.last_error = None

            phase = execution.current_phase
            record = execution.get_skill_execution(phase, skill_id)
            if record is None:
                record = SkillExecution(skill_id=skill_id, phase=phase)
                execution.skill_executions.append(record)
            record.version = version
            record.deliverables = list(deliverables or [])
            record.outcome = outcome
            record.retry_count = skill.retry_count
            record.recorded_at = self._clock()

            self._log(
                execution, LogLevel.INFO, LogCategory.SKILL,
                f"Skill {skill_id} completed", phase=phase, skill_id=skill_id,
                deliverables=record.deliverables,
            )
            return self._save(execution)

    def skip_skill(self, execution_id: str, skill_id: str, reason: str) -> Execution:
        """
        Mark a skill of the current phase as skipped.

        Raises:
            RequestValidationError: If reason is blank
            ExecutionTerminalError: If the execution is completed or failed
            SkillNotFoundError: If the skill is not in the current phase
            InvalidTransitionError: If the skill is already completed
        """
        if not reason or not reason.strip():
            raise RequestValidationError("A reason is required to skip a skill")

        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            skill = self._current_skill(execution, skill_id)
            if skill.status == SkillStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Skill {skill_id} is already completed; reset it before skipping"
                )

            skill.status = SkillStatus.SKIPPED
            skill.skip_reason = reason.strip()
            self._log(
                execution, LogLevel.INFO, LogCategory.SKILL,
                f"Skill {skill_id} skipped: {skill.skip_reason}",
                phase=execution.current_phase, skill_id=skill_id,
            )
            return self._save(execution)

    def record_skill_failure(self, execution_id: str, skill_id: str, error: str) -> Execution:
        """
        Record a failed attempt of a skill of the current phase.

        Increments the skill's retry count and keeps the error message.
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            skill = self._current_skill(execution, skill_id)
            skill.status = SkillStatus.FAILED
            skill.retry_count += 1
            skill.last_error = error
            self._log(
                execution, LogLevel.WARNING, LogCategory.SKILL,
                f"Skill {skill_id} failed (attempt {skill.retry_count}): {error}",
                phase=execution.current_phase, skill_id=skill_id,
            )
            return self._save(execution)

    def reset_skill(self, execution_id: str, skill_id: str) -> Execution:
        """
        Return a skill of the current phase to pending.

        Drops the skill's SkillExecution record and re-opens the phase if it
        had been marked complete.
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            skill = self._current_skill(execution, skill_id)
            skill.status = SkillStatus.PENDING
            skill.skip_reason = None
            skill.retry_count = 0
            skill.last_error = None

            phase = execution.current
            execution.skill_executions = [
                r for r in execution.skill_executions
                if not (r.phase == phase.name and r.skill_id == skill_id)
            ]
            if phase.status == PhaseStatus.COMPLETED:
                phase.status = PhaseStatus.IN_PROGRESS
                phase.completed_at = None

            self._log(
                execution, LogLevel.INFO, LogCategory.SKILL,
                f"Skill {skill_id} reset", phase=phase.name, skill_id=skill_id,
            )
            return self._save(execution)

    # =========================================================================
    # Gate operations
    # =========================================================================

    def approve_gate(
        self,
        execution_id: str,
        gate_id: str,
        approved_by: Optional[str] = None,
    ) -> Execution:
        """
        Approve a gate. Approving an already approved gate is a no-op.

        Approval does not change the execution status; a blocked execution
        returns to active through resume_execution.
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            gate = self._gate(execution, gate_id)
            if gate.status == GateStatus.APPROVED:
                return execution

            gate.status = GateStatus.APPROVED
            gate.approved_by = approved_by or "operator"
            gate.approved_at = self._clock()
            self._log(
                execution, LogLevel.INFO, LogCategory.GATE,
                f"Gate {gate_id} approved by {gate.approved_by}",
                phase=gate.after_phase, gate_id=gate_id,
            )
            return self._save(execution)

    def reject_gate(self, execution_id: str, gate_id: str, feedback: str) -> Execution:
        """
        Reject a gate with feedback.

        Rejecting a required gate moves the execution to blocked.

        Raises:
            RequestValidationError: If feedback is blank
        """
        if not feedback or not feedback.strip():
            raise RequestValidationError("Feedback is required to reject a gate")

        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            gate = self._gate(execution, gate_id)

            gate.status = GateStatus.REJECTED
            gate.feedback = feedback.strip()
            gate.approved_by = None
            gate.approved_at = None
            self._log(
                execution, LogLevel.WARNING, LogCategory.GATE,
                f"Gate {gate_id} rejected: {gate.feedback}",
                phase=gate.after_phase, gate_id=gate_id,
            )

            if gate.required:
                execution.status = ExecutionStatus.BLOCKED
                execution.status_reason = f"Gate {gate_id} rejected: {gate.feedback}"
                self._log(
                    execution, LogLevel.WARNING, LogCategory.SYSTEM,
                    f"Execution blocked by rejected gate {gate_id}", gate_id=gate_id,
                )
            return self._save(execution)

    def list_gates(self, execution_id: str) -> list[GateState]:
        return self._load(execution_id).gates

    def update_gate(
        self,
        execution_id: str,
        gate_id: str,
        enabled: Optional[bool] = None,
        approval_type_override: Optional[ApprovalType] = None,
    ) -> Execution:
        """Enable/disable a gate or override its approval type for this execution."""
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            gate = self._gate(execution, gate_id)
            if enabled is not None:
                gate.enabled = enabled
            if approval_type_override is not None:
                gate.approval_type_override = ApprovalType(approval_type_override)
            self._log(
                execution, LogLevel.INFO, LogCategory.GATE,
                f"Gate {gate_id} updated (enabled={gate.enabled}, "
                f"approval={gate.effective_approval_type.value})",
                gate_id=gate_id,
            )
            return self._save(execution)

    def set_gates_enabled(self, execution_id: str, enabled: bool) -> Execution:
        """Enable or disable every gate of the execution."""
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            for gate in execution.gates:
                gate.enabled = enabled
            self._log(
                execution, LogLevel.INFO, LogCategory.GATE,
                f"All gates {'enabled' if enabled else 'disabled'}",
            )
            return self._save(execution)

    def set_all_gates_auto(self, execution_id: str) -> Execution:
        """Override every gate of the execution to auto approval."""
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            for gate in execution.gates:
                gate.approval_type_override = ApprovalType.AUTO
            self._log(execution, LogLevel.INFO, LogCategory.GATE, "All gates set to auto approval")
            return self._save(execution)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def pause_execution(self, execution_id: str) -> Execution:
        """Pause an active execution. Phase, skill and gate state are untouched."""
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            if execution.status != ExecutionStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Cannot pause: execution {execution_id} is {execution.status.value}"
                )
            execution.status = ExecutionStatus.PAUSED
            self._log(execution, LogLevel.INFO, LogCategory.SYSTEM, "Execution paused")
            return self._save(execution)

    def resume_execution(self, execution_id: str) -> Execution:
        """
        Resume a paused or blocked execution.

        Resuming from blocked requires that no required, enabled gate is still
        rejected. Skills that failed past their retry budget are returned to
        pending with a fresh budget.

        Raises:
            InvalidTransitionError: If the execution is neither paused nor blocked
            GateNotApprovedError: If a required gate is still rejected
        """
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            if execution.status not in (ExecutionStatus.PAUSED, ExecutionStatus.BLOCKED):
                raise InvalidTransitionError(
                    f"Cannot resume: execution {execution_id} is {execution.status.value}"
                )

            if execution.status == ExecutionStatus.BLOCKED:
                rejected = [
                    g.gate_id for g in execution.gates
                    if g.required and g.enabled and g.status == GateStatus.REJECTED
                ]
                if rejected:
                    raise GateNotApprovedError(
                        f"Cannot resume: required gates still rejected: {', '.join(rejected)}"
                    )
                for skill in execution.current.skills:
                    if skill.status == SkillStatus.FAILED:
                        skill.status = SkillStatus.PENDING
                        skill.retry_count = 0
                        skill.last_error = None

            execution.status = ExecutionStatus.ACTIVE
            execution.status_reason = None
            self._log(execution, LogLevel.INFO, LogCategory.SYSTEM, "Execution resumed")
            return self._save(execution)

    def escalate(self, execution_id: str, reason: str) -> Execution:
        """Block the execution for human intervention, recording why."""
        with self._locked(execution_id) as execution:
            self._require_mutable(execution)
            execution.status = ExecutionStatus.BLOCKED
            execution.status_reason = reason
            self._log(
                execution, LogLevel.ERROR, LogCategory.SYSTEM,
                f"Execution escalated: {reason}", phase=execution.current_phase,
            )
            return self._save(execution)

    def abort_execution(self, execution_id: str, reason: Optional[str] = None) -> Execution:
        """
        Abort the execution. One-way transition to failed.

        Aborting an already failed execution is a no-op that returns the
        existing state.

        Raises:
            ExecutionTerminalError: If the execution already completed
        """
        with self._locked(execution_id) as execution:
            if execution.status == ExecutionStatus.FAILED:
                return execution
            self._require_mutable(execution)

            execution.status = ExecutionStatus.FAILED
            execution.status_reason = reason or "Aborted"
            execution.completed_at = self._clock()
            self._log(
                execution, LogLevel.WARNING, LogCategory.SYSTEM,
                f"Execution aborted: {execution.status_reason}",
            )
            return self._save(execution)

    # =========================================================================
    # Logs
    # =========================================================================

    def add_log(
        self,
        execution_id: str,
        level: LogLevel,
        category: LogCategory,
        message: str,
        **details: Any,
    ) -> Execution:
        """Append an entry to the execution log. Allowed on terminal executions."""
        with self._locked(execution_id) as execution:
            self._log(execution, level, category, message, **details)
            return self._save(execution)

    def get_logs(
        self,
        execution_id: str,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionLogEntry]:
        """Log entries, oldest first. ``limit`` keeps the most recent entries."""
        entries = [
            entry for entry in self._load(execution_id).logs
            if (level is None or entry.level == level)
            and (category is None or entry.category == category)
            and (since is None or entry.timestamp >= since)
        ]
        if limit is not None:
            if limit < 0:
                raise RequestValidationError("limit must be >= 0")
            entries = entries[-limit:] if limit else []
        return entries

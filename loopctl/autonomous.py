"""
AutonomousExecutor - drives executions without a human issuing each call.

On every tick the executor picks the eligible executions (status active,
autonomy full or supervised, not already in flight), processes at most
``max_parallel_executions`` of them concurrently, and for each one:

1. Runs the current phase's outstanding skills through the skill delegates,
   retrying failures until the skill's retry budget is spent. A spent
   budget (or a PermanentError) escalates the execution to blocked.
2. Completes the phase once every required skill is done.
3. Auto-approves the phase's pending gates that the autonomy policy allows.
4. Advances to the next phase (at most one phase per tick).

Autonomy policy for gates:
- human gates are never auto-approved
- auto gates are approved under full and supervised autonomy
- conditional gates are approved under full autonomy once every
  deliverable the gate expects was produced in the phase
- manual executions are never touched

An error while processing one execution is captured in that execution's
TickResult; sibling executions are unaffected.
"""

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from loopctl.delegates import DelegateRegistry, SkillContext, SkillResult
from loopctl.engine import ExecutionEngine
from loopctl.errors import ConfigError, GateNotFoundError, PermanentError, TransientError
from loopctl.schemas import (
    ApprovalType,
    AutonomyLevel,
    Execution,
    ExecutionStatus,
    GateState,
    GateStatus,
    PhaseStatus,
    SkillOutcome,
    SkillProgress,
)
from loopctl.utils import utcnow


logger = logging.getLogger(__name__)

AUTO_APPROVER = "autonomous-executor"


@dataclass
class AutonomousConfig:
    """
    Autonomous executor settings.

    Attributes:
        tick_interval_ms: Scheduler period in milliseconds
        max_parallel_executions: Executions processed concurrently per tick
        max_skill_retries: Failed attempts tolerated per skill before escalation
        auto_start: Start the scheduler when the executor is created
    """
    tick_interval_ms: int = 5000
    max_parallel_executions: int = 3
    max_skill_retries: int = 3
    auto_start: bool = False

    def __post_init__(self):
        if self.tick_interval_ms < 1:
            raise ConfigError("tick_interval_ms must be >= 1")
        if self.max_parallel_executions < 1:
            raise ConfigError("max_parallel_executions must be >= 1")
        if self.max_skill_retries < 0:
            raise ConfigError("max_skill_retries must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TickActionType(str, Enum):
    SKILL_EXECUTED = "skill_executed"
    SKILL_RETRY = "skill_retry"
    SKILL_SKIPPED = "skill_skipped"
    ESCALATION = "escalation"
    PHASE_COMPLETED = "phase_completed"
    GATE_AUTO_APPROVED = "gate_auto_approved"
    PHASE_ADVANCED = "phase_advanced"
    LOOP_COMPLETED = "loop_completed"


@dataclass(frozen=True)
class TickAction:
    type: TickActionType
    target: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "target": self.target, "details": dict(self.details)}


@dataclass
class TickResult:
    """What one tick did to one execution."""
    execution_id: str
    actions: list[TickAction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, action_type: TickActionType, target: str, **details: Any) -> None:
        self.actions.append(TickAction(type=action_type, target=target, details=details))

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "actions": [a.to_dict() for a in self.actions],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class AutoApprovalResult:
    can_approve: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"can_approve": self.can_approve, "reason": self.reason}


class AutonomousExecutor:
    """
    Periodic driver for autonomous and supervised executions.

    Usage:
        executor = AutonomousExecutor(engine, delegates=DelegateRegistry(default=MyDelegate()))
        executor.tick()        # one pass, synchronously
        executor.start()       # or tick every tick_interval_ms in the background
        executor.stop()
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        delegates: Optional[DelegateRegistry] = None,
        config: Optional[AutonomousConfig] = None,
        on_loop_completed: Optional[Callable[[Execution], None]] = None,
    ):
        """
        Initialize the executor.

        Args:
            engine: The ExecutionEngine to drive
            delegates: Skill delegates (defaults to no-op delegates)
            config: Executor settings
            on_loop_completed: Notified when a tick completes an execution
        """
        self._engine = engine
        self._delegates = delegates or DelegateRegistry.create_noop()
        self._config = config or AutonomousConfig()
        self._on_loop_completed = on_loop_completed

        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._paused = False
        self._lifecycle_lock = threading.Lock()

        self._tick_count = 0
        self._last_tick_at: Optional[datetime] = None
        self._action_totals: Counter = Counter()
        self._error_total = 0

        if self._config.auto_start:
            self.start()

    @property
    def config(self) -> AutonomousConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_paused(self) -> bool:
        return self._paused

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start ticking every tick_interval_ms on a background thread."""
        with self._lifecycle_lock:
            if self.is_running:
                return
            self._stop_event = threading.Event()
            self._paused = False
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="loopctl-autonomous",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Autonomous executor started (interval={self._config.tick_interval_ms}ms)")

    def stop(self) -> None:
        """Stop the scheduler. Waits for an in-flight tick to finish."""
        with self._lifecycle_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        logger.info("Autonomous executor stopped")

    def pause(self) -> None:
        """Halt new ticks. An in-flight tick runs to completion."""
        self._paused = True
        logger.info("Autonomous executor paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Autonomous executor resumed")

    def configure(
        self,
        tick_interval_ms: Optional[int] = None,
        max_parallel_executions: Optional[int] = None,
        max_skill_retries: Optional[int] = None,
    ) -> AutonomousConfig:
        """
        Update settings. Restarts the scheduler when the interval changes.

        Raises:
            ConfigError: If a value is out of range
        """
        current = self._config
        updated = AutonomousConfig(
            tick_interval_ms=tick_interval_ms if tick_interval_ms is not None else current.tick_interval_ms,
            max_parallel_executions=(
                max_parallel_executions if max_parallel_executions is not None
                else current.max_parallel_executions
            ),
            max_skill_retries=max_skill_retries if max_skill_retries is not None else current.max_skill_retries,
            auto_start=current.auto_start,
        )
        self._config = updated

        if self.is_running and updated.tick_interval_ms != current.tick_interval_ms:
            paused = self._paused
            self.stop()
            self.start()
            self._paused = paused
        logger.info(f"Autonomous executor configured: {updated.to_dict()}")
        return updated

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._config.tick_interval_ms / 1000):
            if self._paused:
                continue
            try:
                self.tick()
            except Exception as e:
                # Keep the scheduler alive; per-execution errors are already
                # captured inside tick(), this covers store failures.
                logger.error(f"Autonomous tick failed: {e}", exc_info=True)

    # =========================================================================
    # Ticking
    # =========================================================================

    def get_eligible_executions(self) -> list[Execution]:
        """Active full/supervised executions that are not in flight, oldest first."""
        with self._in_flight_lock:
            in_flight = set(self._in_flight)
        return [
            e for e in self._engine.find_executions(status=ExecutionStatus.ACTIVE)
            if e.autonomy in (AutonomyLevel.FULL, AutonomyLevel.SUPERVISED)
            and e.execution_id not in in_flight
        ]

    def tick(self) -> list[TickResult]:
        """
        Run one pass over the eligible executions.

        Returns:
            One TickResult per processed execution
        """
        eligible = self.get_eligible_executions()

        claimed: list[str] = []
        with self._in_flight_lock:
            for execution in eligible:
                if len(claimed) >= self._config.max_parallel_executions:
                    break
                if execution.execution_id not in self._in_flight:
                    self._in_flight.add(execution.execution_id)
                    claimed.append(execution.execution_id)

        results: list[TickResult] = []
        if claimed:
            try:
                with ThreadPoolExecutor(max_workers=len(claimed)) as pool:
                    futures = [pool.submit(self._process_isolated, eid) for eid in claimed]
                    for fut in futures:
                        results.append(fut.result())
            finally:
                with self._in_flight_lock:
                    self._in_flight.difference_update(claimed)

        self._tick_count += 1
        self._last_tick_at = utcnow()
        for result in results:
            self._action_totals.update(a.type.value for a in result.actions)
            self._error_total += len(result.errors)

        deferred = len(eligible) - len(claimed)
        if claimed or deferred:
            logger.debug(f"Tick {self._tick_count}: processed {len(claimed)}, deferred {deferred}")
        return results

    def _process_isolated(self, execution_id: str) -> TickResult:
        result = TickResult(execution_id=execution_id)
        try:
            self._process_execution(execution_id, result)
        except Exception as e:
            logger.error(f"[{execution_id}] Tick failed: {e}", exc_info=True)
            result.errors.append(f"{type(e).__name__}: {e}")
        return result

    def _process_execution(self, execution_id: str, result: TickResult) -> None:
        execution = self._engine.get_execution(execution_id)
        if not self._drivable(execution):
            return

        phase = execution.current
        if phase.status != PhaseStatus.COMPLETED:
            for skill in phase.pending_skills():
                if not self._run_skill(execution, skill, result):
                    return

            execution = self._engine.get_execution(execution_id)
            if not self._drivable(execution) or not execution.current.is_satisfied:
                return
            execution = self._engine.complete_phase(execution_id)
            result.add(TickActionType.PHASE_COMPLETED, execution.current_phase)

        for gate in execution.gates_for_phase(execution.current_phase):
            if gate.status != GateStatus.PENDING:
                continue
            decision = self.can_auto_approve(execution, gate)
            if decision.can_approve:
                execution = self._engine.approve_gate(execution_id, gate.gate_id, approved_by=AUTO_APPROVER)
                result.add(TickActionType.GATE_AUTO_APPROVED, gate.gate_id, reason=decision.reason)

        if any(g.blocks_advance for g in execution.gates_for_phase(execution.current_phase)):
            return

        previous_phase = execution.current_phase
        execution = self._engine.advance_phase(execution_id)
        if execution.status == ExecutionStatus.COMPLETED:
            result.add(TickActionType.LOOP_COMPLETED, execution.loop_id, last_phase=previous_phase)
            self._notify_completed(execution)
        else:
            result.add(
                TickActionType.PHASE_ADVANCED, execution.current_phase, previous_phase=previous_phase,
            )

    @staticmethod
    def _drivable(execution: Execution) -> bool:
        return (
            execution.status == ExecutionStatus.ACTIVE
            and execution.autonomy != AutonomyLevel.MANUAL
        )

    def _run_skill(self, execution: Execution, skill: SkillProgress, result: TickResult) -> bool:
        """
        Run one skill through its delegate with retries.

        Returns:
            True when the skill ended completed (or an optional skill was
            skipped), False when the execution was escalated or stopped being
            drivable.
        """
        execution_id = execution.execution_id
        skill_id = skill.skill_id

        if not self._delegates.has(skill_id):
            reason = f"No delegate registered for skill {skill_id}"
            self._engine.escalate(execution_id, reason)
            result.add(TickActionType.ESCALATION, skill_id, reason=reason)
            return False

        retry_count = skill.retry_count
        last_error = skill.last_error
        while True:
            current = self._engine.get_execution(execution_id)
            if not self._drivable(current):
                return False

            context = SkillContext(
                execution_id=execution_id,
                loop_id=current.loop_id,
                project=current.project,
                phase=current.current_phase,
                skill_id=skill_id,
                attempt=retry_count + 1,
                mode=current.mode.value,
                previous_error=last_error,
            )

            permanent = False
            outcome = None
            try:
                skill_result = self._delegates.dispatch(context)
                # A malformed result counts as a failed attempt
                if not isinstance(skill_result, SkillResult):
                    raise TypeError(
                        f"delegate returned {type(skill_result).__name__}, expected SkillResult"
                    )
                if skill_result.success:
                    deliverables = [str(d) for d in skill_result.deliverables]
                    outcome = SkillOutcome(
                        success=True,
                        score=skill_result.score,
                        signals=dict(skill_result.signals),
                    )
            except PermanentError as e:
                error = str(e)
                permanent = True
            except TransientError as e:
                error = str(e)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            else:
                if outcome is not None:
                    self._engine.complete_skill(
                        execution_id, skill_id, deliverables=deliverables, outcome=outcome,
                    )
                    result.add(TickActionType.SKILL_EXECUTED, skill_id, attempt=context.attempt)
                    return True
                error = skill_result.error or "Skill reported failure"

            updated = self._engine.record_skill_failure(execution_id, skill_id, error)
            retry_count = updated.current.get_skill(skill_id).retry_count
            last_error = error

            if not permanent and retry_count < self._config.max_skill_retries:
                result.add(TickActionType.SKILL_RETRY, skill_id, attempt=retry_count, error=error)
                continue

            if not skill.required:
                reason = f"optional skill gave up after {retry_count} failed attempts: {error}"
                self._engine.skip_skill(execution_id, skill_id, reason)
                result.add(TickActionType.SKILL_SKIPPED, skill_id, reason=reason)
                return True

            reason = (
                f"Skill {skill_id} failed permanently: {error}" if permanent
                else f"Skill {skill_id} failed {retry_count} times: {error}"
            )
            self._engine.escalate(execution_id, reason)
            result.add(TickActionType.ESCALATION, skill_id, reason=reason, retry_count=retry_count)
            return False

    def _notify_completed(self, execution: Execution) -> None:
        if self._on_loop_completed is None:
            return
        try:
            self._on_loop_completed(execution)
        except Exception as e:
            logger.warning(f"[{execution.execution_id}] loop-completed hook failed: {e}")

    # =========================================================================
    # Gate policy
    # =========================================================================

    def can_auto_approve(self, execution: Execution, gate: GateState) -> AutoApprovalResult:
        """Decide whether the autonomy policy allows approving the gate unattended."""
        if not gate.enabled:
            return AutoApprovalResult(False, "gate is disabled")
        if gate.status == GateStatus.APPROVED:
            return AutoApprovalResult(False, "gate is already approved")
        if execution.autonomy == AutonomyLevel.MANUAL:
            return AutoApprovalResult(False, "manual executions are never auto-approved")

        approval = gate.effective_approval_type
        if approval == ApprovalType.HUMAN:
            return AutoApprovalResult(False, "gate requires human sign-off")
        if approval == ApprovalType.AUTO:
            return AutoApprovalResult(True, f"auto gate under {execution.autonomy.value} autonomy")

        if execution.autonomy != AutonomyLevel.FULL:
            return AutoApprovalResult(False, "conditional gates need full autonomy")
        missing = sorted(set(gate.deliverables) - execution.deliverables_for_phase(gate.after_phase))
        if missing:
            return AutoApprovalResult(False, f"missing deliverables: {', '.join(missing)}")
        return AutoApprovalResult(True, "all expected deliverables produced")

    def check_gate_auto_approval(self, execution_id: str, gate_id: str) -> AutoApprovalResult:
        execution = self._engine.get_execution(execution_id)
        gate = execution.get_gate(gate_id)
        if gate is None:
            raise GateNotFoundError(f"Gate '{gate_id}' not found in execution {execution_id}")
        return self.can_auto_approve(execution, gate)

    # =========================================================================
    # Status
    # =========================================================================

    def list_autonomous_executions(self) -> list[Execution]:
        """Executions the executor would drive, including those in flight."""
        return [
            e for e in self._engine.find_executions(status=ExecutionStatus.ACTIVE)
            if e.autonomy in (AutonomyLevel.FULL, AutonomyLevel.SUPERVISED)
        ]

    def get_status(self) -> dict[str, Any]:
        with self._in_flight_lock:
            in_flight = sorted(self._in_flight)
        return {
            "running": self.is_running,
            "paused": self._paused,
            "config": self._config.to_dict(),
            "in_flight": in_flight,
            "tick_count": self._tick_count,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "actions": dict(self._action_totals),
            "errors": self._error_total,
        }

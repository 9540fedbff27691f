"""
Tool layer - the named command surface over the engine, the autonomous
executor and the coordinator.

Every command takes a plain dict of params and returns a plain dict:

    toolbox.call("start_execution", {"loop_id": "engineering-loop", "project": "api"})
    # {"ok": True, "execution": {...}}

    toolbox.call("advance_phase", {"execution_id": "..."})
    # {"ok": False, "error": {"kind": "gate_not_approved", "message": "..."}}

Params are parsed into request structs (loopctl.schemas.requests) before
anything reaches domain code. Any LoopctlError becomes an ``ok: False``
response; other exceptions propagate.

After successful engine calls the toolbox notifies the EventRecorder
(skill signals, gate outcomes, loop completions). Recorder failures are
logged and never fail the command.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from loopctl.autonomous import AutonomousConfig, AutonomousExecutor
from loopctl.config import LoopctlConfig
from loopctl.coordinator import MergeBackend, MultiAgentCoordinator
from loopctl.delegates import DelegateRegistry
from loopctl.engine import ExecutionEngine
from loopctl.errors import LoopctlError, LoopNotFoundError, RequestValidationError
from loopctl.registry import LoopRegistry
from loopctl.schemas import Execution, ExecutionStatus, ReservationConflict, SkillOutcome
from loopctl.schemas.requests import (
    AbortExecutionRequest,
    AddAgentRequest,
    AddLogRequest,
    AddModuleRequest,
    AgentSetRef,
    ApproveGateRequest,
    CheckCanWorkRequest,
    CheckResourceRequest,
    CollaboratorRef,
    CompleteSkillRequest,
    ConfigureAutonomousRequest,
    CreateAgentSetRequest,
    CreateReservationRequest,
    EventsRequest,
    ExecutionRef,
    ExtendReservationRequest,
    GateRef,
    GetLogsRequest,
    ListAgentSetsRequest,
    ListExecutionsRequest,
    ListMergeQueueRequest,
    ListReservationsRequest,
    LoopRef,
    MergeRequestRef,
    RegisterCollaboratorRequest,
    RejectGateRequest,
    RejectMergeRequest,
    RequestMergeRequest,
    ReservationRef,
    SkillRef,
    SkipSkillRequest,
    StartExecutionRequest,
    UpdateGateRequest,
)
from loopctl.store import Repositories, create_repositories
from loopctl.utils import utcnow


logger = logging.getLogger(__name__)


# =============================================================================
# Learning / memory recorder
# =============================================================================

class EventRecorder(ABC):
    """Receives learning signals produced by executions."""

    @abstractmethod
    def capture_skill_signal(
        self, execution: Execution, skill_id: str, outcome: Optional[SkillOutcome],
    ) -> None:
        pass

    @abstractmethod
    def record_gate_outcome(
        self, execution: Execution, gate_id: str, approved: bool, feedback: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def record_loop_completed(self, execution: Execution) -> None:
        pass


class NullEventRecorder(EventRecorder):
    """Recorder that drops every signal."""

    def capture_skill_signal(self, execution, skill_id, outcome) -> None:
        pass

    def record_gate_outcome(self, execution, gate_id, approved, feedback=None) -> None:
        pass

    def record_loop_completed(self, execution) -> None:
        pass


class FileEventRecorder(EventRecorder):
    """
    Appends one JSON envelope per signal to a JSON-lines file.

    Envelope fields: event_type, execution_id, loop_id, project, created_at,
    payload.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _log_event(self, event_type: str, execution: Execution, payload: dict[str, Any]) -> None:
        envelope = {
            "event_type": event_type,
            "execution_id": execution.execution_id,
            "loop_id": execution.loop_id,
            "project": execution.project,
            "created_at": utcnow().isoformat(),
            "payload": payload,
        }
        with self._lock:
            with open(self._path, "a") as f:
                f.write(json.dumps(envelope) + "\n")

    def capture_skill_signal(self, execution, skill_id, outcome) -> None:
        self._log_event("skill.completed", execution, {
            "phase": execution.current_phase,
            "skill_id": skill_id,
            "outcome": outcome.to_dict() if outcome is not None else None,
        })

    def record_gate_outcome(self, execution, gate_id, approved, feedback=None) -> None:
        self._log_event("gate.approved" if approved else "gate.rejected", execution, {
            "gate_id": gate_id,
            "feedback": feedback,
        })

    def record_loop_completed(self, execution) -> None:
        self._log_event("loop.completed", execution, {
            "phases": [p.name for p in execution.phases],
            "skills_executed": len(execution.skill_executions),
        })


# =============================================================================
# Toolbox
# =============================================================================

class Toolbox:
    """
    Named-command dispatcher.

    Usage:
        toolbox = build_toolbox(config)
        response = toolbox.call("list_loops")
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        autonomous: AutonomousExecutor,
        coordinator: MultiAgentCoordinator,
        recorder: Optional[EventRecorder] = None,
    ):
        self._engine = engine
        self._autonomous = autonomous
        self._coordinator = coordinator
        self._recorder = recorder or NullEventRecorder()
        self._tools: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            # Execution engine
            "start_execution": self._start_execution,
            "get_execution": self._get_execution,
            "list_executions": self._list_executions,
            "advance_phase": self._advance_phase,
            "complete_phase": self._complete_phase,
            "complete_skill": self._complete_skill,
            "skip_skill": self._skip_skill,
            "reset_skill": self._reset_skill,
            "approve_gate": self._approve_gate,
            "reject_gate": self._reject_gate,
            "pause_execution": self._pause_execution,
            "resume_execution": self._resume_execution,
            "abort_execution": self._abort_execution,
            "get_execution_logs": self._get_execution_logs,
            "list_gates": self._list_gates,
            "update_gate": self._update_gate,
            "enable_all_gates": self._enable_all_gates,
            "disable_all_gates": self._disable_all_gates,
            "set_all_gates_auto": self._set_all_gates_auto,
            "add_execution_log": self._add_execution_log,
            "list_loops": self._list_loops,
            "get_loop": self._get_loop,
            # Autonomous executor
            "start_autonomous": self._start_autonomous,
            "stop_autonomous": self._stop_autonomous,
            "pause_autonomous": self._pause_autonomous,
            "resume_autonomous": self._resume_autonomous,
            "get_autonomous_status": self._get_autonomous_status,
            "configure_autonomous": self._configure_autonomous,
            "run_autonomous_tick": self._run_autonomous_tick,
            "tick": self._run_autonomous_tick,
            "list_autonomous_executions": self._list_autonomous_executions,
            "check_gate_auto_approval": self._check_gate_auto_approval,
            # Coordinator
            "register_collaborator": self._register_collaborator,
            "get_collaborator": self._get_collaborator,
            "list_collaborators": self._list_collaborators,
            "touch_collaborator": self._touch_collaborator,
            "disconnect_collaborator": self._disconnect_collaborator,
            "get_collaborator_work": self._get_collaborator_work,
            "create_agent_set": self._create_agent_set,
            "get_agent_set": self._get_agent_set,
            "list_agent_sets": self._list_agent_sets,
            "add_agent_to_set": self._add_agent_to_set,
            "add_module_to_set": self._add_module_to_set,
            "pause_agent_set": self._pause_agent_set,
            "resume_agent_set": self._resume_agent_set,
            "create_reservation": self._create_reservation,
            "list_reservations": self._list_reservations,
            "release_reservation": self._release_reservation,
            "extend_reservation": self._extend_reservation,
            "check_resource_blocked": self._check_resource_blocked,
            "purge_expired_reservations": self._purge_expired_reservations,
            "request_merge": self._request_merge,
            "check_merge_conflicts": self._check_merge_conflicts,
            "execute_merge": self._execute_merge,
            "reject_merge": self._reject_merge,
            "list_merge_queue": self._list_merge_queue,
            "get_merge_request": self._get_merge_request,
            "process_merge_queue": self._process_merge_queue,
            "check_can_work": self._check_can_work,
            "get_coordinator_status": self._get_coordinator_status,
            "get_coordinator_events": self._get_coordinator_events,
        }

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    @property
    def autonomous(self) -> AutonomousExecutor:
        return self._autonomous

    @property
    def coordinator(self) -> MultiAgentCoordinator:
        return self._coordinator

    def list_tools(self) -> list[str]:
        return sorted(self._tools)

    def call(self, name: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Run a command by name.

        Returns:
            ``{"ok": True, ...}`` on success, ``{"ok": False, "error": {...}}``
            when the command fails with a LoopctlError
        """
        try:
            handler = self._tools.get(name)
            if handler is None:
                raise RequestValidationError(f"Unknown tool: {name}")
            return {"ok": True, **handler(params if params is not None else {})}
        except LoopctlError as e:
            logger.warning(f"{name} failed: {e}")
            return {"ok": False, "error": e.to_dict()}

    def _record(self, method: Callable[..., None], *args: Any) -> None:
        try:
            method(*args)
        except Exception as e:
            logger.warning(f"Event recorder failed: {e}")

    # =========================================================================
    # Execution engine
    # =========================================================================

    def _start_execution(self, params: dict[str, Any]) -> dict[str, Any]:
        req = StartExecutionRequest.from_dict(params)
        execution = self._engine.start_execution(req.loop_id, req.project, mode=req.mode, autonomy=req.autonomy)
        return {"execution": execution.to_dict()}

    def _get_execution(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        execution = self._engine.get_execution(req.execution_id)
        return {"execution": execution.to_dict(), "summary": execution.summary().to_dict()}

    def _list_executions(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ListExecutionsRequest.from_dict(params)
        summaries = self._engine.list_executions(status=req.status, loop_id=req.loop_id, autonomy=req.autonomy)
        return {"executions": [s.to_dict() for s in summaries], "count": len(summaries)}

    def _advance_phase(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        before = self._engine.get_execution(req.execution_id).status
        execution = self._engine.advance_phase(req.execution_id)
        if before != ExecutionStatus.COMPLETED and execution.status == ExecutionStatus.COMPLETED:
            self._record(self._recorder.record_loop_completed, execution)
        return {"execution": execution.to_dict()}

    def _complete_phase(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.complete_phase(req.execution_id).to_dict()}

    def _complete_skill(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CompleteSkillRequest.from_dict(params)
        execution = self._engine.complete_skill(
            req.execution_id, req.skill_id,
            deliverables=req.deliverables, outcome=req.outcome, version=req.version,
        )
        self._record(self._recorder.capture_skill_signal, execution, req.skill_id, req.outcome)
        return {"execution": execution.to_dict()}

    def _skip_skill(self, params: dict[str, Any]) -> dict[str, Any]:
        req = SkipSkillRequest.from_dict(params)
        return {"execution": self._engine.skip_skill(req.execution_id, req.skill_id, req.reason).to_dict()}

    def _reset_skill(self, params: dict[str, Any]) -> dict[str, Any]:
        req = SkillRef.from_dict(params)
        return {"execution": self._engine.reset_skill(req.execution_id, req.skill_id).to_dict()}

    def _approve_gate(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ApproveGateRequest.from_dict(params)
        execution = self._engine.approve_gate(req.execution_id, req.gate_id, approved_by=req.approved_by)
        self._record(self._recorder.record_gate_outcome, execution, req.gate_id, True, None)
        return {"execution": execution.to_dict()}

    def _reject_gate(self, params: dict[str, Any]) -> dict[str, Any]:
        req = RejectGateRequest.from_dict(params)
        execution = self._engine.reject_gate(req.execution_id, req.gate_id, req.feedback)
        self._record(self._recorder.record_gate_outcome, execution, req.gate_id, False, req.feedback)
        return {"execution": execution.to_dict()}

    def _pause_execution(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.pause_execution(req.execution_id).to_dict()}

    def _resume_execution(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.resume_execution(req.execution_id).to_dict()}

    def _abort_execution(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AbortExecutionRequest.from_dict(params)
        return {"execution": self._engine.abort_execution(req.execution_id, reason=req.reason).to_dict()}

    def _get_execution_logs(self, params: dict[str, Any]) -> dict[str, Any]:
        req = GetLogsRequest.from_dict(params)
        entries = self._engine.get_logs(req.execution_id, level=req.level, category=req.category, limit=req.limit)
        return {"logs": [e.to_dict() for e in entries]}

    def _list_gates(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"gates": [g.to_dict() for g in self._engine.list_gates(req.execution_id)]}

    def _update_gate(self, params: dict[str, Any]) -> dict[str, Any]:
        req = UpdateGateRequest.from_dict(params)
        execution = self._engine.update_gate(
            req.execution_id, req.gate_id,
            enabled=req.enabled, approval_type_override=req.approval_type_override,
        )
        return {"gate": execution.get_gate(req.gate_id).to_dict()}

    def _enable_all_gates(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.set_gates_enabled(req.execution_id, True).to_dict()}

    def _disable_all_gates(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.set_gates_enabled(req.execution_id, False).to_dict()}

    def _set_all_gates_auto(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExecutionRef.from_dict(params)
        return {"execution": self._engine.set_all_gates_auto(req.execution_id).to_dict()}

    def _add_execution_log(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AddLogRequest.from_dict(params)
        execution = self._engine.add_log(req.execution_id, req.level, req.category, req.message)
        return {"entry": execution.logs[-1].to_dict()}

    def _list_loops(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"loops": [s.to_dict() for s in self._engine.loops.list_loops()]}

    def _get_loop(self, params: dict[str, Any]) -> dict[str, Any]:
        req = LoopRef.from_dict(params)
        loop_def = self._engine.loops.get_loop(req.loop_id)
        if loop_def is None:
            raise LoopNotFoundError(f"Loop definition not found: {req.loop_id}")
        return {"loop": loop_def.to_dict()}

    # =========================================================================
    # Autonomous executor
    # =========================================================================

    def _start_autonomous(self, params: dict[str, Any]) -> dict[str, Any]:
        self._autonomous.start()
        return {"status": self._autonomous.get_status()}

    def _stop_autonomous(self, params: dict[str, Any]) -> dict[str, Any]:
        self._autonomous.stop()
        return {"status": self._autonomous.get_status()}

    def _pause_autonomous(self, params: dict[str, Any]) -> dict[str, Any]:
        self._autonomous.pause()
        return {"status": self._autonomous.get_status()}

    def _resume_autonomous(self, params: dict[str, Any]) -> dict[str, Any]:
        self._autonomous.resume()
        return {"status": self._autonomous.get_status()}

    def _get_autonomous_status(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"status": self._autonomous.get_status()}

    def _configure_autonomous(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ConfigureAutonomousRequest.from_dict(params)
        config = self._autonomous.configure(
            tick_interval_ms=req.tick_interval_ms,
            max_parallel_executions=req.max_parallel_executions,
            max_skill_retries=req.max_skill_retries,
        )
        return {"config": config.to_dict()}

    def _run_autonomous_tick(self, params: dict[str, Any]) -> dict[str, Any]:
        results = self._autonomous.tick()
        return {"results": [r.to_dict() for r in results]}

    def _list_autonomous_executions(self, params: dict[str, Any]) -> dict[str, Any]:
        executions = self._autonomous.list_autonomous_executions()
        return {"executions": [e.summary().to_dict() for e in executions]}

    def _check_gate_auto_approval(self, params: dict[str, Any]) -> dict[str, Any]:
        req = GateRef.from_dict(params)
        return self._autonomous.check_gate_auto_approval(req.execution_id, req.gate_id).to_dict()

    # =========================================================================
    # Coordinator
    # =========================================================================

    def _register_collaborator(self, params: dict[str, Any]) -> dict[str, Any]:
        req = RegisterCollaboratorRequest.from_dict(params)
        collaborator = self._coordinator.register_collaborator(
            req.name, email=req.email, collaborator_id=req.collaborator_id,
        )
        return {"collaborator": collaborator.to_dict()}

    def _get_collaborator(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CollaboratorRef.from_dict(params)
        return {"collaborator": self._coordinator.get_collaborator(req.collaborator_id).to_dict()}

    def _list_collaborators(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"collaborators": [c.to_dict() for c in self._coordinator.list_collaborators()]}

    def _touch_collaborator(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CollaboratorRef.from_dict(params)
        return {"collaborator": self._coordinator.touch_collaborator(req.collaborator_id).to_dict()}

    def _disconnect_collaborator(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CollaboratorRef.from_dict(params)
        return {"collaborator": self._coordinator.disconnect_collaborator(req.collaborator_id).to_dict()}

    def _get_collaborator_work(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CollaboratorRef.from_dict(params)
        return self._coordinator.get_collaborator_work(req.collaborator_id)

    def _create_agent_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CreateAgentSetRequest.from_dict(params)
        agent_set = self._coordinator.create_agent_set(
            req.collaborator_id, req.name,
            agent_ids=list(req.agent_ids), module_ids=list(req.module_ids),
        )
        return {"agent_set": agent_set.to_dict()}

    def _get_agent_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AgentSetRef.from_dict(params)
        return {"agent_set": self._coordinator.get_agent_set(req.agent_set_id).to_dict()}

    def _list_agent_sets(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ListAgentSetsRequest.from_dict(params)
        return {"agent_sets": [s.to_dict() for s in self._coordinator.list_agent_sets(req.collaborator_id)]}

    def _add_agent_to_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AddAgentRequest.from_dict(params)
        return {"agent_set": self._coordinator.add_agent_to_set(req.agent_set_id, req.agent_id).to_dict()}

    def _add_module_to_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AddModuleRequest.from_dict(params)
        return {"agent_set": self._coordinator.add_module_to_set(req.agent_set_id, req.module_id).to_dict()}

    def _pause_agent_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AgentSetRef.from_dict(params)
        return {"agent_set": self._coordinator.pause_agent_set(req.agent_set_id).to_dict()}

    def _resume_agent_set(self, params: dict[str, Any]) -> dict[str, Any]:
        req = AgentSetRef.from_dict(params)
        return {"agent_set": self._coordinator.resume_agent_set(req.agent_set_id).to_dict()}

    def _create_reservation(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CreateReservationRequest.from_dict(params)
        result = self._coordinator.create_reservation(
            req.collaborator_id, req.type, req.target,
            exclusive=req.exclusive, duration_ms=req.duration_ms,
            agent_set_id=req.agent_set_id, reason=req.reason,
        )
        if isinstance(result, ReservationConflict):
            return {"reserved": False, "conflict": result.to_dict()}
        return {"reserved": True, "reservation": result.to_dict()}

    def _list_reservations(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ListReservationsRequest.from_dict(params)
        reservations = self._coordinator.list_reservations(
            req.collaborator_id, include_expired=req.include_expired,
        )
        return {"reservations": [r.to_dict() for r in reservations]}

    def _release_reservation(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ReservationRef.from_dict(params)
        return {"released": self._coordinator.release_reservation(req.reservation_id)}

    def _extend_reservation(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ExtendReservationRequest.from_dict(params)
        reservation = self._coordinator.extend_reservation(req.reservation_id, req.additional_ms)
        return {"reservation": reservation.to_dict()}

    def _check_resource_blocked(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CheckResourceRequest.from_dict(params)
        blocking = self._coordinator.check_resource_blocked(req.type, req.target)
        return {"blocked": bool(blocking), "reservations": [r.to_dict() for r in blocking]}

    def _purge_expired_reservations(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"purged": self._coordinator.purge_expired()}

    def _request_merge(self, params: dict[str, Any]) -> dict[str, Any]:
        req = RequestMergeRequest.from_dict(params)
        request = self._coordinator.request_merge(
            req.collaborator_id, req.agent_set_id, req.module_id, branch_name=req.branch_name,
        )
        return {"merge_request": request.to_dict()}

    def _check_merge_conflicts(self, params: dict[str, Any]) -> dict[str, Any]:
        req = MergeRequestRef.from_dict(params)
        check = self._coordinator.check_merge_conflicts(req.merge_request_id)
        return {
            "check": check.to_dict(),
            "merge_request": self._coordinator.get_merge_request(req.merge_request_id).to_dict(),
        }

    def _execute_merge(self, params: dict[str, Any]) -> dict[str, Any]:
        req = MergeRequestRef.from_dict(params)
        return {"result": self._coordinator.execute_merge(req.merge_request_id).to_dict()}

    def _reject_merge(self, params: dict[str, Any]) -> dict[str, Any]:
        req = RejectMergeRequest.from_dict(params)
        return {"merge_request": self._coordinator.reject_merge(req.merge_request_id, req.reason).to_dict()}

    def _list_merge_queue(self, params: dict[str, Any]) -> dict[str, Any]:
        req = ListMergeQueueRequest.from_dict(params)
        return {"merge_requests": [m.to_dict() for m in self._coordinator.list_merge_queue(req.status)]}

    def _get_merge_request(self, params: dict[str, Any]) -> dict[str, Any]:
        req = MergeRequestRef.from_dict(params)
        return {"merge_request": self._coordinator.get_merge_request(req.merge_request_id).to_dict()}

    def _process_merge_queue(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"results": [r.to_dict() for r in self._coordinator.process_merge_queue()]}

    def _check_can_work(self, params: dict[str, Any]) -> dict[str, Any]:
        req = CheckCanWorkRequest.from_dict(params)
        return self._coordinator.check_can_work(req.collaborator_id, req.module_id)

    def _get_coordinator_status(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"status": self._coordinator.get_status()}

    def _get_coordinator_events(self, params: dict[str, Any]) -> dict[str, Any]:
        req = EventsRequest.from_dict(params)
        return {"events": [e.to_dict() for e in self._coordinator.get_events(req.limit)]}


def build_toolbox(
    config: Optional[LoopctlConfig] = None,
    delegates: Optional[DelegateRegistry] = None,
    merge_backend: Optional[MergeBackend] = None,
    recorder: Optional[EventRecorder] = None,
    repositories: Optional[Repositories] = None,
) -> Toolbox:
    """
    Wire a Toolbox from configuration.

    Args:
        config: Runtime configuration (defaults apply when None)
        delegates: Skill delegates for the autonomous executor
        merge_backend: Trunk integration for the coordinator
        recorder: Event recorder (defaults to a JSON-lines file in the store)
        repositories: Storage (defaults to file storage under config.store_dir)

    Returns:
        A ready Toolbox
    """
    config = config or LoopctlConfig()
    if repositories is None:
        repositories = create_repositories(config.store_path)
    if recorder is None:
        recorder = FileEventRecorder(config.store_path / "events.jsonl")

    registry = LoopRegistry(config.definitions_path)
    engine = ExecutionEngine(loops=registry, executions=repositories.executions)
    autonomous = AutonomousExecutor(
        engine,
        delegates=delegates,
        config=AutonomousConfig(
            tick_interval_ms=config.tick_interval_ms,
            max_parallel_executions=config.max_parallel_executions,
            max_skill_retries=config.max_skill_retries,
        ),
        on_loop_completed=recorder.record_loop_completed,
    )
    coordinator = MultiAgentCoordinator(
        repositories,
        merge_backend=merge_backend,
        default_timeout_ms=config.reservation_timeout_ms,
    )
    return Toolbox(engine, autonomous, coordinator, recorder=recorder)

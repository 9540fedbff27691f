"""Tests for loopctl.engine module.

Tests the ExecutionEngine state machine:
- start_execution and mode filtering
- skill completion / skipping and the one-record-per-skill rule
- phase completion and advancement (no regression, gates block)
- gate approval / rejection and blocked executions
- pause / resume / abort lifecycle
- execution logs
"""

import threading
from datetime import timedelta

import pytest

from loopctl.errors import (
    ExecutionNotActiveError,
    ExecutionNotFoundError,
    ExecutionTerminalError,
    GateNotApprovedError,
    GateNotFoundError,
    InvalidTransitionError,
    LoopNotFoundError,
    PhaseIncompleteError,
    RequestValidationError,
    SkillNotFoundError,
)
from loopctl.schemas import (
    ApprovalType,
    AutonomyLevel,
    ExecutionStatus,
    GateStatus,
    LogCategory,
    LogLevel,
    LoopMode,
    PhaseStatus,
    SkillOutcome,
    SkillStatus,
)


def _finish_plan(engine, execution_id):
    """Complete PLAN's required skill and approve its human gate."""
    engine.complete_skill(execution_id, "outline", deliverables=["OUTLINE.md"])
    engine.approve_gate(execution_id, "plan-gate", approved_by="alice")


# =============================================================================
# START
# =============================================================================


class TestStartExecution:
    """Tests for start_execution."""

    def test_starts_active_at_first_phase(self, engine, clock):
        execution = engine.start_execution("sample-loop", "acme")

        assert execution.status == ExecutionStatus.ACTIVE
        assert execution.current_phase == "PLAN"
        assert execution.loop_version == "1.2.0"
        assert execution.mode == LoopMode.GREENFIELD
        assert execution.autonomy == AutonomyLevel.SUPERVISED
        assert execution.started_at == clock.now
        assert execution.current.status == PhaseStatus.IN_PROGRESS
        assert [p.status for p in execution.phases[1:]] == [PhaseStatus.PENDING] * 2
        assert all(g.status == GateStatus.PENDING for g in execution.gates)

    def test_persisted(self, engine):
        execution = engine.start_execution("sample-loop", "acme")
        assert engine.get_execution(execution.execution_id) == execution

    def test_mode_restricted_skills_start_skipped(self, engine):
        execution = engine.start_execution("sample-loop", "acme")
        audit = execution.current.get_skill("legacy-audit")

        assert audit.status == SkillStatus.SKIPPED
        assert audit.skip_reason == "not applicable in greenfield mode"
        assert audit.required is False

    def test_mode_applies_skill(self, engine):
        execution = engine.start_execution("sample-loop", "acme", mode="brownfield-polish")
        audit = execution.current.get_skill("legacy-audit")

        assert audit.status == SkillStatus.PENDING
        assert audit.required is True

    def test_explicit_autonomy(self, engine):
        execution = engine.start_execution("sample-loop", "acme", autonomy=AutonomyLevel.FULL)
        assert execution.autonomy == AutonomyLevel.FULL

    def test_unknown_loop(self, engine):
        with pytest.raises(LoopNotFoundError):
            engine.start_execution("nope", "acme")

    def test_blank_project(self, engine):
        with pytest.raises(RequestValidationError):
            engine.start_execution("sample-loop", "  ")

    def test_invalid_mode(self, engine):
        with pytest.raises(RequestValidationError):
            engine.start_execution("sample-loop", "acme", mode="sideways")

    def test_logs_creation(self, engine):
        execution = engine.start_execution("sample-loop", "acme")
        messages = [entry.message for entry in execution.logs]

        assert messages[0].startswith("Execution created for sample-loop v1.2.0")
        assert "Phase PLAN started" in messages

    def test_get_missing(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            engine.get_execution("01MISSING")


class TestEngineeringLoop:
    """The bundled engineering loop drives through its first human gate."""

    def test_init_to_scaffold_requires_spec_gate(self, bundled_engine):
        engine = bundled_engine
        execution = engine.start_execution("engineering-loop", "acme")
        eid = execution.execution_id

        assert execution.current_phase == "INIT"
        assert "VALIDATE" not in [p.name for p in execution.phases]
        assert execution.get_gate("compliance-gate") is None

        engine.complete_skill(eid, "requirements", deliverables=["SPEC.md"])
        engine.complete_phase(eid)
        with pytest.raises(GateNotApprovedError, match="spec-gate"):
            engine.advance_phase(eid)

        engine.approve_gate(eid, "spec-gate", approved_by="alice")
        execution = engine.advance_phase(eid)

        assert execution.current_phase == "SCAFFOLD"
        assert execution.get_phase("INIT").status == PhaseStatus.COMPLETED
        assert execution.current.status == PhaseStatus.IN_PROGRESS

    def test_enterprise_mode_includes_validate(self, bundled_engine):
        execution = bundled_engine.start_execution(
            "engineering-loop", "acme", mode=LoopMode.BROWNFIELD_ENTERPRISE
        )
        assert "VALIDATE" in [p.name for p in execution.phases]
        assert execution.get_gate("compliance-gate") is not None


# =============================================================================
# SKILLS
# =============================================================================


class TestSkills:
    """Tests for complete_skill / skip_skill / failure bookkeeping."""

    def test_complete_records_execution(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        outcome = SkillOutcome(success=True, score=0.9)

        execution = engine.complete_skill(eid, "outline", deliverables=["OUTLINE.md"], outcome=outcome, version="2")

        assert execution.current.get_skill("outline").status == SkillStatus.COMPLETED
        record = execution.get_skill_execution("PLAN", "outline")
        assert record.deliverables == ["OUTLINE.md"]
        assert record.outcome == outcome
        assert record.version == "2"
        assert record.recorded_at == clock.now

    def test_recomplete_overwrites(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline", deliverables=["v1.md"])
        execution = engine.complete_skill(eid, "outline", deliverables=["v2.md"])

        records = [r for r in execution.skill_executions if r.skill_id == "outline"]
        assert len(records) == 1
        assert records[0].deliverables == ["v2.md"]

    def test_skill_outside_current_phase(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(SkillNotFoundError, match="code"):
            engine.complete_skill(eid, "code")

    def test_skip_requires_reason(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(RequestValidationError):
            engine.skip_skill(eid, "outline", "   ")

    def test_skip_satisfies_phase(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        execution = engine.skip_skill(eid, "outline", "outline provided by the customer")

        skill = execution.current.get_skill("outline")
        assert skill.status == SkillStatus.SKIPPED
        assert skill.skip_reason == "outline provided by the customer"
        assert execution.current.is_satisfied

    def test_cannot_skip_completed(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        with pytest.raises(InvalidTransitionError):
            engine.skip_skill(eid, "outline", "changed my mind")

    def test_record_failure(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.record_skill_failure(eid, "outline", "timeout")
        execution = engine.record_skill_failure(eid, "outline", "timeout again")

        skill = execution.current.get_skill("outline")
        assert skill.status == SkillStatus.FAILED
        assert skill.retry_count == 2
        assert skill.last_error == "timeout again"

    def test_reset_skill(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        engine.complete_phase(eid)
        execution = engine.reset_skill(eid, "outline")

        assert execution.current.get_skill("outline").status == SkillStatus.PENDING
        assert execution.get_skill_execution("PLAN", "outline") is None
        assert execution.current.status == PhaseStatus.IN_PROGRESS

    def test_work_allowed_while_paused(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.pause_execution(eid)
        execution = engine.complete_skill(eid, "outline")

        assert execution.status == ExecutionStatus.PAUSED
        assert execution.current.get_skill("outline").status == SkillStatus.COMPLETED


# =============================================================================
# PHASES
# =============================================================================


class TestPhases:
    """Tests for complete_phase / advance_phase."""

    def test_complete_phase_requires_skills(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(PhaseIncompleteError, match="outline"):
            engine.complete_phase(eid)

    def test_optional_skills_do_not_block(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        execution = engine.complete_phase(eid)

        assert execution.current.status == PhaseStatus.COMPLETED
        assert execution.current_phase == "PLAN"

    def test_complete_phase_idempotent(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        first = engine.complete_phase(eid)
        second = engine.complete_phase(eid)

        assert second.current.completed_at == first.current.completed_at
        assert len(second.logs) == len(first.logs)

    def test_advance_requires_skills(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.approve_gate(eid, "plan-gate")
        with pytest.raises(PhaseIncompleteError):
            engine.advance_phase(eid)

    def test_advance_requires_gate(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        with pytest.raises(GateNotApprovedError, match=r"plan-gate \(pending\)"):
            engine.advance_phase(eid)

    def test_failed_advance_leaves_state(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        before = engine.get_execution(eid)
        with pytest.raises(GateNotApprovedError):
            engine.advance_phase(eid)

        assert engine.get_execution(eid) == before

    def test_advance_marks_phase_complete(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        _finish_plan(engine, eid)
        clock.advance(minutes=5)
        execution = engine.advance_phase(eid)

        plan = execution.get_phase("PLAN")
        assert plan.status == PhaseStatus.COMPLETED
        assert plan.completed_at == clock.now
        assert execution.current_phase == "BUILD"
        assert execution.current.started_at == clock.now

    def test_disabled_gate_does_not_block(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        engine.update_gate(eid, "plan-gate", enabled=False)

        assert engine.advance_phase(eid).current_phase == "BUILD"

    def test_phase_order_never_regresses(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        orders = [engine.get_execution(eid).current.order]

        _finish_plan(engine, eid)
        orders.append(engine.advance_phase(eid).current.order)
        engine.complete_skill(eid, "code")
        engine.approve_gate(eid, "build-gate")
        orders.append(engine.advance_phase(eid).current.order)

        assert orders == sorted(orders) == [1, 2, 3]

    def test_advance_past_last_phase_completes(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.set_gates_enabled(eid, False)
        for skill in ("outline", "code", "release"):
            engine.complete_skill(eid, skill)
            execution = engine.advance_phase(eid)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_phase == "SHIP"
        assert execution.completed_at == clock.now
        assert all(p.status == PhaseStatus.COMPLETED for p in execution.phases)

    def test_advance_on_completed_returns_same_state(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.set_gates_enabled(eid, False)
        for skill in ("outline", "code", "release"):
            engine.complete_skill(eid, skill)
            completed = engine.advance_phase(eid)

        assert engine.advance_phase(eid) == completed

    def test_advance_while_paused(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        _finish_plan(engine, eid)
        engine.pause_execution(eid)
        with pytest.raises(ExecutionNotActiveError):
            engine.advance_phase(eid)


# =============================================================================
# GATES
# =============================================================================


class TestGates:
    """Tests for approve_gate / reject_gate / gate administration."""

    def test_approve(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        gate = engine.approve_gate(eid, "plan-gate", approved_by="alice").get_gate("plan-gate")

        assert gate.status == GateStatus.APPROVED
        assert gate.approved_by == "alice"
        assert gate.approved_at == clock.now

    def test_approve_twice_is_noop(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.approve_gate(eid, "plan-gate", approved_by="alice")
        clock.advance(minutes=1)
        gate = engine.approve_gate(eid, "plan-gate", approved_by="bob").get_gate("plan-gate")

        assert gate.approved_by == "alice"
        assert gate.approved_at == clock.now - timedelta(minutes=1)

    def test_unknown_gate(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(GateNotFoundError):
            engine.approve_gate(eid, "nope")

    def test_reject_requires_feedback(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(RequestValidationError):
            engine.reject_gate(eid, "plan-gate", "")

    def test_reject_blocks_then_recover(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")

        execution = engine.reject_gate(eid, "plan-gate", "outline misses the API section")
        assert execution.status == ExecutionStatus.BLOCKED
        assert execution.get_gate("plan-gate").feedback == "outline misses the API section"
        assert "plan-gate" in execution.status_reason

        with pytest.raises(ExecutionNotActiveError):
            engine.advance_phase(eid)
        with pytest.raises(GateNotApprovedError, match="still rejected"):
            engine.resume_execution(eid)

        engine.approve_gate(eid, "plan-gate", approved_by="alice")
        assert engine.get_execution(eid).status == ExecutionStatus.BLOCKED

        assert engine.resume_execution(eid).status == ExecutionStatus.ACTIVE
        assert engine.advance_phase(eid).current_phase == "BUILD"

    def test_update_gate_override(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        execution = engine.update_gate(eid, "plan-gate", approval_type_override=ApprovalType.AUTO)

        assert execution.get_gate("plan-gate").effective_approval_type == ApprovalType.AUTO
        assert execution.get_gate("plan-gate").approval_type == ApprovalType.HUMAN

    def test_set_all_gates_auto(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        execution = engine.set_all_gates_auto(eid)
        assert all(g.effective_approval_type == ApprovalType.AUTO for g in execution.gates)

    def test_list_gates(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        assert [g.gate_id for g in engine.list_gates(eid)] == ["plan-gate", "build-gate", "ship-gate"]


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    """Tests for pause / resume / escalate / abort."""

    def test_pause_resume(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")

        paused = engine.pause_execution(eid)
        assert paused.status == ExecutionStatus.PAUSED

        resumed = engine.resume_execution(eid)
        assert resumed.status == ExecutionStatus.ACTIVE
        assert resumed.current == paused.current

    def test_pause_requires_active(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.pause_execution(eid)
        with pytest.raises(InvalidTransitionError):
            engine.pause_execution(eid)

    def test_resume_requires_paused_or_blocked(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        with pytest.raises(InvalidTransitionError):
            engine.resume_execution(eid)

    def test_resume_from_escalation_resets_failed_skills(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.record_skill_failure(eid, "outline", "boom")
        engine.escalate(eid, "Skill outline failed 1 times: boom")

        execution = engine.resume_execution(eid)
        skill = execution.current.get_skill("outline")
        assert skill.status == SkillStatus.PENDING
        assert skill.retry_count == 0
        assert execution.status_reason is None

    def test_abort(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        execution = engine.abort_execution(eid, reason="requirements withdrawn")

        assert execution.status == ExecutionStatus.FAILED
        assert execution.status_reason == "requirements withdrawn"

    def test_abort_twice_is_noop(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        first = engine.abort_execution(eid)
        clock.advance(minutes=1)

        assert engine.abort_execution(eid, reason="again") == first

    def test_terminal_rejects_changes(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.abort_execution(eid)

        with pytest.raises(ExecutionTerminalError):
            engine.complete_skill(eid, "outline")
        with pytest.raises(ExecutionTerminalError):
            engine.advance_phase(eid)
        with pytest.raises(ExecutionTerminalError):
            engine.resume_execution(eid)

    def test_cannot_abort_completed(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.set_gates_enabled(eid, False)
        for skill in ("outline", "code", "release"):
            engine.complete_skill(eid, skill)
            engine.advance_phase(eid)

        with pytest.raises(ExecutionTerminalError):
            engine.abort_execution(eid)


# =============================================================================
# QUERIES AND LOGS
# =============================================================================


class TestQueries:
    """Tests for list_executions and get_logs."""

    def test_list_filters(self, engine):
        a = engine.start_execution("sample-loop", "acme").execution_id
        engine.start_execution("sample-loop", "globex", autonomy="full")
        engine.pause_execution(a)

        assert [s.project for s in engine.list_executions(status=ExecutionStatus.PAUSED)] == ["acme"]
        assert [s.project for s in engine.list_executions(autonomy=AutonomyLevel.FULL)] == ["globex"]
        assert len(engine.list_executions(loop_id="sample-loop")) == 2
        assert engine.list_executions(loop_id="other") == []

    def test_logs_filters(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.complete_skill(eid, "outline")
        engine.reject_gate(eid, "plan-gate", "no")

        skill_logs = engine.get_logs(eid, category=LogCategory.SKILL)
        assert [e.message for e in skill_logs] == ["Skill outline completed"]

        warnings = engine.get_logs(eid, level=LogLevel.WARNING)
        assert {e.category for e in warnings} == {LogCategory.GATE, LogCategory.SYSTEM}

        assert len(engine.get_logs(eid, limit=1)) == 1
        assert engine.get_logs(eid, limit=1)[0].message == "Execution blocked by rejected gate plan-gate"

    def test_logs_since(self, engine, clock):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        clock.advance(minutes=1)
        since = clock.now
        engine.complete_skill(eid, "outline")

        assert [e.message for e in engine.get_logs(eid, since=since)] == ["Skill outline completed"]

    def test_add_log_on_terminal(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id
        engine.abort_execution(eid)
        execution = engine.add_log(eid, LogLevel.INFO, LogCategory.SYSTEM, "post-mortem filed")

        assert execution.logs[-1].message == "post-mortem filed"

    def test_logs_limit_zero(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id

        assert engine.get_logs(eid, limit=0) == []
        with pytest.raises(RequestValidationError):
            engine.get_logs(eid, limit=-1)


# =============================================================================
# CONCURRENCY
# =============================================================================


def _run_together(count, target):
    """Start ``count`` threads that call ``target(i)`` at the same moment."""
    barrier = threading.Barrier(count)
    errors = []

    def worker(i):
        barrier.wait()
        try:
            target(i)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return errors


class TestConcurrency:
    """Calls on one execution id are serialized."""

    def test_concurrent_failures_all_counted(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id

        errors = _run_together(8, lambda i: engine.record_skill_failure(eid, "outline", f"attempt {i}"))

        assert errors == []
        execution = engine.get_execution(eid)
        assert execution.current.get_skill("outline").retry_count == 8
        assert len(engine.get_logs(eid, category=LogCategory.SKILL)) == 8

    def test_concurrent_completions_keep_one_record(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id

        def work(i):
            skill_id = "outline" if i % 2 else "research"
            engine.complete_skill(eid, skill_id, deliverables=[f"DOC-{i}.md"])

        errors = _run_together(8, work)

        assert errors == []
        records = [(r.phase, r.skill_id) for r in engine.get_execution(eid).skill_executions]
        assert sorted(records) == [("PLAN", "outline"), ("PLAN", "research")]

    def test_concurrent_updates_on_different_skills(self, engine):
        eid = engine.start_execution("sample-loop", "acme").execution_id

        def work(i):
            if i % 2:
                engine.record_skill_failure(eid, "outline", "flaky")
            else:
                engine.record_skill_failure(eid, "research", "flaky")

        assert _run_together(6, work) == []
        phase = engine.get_execution(eid).current
        assert phase.get_skill("outline").retry_count == 3
        assert phase.get_skill("research").retry_count == 3

    def test_lock_table_does_not_grow(self, engine):
        for i in range(20):
            eid = engine.start_execution("sample-loop", f"project-{i}").execution_id
            engine.complete_skill(eid, "outline")
            engine.abort_execution(eid)

        assert len(engine._locks) == 0

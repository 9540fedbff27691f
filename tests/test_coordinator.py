"""Tests for loopctl.coordinator module.

Tests cover:
- Target overlap rules (module / file / path-pattern)
- Reservation exclusivity, expiry, extension and release
- Collaborator and agent set lifecycle
- Merge queue lifecycle, conflict detection and backend failures
- Queue positions, event log bounds and check_can_work
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from loopctl.coordinator import (
    DEFAULT_RESERVATION_REASON,
    MAX_EVENTS,
    TRIMMED_EVENTS,
    MergeBackend,
    MultiAgentCoordinator,
    patterns_intersect,
    targets_overlap,
)
from loopctl.errors import CoordinatorNotFoundError, InvalidTransitionError, RequestValidationError
from loopctl.schemas import (
    AgentSetStatus,
    CollaboratorStatus,
    MergeRequestStatus,
    Reservation,
    ReservationConflict,
    ReservationType,
)


MODULE = ReservationType.MODULE
FILE = ReservationType.FILE
PATTERN = ReservationType.PATH_PATTERN


@pytest.fixture
def backend():
    backend = MagicMock(spec=MergeBackend)
    backend.check_conflicts.return_value = []
    return backend


@pytest.fixture
def coordinator(repositories, backend, clock):
    return MultiAgentCoordinator(repositories, merge_backend=backend, clock=clock)


@pytest.fixture
def alice(coordinator):
    return coordinator.register_collaborator("Alice", collaborator_id="alice").collaborator_id


@pytest.fixture
def bob(coordinator):
    return coordinator.register_collaborator("Bob", collaborator_id="bob").collaborator_id


@pytest.fixture
def alice_set(coordinator, alice):
    return coordinator.create_agent_set(alice, "alice-agents", module_ids=["auth"]).agent_set_id


@pytest.fixture
def bob_set(coordinator, bob):
    return coordinator.create_agent_set(bob, "bob-agents", module_ids=["auth"]).agent_set_id


# =============================================================================
# OVERLAP
# =============================================================================


class TestOverlap:
    """Tests for targets_overlap / patterns_intersect."""

    @pytest.mark.parametrize("type_a,a,type_b,b,expected", [
        (MODULE, "auth", MODULE, "auth", True),
        (MODULE, "auth", MODULE, "billing", False),
        (FILE, "src/auth/login.py", FILE, "src/auth/login.py", True),
        (FILE, "src/auth/login.py", FILE, "src/auth/logout.py", False),
        (FILE, "src/auth/login.py", MODULE, "auth", True),
        (MODULE, "auth", FILE, "auth/models.py", True),
        (FILE, "src/authz/login.py", MODULE, "auth", False),
        (PATTERN, "src/*.py", FILE, "src/main.py", True),
        (FILE, "lib/main.py", PATTERN, "src/*.py", False),
        (PATTERN, "auth/**", MODULE, "auth", True),
        (MODULE, "auth", PATTERN, "*.py", True),
        (PATTERN, "billing/*", MODULE, "auth", False),
        (PATTERN, "src/*.py", PATTERN, "src/*.py", True),
        (PATTERN, "src/*.py", PATTERN, "src/*.ts", False),
        (PATTERN, "src/*", PATTERN, "*.py", True),
        (PATTERN, "docs/*", PATTERN, "src/*", False),
    ])
    def test_overlap(self, type_a, a, type_b, b, expected):
        assert targets_overlap(type_a, a, type_b, b) is expected
        assert targets_overlap(type_b, b, type_a, a) is expected

    def test_pattern_matching_pattern(self):
        assert patterns_intersect("src/auth/*.py", "src/*")

    def test_literal_patterns_compare_exactly(self):
        assert not patterns_intersect("src/a.py", "src/b.py")


# =============================================================================
# COLLABORATORS AND AGENT SETS
# =============================================================================


class TestCollaborators:
    """Tests for collaborator registration and agent sets."""

    def test_register(self, coordinator, clock):
        collaborator = coordinator.register_collaborator(" Alice ", email="alice@example.com")

        assert collaborator.name == "Alice"
        assert collaborator.status == CollaboratorStatus.ACTIVE
        assert collaborator.connected_at == clock.now
        assert coordinator.get_collaborator(collaborator.collaborator_id) == collaborator

    def test_blank_name(self, coordinator):
        with pytest.raises(RequestValidationError):
            coordinator.register_collaborator("  ")

    def test_unknown(self, coordinator):
        with pytest.raises(CoordinatorNotFoundError):
            coordinator.get_collaborator("nobody")

    def test_disconnect_releases_and_pauses(self, coordinator, alice, alice_set):
        coordinator.create_reservation(alice, MODULE, "auth")
        collaborator = coordinator.disconnect_collaborator(alice)

        assert collaborator.status == CollaboratorStatus.DISCONNECTED
        assert coordinator.list_reservations(alice) == []
        assert coordinator.get_agent_set(alice_set).status == AgentSetStatus.PAUSED
        assert coordinator.list_collaborators(status=CollaboratorStatus.DISCONNECTED)[0].collaborator_id == alice

    def test_touch_reactivates_idle(self, coordinator, repositories, alice, clock):
        collaborator = coordinator.get_collaborator(alice)
        collaborator.status = CollaboratorStatus.IDLE
        repositories.collaborators.put(collaborator)
        clock.advance(minutes=1)

        touched = coordinator.touch_collaborator(alice)
        assert touched.status == CollaboratorStatus.ACTIVE
        assert touched.last_active == clock.now

    def test_agent_set(self, coordinator, alice, alice_set):
        coordinator.add_agent_to_set(alice_set, "agent-1")
        coordinator.add_agent_to_set(alice_set, "agent-1")
        agent_set = coordinator.add_module_to_set(alice_set, "billing")

        assert agent_set.agent_ids == ["agent-1"]
        assert agent_set.module_ids == ["auth", "billing"]
        assert [s.agent_set_id for s in coordinator.list_agent_sets(alice)] == [alice_set]

    def test_agent_set_requires_collaborator(self, coordinator):
        with pytest.raises(CoordinatorNotFoundError):
            coordinator.create_agent_set("nobody", "agents")

    def test_pause_resume_agent_set(self, coordinator, alice_set):
        assert coordinator.pause_agent_set(alice_set).status == AgentSetStatus.PAUSED
        assert coordinator.resume_agent_set(alice_set).status == AgentSetStatus.ACTIVE


# =============================================================================
# RESERVATIONS
# =============================================================================


class TestReservations:
    """Tests for create / check / extend / release."""

    def test_create_defaults(self, coordinator, alice, clock):
        reservation = coordinator.create_reservation(alice, "module", "auth")

        assert isinstance(reservation, Reservation)
        assert reservation.exclusive is True
        assert reservation.reason == DEFAULT_RESERVATION_REASON
        assert reservation.expires_at == clock.now + timedelta(hours=1)

    def test_custom_duration(self, coordinator, alice, clock):
        reservation = coordinator.create_reservation(alice, MODULE, "auth", duration_ms=5000)
        assert reservation.expires_at == clock.now + timedelta(seconds=5)

    @pytest.mark.parametrize("kwargs", [
        {"type": "directory", "target": "auth"},
        {"type": "module", "target": "  "},
        {"type": "module", "target": "auth", "duration_ms": 0},
    ])
    def test_invalid(self, coordinator, alice, kwargs):
        with pytest.raises(RequestValidationError):
            coordinator.create_reservation(alice, **kwargs)

    def test_unknown_collaborator(self, coordinator):
        with pytest.raises(CoordinatorNotFoundError):
            coordinator.create_reservation("nobody", MODULE, "auth")

    def test_exclusive_conflict(self, coordinator, alice, bob):
        first = coordinator.create_reservation(alice, MODULE, "auth")
        result = coordinator.create_reservation(bob, FILE, "src/auth/login.py", exclusive=False)

        assert isinstance(result, ReservationConflict)
        assert result.message == "Reservation conflicts with existing reservations"
        assert result.conflicting_ids == [first.reservation_id]
        assert coordinator.list_reservations(bob) == []

    def test_own_reservations_conflict_too(self, coordinator, alice):
        coordinator.create_reservation(alice, MODULE, "auth")
        assert isinstance(coordinator.create_reservation(alice, MODULE, "auth"), ReservationConflict)

    def test_shared_reservations_coexist(self, coordinator, alice, bob):
        coordinator.create_reservation(alice, PATTERN, "src/*.py", exclusive=False)
        result = coordinator.create_reservation(bob, FILE, "src/main.py", exclusive=False)
        assert isinstance(result, Reservation)

    def test_exclusive_blocked_by_shared(self, coordinator, alice, bob):
        coordinator.create_reservation(alice, FILE, "src/main.py", exclusive=False)
        result = coordinator.create_reservation(bob, PATTERN, "src/*.py")
        assert isinstance(result, ReservationConflict)

    def test_disjoint_targets(self, coordinator, alice, bob):
        coordinator.create_reservation(alice, MODULE, "auth")
        assert isinstance(coordinator.create_reservation(bob, MODULE, "billing"), Reservation)

    def test_expired_reservation_ignored(self, coordinator, alice, bob, clock):
        coordinator.create_reservation(alice, MODULE, "auth", duration_ms=1000)
        clock.advance(ms=1000)

        assert coordinator.check_resource_blocked(MODULE, "auth") == []
        assert isinstance(coordinator.create_reservation(bob, MODULE, "auth"), Reservation)

    def test_check_resource_blocked(self, coordinator, alice):
        exclusive = coordinator.create_reservation(alice, MODULE, "auth")
        coordinator.create_reservation(alice, FILE, "docs/README.md", exclusive=False)

        assert [r.reservation_id for r in coordinator.check_resource_blocked(FILE, "auth/api.py")] == [
            exclusive.reservation_id
        ]
        assert coordinator.check_resource_blocked(FILE, "docs/README.md") == []

    def test_release(self, coordinator, alice, bob):
        reservation = coordinator.create_reservation(alice, MODULE, "auth")

        assert coordinator.release_reservation(reservation.reservation_id) is True
        assert coordinator.release_reservation(reservation.reservation_id) is False
        assert isinstance(coordinator.create_reservation(bob, MODULE, "auth"), Reservation)

    def test_extend(self, coordinator, alice, clock):
        reservation = coordinator.create_reservation(alice, MODULE, "auth", duration_ms=1000)
        extended = coordinator.extend_reservation(reservation.reservation_id, 4000)

        assert extended.expires_at == clock.now + timedelta(seconds=5)
        assert coordinator.get_reservation(reservation.reservation_id).expires_at == extended.expires_at

    def test_extend_expired(self, coordinator, alice, clock):
        reservation = coordinator.create_reservation(alice, MODULE, "auth", duration_ms=1000)
        clock.advance(seconds=2)
        with pytest.raises(InvalidTransitionError, match="expired"):
            coordinator.extend_reservation(reservation.reservation_id, 1000)

    def test_extend_invalid(self, coordinator, alice):
        reservation = coordinator.create_reservation(alice, MODULE, "auth")
        with pytest.raises(RequestValidationError):
            coordinator.extend_reservation(reservation.reservation_id, 0)
        with pytest.raises(CoordinatorNotFoundError):
            coordinator.extend_reservation("nope", 1000)

    def test_list_and_purge(self, coordinator, alice, clock):
        coordinator.create_reservation(alice, MODULE, "auth", duration_ms=1000)
        coordinator.create_reservation(alice, MODULE, "billing")
        clock.advance(seconds=1)

        assert [r.target for r in coordinator.list_reservations(alice)] == ["billing"]
        assert len(coordinator.list_reservations(alice, include_expired=True)) == 2
        assert coordinator.purge_expired() == 1
        assert len(coordinator.list_reservations(include_expired=True)) == 1

    def test_reservation_for_agent_set(self, coordinator, alice, alice_set):
        reservation = coordinator.create_reservation(alice, MODULE, "auth", agent_set_id=alice_set)
        assert reservation.agent_set_id == alice_set
        with pytest.raises(CoordinatorNotFoundError):
            coordinator.create_reservation(alice, MODULE, "billing", agent_set_id="nope")


# =============================================================================
# MERGE QUEUE
# =============================================================================


class TestMergeQueue:
    """Tests for the merge request lifecycle."""

    def test_request(self, coordinator, alice, alice_set, clock):
        request = coordinator.request_merge(alice, alice_set, "auth")

        assert request.status == MergeRequestStatus.PENDING
        assert request.branch_name == "worktree/auth"
        assert request.queue_position == 1
        assert request.created_at == clock.now

    def test_request_requires_ownership(self, coordinator, bob, alice_set):
        with pytest.raises(RequestValidationError, match="not owned"):
            coordinator.request_merge(bob, alice_set, "auth")

    def test_clean_check_approves(self, coordinator, alice, alice_set, clock):
        request = coordinator.request_merge(alice, alice_set, "auth", branch_name="feature/auth")
        check = coordinator.check_merge_conflicts(request.merge_request_id)

        assert not check.has_conflict
        checked = coordinator.get_merge_request(request.merge_request_id)
        assert checked.status == MergeRequestStatus.APPROVED
        assert checked.checked_at == clock.now

    def test_own_reservation_does_not_conflict(self, coordinator, alice, alice_set):
        coordinator.create_reservation(alice, MODULE, "auth")
        request = coordinator.request_merge(alice, alice_set, "auth")
        assert not coordinator.check_merge_conflicts(request.merge_request_id).has_conflict

    def test_other_reservation_conflicts(self, coordinator, alice, bob, alice_set):
        blocking = coordinator.create_reservation(bob, MODULE, "auth")
        request = coordinator.request_merge(alice, alice_set, "auth")

        check = coordinator.check_merge_conflicts(request.merge_request_id)

        assert check.has_conflict
        assert check.conflicting_reservations == (blocking.reservation_id,)
        conflicted = coordinator.get_merge_request(request.merge_request_id)
        assert conflicted.status == MergeRequestStatus.CONFLICT
        assert conflicted.conflicts_with == [blocking.reservation_id]
        assert conflicted.conflict_details == f"reservations: {blocking.reservation_id}"
        assert conflicted.queue_position is None

    def test_other_merge_request_conflicts(self, coordinator, alice, bob, alice_set, bob_set, clock):
        theirs = coordinator.request_merge(bob, bob_set, "auth")
        clock.advance(seconds=1)
        ours = coordinator.request_merge(alice, alice_set, "auth")

        check = coordinator.check_merge_conflicts(ours.merge_request_id)
        assert check.conflicting_merge_requests == (theirs.merge_request_id,)

    def test_backend_file_conflicts(self, coordinator, backend, alice, alice_set):
        backend.check_conflicts.return_value = ["auth/models.py"]
        request = coordinator.request_merge(alice, alice_set, "auth")

        check = coordinator.check_merge_conflicts(request.merge_request_id)
        assert check.conflicting_files == ("auth/models.py",)
        assert coordinator.get_merge_request(request.merge_request_id).status == MergeRequestStatus.CONFLICT

    def test_backend_check_failure_returns_to_pending(self, coordinator, backend, alice, alice_set):
        backend.check_conflicts.side_effect = OSError("git not found")
        request = coordinator.request_merge(alice, alice_set, "auth")

        with pytest.raises(OSError):
            coordinator.check_merge_conflicts(request.merge_request_id)
        assert coordinator.get_merge_request(request.merge_request_id).status == MergeRequestStatus.PENDING

    def test_check_requires_pending(self, coordinator, alice, alice_set):
        request = coordinator.request_merge(alice, alice_set, "auth")
        coordinator.check_merge_conflicts(request.merge_request_id)
        with pytest.raises(InvalidTransitionError):
            coordinator.check_merge_conflicts(request.merge_request_id)

    def test_execute_merge(self, coordinator, backend, alice, alice_set, clock):
        coordinator.create_reservation(alice, MODULE, "auth")
        kept = coordinator.create_reservation(alice, MODULE, "billing")
        request = coordinator.request_merge(alice, alice_set, "auth")
        coordinator.check_merge_conflicts(request.merge_request_id)

        result = coordinator.execute_merge(request.merge_request_id)

        assert result.success
        assert result.merge_request.status == MergeRequestStatus.MERGED
        assert result.merge_request.merged_at == clock.now
        assert backend.merge.call_count == 1
        assert [r.reservation_id for r in coordinator.list_reservations(alice)] == [kept.reservation_id]

    def test_execute_requires_approved(self, coordinator, alice, alice_set):
        request = coordinator.request_merge(alice, alice_set, "auth")
        with pytest.raises(InvalidTransitionError):
            coordinator.execute_merge(request.merge_request_id)

    def test_backend_merge_failure_stays_approved(self, coordinator, backend, alice, alice_set):
        backend.merge.side_effect = RuntimeError("push rejected")
        request = coordinator.request_merge(alice, alice_set, "auth")
        coordinator.check_merge_conflicts(request.merge_request_id)

        result = coordinator.execute_merge(request.merge_request_id)

        assert not result.success
        assert result.error == "RuntimeError: push rejected"
        stored = coordinator.get_merge_request(request.merge_request_id)
        assert stored.status == MergeRequestStatus.APPROVED
        assert stored.last_error == "RuntimeError: push rejected"

        backend.merge.side_effect = None
        assert coordinator.execute_merge(request.merge_request_id).success

    def test_reject(self, coordinator, alice, alice_set):
        request = coordinator.request_merge(alice, alice_set, "auth")
        rejected = coordinator.reject_merge(request.merge_request_id, "superseded")

        assert rejected.status == MergeRequestStatus.REJECTED
        assert rejected.rejected_reason == "superseded"
        with pytest.raises(InvalidTransitionError):
            coordinator.reject_merge(request.merge_request_id, "again")

    def test_reject_requires_reason(self, coordinator, alice, alice_set):
        request = coordinator.request_merge(alice, alice_set, "auth")
        with pytest.raises(RequestValidationError):
            coordinator.reject_merge(request.merge_request_id, " ")

    def test_queue_positions(self, coordinator, alice, alice_set, clock):
        ids = []
        for module in ("auth", "billing", "search"):
            ids.append(coordinator.request_merge(alice, alice_set, module).merge_request_id)
            clock.advance(seconds=1)

        positions = {r.merge_request_id: r.queue_position for r in coordinator.list_merge_queue()}
        assert [positions[i] for i in ids] == [1, 2, 3]

        coordinator.reject_merge(ids[0], "not needed")
        positions = {r.merge_request_id: r.queue_position for r in coordinator.list_merge_queue()}
        assert [positions[i] for i in ids] == [None, 1, 2]

    def test_process_merge_queue(self, coordinator, alice, alice_set, clock):
        first = coordinator.request_merge(alice, alice_set, "auth")
        clock.advance(seconds=1)
        second = coordinator.request_merge(alice, alice_set, "billing")

        results = coordinator.process_merge_queue()

        assert [r.merge_request.merge_request_id for r in results] == [first.merge_request_id]
        assert coordinator.get_merge_request(second.merge_request_id).status == MergeRequestStatus.APPROVED
        assert coordinator.list_merge_queue(status=MergeRequestStatus.MERGED)[0].merge_request_id == first.merge_request_id

    def test_process_empty_queue(self, coordinator):
        assert coordinator.process_merge_queue() == []


# =============================================================================
# VISIBILITY
# =============================================================================


class TestVisibility:
    """Tests for check_can_work, status and events."""

    def test_can_work_when_free(self, coordinator, alice):
        assert coordinator.check_can_work(alice, "auth") == {
            "can_work": True,
            "blocked_by": {"reservations": [], "merge_requests": []},
        }

    def test_blocked_by_other_reservation(self, coordinator, alice, bob):
        reservation = coordinator.create_reservation(bob, MODULE, "auth")

        result = coordinator.check_can_work(alice, "auth")
        assert result["can_work"] is False
        assert [r["reservation_id"] for r in result["blocked_by"]["reservations"]] == [reservation.reservation_id]

        assert coordinator.check_can_work(bob, "auth")["can_work"] is True

    def test_blocked_by_other_merge_in_progress(self, coordinator, repositories, alice, bob, bob_set):
        request = coordinator.request_merge(bob, bob_set, "auth")
        request.status = MergeRequestStatus.MERGING
        repositories.merge_requests.put(request)

        result = coordinator.check_can_work(alice, "auth")
        assert result["can_work"] is False
        assert result["blocked_by"]["merge_requests"][0]["merge_request_id"] == request.merge_request_id

    def test_collaborator_work(self, coordinator, alice, alice_set):
        coordinator.create_reservation(alice, MODULE, "auth")
        coordinator.request_merge(alice, alice_set, "auth")

        work = coordinator.get_collaborator_work(alice)
        assert len(work["reservations"]) == 1
        assert len(work["agent_sets"]) == 1
        assert len(work["pending_merges"]) == 1

    def test_status(self, coordinator, alice, bob, alice_set):
        coordinator.create_reservation(alice, MODULE, "auth")
        coordinator.create_reservation(bob, FILE, "docs/a.md", exclusive=False)
        coordinator.request_merge(alice, alice_set, "auth")

        status = coordinator.get_status()
        assert status["collaborators"]["total"] == 2
        assert status["collaborators"]["active"] == 2
        assert status["agent_sets"]["active"] == 1
        assert status["reservations"] == {
            "total": 2,
            "by_type": {"module": 1, "file": 1, "path-pattern": 0},
            "exclusive": 1,
        }
        assert status["merge_queue"]["pending"] == 1

    def test_events_newest_first(self, coordinator, alice, alice_set):
        reservation = coordinator.create_reservation(alice, MODULE, "auth")
        coordinator.release_reservation(reservation.reservation_id)

        events = coordinator.get_events()
        assert [e.type for e in events] == [
            "reservation:released",
            "reservation:created",
            "agentSet:created",
            "collaborator:registered",
        ]
        assert len(coordinator.get_events(limit=2)) == 2

    def test_events_limit_zero(self, coordinator, alice):
        assert coordinator.get_events(limit=0) == []
        assert len(coordinator.get_events()) == 1
        with pytest.raises(RequestValidationError):
            coordinator.get_events(limit=-1)

    def test_event_log_bounded(self, coordinator):
        for i in range(MAX_EVENTS + 1):
            coordinator.register_collaborator(f"user-{i}", collaborator_id=f"user-{i}")

        events = coordinator.get_events()
        assert len(events) == TRIMMED_EVENTS
        assert events[0].data["collaborator_id"] == f"user-{MAX_EVENTS}"

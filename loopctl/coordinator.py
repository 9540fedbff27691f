"""
MultiAgentCoordinator - reservations and the merge queue.

Several agent sets, each owned by a collaborator, may work on one codebase
at the same time. The coordinator keeps them apart in two ways:

Reservations:
    A time-bounded claim on a module, a file or a path pattern. A new claim
    is refused while an unexpired, overlapping claim exists and either of
    the two is exclusive. The coordinator advises and does not lock: agent
    sets are expected to hold a reservation for the work they do.
    Expiry is lazy; an expired reservation is simply ignored.

Merge queue:
    Work on a module is integrated into trunk through a merge request:

        pending -> checking -> approved | conflict
        approved -> merging -> merged
        pending | approved -> rejected

    A conflict check looks at other collaborators' exclusive reservations on
    the module, their live merge requests on the module and, when a
    MergeBackend is configured, the files that clash with trunk.

Overlap rules:
    file / file            exact match
    module / module        exact match
    file / module          the file lives in the module's directory
    pattern / file         the pattern matches the file
    pattern / module       the pattern is rooted in the module, or may match
                           files under it
    pattern / pattern      either matches the other, or their literal
                           prefixes and suffixes are compatible
"""

import fnmatch
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from loopctl.errors import (
    CoordinatorNotFoundError,
    InvalidTransitionError,
    RequestValidationError,
)
from loopctl.schemas import (
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
from loopctl.store import Repositories, generate_ulid
from loopctl.utils import utcnow


logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TIMEOUT_MS = 60 * 60 * 1000
DEFAULT_RESERVATION_REASON = "Working on this resource"

# The event log keeps at most MAX_EVENTS entries, dropping down to
# TRIMMED_EVENTS of the newest ones when the limit is hit.
MAX_EVENTS = 1000
TRIMMED_EVENTS = 500

_WILDCARDS = "*?["


# =============================================================================
# Target overlap
# =============================================================================

def _literal_prefix(pattern: str) -> str:
    for i, ch in enumerate(pattern):
        if ch in _WILDCARDS:
            return pattern[:i]
    return pattern


def _literal_suffix(pattern: str) -> str:
    for i in range(len(pattern) - 1, -1, -1):
        if pattern[i] in _WILDCARDS or pattern[i] == "]":
            return pattern[i + 1:]
    return pattern


def _compatible(a: str, b: str, ends: bool = False) -> bool:
    if ends:
        return a.endswith(b) or b.endswith(a)
    return a.startswith(b) or b.startswith(a)


def patterns_intersect(a: str, b: str) -> bool:
    """
    Whether two glob patterns may match a common path.

    Exact for patterns where one matches the other; otherwise approximated
    by comparing the literal text before the first and after the last
    wildcard.
    """
    if a == b or fnmatch.fnmatchcase(a, b) or fnmatch.fnmatchcase(b, a):
        return True
    if not any(c in _WILDCARDS for c in a) or not any(c in _WILDCARDS for c in b):
        return False
    return (
        _compatible(_literal_prefix(a), _literal_prefix(b))
        and _compatible(_literal_suffix(a), _literal_suffix(b), ends=True)
    )


def _file_in_module(path: str, module: str) -> bool:
    return f"/{module}/" in f"/{path}"


def _pattern_in_module(pattern: str, module: str) -> bool:
    return _file_in_module(pattern, module) or patterns_intersect(pattern, f"{module}/*")


def targets_overlap(
    type_a: ReservationType, target_a: str, type_b: ReservationType, target_b: str,
) -> bool:
    """Whether two reservation targets cover a common resource."""
    if type_a == type_b:
        if type_a == ReservationType.PATH_PATTERN:
            return patterns_intersect(target_a, target_b)
        return target_a == target_b

    pair = {type_a: target_a, type_b: target_b}
    if ReservationType.PATH_PATTERN not in pair:
        return _file_in_module(pair[ReservationType.FILE], pair[ReservationType.MODULE])

    pattern = pair[ReservationType.PATH_PATTERN]
    if ReservationType.FILE in pair:
        return fnmatch.fnmatchcase(pair[ReservationType.FILE], pattern)
    return _pattern_in_module(pattern, pair[ReservationType.MODULE])


# =============================================================================
# Merge backend
# =============================================================================

class MergeBackend(ABC):
    """Integrates a merge request's branch into trunk."""

    @abstractmethod
    def check_conflicts(self, request: MergeRequest) -> list[str]:
        """
        Dry-run the merge.

        Returns:
            Paths that would conflict with trunk (empty when clean)
        """
        pass

    @abstractmethod
    def merge(self, request: MergeRequest) -> None:
        """
        Merge the request's branch into trunk.

        Raises:
            Exception: Any failure; the coordinator leaves the request
                approved so the merge can be retried
        """
        pass


class NoOpMergeBackend(MergeBackend):
    """Backend that reports no conflicts and merges nothing."""

    def check_conflicts(self, request: MergeRequest) -> list[str]:
        return []

    def merge(self, request: MergeRequest) -> None:
        logger.debug(f"No-op merge of {request.branch_name} ({request.module_id})")


# =============================================================================
# Coordinator
# =============================================================================

class MultiAgentCoordinator:
    """
    Coordinator for collaborators, agent sets, reservations and merges.

    Usage:
        coordinator = MultiAgentCoordinator(create_repositories())
        alice = coordinator.register_collaborator("alice")
        result = coordinator.create_reservation(alice.collaborator_id, "module", "auth")
        if isinstance(result, ReservationConflict):
            ...
    """

    def __init__(
        self,
        repositories: Repositories,
        merge_backend: Optional[MergeBackend] = None,
        default_timeout_ms: int = DEFAULT_RESERVATION_TIMEOUT_MS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the coordinator.

        Args:
            repositories: Stores for collaborators, agent sets, reservations
                and merge requests
            merge_backend: Trunk integration (defaults to a no-op backend)
            default_timeout_ms: Reservation lifetime when none is given
            clock: Source of timezone-aware "now" timestamps
        """
        if default_timeout_ms < 1:
            raise RequestValidationError("default_timeout_ms must be >= 1")
        self._collaborators = repositories.collaborators
        self._agent_sets = repositories.agent_sets
        self._reservations = repositories.reservations
        self._merge_requests = repositories.merge_requests
        self._backend = merge_backend or NoOpMergeBackend()
        self._default_timeout_ms = default_timeout_ms
        self._clock = clock
        self._lock = threading.RLock()
        self._events: deque[CoordinatorEvent] = deque()

    # =========================================================================
    # Internals
    # =========================================================================

    def _emit(self, event_type: str, **data: Any) -> None:
        self._events.append(CoordinatorEvent(
            event_id=generate_ulid(),
            type=event_type,
            timestamp=self._clock(),
            data=data,
        ))
        if len(self._events) > MAX_EVENTS:
            while len(self._events) > TRIMMED_EVENTS:
                self._events.popleft()
        logger.info(f"{event_type} {data}", extra={"event": event_type})

    def _require_collaborator(self, collaborator_id: str) -> Collaborator:
        collaborator = self._collaborators.get(collaborator_id)
        if collaborator is None:
            raise CoordinatorNotFoundError(f"Collaborator not found: {collaborator_id}")
        return collaborator

    def _require_agent_set(self, agent_set_id: str) -> AgentSet:
        agent_set = self._agent_sets.get(agent_set_id)
        if agent_set is None:
            raise CoordinatorNotFoundError(f"Agent set not found: {agent_set_id}")
        return agent_set

    def _require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise CoordinatorNotFoundError(f"Reservation not found: {reservation_id}")
        return reservation

    def _require_merge_request(self, merge_request_id: str) -> MergeRequest:
        request = self._merge_requests.get(merge_request_id)
        if request is None:
            raise CoordinatorNotFoundError(f"Merge request not found: {merge_request_id}")
        return request

    def _transition(self, request: MergeRequest, target: MergeRequestStatus) -> None:
        if not request.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Merge request {request.merge_request_id} cannot move from "
                f"{request.status.value} to {target.value}"
            )
        request.status = target

    def _live_reservations(self) -> list[Reservation]:
        now = self._clock()
        return [r for r in self._reservations.list() if not r.is_expired(now)]

    def _update_queue_positions(self) -> None:
        """Number pending and approved requests 1..n in submission order."""
        queued = []
        for request in self._merge_requests.list():
            if request.status in (MergeRequestStatus.PENDING, MergeRequestStatus.APPROVED):
                queued.append(request)
            elif request.queue_position is not None:
                request.queue_position = None
                self._merge_requests.put(request)

        queued.sort(key=lambda r: (r.created_at or self._clock(), r.merge_request_id))
        for position, request in enumerate(queued, start=1):
            if request.queue_position != position:
                request.queue_position = position
                self._merge_requests.put(request)

    # =========================================================================
    # Collaborators and agent sets
    # =========================================================================

    def register_collaborator(
        self,
        name: str,
        email: Optional[str] = None,
        collaborator_id: Optional[str] = None,
    ) -> Collaborator:
        """Register (or reconnect) a collaborator."""
        if not name or not name.strip():
            raise RequestValidationError("name must be a non-empty string")

        with self._lock:
            now = self._clock()
            collaborator = Collaborator(
                collaborator_id=collaborator_id or generate_ulid(),
                name=name.strip(),
                email=email,
                status=CollaboratorStatus.ACTIVE,
                connected_at=now,
                last_active=now,
            )
            self._collaborators.put(collaborator)
            self._emit("collaborator:registered", collaborator_id=collaborator.collaborator_id, name=name)
            return collaborator

    def get_collaborator(self, collaborator_id: str) -> Collaborator:
        return self._require_collaborator(collaborator_id)

    def list_collaborators(self, status: Optional[CollaboratorStatus] = None) -> list[Collaborator]:
        return self._collaborators.list(status=status)

    def touch_collaborator(self, collaborator_id: str) -> Collaborator:
        """Record activity; an idle collaborator becomes active again."""
        with self._lock:
            collaborator = self._require_collaborator(collaborator_id)
            collaborator.last_active = self._clock()
            if collaborator.status == CollaboratorStatus.IDLE:
                collaborator.status = CollaboratorStatus.ACTIVE
            self._collaborators.put(collaborator)
            return collaborator

    def disconnect_collaborator(self, collaborator_id: str) -> Collaborator:
        """
        Disconnect a collaborator.

        Their reservations are released and their agent sets paused.
        """
        with self._lock:
            collaborator = self._require_collaborator(collaborator_id)
            collaborator.status = CollaboratorStatus.DISCONNECTED
            self._collaborators.put(collaborator)

            for reservation in self._reservations.list(collaborator_id=collaborator_id):
                self.release_reservation(reservation.reservation_id)
            for agent_set in self._agent_sets.list(collaborator_id=collaborator_id):
                if agent_set.status == AgentSetStatus.ACTIVE:
                    self.pause_agent_set(agent_set.agent_set_id)

            self._emit("collaborator:disconnected", collaborator_id=collaborator_id)
            return collaborator

    def create_agent_set(
        self,
        collaborator_id: str,
        name: str,
        agent_ids: Optional[list[str]] = None,
        module_ids: Optional[list[str]] = None,
    ) -> AgentSet:
        if not name or not name.strip():
            raise RequestValidationError("name must be a non-empty string")

        with self._lock:
            self._require_collaborator(collaborator_id)
            agent_set = AgentSet(
                agent_set_id=generate_ulid(),
                collaborator_id=collaborator_id,
                name=name.strip(),
                agent_ids=list(agent_ids or []),
                module_ids=list(module_ids or []),
                created_at=self._clock(),
            )
            self._agent_sets.put(agent_set)
            self._emit(
                "agentSet:created",
                collaborator_id=collaborator_id, agent_set_id=agent_set.agent_set_id, name=agent_set.name,
            )
            return agent_set

    def get_agent_set(self, agent_set_id: str) -> AgentSet:
        return self._require_agent_set(agent_set_id)

    def list_agent_sets(self, collaborator_id: Optional[str] = None) -> list[AgentSet]:
        return self._agent_sets.list(collaborator_id=collaborator_id)

    def add_agent_to_set(self, agent_set_id: str, agent_id: str) -> AgentSet:
        with self._lock:
            agent_set = self._require_agent_set(agent_set_id)
            if agent_id not in agent_set.agent_ids:
                agent_set.agent_ids.append(agent_id)
                self._agent_sets.put(agent_set)
            return agent_set

    def add_module_to_set(self, agent_set_id: str, module_id: str) -> AgentSet:
        with self._lock:
            agent_set = self._require_agent_set(agent_set_id)
            if module_id not in agent_set.module_ids:
                agent_set.module_ids.append(module_id)
                self._agent_sets.put(agent_set)
            return agent_set

    def _set_agent_set_status(self, agent_set_id: str, status: AgentSetStatus, event: str) -> AgentSet:
        with self._lock:
            agent_set = self._require_agent_set(agent_set_id)
            if agent_set.status == AgentSetStatus.COMPLETED:
                raise InvalidTransitionError(f"Agent set {agent_set_id} is completed")
            if agent_set.status != status:
                agent_set.status = status
                self._agent_sets.put(agent_set)
                self._emit(event, agent_set_id=agent_set_id)
            return agent_set

    def pause_agent_set(self, agent_set_id: str) -> AgentSet:
        return self._set_agent_set_status(agent_set_id, AgentSetStatus.PAUSED, "agentSet:paused")

    def resume_agent_set(self, agent_set_id: str) -> AgentSet:
        return self._set_agent_set_status(agent_set_id, AgentSetStatus.ACTIVE, "agentSet:resumed")

    # =========================================================================
    # Reservations
    # =========================================================================

    def create_reservation(
        self,
        collaborator_id: str,
        type: ReservationType | str,
        target: str,
        exclusive: bool = True,
        duration_ms: Optional[int] = None,
        agent_set_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Reservation | ReservationConflict:
        """
        Claim a resource.

        Args:
            collaborator_id: The claiming collaborator
            type: module, file or path-pattern
            target: Module id, file path or glob pattern
            exclusive: Whether the claim excludes every overlapping claim
            duration_ms: Lifetime (defaults to the coordinator's timeout)
            agent_set_id: Agent set doing the work
            reason: Free-text reason

        Returns:
            The Reservation, or a ReservationConflict naming every blocking
            reservation

        Raises:
            CoordinatorNotFoundError: If the collaborator is unknown
            RequestValidationError: If the type, target or duration is invalid
        """
        try:
            type = ReservationType(type)
        except ValueError as e:
            raise RequestValidationError(str(e))
        if not target or not target.strip():
            raise RequestValidationError("target must be a non-empty string")
        if duration_ms is not None and duration_ms < 1:
            raise RequestValidationError("duration_ms must be >= 1")

        with self._lock:
            self._require_collaborator(collaborator_id)
            if agent_set_id is not None:
                self._require_agent_set(agent_set_id)

            conflicts = tuple(
                r for r in self._live_reservations()
                if (r.exclusive or exclusive) and targets_overlap(r.type, r.target, type, target)
            )
            if conflicts:
                logger.warning(
                    f"Reservation of {type.value} {target} by {collaborator_id} conflicts with "
                    f"{[r.reservation_id for r in conflicts]}"
                )
                return ReservationConflict(
                    message="Reservation conflicts with existing reservations",
                    conflicts_with=conflicts,
                )

            now = self._clock()
            reservation = Reservation(
                reservation_id=generate_ulid(),
                collaborator_id=collaborator_id,
                agent_set_id=agent_set_id,
                type=type,
                target=target,
                exclusive=exclusive,
                reason=reason or DEFAULT_RESERVATION_REASON,
                created_at=now,
                expires_at=now + timedelta(milliseconds=duration_ms or self._default_timeout_ms),
            )
            self._reservations.put(reservation)
            self._emit(
                "reservation:created",
                collaborator_id=collaborator_id,
                reservation_id=reservation.reservation_id,
                type=type.value,
                target=target,
            )
            return reservation

    def check_resource_blocked(self, type: ReservationType | str, target: str) -> list[Reservation]:
        """Unexpired exclusive reservations overlapping the target."""
        try:
            type = ReservationType(type)
        except ValueError as e:
            raise RequestValidationError(str(e))
        return [
            r for r in self._live_reservations()
            if r.exclusive and targets_overlap(r.type, r.target, type, target)
        ]

    def get_reservation(self, reservation_id: str) -> Reservation:
        return self._require_reservation(reservation_id)

    def release_reservation(self, reservation_id: str) -> bool:
        """
        Release a reservation early.

        Returns:
            True if a reservation was released, False if none existed
        """
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                return False
            self._reservations.delete(reservation_id)
            self._emit(
                "reservation:released",
                collaborator_id=reservation.collaborator_id,
                reservation_id=reservation_id,
            )
            return True

    def extend_reservation(self, reservation_id: str, additional_ms: int) -> Reservation:
        """
        Push a reservation's expiry back.

        An expired reservation cannot be extended; claim the resource again.
        """
        if additional_ms < 1:
            raise RequestValidationError("additional_ms must be >= 1")

        with self._lock:
            reservation = self._require_reservation(reservation_id)
            if reservation.is_expired(self._clock()):
                raise InvalidTransitionError(f"Reservation {reservation_id} has expired")
            reservation.expires_at = reservation.expires_at + timedelta(milliseconds=additional_ms)
            self._reservations.put(reservation)
            self._emit(
                "reservation:extended",
                reservation_id=reservation_id, expires_at=reservation.expires_at.isoformat(),
            )
            return reservation

    def list_reservations(
        self,
        collaborator_id: Optional[str] = None,
        include_expired: bool = False,
    ) -> list[Reservation]:
        reservations = self._reservations.list(collaborator_id=collaborator_id)
        if include_expired:
            return reservations
        now = self._clock()
        return [r for r in reservations if not r.is_expired(now)]

    def purge_expired(self) -> int:
        """Delete expired reservations from the store. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            purged = 0
            for reservation in self._reservations.list():
                if reservation.is_expired(now):
                    self._reservations.delete(reservation.reservation_id)
                    purged += 1
            if purged:
                logger.info(f"Purged {purged} expired reservations")
            return purged

    # =========================================================================
    # Merge queue
    # =========================================================================

    def request_merge(
        self,
        collaborator_id: str,
        agent_set_id: str,
        module_id: str,
        branch_name: Optional[str] = None,
    ) -> MergeRequest:
        """
        Queue a merge of an agent set's work on a module.

        Raises:
            CoordinatorNotFoundError: If the collaborator or agent set is unknown
            RequestValidationError: If the agent set belongs to someone else
        """
        if not module_id or not module_id.strip():
            raise RequestValidationError("module_id must be a non-empty string")

        with self._lock:
            self._require_collaborator(collaborator_id)
            agent_set = self._require_agent_set(agent_set_id)
            if agent_set.collaborator_id != collaborator_id:
                raise RequestValidationError(
                    f"Agent set {agent_set_id} is not owned by collaborator {collaborator_id}"
                )

            request = MergeRequest(
                merge_request_id=generate_ulid(),
                collaborator_id=collaborator_id,
                agent_set_id=agent_set_id,
                module_id=module_id,
                branch_name=branch_name or f"worktree/{module_id}",
                status=MergeRequestStatus.PENDING,
                created_at=self._clock(),
            )
            self._merge_requests.put(request)
            self._update_queue_positions()
            self._emit(
                "merge:requested",
                collaborator_id=collaborator_id,
                agent_set_id=agent_set_id,
                module_id=module_id,
                merge_request_id=request.merge_request_id,
            )
            return self._require_merge_request(request.merge_request_id)

    def get_merge_request(self, merge_request_id: str) -> MergeRequest:
        return self._require_merge_request(merge_request_id)

    def list_merge_queue(self, status: Optional[MergeRequestStatus] = None) -> list[MergeRequest]:
        return self._merge_requests.list(status=status)

    def check_merge_conflicts(self, merge_request_id: str) -> ConflictCheck:
        """
        Check a pending merge request and move it to approved or conflict.

        Raises:
            InvalidTransitionError: If the request is not pending
        """
        with self._lock:
            request = self._require_merge_request(merge_request_id)
            self._transition(request, MergeRequestStatus.CHECKING)
            self._merge_requests.put(request)

            reservations = tuple(
                r.reservation_id
                for r in self.check_resource_blocked(ReservationType.MODULE, request.module_id)
                if r.collaborator_id != request.collaborator_id
                and r.type == ReservationType.MODULE
            )
            others = tuple(
                other.merge_request_id
                for other in self._merge_requests.list(module_id=request.module_id)
                if other.merge_request_id != merge_request_id
                and other.collaborator_id != request.collaborator_id
                and not other.status.is_terminal
            )
            try:
                files = tuple(self._backend.check_conflicts(request))
            except Exception:
                request.status = MergeRequestStatus.PENDING
                self._merge_requests.put(request)
                raise

            check = ConflictCheck(
                has_conflict=bool(reservations or others or files),
                conflicting_reservations=reservations,
                conflicting_merge_requests=others,
                conflicting_files=files,
            )
            request.checked_at = self._clock()
            if check.has_conflict:
                self._transition(request, MergeRequestStatus.CONFLICT)
                request.conflicts_with = list(others) + list(reservations)
                request.conflict_details = check.details
                logger.warning(f"Merge request {merge_request_id} conflicts: {check.details}")
            else:
                self._transition(request, MergeRequestStatus.APPROVED)
            self._merge_requests.put(request)
            self._update_queue_positions()
            self._emit(
                "merge:checked",
                merge_request_id=merge_request_id,
                module_id=request.module_id,
                status=request.status.value,
            )
            return check

    def execute_merge(self, merge_request_id: str) -> MergeResult:
        """
        Merge an approved request into trunk.

        On success the request is merged and the collaborator's reservations
        on the module are released. When the backend fails the request goes
        back to approved with the error recorded, so the merge can be retried.

        Raises:
            InvalidTransitionError: If the request is not approved
        """
        with self._lock:
            request = self._require_merge_request(merge_request_id)
            self._transition(request, MergeRequestStatus.MERGING)
            self._merge_requests.put(request)

            try:
                self._backend.merge(request)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.error(f"Merge of {merge_request_id} failed: {error}", exc_info=True)
                request.status = MergeRequestStatus.APPROVED
                request.last_error = error
                self._merge_requests.put(request)
                self._emit("merge:failed", merge_request_id=merge_request_id, error=error)
                return MergeResult(success=False, merge_request=request, error=error)

            self._transition(request, MergeRequestStatus.MERGED)
            request.merged_at = self._clock()
            request.last_error = None
            self._merge_requests.put(request)

            for reservation in self._reservations.list(collaborator_id=request.collaborator_id):
                if reservation.type == ReservationType.MODULE and reservation.target == request.module_id:
                    self.release_reservation(reservation.reservation_id)

            self._update_queue_positions()
            self._emit(
                "merge:completed",
                collaborator_id=request.collaborator_id,
                module_id=request.module_id,
                merge_request_id=merge_request_id,
            )
            return MergeResult(success=True, merge_request=self._require_merge_request(merge_request_id))

    def reject_merge(self, merge_request_id: str, reason: str) -> MergeRequest:
        if not reason or not reason.strip():
            raise RequestValidationError("reason must be a non-empty string")

        with self._lock:
            request = self._require_merge_request(merge_request_id)
            self._transition(request, MergeRequestStatus.REJECTED)
            request.rejected_reason = reason
            self._merge_requests.put(request)
            self._update_queue_positions()
            self._emit("merge:rejected", merge_request_id=merge_request_id, reason=reason)
            return self._require_merge_request(merge_request_id)

    def process_merge_queue(self) -> list[MergeResult]:
        """
        One pass over the queue: check every pending request, then merge the
        first approved one.
        """
        with self._lock:
            for request in self._merge_requests.list(status=MergeRequestStatus.PENDING):
                self.check_merge_conflicts(request.merge_request_id)

            approved = sorted(
                self._merge_requests.list(status=MergeRequestStatus.APPROVED),
                key=lambda r: r.queue_position or 0,
            )
            if not approved:
                return []
            return [self.execute_merge(approved[0].merge_request_id)]

    # =========================================================================
    # Visibility
    # =========================================================================

    def check_can_work(self, collaborator_id: str, module_id: str) -> dict[str, Any]:
        """
        Whether a collaborator can start work on a module.

        Blocked by other collaborators' exclusive reservations covering the
        module and by their merges of the module that are in progress.
        """
        self._require_collaborator(collaborator_id)
        reservations = [
            r for r in self.check_resource_blocked(ReservationType.MODULE, module_id)
            if r.collaborator_id != collaborator_id
        ]
        merges = [
            m for m in self._merge_requests.list(module_id=module_id, status=MergeRequestStatus.MERGING)
            if m.collaborator_id != collaborator_id
        ]
        return {
            "can_work": not reservations and not merges,
            "blocked_by": {
                "reservations": [r.to_dict() for r in reservations],
                "merge_requests": [m.to_dict() for m in merges],
            },
        }

    def get_collaborator_work(self, collaborator_id: str) -> dict[str, Any]:
        self._require_collaborator(collaborator_id)
        return {
            "reservations": [r.to_dict() for r in self.list_reservations(collaborator_id)],
            "agent_sets": [s.to_dict() for s in self.list_agent_sets(collaborator_id)],
            "pending_merges": [
                m.to_dict() for m in self._merge_requests.list(collaborator_id=collaborator_id)
                if not m.status.is_terminal
            ],
        }

    def get_status(self) -> dict[str, Any]:
        collaborators = Counter(c.status.value for c in self._collaborators.list())
        agent_sets = Counter(s.status.value for s in self._agent_sets.list())
        reservations = self._live_reservations()
        merges = Counter(m.status.value for m in self._merge_requests.list())
        return {
            "collaborators": {
                "total": sum(collaborators.values()),
                **{s.value: collaborators[s.value] for s in CollaboratorStatus},
            },
            "agent_sets": {
                "total": sum(agent_sets.values()),
                **{s.value: agent_sets[s.value] for s in AgentSetStatus},
            },
            "reservations": {
                "total": len(reservations),
                "by_type": {t.value: sum(1 for r in reservations if r.type == t) for t in ReservationType},
                "exclusive": sum(1 for r in reservations if r.exclusive),
            },
            "merge_queue": {s.value: merges[s.value] for s in MergeRequestStatus},
        }

    def get_events(self, limit: Optional[int] = None) -> list[CoordinatorEvent]:
        """Most recent events first."""
        events = list(reversed(self._events))
        if limit is None:
            return events
        if limit < 0:
            raise RequestValidationError("limit must be >= 0")
        return events[:limit]

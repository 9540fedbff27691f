"""
Coordination schemas - collaborators, reservations and the merge queue.

Reservation conflicts and merge conflicts are expected, frequent outcomes,
so they are modelled as result records (ReservationConflict, ConflictCheck,
MergeResult) rather than exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from loopctl.utils import parse_datetime


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class CollaboratorStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    DISCONNECTED = "disconnected"


class AgentSetStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ReservationType(str, Enum):
    """What a reservation target names."""
    MODULE = "module"
    FILE = "file"
    PATH_PATTERN = "path-pattern"


class MergeRequestStatus(str, Enum):
    """
    Merge request lifecycle.

    pending -> checking -> approved | conflict
    approved -> merging -> merged
    pending | approved -> rejected

    ``conflict`` and ``rejected`` are terminal failures, ``merged`` is
    terminal success. Two recovery edges return a request to where it was
    when a collaborator call fails midway: checking -> pending and
    merging -> approved.
    """
    PENDING = "pending"
    CHECKING = "checking"
    APPROVED = "approved"
    CONFLICT = "conflict"
    MERGING = "merging"
    MERGED = "merged"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MergeRequestStatus.CONFLICT,
            MergeRequestStatus.MERGED,
            MergeRequestStatus.REJECTED,
        )

    def can_transition_to(self, target: "MergeRequestStatus") -> bool:
        return target in _MERGE_TRANSITIONS[self]


_MERGE_TRANSITIONS: dict[MergeRequestStatus, frozenset[MergeRequestStatus]] = {
    MergeRequestStatus.PENDING: frozenset({
        MergeRequestStatus.CHECKING,
        MergeRequestStatus.REJECTED,
    }),
    MergeRequestStatus.CHECKING: frozenset({
        MergeRequestStatus.APPROVED,
        MergeRequestStatus.CONFLICT,
        MergeRequestStatus.PENDING,
    }),
    MergeRequestStatus.APPROVED: frozenset({
        MergeRequestStatus.MERGING,
        MergeRequestStatus.REJECTED,
    }),
    MergeRequestStatus.MERGING: frozenset({
        MergeRequestStatus.MERGED,
        MergeRequestStatus.APPROVED,
    }),
    MergeRequestStatus.CONFLICT: frozenset(),
    MergeRequestStatus.MERGED: frozenset(),
    MergeRequestStatus.REJECTED: frozenset(),
}


@dataclass
class Collaborator:
    """A person (or agent operator) owning agent sets and reservations."""
    collaborator_id: str
    name: str
    email: Optional[str] = None
    status: CollaboratorStatus = CollaboratorStatus.ACTIVE
    connected_at: Optional[datetime] = None
    last_active: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collaborator_id": self.collaborator_id,
            "name": self.name,
            "email": self.email,
            "status": self.status.value,
            "connected_at": _iso(self.connected_at),
            "last_active": _iso(self.last_active),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Collaborator":
        return cls(
            collaborator_id=data["collaborator_id"],
            name=data["name"],
            email=data.get("email"),
            status=CollaboratorStatus(data.get("status", CollaboratorStatus.ACTIVE.value)),
            connected_at=parse_datetime(data.get("connected_at")),
            last_active=parse_datetime(data.get("last_active")),
        )


@dataclass
class AgentSet:
    """A group of agents working for one collaborator on a set of modules."""
    agent_set_id: str
    collaborator_id: str
    name: str
    agent_ids: list[str] = field(default_factory=list)
    module_ids: list[str] = field(default_factory=list)
    status: AgentSetStatus = AgentSetStatus.ACTIVE
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_set_id": self.agent_set_id,
            "collaborator_id": self.collaborator_id,
            "name": self.name,
            "agent_ids": list(self.agent_ids),
            "module_ids": list(self.module_ids),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentSet":
        return cls(
            agent_set_id=data["agent_set_id"],
            collaborator_id=data["collaborator_id"],
            name=data["name"],
            agent_ids=list(data.get("agent_ids", [])),
            module_ids=list(data.get("module_ids", [])),
            status=AgentSetStatus(data.get("status", AgentSetStatus.ACTIVE.value)),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class Reservation:
    """
    A time-bounded claim on a module, file or path pattern.

    Expiry is lazy: an expired reservation stays in the store until it is
    released or purged, but is ignored by every conflict check.
    """
    reservation_id: str
    collaborator_id: str
    type: ReservationType
    target: str
    exclusive: bool
    reason: str
    created_at: datetime
    expires_at: datetime
    agent_set_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "collaborator_id": self.collaborator_id,
            "agent_set_id": self.agent_set_id,
            "type": self.type.value,
            "target": self.target,
            "exclusive": self.exclusive,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reservation":
        return cls(
            reservation_id=data["reservation_id"],
            collaborator_id=data["collaborator_id"],
            agent_set_id=data.get("agent_set_id"),
            type=ReservationType(data["type"]),
            target=data["target"],
            exclusive=data.get("exclusive", True),
            reason=data.get("reason", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class ReservationConflict:
    """Returned instead of a Reservation when overlapping claims block the request."""
    message: str
    conflicts_with: tuple[Reservation, ...] = field(default_factory=tuple)

    @property
    def conflicting_ids(self) -> list[str]:
        return [r.reservation_id for r in self.conflicts_with]

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "conflicts_with": [r.to_dict() for r in self.conflicts_with],
        }


@dataclass
class MergeRequest:
    """A queued request to integrate an agent set's work on one module into trunk."""
    merge_request_id: str
    collaborator_id: str
    agent_set_id: str
    module_id: str
    branch_name: str
    status: MergeRequestStatus = MergeRequestStatus.PENDING
    conflicts_with: list[str] = field(default_factory=list)
    conflict_details: Optional[str] = None
    queue_position: Optional[int] = None
    created_at: Optional[datetime] = None
    checked_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "merge_request_id": self.merge_request_id,
            "collaborator_id": self.collaborator_id,
            "agent_set_id": self.agent_set_id,
            "module_id": self.module_id,
            "branch_name": self.branch_name,
            "status": self.status.value,
            "conflicts_with": list(self.conflicts_with),
            "conflict_details": self.conflict_details,
            "queue_position": self.queue_position,
            "created_at": _iso(self.created_at),
            "checked_at": _iso(self.checked_at),
            "merged_at": _iso(self.merged_at),
            "rejected_reason": self.rejected_reason,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeRequest":
        return cls(
            merge_request_id=data["merge_request_id"],
            collaborator_id=data["collaborator_id"],
            agent_set_id=data["agent_set_id"],
            module_id=data["module_id"],
            branch_name=data["branch_name"],
            status=MergeRequestStatus(data.get("status", MergeRequestStatus.PENDING.value)),
            conflicts_with=list(data.get("conflicts_with", [])),
            conflict_details=data.get("conflict_details"),
            queue_position=data.get("queue_position"),
            created_at=parse_datetime(data.get("created_at")),
            checked_at=parse_datetime(data.get("checked_at")),
            merged_at=parse_datetime(data.get("merged_at")),
            rejected_reason=data.get("rejected_reason"),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class ConflictCheck:
    """Result of checking a merge request against reservations, the queue and trunk."""
    has_conflict: bool
    conflicting_reservations: tuple[str, ...] = ()
    conflicting_merge_requests: tuple[str, ...] = ()
    conflicting_files: tuple[str, ...] = ()

    @property
    def details(self) -> str:
        parts = []
        if self.conflicting_reservations:
            parts.append(f"reservations: {', '.join(self.conflicting_reservations)}")
        if self.conflicting_merge_requests:
            parts.append(f"merge requests: {', '.join(self.conflicting_merge_requests)}")
        if self.conflicting_files:
            parts.append(f"files: {', '.join(self.conflicting_files)}")
        return "; ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_conflict": self.has_conflict,
            "conflicting_reservations": list(self.conflicting_reservations),
            "conflicting_merge_requests": list(self.conflicting_merge_requests),
            "conflicting_files": list(self.conflicting_files),
        }


@dataclass(frozen=True)
class MergeResult:
    """Outcome of execute_merge. On failure the request stays approved and retryable."""
    success: bool
    merge_request: MergeRequest
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "merge_request": self.merge_request.to_dict(),
            "error": self.error,
        }


@dataclass(frozen=True)
class CoordinatorEvent:
    """An entry of the coordinator's in-memory event log."""
    event_id: str
    type: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }

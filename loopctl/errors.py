"""
Error classes for loopctl.

Errors fall into four families:
- Validation errors: bad input shape or unknown id. Raised before any
  state is touched.
- Precondition errors: gate not approved, phase incomplete, mutation of a
  terminal execution. Recoverable; the caller resolves the precondition
  and retries. The engine never retries these itself.
- Delegate errors: raised by skill delegates to signal retry behavior.
  TransientError is safe to retry, PermanentError is not.
- Resource conflicts (reservation overlap, merge conflict) are NOT
  exceptions. They come back as structured results from the coordinator.

Every error carries a stable ``kind`` so the tool layer can hand callers a
structured ``{"kind", "message"}`` object.
"""

from typing import Any


class LoopctlError(Exception):
    """Base exception for loopctl."""

    kind = "error"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the structured error shape returned by the tool layer."""
        return {"kind": self.kind, "message": str(self)}


# =============================================================================
# Validation errors
# =============================================================================


class ValidationError(LoopctlError):
    """Input failed validation. No state was mutated."""

    kind = "validation"


class RequestValidationError(ValidationError):
    """A request payload is missing fields or carries values of the wrong shape."""

    kind = "invalid_request"


class LoopNotFoundError(ValidationError):
    """Raised when a loop definition is not found."""

    kind = "loop_not_found"


class LoopValidationError(ValidationError):
    """Raised when a loop definition fails validation."""

    kind = "invalid_loop"


class ExecutionNotFoundError(ValidationError):
    kind = "execution_not_found"


class SkillNotFoundError(ValidationError):
    """The skill is not part of the execution's current phase."""

    kind = "skill_not_found"


class GateNotFoundError(ValidationError):
    kind = "gate_not_found"


class CoordinatorNotFoundError(ValidationError):
    """Unknown collaborator, agent set, reservation or merge request."""

    kind = "not_found"


# =============================================================================
# Precondition errors
# =============================================================================


class PreconditionError(LoopctlError):
    """
    A recoverable precondition is not met.

    The caller is expected to satisfy the precondition (complete skills,
    approve a gate, resume the execution) and retry the operation.
    """

    kind = "precondition"


class GateNotApprovedError(PreconditionError):
    """A required, enabled gate for the current phase is not approved."""

    kind = "gate_not_approved"


class PhaseIncompleteError(PreconditionError):
    """Required skills of the current phase are neither completed nor skipped."""

    kind = "phase_incomplete"


class ExecutionTerminalError(PreconditionError):
    """Mutation attempted on a completed or failed execution."""

    kind = "execution_terminal"


class ExecutionNotActiveError(PreconditionError):
    """Operation requires an active execution (it is pending, paused or blocked)."""

    kind = "execution_not_active"


class InvalidTransitionError(PreconditionError):
    """Requested status change is not allowed from the current status."""

    kind = "invalid_transition"


# =============================================================================
# Delegate errors
# =============================================================================


class TransientError(LoopctlError):
    """
    Transient error - safe to retry.

    Examples:
    - Sub-agent timed out
    - Rate limit exceeded
    - Worker temporarily unavailable

    The autonomous executor retries skills that raise TransientError
    until the skill's retry budget is spent.
    """

    kind = "transient"


class PermanentError(LoopctlError):
    """
    Permanent error - do not retry.

    Examples:
    - Skill is not installed
    - Invalid skill context
    - Authorization failed

    The autonomous executor escalates the execution immediately
    when a delegate raises PermanentError.
    """

    kind = "permanent"


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(LoopctlError):
    """Raised when configuration is invalid."""

    kind = "config"

"""
============================================================================
Tradegate Risk Engine - Gate State Machine
============================================================================

Reliability Level: L6 Critical
Traceability: All validations include correlation_id for audit

PRIME DIRECTIVE:
    "The rules flag. A human clears."

GATE STATE MACHINE:
    Every subject kind shares one abstract gate. Automated evaluation may
    hold or reject a subject; only an explicit human action approves.

    AUTOMATED (rule evaluator):
        UNSCREENED   -> UNDER_REVIEW | REJECTED
        UNDER_REVIEW -> UNDER_REVIEW | REJECTED
        REJECTED     -> UNDER_REVIEW | REJECTED   (re-evaluation after remediation)
        APPROVED     -> REJECTED                  (new blocking finding)

    HUMAN (reviewer):
        UNDER_REVIEW -> APPROVED | REJECTED

    REJECTED is chosen iff the subject has at least one unresolved
    blocking finding at evaluation time. No automated entry targets
    APPROVED.

STATUS LABELS (stored per subject kind):
    GateState     DEAL        INSTRUMENT            PROPOSAL
    UNSCREENED    UNSCREENED  UNVERIFIED            DRAFT
    UNDER_REVIEW  FLAGGED     PENDING_HUMAN_REVIEW  PENDING_REVIEW
    REJECTED      BLOCKED     HUMAN_REJECTED        REJECTED
    APPROVED      CLEARED     HUMAN_APPROVED        APPROVED

ERROR CODES:
    - GATE-030: Invalid state transition attempted
    - GATE-010: Unknown status label

============================================================================
"""

from typing import Optional, Dict, List, Tuple
from enum import Enum
import logging

from services.gate_errors import GateErrorCode, PreconditionError, ValidationError
from services.subject_models import SubjectKind

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================

class GateState(str, Enum):
    """Abstract gate states shared by every subject kind."""
    UNSCREENED = "UNSCREENED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REJECTED = "REJECTED"
    APPROVED = "APPROVED"


class TransitionActor(str, Enum):
    """Who is driving a transition."""
    AUTOMATED = "AUTOMATED"
    HUMAN = "HUMAN"


# =============================================================================
# Transition Tables
# =============================================================================

VALID_TRANSITIONS: Dict[TransitionActor, Dict[GateState, List[GateState]]] = {
    TransitionActor.AUTOMATED: {
        GateState.UNSCREENED: [GateState.UNDER_REVIEW, GateState.REJECTED],
        GateState.UNDER_REVIEW: [GateState.UNDER_REVIEW, GateState.REJECTED],
        GateState.REJECTED: [GateState.UNDER_REVIEW, GateState.REJECTED],
        GateState.APPROVED: [GateState.REJECTED],
    },
    TransitionActor.HUMAN: {
        GateState.UNSCREENED: [],
        GateState.UNDER_REVIEW: [GateState.APPROVED, GateState.REJECTED],
        GateState.REJECTED: [],
        GateState.APPROVED: [],
    },
}

STATUS_LABELS: Dict[SubjectKind, Dict[GateState, str]] = {
    SubjectKind.DEAL: {
        GateState.UNSCREENED: "UNSCREENED",
        GateState.UNDER_REVIEW: "FLAGGED",
        GateState.REJECTED: "BLOCKED",
        GateState.APPROVED: "CLEARED",
    },
    SubjectKind.INSTRUMENT: {
        GateState.UNSCREENED: "UNVERIFIED",
        GateState.UNDER_REVIEW: "PENDING_HUMAN_REVIEW",
        GateState.REJECTED: "HUMAN_REJECTED",
        GateState.APPROVED: "HUMAN_APPROVED",
    },
    SubjectKind.PROPOSAL: {
        GateState.UNSCREENED: "DRAFT",
        GateState.UNDER_REVIEW: "PENDING_REVIEW",
        GateState.REJECTED: "REJECTED",
        GateState.APPROVED: "APPROVED",
    },
}

_STATES_BY_LABEL: Dict[SubjectKind, Dict[str, GateState]] = {
    kind: {label: state for state, label in labels.items()}
    for kind, labels in STATUS_LABELS.items()
}


# =============================================================================
# Label Mapping
# =============================================================================

def to_label(kind: SubjectKind, state: GateState) -> str:
    """Stored status label for an abstract state."""
    return STATUS_LABELS[kind][GateState(state)]


def from_label(kind: SubjectKind, label: str) -> GateState:
    """
    Abstract state for a stored status label.

    Raises:
        ValidationError: If the label is not legal for the kind (GATE-010)
    """
    try:
        return _STATES_BY_LABEL[kind][label]
    except KeyError:
        raise ValidationError(
            f"Unknown {kind.value} status: {label!r}",
            details={"valid_statuses": list(_STATES_BY_LABEL[kind])},
        )


def initial_label(kind: SubjectKind) -> str:
    return to_label(kind, GateState.UNSCREENED)


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    current_state: GateState,
    target_state: GateState,
    actor: TransitionActor,
    correlation_id: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Validate if a transition is allowed for the given actor.

    Returns:
        (True, None) if allowed, (False, "GATE-030") otherwise.
        Invalid transitions are logged with GATE-030.
    """
    valid_targets = VALID_TRANSITIONS[TransitionActor(actor)].get(GateState(current_state), [])

    if target_state not in valid_targets:
        valid_str = "/".join(s.value for s in valid_targets) if valid_targets else "NONE"
        logger.error(
            f"[{GateErrorCode.PRECONDITION_FAILED}] "
            f"Invalid gate transition: {GateState(current_state).value} -> "
            f"{GateState(target_state).value} | actor={TransitionActor(actor).value} | "
            f"valid_targets={valid_str} | correlation_id={correlation_id}"
        )
        return (False, GateErrorCode.PRECONDITION_FAILED)

    logger.debug(
        f"[GATE-STATE] Transition validated: {current_state.value} -> "
        f"{target_state.value} | actor={actor.value} | correlation_id={correlation_id}"
    )
    return (True, None)


def require_transition(
    kind: SubjectKind,
    subject_id: str,
    current_state: GateState,
    target_state: GateState,
    actor: TransitionActor,
    correlation_id: Optional[str] = None,
) -> None:
    """
    Raise unless the transition is allowed.

    Raises:
        PreconditionError: On an invalid transition (GATE-030)
    """
    is_valid, _ = validate_transition(current_state, target_state, actor, correlation_id)
    if not is_valid:
        raise PreconditionError(
            f"{kind.value} {subject_id} cannot move from "
            f"{to_label(kind, current_state)} to {to_label(kind, target_state)}",
            details={
                "subject_kind": kind.value,
                "subject_id": subject_id,
                "current_status": to_label(kind, current_state),
                "target_status": to_label(kind, target_state),
                "actor": actor.value,
            },
        )


def automated_target(current_state: GateState, has_blocking: bool) -> GateState:
    """
    State the automated path moves a subject to.

    An approved subject keeps its approval unless a blocking finding
    appears. The result is never APPROVED unless the subject already was.
    """
    if has_blocking:
        return GateState.REJECTED
    if current_state == GateState.APPROVED:
        return GateState.APPROVED
    return GateState.UNDER_REVIEW


def get_valid_transitions(state: GateState, actor: TransitionActor) -> List[GateState]:
    return list(VALID_TRANSITIONS[actor].get(state, []))


__all__ = [
    "GateState",
    "TransitionActor",
    "VALID_TRANSITIONS",
    "STATUS_LABELS",
    "to_label",
    "from_label",
    "initial_label",
    "validate_transition",
    "require_transition",
    "automated_target",
    "get_valid_transitions",
]

"""
============================================================================
Tradegate Risk Engine - Error Taxonomy
============================================================================

Reliability Level: L6 Critical
Traceability: Every error carries a stable error code for audit logging

ERROR CODES:
    - GATE-010: Validation failed (malformed subject, finding or payload)
    - GATE-020: Subject, finding or anchor not found
    - GATE-030: Precondition failed (state machine violation, lost race)
    - GATE-040: Required configuration missing or invalid
    - GATE-050: External collaborator (text generation, ledger) failed

Only ValidationError, NotFoundError and PreconditionError ever reach a
caller of the engine. ExternalServiceError is always caught inside the
engine and downgraded to an advisory finding or a FAILED chain status.

============================================================================
"""

from typing import Optional, Dict, Any


class GateErrorCode:
    """Engine error codes for audit logging."""
    VALIDATION_FAILED = "GATE-010"
    NOT_FOUND = "GATE-020"
    PRECONDITION_FAILED = "GATE-030"
    CONFIG_MISSING = "GATE-040"
    EXTERNAL_SERVICE_FAILED = "GATE-050"


class GateError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        message: Human-readable message
        error_code: Stable GATE-XXX code
        details: Optional structured context (subject_ref, states, ...)
    """

    error_code: str = "GATE-000"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and CLI output."""
        return {
            "error_code": self.error_code,
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GateError):
    """Malformed input, rejected before any persistence."""
    error_code = GateErrorCode.VALIDATION_FAILED


class NotFoundError(GateError):
    """Subject, finding, reference row or anchor missing."""
    error_code = GateErrorCode.NOT_FOUND


class PreconditionError(GateError):
    """
    State-machine violation.

    Raised when approving a subject that is not under review, resolving an
    already-resolved finding, or losing a compare-and-set race.
    """
    error_code = GateErrorCode.PRECONDITION_FAILED


class ExternalServiceError(GateError):
    """Text-generation or ledger collaborator call failed."""
    error_code = GateErrorCode.EXTERNAL_SERVICE_FAILED


__all__ = [
    "GateErrorCode",
    "GateError",
    "ValidationError",
    "NotFoundError",
    "PreconditionError",
    "ExternalServiceError",
]

"""
============================================================================
Tradegate Risk Engine - Services Layer
============================================================================

Risk-flagging and human-gated approval for deals, banking instruments and
commercial proposals, with an append-only audit log and proof anchoring.

Reliability Level: L6 Critical
============================================================================
"""

from services.gate_errors import (
    GateError,
    GateErrorCode,
    ValidationError,
    NotFoundError,
    PreconditionError,
    ExternalServiceError,
)

from services.flag_models import (
    Finding,
    FlagSeverity,
    FlagType,
    StoredFinding,
)

from services.subject_models import (
    SubjectKind,
    SubjectRef,
    DealSnapshot,
    InstrumentSnapshot,
    ProposalSnapshot,
    ExpectedInstrument,
    ReferenceData,
    EvaluationContext,
    EvaluationThresholds,
)

from services.gate_config import (
    GateConfig,
    GateConfigurationError,
    get_gate_config,
    reset_gate_config,
)

from services.gate_state_machine import (
    GateState,
    TransitionActor,
    validate_transition,
)

from services.rule_evaluator import evaluate

from services.audit_log import (
    AuditAction,
    AuditLog,
    AuditLogEntry,
)

# proof_anchor and risk_gate import app.infra / app.schemas, which import
# services.gate_errors; import them from their modules directly.

__all__ = [
    # Errors
    "GateError",
    "GateErrorCode",
    "ValidationError",
    "NotFoundError",
    "PreconditionError",
    "ExternalServiceError",
    # Findings
    "Finding",
    "FlagSeverity",
    "FlagType",
    "StoredFinding",
    # Subjects
    "SubjectKind",
    "SubjectRef",
    "DealSnapshot",
    "InstrumentSnapshot",
    "ProposalSnapshot",
    "ExpectedInstrument",
    "ReferenceData",
    "EvaluationContext",
    "EvaluationThresholds",
    # Config
    "GateConfig",
    "GateConfigurationError",
    "get_gate_config",
    "reset_gate_config",
    # Gate
    "GateState",
    "TransitionActor",
    "validate_transition",
    "evaluate",
    # Audit
    "AuditAction",
    "AuditLog",
    "AuditLogEntry",
]

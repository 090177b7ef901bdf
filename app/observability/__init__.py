"""
============================================================================
Tradegate Risk Engine
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: L5 High
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    EVALUATIONS_TOTAL,
    FINDINGS_TOTAL,
    DECISIONS_TOTAL,
    FINDINGS_RESOLVED_TOTAL,
    ANCHOR_SUBMISSIONS_TOTAL,
    AUDIT_FALLBACK_TOTAL,
    EVALUATION_SECONDS,
    record_evaluation,
    record_decision,
    record_finding_resolved,
    record_anchor_submission,
    record_audit_fallback,
)

__all__ = [
    "EVALUATIONS_TOTAL",
    "FINDINGS_TOTAL",
    "DECISIONS_TOTAL",
    "FINDINGS_RESOLVED_TOTAL",
    "ANCHOR_SUBMISSIONS_TOTAL",
    "AUDIT_FALLBACK_TOTAL",
    "EVALUATION_SECONDS",
    "record_evaluation",
    "record_decision",
    "record_finding_resolved",
    "record_anchor_submission",
    "record_audit_fallback",
]

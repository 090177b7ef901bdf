"""
============================================================================
Tradegate Risk Engine
Prometheus Metrics - Gate Observability
============================================================================

Reliability Level: L5 High
Input Constraints: Label values are enum values or short identifiers
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- gate_evaluations_total{subject_kind,outcome}: evaluation runs by resulting state
- gate_findings_total{subject_kind,severity}: findings emitted
- gate_decisions_total{subject_kind,decision}: human approvals / rejections
- gate_findings_resolved_total{subject_kind}: findings resolved by reviewers
- gate_anchor_submissions_total{chain,status}: per-chain anchor outcomes
- gate_audit_fallback_total: audit entries that went to the fallback logger
- gate_evaluation_seconds{subject_kind}: evaluation wall time

Metric updates never raise into callers.

============================================================================
"""

import logging
from typing import Iterable, Optional

from prometheus_client import Counter, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

EVALUATIONS_TOTAL = Counter(
    "gate_evaluations_total",
    "Total number of rule evaluation runs by resulting gate state",
    ["subject_kind", "outcome"]
)

FINDINGS_TOTAL = Counter(
    "gate_findings_total",
    "Total number of findings emitted by the rule evaluator",
    ["subject_kind", "severity"]
)

DECISIONS_TOTAL = Counter(
    "gate_decisions_total",
    "Total number of human gate decisions",
    ["subject_kind", "decision"]
)

FINDINGS_RESOLVED_TOTAL = Counter(
    "gate_findings_resolved_total",
    "Total number of findings resolved by a reviewer",
    ["subject_kind"]
)

ANCHOR_SUBMISSIONS_TOTAL = Counter(
    "gate_anchor_submissions_total",
    "Total number of proof anchor chain outcomes",
    ["chain", "status"]
)

AUDIT_FALLBACK_TOTAL = Counter(
    "gate_audit_fallback_total",
    "Total number of audit entries written to the fallback logger"
)

# Buckets: rule evaluation is in-memory, anything above 1s is an outlier
EVALUATION_SECONDS = Histogram(
    "gate_evaluation_seconds",
    "Wall time of one evaluate() call including persistence",
    ["subject_kind"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_evaluation(
    subject_kind: str,
    outcome: str,
    severities: Iterable[str],
    duration_seconds: float,
    correlation_id: Optional[str] = None
) -> None:
    """
    Record one evaluation run and the findings it produced.

    Args:
        subject_kind: DEAL / INSTRUMENT / PROPOSAL
        outcome: Abstract gate state after the run
        severities: Severity of every emitted finding
        duration_seconds: Wall time of the run
        correlation_id: Optional tracking ID
    """
    try:
        EVALUATIONS_TOTAL.labels(subject_kind=subject_kind, outcome=outcome).inc()
        for severity in severities:
            FINDINGS_TOTAL.labels(subject_kind=subject_kind, severity=severity).inc()
        EVALUATION_SECONDS.labels(subject_kind=subject_kind).observe(duration_seconds)
        logger.debug(
            "Metric: evaluation | subject_kind=%s | outcome=%s | correlation_id=%s",
            subject_kind, outcome, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record evaluation metric | error=%s",
            str(e)
        )


def record_decision(
    subject_kind: str,
    decision: str,
    correlation_id: Optional[str] = None
) -> None:
    try:
        DECISIONS_TOTAL.labels(subject_kind=subject_kind, decision=decision).inc()
        logger.debug(
            "Metric: decision | subject_kind=%s | decision=%s | correlation_id=%s",
            subject_kind, decision, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-002] Failed to record decision metric | error=%s",
            str(e)
        )


def record_finding_resolved(
    subject_kind: str,
    correlation_id: Optional[str] = None
) -> None:
    try:
        FINDINGS_RESOLVED_TOTAL.labels(subject_kind=subject_kind).inc()
    except Exception as e:
        logger.error(
            "[OBS-003] Failed to record finding_resolved metric | error=%s",
            str(e)
        )


def record_anchor_submission(
    chain: str,
    status: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Record one chain outcome of a proof anchor request.

    Args:
        chain: XRPL / STELLAR
        status: PENDING / SUBMITTED / CONFIRMED / FAILED
        correlation_id: Optional tracking ID
    """
    try:
        ANCHOR_SUBMISSIONS_TOTAL.labels(chain=chain, status=status).inc()
        logger.debug(
            "Metric: anchor_submission | chain=%s | status=%s | correlation_id=%s",
            chain, status, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-004] Failed to record anchor_submission metric | error=%s",
            str(e)
        )


def record_audit_fallback() -> None:
    try:
        AUDIT_FALLBACK_TOTAL.inc()
    except Exception as e:
        logger.error(
            "[OBS-005] Failed to record audit_fallback metric | error=%s",
            str(e)
        )


# ============================================================================
# END OF METRICS MODULE
# ============================================================================

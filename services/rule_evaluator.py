"""
============================================================================
Tradegate Risk Engine - Rule Evaluator
============================================================================

Reliability Level: L6 Critical
Determinism: Identical (subject, reference data, context) -> identical
             ordered findings. No I/O, no clock, no environment.

Dispatches a subject snapshot to its rule set:
    DealSnapshot       -> services.deal_rules
    InstrumentSnapshot -> services.instrument_rules
    ProposalSnapshot   -> services.proposal_rules

Malformed subjects raise ValidationError (GATE-010) before any rule
runs. Bad domain data (unknown commodity, missing jurisdiction) never
raises; the rule sets turn it into findings.

============================================================================
"""

from decimal import Decimal
from typing import List, Callable, Dict

from services.gate_errors import ValidationError
from services.flag_models import Finding
from services.subject_models import (
    Subject,
    SubjectKind,
    DealSnapshot,
    InstrumentSnapshot,
    ProposalSnapshot,
    ReferenceData,
    EvaluationContext,
)
from services.deal_rules import evaluate_deal
from services.instrument_rules import evaluate_instrument
from services.proposal_rules import evaluate_proposal


RULE_SETS: Dict[SubjectKind, Callable[..., List[Finding]]] = {
    SubjectKind.DEAL: evaluate_deal,
    SubjectKind.INSTRUMENT: evaluate_instrument,
    SubjectKind.PROPOSAL: evaluate_proposal,
}


def validate_subject(subject: Subject) -> None:
    """
    Reject structurally malformed snapshots.

    Raises:
        ValidationError: unknown snapshot type or broken required field
    """
    if not isinstance(subject, (DealSnapshot, InstrumentSnapshot, ProposalSnapshot)):
        raise ValidationError(f"Unsupported subject type: {type(subject).__name__}")
    if not isinstance(subject.subject_id, str) or not subject.subject_id.strip():
        raise ValidationError("subject_id must be a non-empty string")

    if isinstance(subject, DealSnapshot):
        if not isinstance(subject.deal_value_usd, Decimal):
            raise ValidationError(
                "deal_value_usd must be a Decimal",
                details={"subject_id": subject.subject_id},
            )
        if subject.deal_value_usd < 0:
            raise ValidationError(
                f"deal_value_usd must be >= 0, got: {subject.deal_value_usd}",
                details={"subject_id": subject.subject_id},
            )
        for name in ("origin_country", "destination_country", "incoterm"):
            if not isinstance(getattr(subject, name), str):
                raise ValidationError(
                    f"{name} must be a string",
                    details={"subject_id": subject.subject_id},
                )
    elif isinstance(subject, InstrumentSnapshot):
        if subject.amount is not None and not isinstance(subject.amount, Decimal):
            raise ValidationError(
                "amount must be a Decimal",
                details={"subject_id": subject.subject_id},
            )
    elif not subject.counterparty_id:
        raise ValidationError(
            "counterparty_id is required",
            details={"subject_id": subject.subject_id},
        )


def evaluate(
    subject: Subject,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    """
    Run the subject's rule set.

    Args:
        subject: Deal, instrument or proposal snapshot
        reference: Jurisdiction / commodity / credit lookups
        context: Injected time and thresholds

    Returns:
        Findings in fixed rule order

    Raises:
        ValidationError: If the snapshot is malformed (GATE-010)
    """
    validate_subject(subject)
    return RULE_SETS[subject.KIND](subject, reference, context)


__all__ = ["RULE_SETS", "evaluate", "validate_subject"]

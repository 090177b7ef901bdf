"""
============================================================================
Tradegate Risk Engine - Proposal Rule Set
============================================================================

Reliability Level: L5 High
Decimal Integrity: Prices and margins compared as decimal.Decimal

Checks a commercial proposal against the counterparty's credit profile.

RULE ORDER (fixed):
    1. Payment terms vs credit score band
    2. Margin floor (blocking) / margin target (advisory)
    3. Required fields
    4. High-value proposal with marginal credit (advisory)

PAYMENT TERMS HIERARCHY:
    prepay (0) < net-15 (1) < net-30 (2)
    Score >= 80 -> net-30, >= 65 -> net-15, otherwise prepay.
    Unrecognised terms rank as prepay. A missing credit profile scores 0.

============================================================================
"""

from decimal import Decimal
from typing import List, Optional

from services.flag_models import Finding, FlagType, FlagSeverity
from services.subject_models import (
    ProposalSnapshot,
    ReferenceData,
    EvaluationContext,
)


TERMS_RANK = {"prepay": 0, "net-15": 1, "net-30": 2}

# (minimum score, recommended terms), highest band first
CREDIT_TERM_BANDS = ((80, "net-30"), (65, "net-15"))

REQUIRED_FIELDS = (
    "title",
    "custom_message",
    "product_ids",
    "unit_price",
    "total_price",
    "payment_terms",
    "delivery_timeline",
)


def recommended_terms(score: int) -> str:
    for floor, terms in CREDIT_TERM_BANDS:
        if score >= floor:
            return terms
    return "prepay"


def terms_rank(terms: Optional[str]) -> int:
    return TERMS_RANK.get((terms or "").strip().lower(), 0)


def _credit_score(proposal: ProposalSnapshot, reference: ReferenceData) -> int:
    profile = reference.credit_profile(proposal.counterparty_id)
    return profile.score if profile is not None else 0


def check_payment_terms(
    proposal: ProposalSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    score = _credit_score(proposal, reference)
    recommended = recommended_terms(score)
    if terms_rank(proposal.payment_terms) <= TERMS_RANK[recommended]:
        return []
    return [Finding(
        rule_id="proposal.terms.credit",
        flag_type=FlagType.CREDIT_TERMS,
        severity=FlagSeverity.HIGH,
        message=(
            f"Payment terms ({proposal.payment_terms}) exceed credit risk tolerance. "
            f"Credit score {score} recommends {recommended}."
        ),
        recommendation=f"Offer {recommended} terms or obtain a credit exception.",
        requires_human_review=True,
        blocks_execution=True,
        metadata={
            "credit_score": score,
            "proposed_terms": proposal.payment_terms,
            "recommended_terms": recommended,
        },
    )]


def check_margin(
    proposal: ProposalSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    thresholds = context.thresholds
    margin = proposal.margin_pct if proposal.margin_pct is not None else Decimal("0")

    if margin < thresholds.min_margin_pct:
        return [Finding(
            rule_id="proposal.margin.floor",
            flag_type=FlagType.PRICING,
            severity=FlagSeverity.HIGH,
            message=(
                f"Margin too low ({margin}%). Minimum {thresholds.min_margin_pct}% "
                f"required for profitability."
            ),
            recommendation="Reprice the proposal above the margin floor.",
            requires_human_review=True,
            blocks_execution=True,
            metadata={"margin_pct": margin},
        )]
    if margin < thresholds.target_margin_pct:
        return [Finding(
            rule_id="proposal.margin.target",
            flag_type=FlagType.PRICING,
            severity=FlagSeverity.MEDIUM,
            message=(
                f"Margin ({margin}%) below target. Consider "
                f"{thresholds.target_margin_pct}%+ for optimal profitability."
            ),
            recommendation="Review pricing before sending.",
            requires_human_review=False,
            blocks_execution=False,
            metadata={"margin_pct": margin},
        )]
    return []


def check_required_fields(
    proposal: ProposalSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    for name in REQUIRED_FIELDS:
        value = getattr(proposal, name)
        if isinstance(value, str):
            value = value.strip()
        if not value:
            findings.append(Finding(
                rule_id=f"proposal.fields.{name}",
                flag_type=FlagType.FIELD_FORMAT,
                severity=FlagSeverity.HIGH,
                message=f"Missing required field: {name}",
                recommendation=f"Complete {name} before the proposal is reviewed.",
                requires_human_review=True,
                blocks_execution=True,
                metadata={"field": name},
            ))
    return findings


def check_credit_approval(
    proposal: ProposalSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    thresholds = context.thresholds
    score = _credit_score(proposal, reference)
    total = proposal.total_price if proposal.total_price is not None else Decimal("0")
    if total > thresholds.high_value_proposal_usd and score < thresholds.marginal_credit_score:
        return [Finding(
            rule_id="proposal.credit.high_value",
            flag_type=FlagType.CREDIT_TERMS,
            severity=FlagSeverity.MEDIUM,
            message=(
                f"High-value proposal (${total:,}) with marginal credit ({score}). "
                f"Manual credit review recommended."
            ),
            recommendation="Have credit review the counterparty before approval.",
            requires_human_review=True,
            blocks_execution=False,
            metadata={"total_price": total, "credit_score": score},
        )]
    return []


PROPOSAL_RULES = (
    check_payment_terms,
    check_margin,
    check_required_fields,
    check_credit_approval,
)


def evaluate_proposal(
    proposal: ProposalSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    for rule in PROPOSAL_RULES:
        findings.extend(rule(proposal, reference, context))
    return findings


__all__ = [
    "PROPOSAL_RULES",
    "REQUIRED_FIELDS",
    "TERMS_RANK",
    "evaluate_proposal",
    "recommended_terms",
    "terms_rank",
]

"""
Unit Tests for the Proposal Rule Set

Tests credit-band payment terms, margin floor and target, required fields
and the high-value / marginal-credit advisory.
"""

import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.flag_models import FlagSeverity
from services.proposal_rules import (
    REQUIRED_FIELDS,
    check_credit_approval,
    check_margin,
    check_payment_terms,
    check_required_fields,
    evaluate_proposal,
    recommended_terms,
    terms_rank,
)
from services.subject_models import ProposalSnapshot


def make_proposal(**overrides) -> ProposalSnapshot:
    values = {
        "subject_id": "PROP-T1",
        "counterparty_id": "CP-STRONG",
        "title": "Copper cathode supply Q1",
        "custom_message": "Pricing valid for 14 days.",
        "product_ids": ("SKU-1",),
        "unit_price": Decimal("500.00"),
        "total_price": Decimal("5000.00"),
        "payment_terms": "net-30",
        "delivery_timeline": "6 weeks",
        "margin_pct": Decimal("25"),
    }
    values.update(overrides)
    return ProposalSnapshot(**values)


def rule_ids(findings):
    return [f.rule_id for f in findings]


class TestPaymentTerms:

    @pytest.mark.parametrize("score,terms", [
        (100, "net-30"),
        (80, "net-30"),
        (79, "net-15"),
        (65, "net-15"),
        (64, "prepay"),
        (0, "prepay"),
    ])
    def test_credit_bands(self, score, terms) -> None:
        assert recommended_terms(score) == terms

    def test_unknown_terms_rank_as_prepay(self) -> None:
        assert terms_rank("net-90") == 0
        assert terms_rank(None) == 0
        assert terms_rank(" NET-30 ") == 2

    def test_terms_within_band_pass(self, reference, context) -> None:
        proposal = make_proposal(counterparty_id="CP-MID", payment_terms="net-15")
        assert check_payment_terms(proposal, reference, context) == []

    def test_terms_beyond_band_block(self, reference, context) -> None:
        proposal = make_proposal(counterparty_id="CP-MID", payment_terms="net-30")

        findings = check_payment_terms(proposal, reference, context)

        assert rule_ids(findings) == ["proposal.terms.credit"]
        assert findings[0].severity == FlagSeverity.HIGH
        assert findings[0].blocks_execution is True
        assert findings[0].metadata["recommended_terms"] == "net-15"

    def test_missing_credit_profile_scores_zero(self, reference, context) -> None:
        proposal = make_proposal(counterparty_id="CP-UNKNOWN", payment_terms="net-15")

        findings = check_payment_terms(proposal, reference, context)

        assert findings[0].metadata["credit_score"] == 0
        assert findings[0].metadata["recommended_terms"] == "prepay"


class TestMargin:

    @pytest.mark.parametrize("margin,expected", [
        ("14.99", ["proposal.margin.floor"]),
        ("15", ["proposal.margin.target"]),
        ("19.99", ["proposal.margin.target"]),
        ("20", []),
        (None, ["proposal.margin.floor"]),
    ])
    def test_margin_bands(self, reference, context, margin, expected) -> None:
        value = Decimal(margin) if margin is not None else None
        findings = check_margin(make_proposal(margin_pct=value), reference, context)

        assert rule_ids(findings) == expected

    def test_floor_blocks_and_target_does_not(self, reference, context) -> None:
        floor = check_margin(make_proposal(margin_pct=Decimal("10")), reference, context)[0]
        target = check_margin(make_proposal(margin_pct=Decimal("18")), reference, context)[0]

        assert (floor.severity, floor.blocks_execution) == (FlagSeverity.HIGH, True)
        assert (target.severity, target.blocks_execution) == (FlagSeverity.MEDIUM, False)


class TestRequiredFields:

    def test_complete_proposal_passes(self, reference, context) -> None:
        assert check_required_fields(make_proposal(), reference, context) == []

    def test_each_missing_field_is_one_blocking_finding(self, reference, context) -> None:
        proposal = make_proposal(title="  ", product_ids=(), delivery_timeline=None)

        findings = check_required_fields(proposal, reference, context)

        assert rule_ids(findings) == [
            "proposal.fields.title",
            "proposal.fields.product_ids",
            "proposal.fields.delivery_timeline",
        ]
        assert all(f.blocks_execution for f in findings)

    def test_field_order_follows_declaration(self) -> None:
        assert REQUIRED_FIELDS[0] == "title"
        assert REQUIRED_FIELDS[-1] == "delivery_timeline"


class TestCreditApproval:

    def test_high_value_marginal_credit_is_advisory(self, reference, context) -> None:
        proposal = make_proposal(
            counterparty_id="CP-MID",
            payment_terms="net-15",
            total_price=Decimal("10000.01"),
        )

        findings = check_credit_approval(proposal, reference, context)

        assert rule_ids(findings) == ["proposal.credit.high_value"]
        assert findings[0].blocks_execution is False

    def test_threshold_is_exclusive(self, reference, context) -> None:
        proposal = make_proposal(counterparty_id="CP-MID", total_price=Decimal("10000"))
        assert check_credit_approval(proposal, reference, context) == []

    def test_strong_credit_passes(self, reference, context) -> None:
        proposal = make_proposal(total_price=Decimal("90000"))
        assert check_credit_approval(proposal, reference, context) == []


class TestProposalEvaluation:

    def test_clean_proposal(self, reference, context) -> None:
        assert evaluate_proposal(make_proposal(), reference, context) == []

    def test_rule_order(self, reference, context) -> None:
        proposal = make_proposal(
            counterparty_id="CP-WEAK",
            payment_terms="net-30",
            margin_pct=Decimal("12"),
            title=None,
            total_price=Decimal("20000"),
        )

        assert rule_ids(evaluate_proposal(proposal, reference, context)) == [
            "proposal.terms.credit",
            "proposal.margin.floor",
            "proposal.fields.title",
            "proposal.credit.high_value",
        ]

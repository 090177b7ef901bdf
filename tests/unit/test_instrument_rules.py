"""
Unit Tests for the Instrument Rule Set

Tests banking-instrument consistency checks:
- BIC presence and format
- Cross-checks against expected values
- Expiry window
- Applicable rules
- Advisory document-analysis flags
"""

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.flag_models import FlagSeverity, WARNING
from services.instrument_rules import (
    check_expiry,
    days_until,
    document_analysis_findings,
    evaluate_instrument,
    is_valid_bic,
    summarize_instrument,
)
from services.subject_models import DocumentAnalysis, ExpectedInstrument, InstrumentSnapshot


def make_instrument(**overrides) -> InstrumentSnapshot:
    values = {
        "subject_id": "SBLC-T1",
        "instrument_type": "SBLC",
        "issuing_bank_bic": "DEUTDEFF",
        "amount": Decimal("250000.00"),
        "currency": "USD",
        "beneficiary_name": "Acme Metals Trading FZE",
        "expiry_date": date(2027, 6, 30),
        "applicable_rules": "ISP98",
    }
    values.update(overrides)
    return InstrumentSnapshot(**values)


def rule_ids(findings):
    return [f.rule_id for f in findings]


# =============================================================================
# BIC
# =============================================================================

class TestBic:

    @pytest.mark.parametrize("bic,valid", [
        ("DEUTDEFF", True),
        ("DEUTDEFF500", True),
        ("deutdeff", True),
        ("BADBIC", False),
        ("DEUTDEFF50", False),
        ("1EUTDEFF", False),
        ("", False),
        (None, False),
    ])
    def test_is_valid_bic(self, bic, valid) -> None:
        assert is_valid_bic(bic) is valid

    def test_clean_instrument_has_no_findings(self, reference, context) -> None:
        assert evaluate_instrument(make_instrument(), reference, context) == []

    def test_malformed_issuing_bic_is_the_only_critical(self, reference, context) -> None:
        findings = evaluate_instrument(make_instrument(issuing_bank_bic="BADBIC"), reference, context)

        assert rule_ids(findings) == ["instrument.bic.issuing.format"]
        assert findings[0].severity == FlagSeverity.CRITICAL
        assert findings[0].blocks_execution is True
        assert findings[0].metadata["risk_flag"] == "INVALID_ISSUING_BANK_BIC"

    def test_missing_issuing_bic_is_warning(self, reference, context) -> None:
        findings = evaluate_instrument(make_instrument(issuing_bank_bic=None), reference, context)

        assert rule_ids(findings) == ["instrument.bic.issuing.missing"]
        assert findings[0].severity == WARNING
        assert findings[0].blocks_execution is False
        assert findings[0].metadata["risk_flag"] == "ISSUING_BANK_BIC_MISSING"

    def test_advising_bic_only_checked_when_present(self, reference, context) -> None:
        findings = evaluate_instrument(make_instrument(advising_bank_bic="NOPE"), reference, context)

        assert rule_ids(findings) == ["instrument.bic.advising.format"]
        assert findings[0].metadata["risk_flag"] == "INVALID_ADVISING_BANK_BIC"


# =============================================================================
# Cross-checks
# =============================================================================

class TestCrossChecks:

    def test_amount_within_tolerance_passes(self, reference, context) -> None:
        expected = ExpectedInstrument(amount=Decimal("250000.005"))
        instrument = make_instrument().with_inputs(expected=expected)

        assert evaluate_instrument(instrument, reference, context) == []

    def test_amount_at_tolerance_fails(self, reference, context) -> None:
        expected = ExpectedInstrument(amount=Decimal("250000.01"))
        instrument = make_instrument().with_inputs(expected=expected)

        findings = evaluate_instrument(instrument, reference, context)

        assert rule_ids(findings) == ["instrument.amount.mismatch"]
        assert findings[0].severity == FlagSeverity.CRITICAL

    def test_every_mismatch_reported_in_check_order(self, reference, context) -> None:
        expected = ExpectedInstrument(
            amount=Decimal("100000"),
            currency="EUR",
            issuing_bic="BNPAFRPP",
            expiry_date=date(2027, 12, 31),
            beneficiary="Someone Else Ltd",
        )
        instrument = make_instrument().with_inputs(expected=expected)

        assert rule_ids(evaluate_instrument(instrument, reference, context)) == [
            "instrument.amount.mismatch",
            "instrument.currency.mismatch",
            "instrument.issuing_bic.mismatch",
            "instrument.expiry.mismatch",
            "instrument.beneficiary.mismatch",
        ]

    def test_beneficiary_match_is_case_insensitive_containment(self, reference, context) -> None:
        expected = ExpectedInstrument(beneficiary="acme metals")
        instrument = make_instrument().with_inputs(expected=expected)

        assert evaluate_instrument(instrument, reference, context) == []

    def test_absent_expected_fields_are_not_checked(self, reference, context) -> None:
        instrument = make_instrument().with_inputs(expected=ExpectedInstrument(currency="USD"))

        assert evaluate_instrument(instrument, reference, context) == []


# =============================================================================
# Expiry
# =============================================================================

class TestExpiry:

    def test_days_until_rounds_up(self, context) -> None:
        # FIXED_NOW is noon; 2026-11-10 00:00 is 21.5 days away
        assert days_until(date(2026, 11, 10), context.now) == 22

    def test_expired_is_critical(self, context) -> None:
        findings = check_expiry(make_instrument(expiry_date=date(2026, 10, 1)), context)

        assert rule_ids(findings) == ["instrument.expiry.expired"]
        assert findings[0].severity == FlagSeverity.CRITICAL
        assert findings[0].metadata["risk_flag"] == "INSTRUMENT_EXPIRED"

    def test_expiring_soon_is_warning(self, context) -> None:
        findings = check_expiry(make_instrument(expiry_date=date(2026, 11, 10)), context)

        assert rule_ids(findings) == ["instrument.expiry.soon"]
        assert findings[0].severity == WARNING
        assert findings[0].metadata["risk_flag"] == "EXPIRING_WITHIN_30_DAYS"
        assert findings[0].metadata["days_remaining"] == 22

    def test_expiry_outside_window_passes(self, context) -> None:
        assert check_expiry(make_instrument(expiry_date=date(2026, 12, 31)), context) == []

    def test_missing_expiry_is_not_checked(self, context) -> None:
        assert check_expiry(make_instrument(expiry_date=None), context) == []


# =============================================================================
# Applicable Rules and Document Analysis
# =============================================================================

class TestAdvisoryChecks:

    def test_missing_applicable_rules(self, reference, context) -> None:
        findings = evaluate_instrument(make_instrument(applicable_rules=None), reference, context)

        assert rule_ids(findings) == ["instrument.rules.missing"]
        assert findings[0].metadata["risk_flag"] == "APPLICABLE_RULES_MISSING"

    def test_no_analysis_no_findings(self) -> None:
        assert document_analysis_findings(None) == []

    def test_unavailable_analysis_is_one_warning(self) -> None:
        findings = document_analysis_findings(
            DocumentAnalysis(available=False, error="connection refused")
        )

        assert rule_ids(findings) == ["instrument.document_analysis.unavailable"]
        assert findings[0].blocks_execution is False
        assert findings[0].metadata["error"] == "connection refused"

    def test_collaborator_flags_never_block(self) -> None:
        analysis = DocumentAnalysis(
            available=True,
            additional_flags=("IRREVOCABILITY_UNCLEAR", "TRANSFERABLE_CLAUSE"),
        )

        findings = document_analysis_findings(analysis)

        assert [f.metadata["risk_flag"] for f in findings] == [
            "IRREVOCABILITY_UNCLEAR",
            "TRANSFERABLE_CLAUSE",
        ]
        assert all(f.severity == WARNING and not f.blocks_execution for f in findings)


# =============================================================================
# Summary
# =============================================================================

class TestSummary:

    def test_clean_run_still_requires_human_review(self, reference, context) -> None:
        instrument = make_instrument()
        result = summarize_instrument(instrument, evaluate_instrument(instrument, reference, context))

        assert result.overall_pass is True
        assert result.human_review_required is True
        assert result.risk_flags == ()
        assert "requires human review" in result.recommendation

    def test_critical_run_fails_and_lists_flags(self, reference, context) -> None:
        instrument = make_instrument(issuing_bank_bic="BADBIC", applicable_rules=None)
        result = summarize_instrument(instrument, evaluate_instrument(instrument, reference, context))

        assert result.overall_pass is False
        assert result.risk_flags == ("INVALID_ISSUING_BANK_BIC", "APPLICABLE_RULES_MISSING")
        assert result.to_dict()["human_review_required"] is True

"""
Unit Tests for Intake Schemas

Tests pydantic intake validation: zero-float money, unknown-field
rejection, code normalisation and GATE-010 error wrapping.
"""

import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.schemas.subjects import (
    CreditProfileIn,
    DealIntake,
    ExpectedInstrumentIn,
    JurisdictionIn,
    parse_intake,
    parse_subject,
    validate_money,
)
from services.gate_errors import GateErrorCode, ValidationError
from services.subject_models import DealSnapshot, ProposalSnapshot, SubjectKind


class TestValidateMoney:

    @pytest.mark.parametrize("value,expected", [
        ("120000.00", Decimal("120000.00")),
        (" 5 ", Decimal("5")),
        (250, Decimal("250")),
        (Decimal("0.0000000001"), Decimal("0.0000000001")),
    ])
    def test_accepted(self, value, expected) -> None:
        assert validate_money(value, "amount") == expected

    @pytest.mark.parametrize("value", [
        1.5,
        True,
        "abc",
        "NaN",
        "Infinity",
        "-1",
        "0.00000000001",
        [1],
    ])
    def test_rejected(self, value) -> None:
        with pytest.raises(ValueError):
            validate_money(value, "amount")

    def test_none_only_when_allowed(self) -> None:
        assert validate_money(None, "amount", allow_none=True) is None
        with pytest.raises(ValueError):
            validate_money(None, "amount")


class TestDealIntake:

    def test_normalised_snapshot(self, deal_payload) -> None:
        deal_payload.update({"origin_country": " za ", "incoterm": "cif"})

        deal = parse_subject(SubjectKind.DEAL, deal_payload)

        assert isinstance(deal, DealSnapshot)
        assert deal.origin_country == "ZA"
        assert deal.incoterm == "CIF"
        assert deal.deal_value_usd == Decimal("25000.00")
        assert deal.status == "UNSCREENED"

    def test_float_value_rejected_as_gate_error(self, deal_payload) -> None:
        deal_payload["deal_value_usd"] = 25000.0

        with pytest.raises(ValidationError) as exc_info:
            parse_subject(SubjectKind.DEAL, deal_payload)

        assert exc_info.value.error_code == GateErrorCode.VALIDATION_FAILED
        fields = [e["field"] for e in exc_info.value.details["errors"]]
        assert fields == ["deal_value_usd"]

    def test_unknown_field_rejected(self, deal_payload) -> None:
        deal_payload["status"] = "CLEARED"
        with pytest.raises(ValidationError):
            parse_intake(DealIntake, deal_payload)

    def test_unknown_incoterm_rejected(self, deal_payload) -> None:
        deal_payload["incoterm"] = "XYZ"
        with pytest.raises(ValidationError):
            parse_intake(DealIntake, deal_payload)

    def test_missing_required_fields_listed(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_intake(DealIntake, {"subject_id": "D"})
        fields = {e["field"] for e in exc_info.value.details["errors"]}
        assert {"commodity_id", "origin_country", "deal_value_usd"} <= fields


class TestInstrumentAndProposalIntake:

    def test_instrument_keeps_bic_as_given(self) -> None:
        instrument = parse_subject(SubjectKind.INSTRUMENT, {
            "subject_id": "SBLC-1",
            "issuing_bank_bic": "BADBIC",
            "amount": "1000000",
            "currency": "usd",
            "expiry_date": "2027-06-30",
        })

        assert instrument.issuing_bank_bic == "BADBIC"
        assert instrument.currency == "USD"
        assert instrument.expiry_date == date(2027, 6, 30)
        assert instrument.status == "UNVERIFIED"

    def test_expected_values(self) -> None:
        expected = parse_intake(ExpectedInstrumentIn, {
            "amount": "1000000.00", "issuing_bic": "deutdeff",
        }).to_expected()

        assert expected.amount == Decimal("1000000.00")
        assert expected.issuing_bic == "DEUTDEFF"
        assert expected.currency is None

    def test_proposal(self) -> None:
        proposal = parse_subject(SubjectKind.PROPOSAL, {
            "subject_id": "PROP-1",
            "counterparty_id": "CP-MID",
            "product_ids": ["SKU-1", "SKU-2"],
            "total_price": "15000.00",
            "payment_terms": " NET-15 ",
            "margin_pct": "-2.5",
        })

        assert isinstance(proposal, ProposalSnapshot)
        assert proposal.product_ids == ("SKU-1", "SKU-2")
        assert proposal.payment_terms == "net-15"
        assert proposal.margin_pct == Decimal("-2.5")
        assert proposal.status == "DRAFT"

    def test_proposal_float_margin_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_subject(SubjectKind.PROPOSAL, {
                "subject_id": "PROP-1", "counterparty_id": "CP-MID", "margin_pct": 18.5,
            })

    def test_negative_price_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_subject(SubjectKind.PROPOSAL, {
                "subject_id": "PROP-1", "counterparty_id": "CP-MID", "unit_price": "-1",
            })
        assert exc_info.value.details["errors"][0]["field"] == "unit_price"


class TestReferenceIntake:

    def test_jurisdiction(self) -> None:
        jurisdiction = parse_intake(JurisdictionIn, {
            "country_code": "ae",
            "country": "United Arab Emirates",
            "sanctions_risk": "Medium",
            "docs_required": ["Import Permit"],
        }).to_reference()

        assert jurisdiction.country_code == "AE"
        assert jurisdiction.sanctions_risk == "medium"
        assert jurisdiction.docs_required == ("Import Permit",)

    def test_unknown_tier(self) -> None:
        with pytest.raises(ValidationError):
            parse_intake(JurisdictionIn, {"country_code": "XX", "country": "X", "sanctions_risk": "severe"})

    def test_credit_score_range(self) -> None:
        with pytest.raises(ValidationError):
            parse_intake(CreditProfileIn, {"counterparty_id": "CP", "score": 101})

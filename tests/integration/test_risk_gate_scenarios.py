"""
Integration Tests for Risk Gate Scenarios

End-to-end flows through RiskGateService against SQLite: intake,
evaluation, resolution, human decisions, audit trail and proof anchors.
Collaborators are mocks; nothing leaves the process.
"""

import os
import sys
from unittest.mock import Mock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import FIXED_NOW
from app.infra.ledger_client import LedgerClient
from app.infra.textgen_client import TextGenerationClient
from services.audit_log import AuditAction
from services.flag_models import FlagSeverity
from services.gate_errors import (
    ExternalServiceError,
    GateErrorCode,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from services.proof_anchor import AnchorStatus
from services.risk_gate import RiskGateService


pytestmark = pytest.mark.integration


HIGH_RISK_DEAL = {
    "subject_id": "DEAL-HR-1",
    "commodity_id": "COM-UNKNOWN",
    "origin_country": "ZA",
    "destination_country": "IR",
    "incoterm": "DDP",
    "deal_value_usd": "120000.00",
}

BAD_BIC_INSTRUMENT = {
    "subject_id": "SBLC-BAD-1",
    "issuing_bank_bic": "BADBIC",
    "amount": "1000000.00",
    "currency": "USD",
    "beneficiary_name": "Acme Metals Trading",
    "expiry_date": "2027-12-31",
    "applicable_rules": "UCP600",
}


def _actions(gate, ref):
    return [e.action for e in gate.get_audit_trail(ref)]


# =============================================================================
# Deal Screening
# =============================================================================

class TestHighRiskDeal:

    def test_high_risk_deal_is_blocked(self, gate) -> None:
        gate.create_subject("DEAL", HIGH_RISK_DEAL, "cid-intake")

        result = gate.evaluate("DEAL", "DEAL-HR-1", correlation_id="cid-eval")

        assert [f.finding.rule_id for f in result.findings] == [
            "deal.sanctions.destination",
            "deal.aml.edd",
            "deal.aml.reporting",
            "deal.commodity.unknown",
            "deal.incoterm.ddp",
            "deal.docs.required",
        ]
        assert result.previous_status == "UNSCREENED"
        assert result.status == "BLOCKED"
        assert result.cleared is False
        assert {f.finding.rule_id for f in result.blocking_findings} == {
            "deal.sanctions.destination",
            "deal.commodity.unknown",
        }
        assert result.findings[0].finding.severity == FlagSeverity.CRITICAL

        trail = gate.get_audit_trail("DEAL:DEAL-HR-1")
        assert [e.action for e in trail] == [AuditAction.EVALUATION_RUN]
        assert trail[0].actor == "RULE-EVALUATOR"
        assert trail[0].correlation_id == "cid-eval"
        assert trail[0].metadata["severity_counts"]["CRITICAL"] == 1

    def test_approval_refused_while_blocked(self, gate) -> None:
        gate.create_subject("DEAL", HIGH_RISK_DEAL)
        gate.evaluate("DEAL", "DEAL-HR-1")

        with pytest.raises(PreconditionError) as exc_info:
            gate.approve("DEAL:DEAL-HR-1", "alice", "Looks fine")

        assert exc_info.value.details["current_status"] == "BLOCKED"
        assert gate.clearance("DEAL:DEAL-HR-1").status == "BLOCKED"
        assert AuditAction.SUBJECT_APPROVED not in _actions(gate, "DEAL:DEAL-HR-1")

    def test_resolution_reopens_then_human_approves(self, gate) -> None:
        gate.create_subject("DEAL", HIGH_RISK_DEAL)
        result = gate.evaluate("DEAL", "DEAL-HR-1")

        first, second = result.blocking_findings
        gate.resolve_finding(first.finding_id, "alice", "OFAC specific licence obtained.")
        assert gate.clearance("DEAL:DEAL-HR-1").cleared is False
        assert gate.clearance("DEAL:DEAL-HR-1").status == "BLOCKED"

        gate.resolve_finding(second.finding_id, "bob", "Commodity registered as copper cathode.")
        clearance = gate.clearance("DEAL:DEAL-HR-1")
        assert clearance.cleared is True
        assert clearance.status == "FLAGGED"

        decision = gate.approve("DEAL:DEAL-HR-1", "alice", "Licence and registration on file.", "cid-ok")

        assert decision.previous_status == "FLAGGED"
        assert decision.status == "CLEARED"
        assert _actions(gate, "DEAL:DEAL-HR-1") == [
            AuditAction.EVALUATION_RUN,
            AuditAction.FINDING_RESOLVED,
            AuditAction.FINDING_RESOLVED,
            AuditAction.SUBJECT_APPROVED,
        ]
        reopened = gate.get_audit_trail("DEAL:DEAL-HR-1")[2]
        assert reopened.metadata["reopened_from"] == "BLOCKED"

    def test_reevaluation_of_cleared_deal_with_new_blocker(self, gate) -> None:
        gate.create_subject("DEAL", HIGH_RISK_DEAL)
        for stored in gate.evaluate("DEAL", "DEAL-HR-1").blocking_findings:
            gate.resolve_finding(stored.finding_id, "alice", "Reviewed.")
        gate.approve("DEAL:DEAL-HR-1", "alice")

        result = gate.evaluate("DEAL", "DEAL-HR-1")

        assert result.previous_status == "CLEARED"
        assert result.status == "BLOCKED"
        assert len(gate.findings.for_subject(result.subject_ref)) == 12


class TestLowRiskDeal:

    def test_clean_deal_still_needs_human(self, gate, deal_payload) -> None:
        gate.create_subject("DEAL", deal_payload)

        result = gate.evaluate("DEAL", "DEAL-001")

        assert result.cleared is True
        assert result.status == "FLAGGED"

        decision = gate.reject("DEAL:DEAL-001", "bob", "Counterparty withdrew.")
        assert decision.status == "BLOCKED"
        assert decision.notes == "Counterparty withdrew."

    def test_unauthorised_reviewer_leaves_status(self, gate, deal_payload) -> None:
        gate.create_subject("DEAL", deal_payload)
        gate.evaluate("DEAL", "DEAL-001")

        for reviewer in ("mallory", "RULE-EVALUATOR", ""):
            with pytest.raises(PreconditionError):
                gate.approve("DEAL:DEAL-001", reviewer)

        assert gate.clearance("DEAL:DEAL-001").status == "FLAGGED"

    def test_unknown_subject(self, gate) -> None:
        with pytest.raises(NotFoundError):
            gate.evaluate("DEAL", "DEAL-MISSING")

    def test_duplicate_intake(self, gate, deal_payload) -> None:
        gate.create_subject("DEAL", deal_payload)
        with pytest.raises(ValidationError):
            gate.create_subject("DEAL", deal_payload)

    def test_concurrent_decision_loser_refused(self, gate, deal_payload) -> None:
        gate.create_subject("DEAL", deal_payload)
        gate.evaluate("DEAL", "DEAL-001")
        gate.reject("DEAL:DEAL-001", "bob", "Counterparty withdrew.")

        # approve read FLAGGED before the rejection was committed
        with patch.object(gate.subjects, "get_status", return_value="FLAGGED"):
            with pytest.raises(PreconditionError) as exc_info:
                gate.approve("DEAL:DEAL-001", "alice", "Looks fine")

        assert exc_info.value.error_code == GateErrorCode.PRECONDITION_FAILED
        assert exc_info.value.details["expected_status"] == "FLAGGED"
        assert gate.clearance("DEAL:DEAL-001").status == "BLOCKED"
        assert _actions(gate, "DEAL:DEAL-001") == [
            AuditAction.EVALUATION_RUN,
            AuditAction.SUBJECT_REJECTED,
        ]


# =============================================================================
# Instrument Verification
# =============================================================================

class TestInstrumentVerification:

    def test_bad_bic_rejected_with_single_critical(self, gate) -> None:
        gate.create_subject("INSTRUMENT", BAD_BIC_INSTRUMENT)

        result = gate.evaluate("INSTRUMENT", "SBLC-BAD-1")

        assert len(result.findings) == 1
        finding = result.findings[0].finding
        assert finding.severity == FlagSeverity.CRITICAL
        assert finding.rule_id == "instrument.bic.issuing.format"
        assert result.status == "HUMAN_REJECTED"
        assert result.instrument_result is not None
        assert "INVALID_ISSUING_BANK_BIC" in result.instrument_result.to_dict()["risk_flags"]

    def test_expected_values_cross_checked(self, gate) -> None:
        payload = dict(BAD_BIC_INSTRUMENT, subject_id="SBLC-OK-1", issuing_bank_bic="DEUTDEFF")
        gate.create_subject("INSTRUMENT", payload)

        result = gate.evaluate(
            "INSTRUMENT", "SBLC-OK-1",
            expected={"amount": "1000000.00", "currency": "EUR", "beneficiary": "Acme Metals"},
        )

        assert [f.finding.rule_id for f in result.findings] == ["instrument.currency.mismatch"]
        assert result.status == "HUMAN_REJECTED"

    def test_document_analysis_failure_is_advisory(self, seeded_session, gate_config) -> None:
        textgen = Mock(spec=TextGenerationClient)
        textgen.generate.side_effect = ExternalServiceError("Text generation failed: 503")
        gate = RiskGateService(
            seeded_session, config=gate_config, textgen_client=textgen,
            ledger_clients={}, clock=lambda: FIXED_NOW,
        )
        payload = dict(
            BAD_BIC_INSTRUMENT, subject_id="SBLC-DOC-1", issuing_bank_bic="DEUTDEFF",
            raw_text=":40A:IRREVOCABLE STANDBY",
        )
        gate.create_subject("INSTRUMENT", payload)

        result = gate.evaluate("INSTRUMENT", "SBLC-DOC-1")

        assert [f.finding.rule_id for f in result.findings] == [
            "instrument.document_analysis.unavailable",
        ]
        assert result.cleared is True
        assert result.status == "PENDING_HUMAN_REVIEW"
        trail = gate.get_audit_trail("INSTRUMENT:SBLC-DOC-1")
        assert trail[0].metadata["document_analysis"]["available"] is False

    def test_unexpected_document_analysis_error_is_advisory(self, seeded_session, gate_config) -> None:
        textgen = Mock(spec=TextGenerationClient)
        textgen.generate.side_effect = RuntimeError("model crashed")
        gate = RiskGateService(
            seeded_session, config=gate_config, textgen_client=textgen,
            ledger_clients={}, clock=lambda: FIXED_NOW,
        )
        payload = dict(
            BAD_BIC_INSTRUMENT, subject_id="SBLC-DOC-2", issuing_bank_bic="DEUTDEFF",
            raw_text=":40A:IRREVOCABLE STANDBY",
        )
        gate.create_subject("INSTRUMENT", payload)

        result = gate.evaluate("INSTRUMENT", "SBLC-DOC-2")

        assert [f.finding.rule_id for f in result.findings] == [
            "instrument.document_analysis.unavailable",
        ]
        assert result.status == "PENDING_HUMAN_REVIEW"
        analysis = gate.get_audit_trail("INSTRUMENT:SBLC-DOC-2")[0].metadata["document_analysis"]
        assert analysis["available"] is False
        assert analysis["error"] == "RuntimeError: model crashed"

    def test_malformed_textgen_url_is_advisory(self, seeded_session, gate_config) -> None:
        gate = RiskGateService(
            seeded_session, config=gate_config,
            textgen_client=TextGenerationClient("http://[::1"),
            ledger_clients={}, clock=lambda: FIXED_NOW,
        )
        payload = dict(
            BAD_BIC_INSTRUMENT, subject_id="SBLC-DOC-3", issuing_bank_bic="DEUTDEFF",
            raw_text=":40A:IRREVOCABLE STANDBY",
        )
        gate.create_subject("INSTRUMENT", payload)

        result = gate.evaluate("INSTRUMENT", "SBLC-DOC-3")

        assert [f.finding.rule_id for f in result.findings] == [
            "instrument.document_analysis.unavailable",
        ]
        assert result.status == "PENDING_HUMAN_REVIEW"


# =============================================================================
# Proposal Review
# =============================================================================

class TestProposalReview:

    def test_weak_credit_proposal_held(self, gate) -> None:
        gate.create_subject("PROPOSAL", {
            "subject_id": "PROP-1",
            "counterparty_id": "CP-WEAK",
            "title": "Copper supply Q1",
            "product_ids": ["SKU-CU-1"],
            "total_price": "15000.00",
            "payment_terms": "net-30",
            "margin_pct": "22",
        })

        result = gate.evaluate("PROPOSAL", "PROP-1")

        assert result.previous_status == "DRAFT"
        assert "proposal.terms.credit" in {f.finding.rule_id for f in result.findings}
        assert result.status == "REJECTED"
        summary = gate.get_compliance_summary()
        assert summary["subjects"]["PROPOSAL"] == {result.status: 1}


# =============================================================================
# Proof Anchoring
# =============================================================================

class TestSubjectAnchoring:

    def test_anchoring_twice_gives_same_digest(self, gate) -> None:
        gate.create_subject("DEAL", HIGH_RISK_DEAL)
        gate.evaluate("DEAL", "DEAL-HR-1")

        first = gate.anchor_subject("DEAL:DEAL-HR-1")
        second = gate.anchor_subject("DEAL:DEAL-HR-1")

        assert first.canonical_hash == second.canonical_hash
        assert first.anchor_id != second.anchor_id
        assert first.status == AnchorStatus.PENDING

    def test_anchor_submitted_to_configured_chain(self, seeded_session, gate_config) -> None:
        client = Mock(spec=LedgerClient)
        client.submit.return_value = "TX-ABC"
        client.is_confirmed.return_value = True
        gate = RiskGateService(
            seeded_session, config=gate_config, ledger_clients={"XRPL": client},
            clock=lambda: FIXED_NOW,
        )

        anchor = gate.anchor("DEAL", "DEAL-HR-1", {"status": "BLOCKED"}, ["XRPL"], "cid-anchor")
        refreshed = gate.refresh_anchor(anchor.anchor_id)

        assert anchor.status == AnchorStatus.SUBMITTED
        assert refreshed.status == AnchorStatus.CONFIRMED
        client.submit.assert_called_once_with("DEAL", "DEAL-HR-1", anchor.canonical_hash, "cid-anchor")
        assert _actions(gate, "DEAL:DEAL-HR-1") == [
            AuditAction.ANCHOR_CHAIN_SUBMITTED,
            AuditAction.ANCHOR_CHAIN_CONFIRMED,
        ]

    def test_audit_trail_of_other_object_types(self, gate) -> None:
        gate.anchor("REPORT", "R-1", {"period": "2026-Q3"})

        assert _actions(gate, "REPORT:R-1") == [AuditAction.ANCHOR_PENDING]
        with pytest.raises(ValidationError):
            gate.get_audit_trail("DEAL-HR-1")

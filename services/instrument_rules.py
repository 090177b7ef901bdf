"""
============================================================================
Tradegate Risk Engine - Instrument Rule Set
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Amount cross-checks use decimal.Decimal
Traceability: Every finding carries rule_id (instrument.*) and a risk flag

Consistency checks on banking instruments (SBLC, LC, ...). The checks
speak the INFO / WARNING / CRITICAL vocabulary of trade-finance review:
- INFO: check passed, no finding emitted
- WARNING: MEDIUM finding, needs human attention, never blocks
- CRITICAL: CRITICAL finding, blocks execution

CHECK ORDER (fixed):
    1. Issuing bank BIC (missing -> WARNING, malformed -> CRITICAL)
    2. Advising bank BIC (only when present)
    3. Expected amount (tolerance strictly below GATE_AMOUNT_TOLERANCE)
    4. Expected currency (exact equality)
    5. Expected issuing BIC
    6. Expiry (expired -> CRITICAL, inside warning window -> WARNING)
    7. Expected expiry date
    8. Expected beneficiary (case-insensitive containment)
    9. Applicable rules (UCP600 / ISP98 / URDG758) defined
   10. Document analysis flags (advisory only)

An instrument is never verified by this module. A clean run only makes
it eligible for human review.

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import List, Optional, Dict, Any, Tuple
import math
import re

from services.flag_models import Finding, FlagType, FlagSeverity, WARNING
from services.subject_models import (
    InstrumentSnapshot,
    ReferenceData,
    EvaluationContext,
    DocumentAnalysis,
)


# =============================================================================
# Constants
# =============================================================================

BIC_PATTERN = re.compile(r"^[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?$")

APPLICABLE_RULE_SETS = ("UCP600", "ISP98", "URDG758")

SECONDS_PER_DAY = 86400


def is_valid_bic(bic: Optional[str]) -> bool:
    if not bic:
        return False
    return BIC_PATTERN.match(bic.strip().upper()) is not None


def days_until(expiry, now: datetime) -> int:
    """Whole days until expiry, rounded up. Negative once expired."""
    expiry_start = datetime.combine(expiry, time.min, tzinfo=timezone.utc)
    return math.ceil((expiry_start - now).total_seconds() / SECONDS_PER_DAY)


def _critical(rule_id: str, flag_type: FlagType, message: str,
              recommendation: str, risk_flag: str, **metadata: Any) -> Finding:
    metadata["risk_flag"] = risk_flag
    return Finding(
        rule_id=rule_id,
        flag_type=flag_type,
        severity=FlagSeverity.CRITICAL,
        message=message,
        recommendation=recommendation,
        requires_human_review=True,
        blocks_execution=True,
        metadata=metadata,
    )


def _warning(rule_id: str, flag_type: FlagType, message: str,
             recommendation: str, risk_flag: str, **metadata: Any) -> Finding:
    metadata["risk_flag"] = risk_flag
    return Finding(
        rule_id=rule_id,
        flag_type=flag_type,
        severity=WARNING,
        message=message,
        recommendation=recommendation,
        requires_human_review=True,
        blocks_execution=False,
        metadata=metadata,
    )


# =============================================================================
# Checks
# =============================================================================

def check_bic(bic: Optional[str], label: str, key: str) -> List[Finding]:
    flag_name = label.upper().replace(" ", "_")
    if not bic:
        return [_warning(
            f"instrument.bic.{key}.missing",
            FlagType.FIELD_FORMAT,
            f"{label} BIC is missing.",
            "Obtain the BIC from the issuing documentation before review.",
            f"{flag_name}_BIC_MISSING",
        )]
    if not is_valid_bic(bic):
        return [_critical(
            f"instrument.bic.{key}.format",
            FlagType.FIELD_FORMAT,
            f"{bic} is not a valid {label} BIC (expected 8 or 11 characters).",
            "Confirm the BIC with the bank directly. Do not proceed on a malformed BIC.",
            f"INVALID_{flag_name}_BIC",
            bic=bic,
        )]
    return []


def check_issuing_bic(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    return check_bic(instrument.issuing_bank_bic, "Issuing Bank", "issuing")


def check_advising_bic(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    if not instrument.advising_bank_bic:
        return []
    return check_bic(instrument.advising_bank_bic, "Advising Bank", "advising")


def check_amount(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    expected = instrument.expected
    if expected is None or expected.amount is None or instrument.amount is None:
        return []
    if abs(instrument.amount - expected.amount) < context.thresholds.amount_tolerance:
        return []
    expected_currency = expected.currency or instrument.currency
    return [_critical(
        "instrument.amount.mismatch",
        FlagType.FIELD_MISMATCH,
        (
            f"Instrument amount {instrument.amount} {instrument.currency} does not "
            f"match expected {expected.amount} {expected_currency}."
        ),
        "Reconcile the instrument amount with the agreed funding terms.",
        "AMOUNT_MISMATCH",
        amount=instrument.amount,
        expected_amount=expected.amount,
    )]


def check_currency(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    expected = instrument.expected
    if expected is None or not expected.currency or not instrument.currency:
        return []
    if instrument.currency == expected.currency:
        return []
    return [_critical(
        "instrument.currency.mismatch",
        FlagType.FIELD_MISMATCH,
        f"Instrument currency {instrument.currency} does not match expected {expected.currency}.",
        "Reissue or amend the instrument in the agreed currency.",
        "CURRENCY_MISMATCH",
        currency=instrument.currency,
        expected_currency=expected.currency,
    )]


def check_expected_issuing_bic(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    expected = instrument.expected
    if expected is None or not expected.issuing_bic or not instrument.issuing_bank_bic:
        return []
    if instrument.issuing_bank_bic.strip().upper() == expected.issuing_bic.strip().upper():
        return []
    return [_critical(
        "instrument.issuing_bic.mismatch",
        FlagType.FIELD_MISMATCH,
        (
            f"Issuing bank {instrument.issuing_bank_bic} is not the expected "
            f"issuer {expected.issuing_bic}."
        ),
        "Confirm the issuing bank with the counterparty before review.",
        "ISSUING_BIC_MISMATCH",
        issuing_bic=instrument.issuing_bank_bic,
        expected_issuing_bic=expected.issuing_bic,
    )]


def check_expiry(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    if instrument.expiry_date is None:
        return []
    days = days_until(instrument.expiry_date, context.now)
    if days < 0:
        return [_critical(
            "instrument.expiry.expired",
            FlagType.EXPIRY,
            f"Instrument expired on {instrument.expiry_date.isoformat()}.",
            "An expired instrument cannot secure the transaction. Request a replacement.",
            "INSTRUMENT_EXPIRED",
            expiry_date=instrument.expiry_date,
            days_remaining=days,
        )]
    window = context.thresholds.expiry_warning_days
    if days < window:
        return [_warning(
            "instrument.expiry.soon",
            FlagType.EXPIRY,
            f"Instrument expires on {instrument.expiry_date.isoformat()} ({days} days remaining).",
            "Confirm the expiry leaves enough time for presentation or request an extension.",
            f"EXPIRING_WITHIN_{window}_DAYS",
            expiry_date=instrument.expiry_date,
            days_remaining=days,
        )]
    return []


def check_expected_expiry(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    expected = instrument.expected
    if expected is None or expected.expiry_date is None or instrument.expiry_date is None:
        return []
    if instrument.expiry_date == expected.expiry_date:
        return []
    return [_critical(
        "instrument.expiry.mismatch",
        FlagType.FIELD_MISMATCH,
        (
            f"Instrument expiry {instrument.expiry_date.isoformat()} does not match "
            f"expected {expected.expiry_date.isoformat()}."
        ),
        "Amend the instrument expiry to the agreed date.",
        "EXPIRY_MISMATCH",
        expiry_date=instrument.expiry_date,
        expected_expiry_date=expected.expiry_date,
    )]


def check_beneficiary(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    expected = instrument.expected
    if expected is None or not expected.beneficiary or not instrument.beneficiary_name:
        return []
    if expected.beneficiary.lower() in instrument.beneficiary_name.lower():
        return []
    return [_critical(
        "instrument.beneficiary.mismatch",
        FlagType.FIELD_MISMATCH,
        (
            f"Beneficiary on instrument \"{instrument.beneficiary_name}\" does not "
            f"contain expected \"{expected.beneficiary}\"."
        ),
        "Confirm the beneficiary legal name. Do not proceed on a name mismatch.",
        "BENEFICIARY_MISMATCH",
        beneficiary=instrument.beneficiary_name,
        expected_beneficiary=expected.beneficiary,
    )]


def check_applicable_rules(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    if instrument.applicable_rules:
        return []
    return [_warning(
        "instrument.rules.missing",
        FlagType.DOCUMENTATION,
        f"No applicable rules defined ({'/'.join(APPLICABLE_RULE_SETS)} required).",
        "Ask the issuing bank to state the governing rules on the instrument.",
        "APPLICABLE_RULES_MISSING",
    )]


def document_analysis_findings(analysis: Optional[DocumentAnalysis]) -> List[Finding]:
    """
    Turn collaborator output into advisory findings.

    Flags stay at WARNING and never block, whatever the collaborator says.
    """
    if analysis is None:
        return []
    if not analysis.available:
        return [_warning(
            "instrument.document_analysis.unavailable",
            FlagType.DOCUMENTATION,
            "Document analysis unavailable. The raw instrument text was not machine-reviewed.",
            "Review the raw instrument text manually.",
            "DOCUMENT_ANALYSIS_UNAVAILABLE",
            error=analysis.error,
        )]
    return [
        _warning(
            "instrument.document_analysis.flag",
            FlagType.DOCUMENTATION,
            f"Document analysis flagged: {flag}",
            "Advisory only. Confirm against the original instrument text.",
            flag,
        )
        for flag in analysis.additional_flags
    ]


def check_document_analysis(instrument: InstrumentSnapshot, context: EvaluationContext) -> List[Finding]:
    return document_analysis_findings(instrument.document_analysis)


INSTRUMENT_CHECKS = (
    check_issuing_bic,
    check_advising_bic,
    check_amount,
    check_currency,
    check_expected_issuing_bic,
    check_expiry,
    check_expected_expiry,
    check_beneficiary,
    check_applicable_rules,
    check_document_analysis,
)


def evaluate_instrument(
    instrument: InstrumentSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    for check in INSTRUMENT_CHECKS:
        findings.extend(check(instrument, context))
    return findings


# =============================================================================
# Verification Result
# =============================================================================

@dataclass(frozen=True)
class InstrumentVerificationResult:
    """
    Summary of one instrument run as shown to the reviewer.

    human_review_required is always True: passing every check only makes
    the instrument eligible for a human decision.
    """
    subject_id: str
    overall_pass: bool
    findings: Tuple[Finding, ...]
    risk_flags: Tuple[str, ...]
    recommendation: str
    parsed_fields: Dict[str, Any] = field(default_factory=dict)
    analysis_text: str = ""
    human_review_required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "overall_pass": self.overall_pass,
            "findings": [f.to_dict() for f in self.findings],
            "risk_flags": list(self.risk_flags),
            "recommendation": self.recommendation,
            "parsed_fields": dict(self.parsed_fields),
            "analysis_text": self.analysis_text,
            "human_review_required": True,
        }


def summarize_instrument(
    instrument: InstrumentSnapshot,
    findings: List[Finding],
) -> InstrumentVerificationResult:
    risk_flags = tuple(
        f.metadata["risk_flag"] for f in findings
        if f.severity >= WARNING and "risk_flag" in f.metadata
    )
    overall_pass = not any(f.severity == FlagSeverity.CRITICAL for f in findings)
    if overall_pass:
        recommendation = (
            "Automated checks passed. Instrument requires human review and "
            "approval before verification."
        )
    else:
        recommendation = (
            f"Automated checks FAILED ({', '.join(risk_flags)}). "
            f"Human review required, do not proceed."
        )
    analysis = instrument.document_analysis
    return InstrumentVerificationResult(
        subject_id=instrument.subject_id,
        overall_pass=overall_pass,
        findings=tuple(findings),
        risk_flags=risk_flags,
        recommendation=recommendation,
        parsed_fields=dict(analysis.parsed_fields) if analysis else {},
        analysis_text=analysis.analysis if analysis else "",
    )


__all__ = [
    "BIC_PATTERN",
    "INSTRUMENT_CHECKS",
    "InstrumentVerificationResult",
    "days_until",
    "document_analysis_findings",
    "evaluate_instrument",
    "is_valid_bic",
    "summarize_instrument",
]

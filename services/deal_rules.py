"""
============================================================================
Tradegate Risk Engine - Deal Rule Set
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Deal values compared as decimal.Decimal
Traceability: Every finding carries a stable rule_id (deal.*)

Screens a trade deal against jurisdiction and commodity reference data.

RULE ORDER (fixed, output is deterministic):
    1. Sanctions: destination tier, then origin tier
    2. AML: enhanced due diligence floor, then very-high-value floor
    3. Commodity: unknown, restricted, precious-metals advisory
    4. Incoterm advisories (DDP / FOB / CIF / EXW)
    5. Required documentation aggregation
    6. Reporting-threshold advisory

Missing reference rows never raise. An unknown commodity is itself a
HIGH blocking finding; an unknown jurisdiction simply produces no
sanctions finding.

This module does NOT certify legal compliance. It flags risks for review
by qualified compliance staff.

============================================================================
"""

from typing import List, Optional, Callable, Tuple

from services.flag_models import Finding, FlagType, FlagSeverity
from services.subject_models import (
    DealSnapshot,
    ReferenceData,
    EvaluationContext,
    Jurisdiction,
    Commodity,
)


# =============================================================================
# Constants
# =============================================================================

STANDARD_TRADE_DOCUMENTS = ("Commercial Invoice", "Packing List", "Bill of Lading")

AGRICULTURAL_DOCUMENTS = ("Phytosanitary Certificate", "Certificate of Origin")

METALS_DOCUMENTS = ("Assay Certificate", "Certificate of Origin")

PRECIOUS_METALS_DOCUMENTS = ("Chain of Custody Documentation", "Insurance Certificate")

RECORD_RETENTION_NOTE = "Retain for 5+ years per recordkeeping requirements."


def _usd(value) -> str:
    return f"${value:,} USD"


def _tier(jurisdiction: Optional[Jurisdiction]) -> Optional[str]:
    if jurisdiction is None or not jurisdiction.sanctions_risk:
        return None
    return jurisdiction.sanctions_risk.strip().lower()


def _is_precious(commodity: Commodity, metals: Tuple[str, ...]) -> bool:
    name = (commodity.name or "").lower()
    return any(metal in name for metal in metals)


# =============================================================================
# Sanctions
# =============================================================================

def screen_sanctions(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    destination = reference.jurisdiction(deal.destination_country)
    origin = reference.jurisdiction(deal.origin_country)

    tier = _tier(destination)
    if tier == "critical":
        findings.append(Finding(
            rule_id="deal.sanctions.destination",
            flag_type=FlagType.SANCTIONS,
            severity=FlagSeverity.CRITICAL,
            message=(
                f"Destination {destination.country} is a critical sanctions-risk "
                f"jurisdiction. Transaction held pending compliance review."
            ),
            recommendation=(
                "Do not proceed. Contact legal counsel and confirm OFAC general or "
                f"specific licence requirements. Notes: {destination.sanctions_notes or 'N/A'}"
            ),
            requires_human_review=True,
            blocks_execution=True,
            metadata={"country_code": destination.country_code, "tier": tier},
        ))
    elif tier == "high":
        findings.append(Finding(
            rule_id="deal.sanctions.destination",
            flag_type=FlagType.SANCTIONS,
            severity=FlagSeverity.HIGH,
            message=f"Destination {destination.country} requires enhanced sanctions screening.",
            recommendation=(
                "Check the counterparty against the OFAC SDN List, Entity List and "
                "Denied Persons List. Document the screening results."
            ),
            requires_human_review=True,
            blocks_execution=False,
            metadata={"country_code": destination.country_code, "tier": tier},
        ))
    elif tier == "medium":
        findings.append(Finding(
            rule_id="deal.sanctions.destination",
            flag_type=FlagType.SANCTIONS,
            severity=FlagSeverity.MEDIUM,
            message=f"Destination {destination.country} requires standard sanctions screening.",
            recommendation="Run OFAC screening on counterparty names and retain the records.",
            requires_human_review=False,
            blocks_execution=False,
            metadata={"country_code": destination.country_code, "tier": tier},
        ))

    if _tier(origin) == "critical":
        findings.append(Finding(
            rule_id="deal.sanctions.origin",
            flag_type=FlagType.SANCTIONS,
            severity=FlagSeverity.CRITICAL,
            message=(
                f"Origin {origin.country} is sanctioned or critical-risk. "
                f"Sourcing from this jurisdiction is prohibited."
            ),
            recommendation="Do not proceed. Identify an alternative sourcing jurisdiction.",
            requires_human_review=True,
            blocks_execution=True,
            metadata={"country_code": origin.country_code, "tier": "critical"},
        ))

    return findings


# =============================================================================
# AML
# =============================================================================

def screen_aml(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    thresholds = context.thresholds
    value = deal.deal_value_usd

    if value >= thresholds.aml_edd_usd:
        findings.append(Finding(
            rule_id="deal.aml.edd",
            flag_type=FlagType.AML,
            severity=FlagSeverity.HIGH,
            message=f"High-value transaction ({_usd(value)}). Enhanced due diligence required.",
            recommendation=(
                "Obtain enhanced KYC documentation, beneficial ownership disclosure "
                "(owners above 25%), source of funds and source of wealth evidence. "
                "Retain for 5+ years."
            ),
            requires_human_review=True,
            blocks_execution=False,
            metadata={"deal_value_usd": value, "threshold_usd": thresholds.aml_edd_usd},
        ))

    if value >= thresholds.aml_reporting_usd:
        findings.append(Finding(
            rule_id="deal.aml.reporting",
            flag_type=FlagType.AML,
            severity=FlagSeverity.HIGH,
            message="Very high-value transaction. CTR/SAR reporting considerations apply.",
            recommendation=(
                "A Currency Transaction Report is required if cash above $10K is "
                "involved. Monitor for structuring and file a SAR if suspicious "
                "indicators are present."
            ),
            requires_human_review=True,
            blocks_execution=False,
            metadata={"deal_value_usd": value, "threshold_usd": thresholds.aml_reporting_usd},
        ))

    return findings


# =============================================================================
# Commodity
# =============================================================================

def screen_commodity(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    commodity = reference.commodity(deal.commodity_id)

    if commodity is None:
        return [Finding(
            rule_id="deal.commodity.unknown",
            flag_type=FlagType.COMMODITY_RESTRICTION,
            severity=FlagSeverity.HIGH,
            message=(
                f"Commodity data not found (ID: {deal.commodity_id}). "
                f"Compliance screening cannot be completed."
            ),
            recommendation="Register the commodity and update its data before proceeding.",
            requires_human_review=True,
            blocks_execution=True,
            metadata={"commodity_id": str(deal.commodity_id)},
        )]

    findings: List[Finding] = []
    if commodity.restricted:
        findings.append(Finding(
            rule_id="deal.commodity.restricted",
            flag_type=FlagType.EXPORT_CONTROL,
            severity=FlagSeverity.HIGH,
            message=(
                f"Commodity \"{commodity.name}\" is flagged as restricted. "
                f"Reason: {commodity.restricted_reason or 'Not specified'}"
            ),
            recommendation=(
                "Verify export control classification (ECCN/USML), licence "
                "requirements and end-use restrictions. Consult export control "
                "counsel if uncertain."
            ),
            requires_human_review=True,
            blocks_execution=True,
            metadata={"commodity_id": commodity.commodity_id, "hs_code": commodity.hs_code},
        ))

    if commodity.category == "metals" and _is_precious(commodity, ("gold",)):
        findings.append(Finding(
            rule_id="deal.commodity.precious_metals",
            flag_type=FlagType.AML,
            severity=FlagSeverity.MEDIUM,
            message="Precious metals transaction. Enhanced AML protocols apply.",
            recommendation=(
                "LBMA custody recommended. Document source of funds, intended use, "
                "storage and insurance. Retain chain of custody records."
            ),
            requires_human_review=False,
            blocks_execution=False,
            metadata={"commodity_id": commodity.commodity_id},
        ))

    return findings


# =============================================================================
# Incoterms
# =============================================================================

def screen_incoterm(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    incoterm = (deal.incoterm or "").strip().upper()

    if incoterm == "DDP":
        return [Finding(
            rule_id="deal.incoterm.ddp",
            flag_type=FlagType.INCOTERM_OBLIGATION,
            severity=FlagSeverity.MEDIUM,
            message="DDP (Delivered Duty Paid) selected. Seller assumes import clearance obligations.",
            recommendation=(
                "Engage a customs broker in the destination country, calculate "
                "duties and taxes, and confirm importer-of-record responsibilities."
            ),
            requires_human_review=False,
            blocks_execution=False,
            metadata={"incoterm": incoterm},
        )]

    if incoterm in ("FOB", "CIF"):
        return [Finding(
            rule_id="deal.incoterm.port_transfer",
            flag_type=FlagType.INCOTERM_OBLIGATION,
            severity=FlagSeverity.LOW,
            message=f"{incoterm} selected. Risk transfers at port of shipment.",
            recommendation=(
                "Confirm the title transfer point, insurance coverage (CIF includes "
                "insurance to destination) and freight forwarder arrangements."
            ),
            requires_human_review=False,
            blocks_execution=False,
            metadata={"incoterm": incoterm},
        )]

    if incoterm == "EXW":
        return [Finding(
            rule_id="deal.incoterm.exw",
            flag_type=FlagType.INCOTERM_OBLIGATION,
            severity=FlagSeverity.LOW,
            message="EXW (Ex Works) selected. Buyer assumes all transport and export obligations.",
            recommendation=(
                "Buyer arranges export clearance at origin, all transport and import "
                "clearance. Seller delivers at its own premises only."
            ),
            requires_human_review=False,
            blocks_execution=False,
            metadata={"incoterm": incoterm},
        )]

    return []


# =============================================================================
# Documentation
# =============================================================================

def required_documents(
    destination: Optional[Jurisdiction],
    commodity: Optional[Commodity],
) -> List[str]:
    """
    Documents implied by destination and commodity category.

    Duplicates are removed keeping first occurrence.
    """
    documents: List[str] = list(STANDARD_TRADE_DOCUMENTS)
    if destination is not None:
        documents.extend(destination.docs_required)
    if commodity is not None:
        if commodity.category == "agricultural":
            documents.extend(AGRICULTURAL_DOCUMENTS)
        if commodity.category == "metals":
            documents.extend(METALS_DOCUMENTS)
            if _is_precious(commodity, ("gold", "silver")):
                documents.extend(PRECIOUS_METALS_DOCUMENTS)
    return list(dict.fromkeys(documents))


def screen_documentation(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    destination = reference.jurisdiction(deal.destination_country)
    commodity = reference.commodity(deal.commodity_id)
    documents = required_documents(destination, commodity)

    destination_name = destination.country if destination else "destination"
    commodity_name = commodity.name if commodity else "commodity"
    return [Finding(
        rule_id="deal.docs.required",
        flag_type=FlagType.DOCUMENTATION,
        severity=FlagSeverity.MEDIUM,
        message=f"Required documentation for {destination_name} / {commodity_name} trade.",
        recommendation=(
            f"Prepare and retain: {', '.join(documents)}. Verify authenticity. "
            f"{RECORD_RETENTION_NOTE}"
        ),
        requires_human_review=False,
        blocks_execution=False,
        metadata={"documents": documents},
    )]


# =============================================================================
# Value Threshold
# =============================================================================

def screen_value(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    thresholds = context.thresholds
    value = deal.deal_value_usd
    if not (thresholds.value_reporting_usd <= value < thresholds.aml_edd_usd):
        return []
    return [Finding(
        rule_id="deal.value.reporting",
        flag_type=FlagType.VALUE_THRESHOLD,
        severity=FlagSeverity.LOW,
        message=(
            f"Transaction value {_usd(value)} exceeds the "
            f"{_usd(thresholds.value_reporting_usd)} reporting threshold."
        ),
        recommendation=(
            "Cash payment requires a Currency Transaction Report. For wires, "
            "document source and destination. Monitor for structuring."
        ),
        requires_human_review=False,
        blocks_execution=False,
        metadata={"deal_value_usd": value},
    )]


# =============================================================================
# Rule Set
# =============================================================================

DealRule = Callable[[DealSnapshot, ReferenceData, EvaluationContext], List[Finding]]

DEAL_RULES: Tuple[DealRule, ...] = (
    screen_sanctions,
    screen_aml,
    screen_commodity,
    screen_incoterm,
    screen_documentation,
    screen_value,
)


def evaluate_deal(
    deal: DealSnapshot,
    reference: ReferenceData,
    context: EvaluationContext,
) -> List[Finding]:
    findings: List[Finding] = []
    for rule in DEAL_RULES:
        findings.extend(rule(deal, reference, context))
    return findings


__all__ = [
    "DEAL_RULES",
    "STANDARD_TRADE_DOCUMENTS",
    "evaluate_deal",
    "required_documents",
    "screen_sanctions",
    "screen_aml",
    "screen_commodity",
    "screen_incoterm",
    "screen_documentation",
    "screen_value",
]

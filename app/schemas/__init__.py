# ============================================================================
# Tradegate Risk Engine
# Pydantic Schemas - Intake Validation Layer
# ============================================================================

from app.schemas.subjects import (
    CommodityIn,
    CreditProfileIn,
    DealIntake,
    ExpectedInstrumentIn,
    InstrumentIntake,
    JurisdictionIn,
    ProposalIntake,
    parse_intake,
    parse_subject,
)

__all__ = [
    "CommodityIn",
    "CreditProfileIn",
    "DealIntake",
    "ExpectedInstrumentIn",
    "InstrumentIntake",
    "JurisdictionIn",
    "ProposalIntake",
    "parse_intake",
    "parse_subject",
]

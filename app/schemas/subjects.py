"""
============================================================================
Tradegate Risk Engine
Intake Schemas - Pydantic Models for Subject and Reference Payloads
============================================================================

Reliability Level: L6 Critical
Input Constraints: Monetary values as Decimal, str or int; zero floats
Side Effects: None (pure validation)

MANDATE:
- All monetary values MUST use decimal.Decimal
- Float input is rejected outright (no binary rounding of money)
- Unknown fields are rejected at intake
- Pydantic failures surface as GATE-010 ValidationError

============================================================================
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    ValidationInfo,
    field_validator,
)

from services.gate_errors import ValidationError
from services.subject_models import (
    SANCTIONS_TIERS,
    Commodity,
    CreditProfile,
    DealSnapshot,
    ExpectedInstrument,
    InstrumentSnapshot,
    Jurisdiction,
    ProposalSnapshot,
    SubjectKind,
)


# ============================================================================
# CONSTANTS
# ============================================================================

MAX_DECIMAL_PLACES = 10

INCOTERMS = frozenset({
    "EXW", "FCA", "CPT", "CIP", "DAP", "DPU", "DDP",
    "FAS", "FOB", "CFR", "CIF",
})


# ============================================================================
# CUSTOM VALIDATORS
# ============================================================================

def validate_money(value: Any, field_name: str, allow_none: bool = False) -> Optional[Decimal]:
    """
    Coerce a monetary value to Decimal.

    Raises:
        ValueError: On float input, non-finite values, negative values or
            more than 10 decimal places
    """
    if value is None:
        if allow_none:
            return None
        raise ValueError(f"{field_name} cannot be None")

    if isinstance(value, float):
        raise ValueError(
            f"{field_name} received float type. Monetary values must be "
            f"Decimal, str or int. Received: {value}"
        )

    if isinstance(value, bool) or not isinstance(value, (Decimal, str, int)):
        raise ValueError(
            f"{field_name} must be Decimal, str or int. Received: {type(value).__name__}"
        )

    try:
        decimal_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"{field_name} is not a valid decimal number. Received: {value}")

    if not decimal_value.is_finite():
        raise ValueError(f"{field_name} must be a finite number. Received: {decimal_value}")

    exponent = decimal_value.as_tuple().exponent
    if exponent < 0 and abs(exponent) > MAX_DECIMAL_PLACES:
        raise ValueError(
            f"{field_name} exceeds maximum {MAX_DECIMAL_PLACES} decimal places. "
            f"Received: {decimal_value}"
        )

    if decimal_value < 0:
        raise ValueError(f"{field_name} must not be negative. Received: {decimal_value}")

    return decimal_value


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# ============================================================================
# BASE
# ============================================================================

class IntakeModel(BaseModel):
    """Common intake configuration."""

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
    )


_M = TypeVar("_M", bound=BaseModel)


def parse_intake(model: Type[_M], payload: Any) -> _M:
    """
    Validate a raw payload against an intake model.

    Raises:
        ValidationError: Wrapping every pydantic error (GATE-010)
    """
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__} payload: {len(errors)} error(s)",
            details={"errors": errors},
        )


# ============================================================================
# SUBJECT INTAKE
# ============================================================================

class DealIntake(IntakeModel):
    """Trade deal submitted for screening."""

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "subject_id": "DEAL-2026-0042",
                "commodity_id": "COM-COPPER-CATHODE",
                "origin_country": "ZA",
                "destination_country": "AE",
                "incoterm": "CIF",
                "deal_value_usd": "120000.00",
                "quantity": "25",
                "quantity_unit": "MT",
            }
        },
    )

    subject_id: str = Field(..., min_length=1, max_length=128)
    commodity_id: str = Field(..., min_length=1, max_length=128)
    origin_country: str = Field(..., min_length=2, max_length=3)
    destination_country: str = Field(..., min_length=2, max_length=3)
    incoterm: str = Field(..., min_length=3, max_length=3)
    deal_value_usd: Decimal
    quantity: Decimal = Decimal("0")
    quantity_unit: str = Field(default="", max_length=16)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("deal_value_usd", mode="before")
    @classmethod
    def validate_deal_value(cls, v: Any) -> Decimal:
        return validate_money(v, "deal_value_usd")

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_quantity(cls, v: Any) -> Decimal:
        return validate_money(v, "quantity")

    @field_validator("origin_country", "destination_country", "currency", mode="before")
    @classmethod
    def validate_codes_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("incoterm", mode="before")
    @classmethod
    def validate_incoterm(cls, v: Any) -> Any:
        v = _upper(v)
        if isinstance(v, str) and v not in INCOTERMS:
            raise ValueError(f"Unknown incoterm: {v}")
        return v

    def to_snapshot(self) -> DealSnapshot:
        return DealSnapshot(**self.model_dump())


class ExpectedInstrumentIn(IntakeModel):
    """Expected values for an instrument cross-check."""

    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    beneficiary: Optional[str] = None
    issuing_bic: Optional[str] = None
    expiry_date: Optional[date] = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Optional[Decimal]:
        return validate_money(v, "amount", allow_none=True)

    @field_validator("currency", "issuing_bic", mode="before")
    @classmethod
    def validate_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    def to_expected(self) -> ExpectedInstrument:
        return ExpectedInstrument(**self.model_dump())


class InstrumentIntake(IntakeModel):
    """Banking instrument submitted for verification."""

    subject_id: str = Field(..., min_length=1, max_length=128)
    instrument_type: str = Field(default="SBLC", min_length=1, max_length=32)
    issuing_bank_bic: Optional[str] = None
    advising_bank_bic: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    beneficiary_name: Optional[str] = None
    expiry_date: Optional[date] = None
    applicable_rules: Optional[str] = None
    raw_text: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Optional[Decimal]:
        return validate_money(v, "amount", allow_none=True)

    @field_validator("currency", mode="before")
    @classmethod
    def validate_currency_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    def to_snapshot(self) -> InstrumentSnapshot:
        # BICs are kept as given; format is the rule set's concern
        return InstrumentSnapshot(**self.model_dump())


class ProposalIntake(IntakeModel):
    """Commercial proposal submitted for review."""

    subject_id: str = Field(..., min_length=1, max_length=128)
    counterparty_id: str = Field(..., min_length=1, max_length=128)
    title: Optional[str] = None
    custom_message: Optional[str] = None
    product_ids: List[str] = Field(default_factory=list)
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    payment_terms: Optional[str] = None
    delivery_timeline: Optional[str] = None
    margin_pct: Optional[Decimal] = None

    @field_validator("unit_price", "total_price", mode="before")
    @classmethod
    def validate_prices(cls, v: Any, info: ValidationInfo) -> Optional[Decimal]:
        return validate_money(v, info.field_name, allow_none=True)

    @field_validator("margin_pct", mode="before")
    @classmethod
    def validate_margin(cls, v: Any) -> Optional[Decimal]:
        # Margins may be negative; only the float rule applies
        if isinstance(v, float):
            raise ValueError(f"margin_pct received float type. Received: {v}")
        return v

    @field_validator("payment_terms", mode="before")
    @classmethod
    def validate_terms_lowercase(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def to_snapshot(self) -> ProposalSnapshot:
        data = self.model_dump()
        data["product_ids"] = tuple(data["product_ids"])
        return ProposalSnapshot(**data)


SUBJECT_INTAKE_MODELS: Dict[SubjectKind, Type[IntakeModel]] = {
    SubjectKind.DEAL: DealIntake,
    SubjectKind.INSTRUMENT: InstrumentIntake,
    SubjectKind.PROPOSAL: ProposalIntake,
}


def parse_subject(kind: SubjectKind, payload: Any):
    """Validate an intake payload and return the subject snapshot."""
    return parse_intake(SUBJECT_INTAKE_MODELS[kind], payload).to_snapshot()


# ============================================================================
# REFERENCE DATA INTAKE
# ============================================================================

class JurisdictionIn(IntakeModel):
    country_code: str = Field(..., min_length=2, max_length=3)
    country: str = Field(..., min_length=1)
    sanctions_risk: str = "low"
    sanctions_notes: Optional[str] = None
    aml_notes: Optional[str] = None
    licensing_notes: Optional[str] = None
    docs_required: List[str] = Field(default_factory=list)
    source_urls: List[str] = Field(default_factory=list)
    last_reviewed_at: Optional[date] = None
    last_reviewed_by: Optional[str] = None

    @field_validator("country_code", mode="before")
    @classmethod
    def validate_code_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("sanctions_risk", mode="before")
    @classmethod
    def validate_tier(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in SANCTIONS_TIERS:
                raise ValueError(f"sanctions_risk must be one of {SANCTIONS_TIERS}")
        return v

    def to_reference(self) -> Jurisdiction:
        data = self.model_dump()
        data["docs_required"] = tuple(data["docs_required"])
        data["source_urls"] = tuple(data["source_urls"])
        return Jurisdiction(**data)


class CommodityIn(IntakeModel):
    commodity_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    hs_code: Optional[str] = None
    restricted: bool = False
    restricted_reason: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def validate_category_lowercase(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def to_reference(self) -> Commodity:
        return Commodity(**self.model_dump())


class CreditProfileIn(IntakeModel):
    counterparty_id: str = Field(..., min_length=1)
    score: int = Field(..., ge=0, le=100)
    default_payment_terms: Optional[str] = None

    def to_reference(self) -> CreditProfile:
        return CreditProfile(**self.model_dump())


__all__ = [
    "CommodityIn",
    "CreditProfileIn",
    "DealIntake",
    "ExpectedInstrumentIn",
    "INCOTERMS",
    "InstrumentIntake",
    "JurisdictionIn",
    "ProposalIntake",
    "SUBJECT_INTAKE_MODELS",
    "parse_intake",
    "parse_subject",
    "validate_money",
]

"""
============================================================================
Tradegate Risk Engine - Subject & Reference Data Models
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All monetary values use decimal.Decimal
Traceability: Every subject is addressed by a SubjectRef (kind + id)

This module defines what the rule evaluator screens:
- SubjectKind / SubjectRef: the tagged variant of screened records
- DealSnapshot, InstrumentSnapshot, ProposalSnapshot: per-kind attributes
- Jurisdiction, Commodity, CreditProfile, ReferenceData: read-only lookups
- DocumentAnalysis: advisory output of the text-generation collaborator
- EvaluationThresholds, EvaluationContext: injected time and thresholds

Snapshots are plain values. They never read the clock or the environment;
everything time- or config-dependent arrives through EvaluationContext.

============================================================================
"""

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Union, Mapping, ClassVar, FrozenSet

from services.gate_errors import ValidationError


# =============================================================================
# Subject Kind
# =============================================================================

class SubjectKind(str, Enum):
    """Kinds of record screened by the engine."""
    DEAL = "DEAL"
    INSTRUMENT = "INSTRUMENT"
    PROPOSAL = "PROPOSAL"

    @classmethod
    def parse(cls, value: Union[str, "SubjectKind"]) -> "SubjectKind":
        """Parse a kind from user input (case-insensitive)."""
        if isinstance(value, SubjectKind):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Unknown subject kind: {value!r}",
                details={"valid_kinds": [k.value for k in cls]},
            )


@dataclass(frozen=True)
class SubjectRef:
    """Reference to one screened subject."""
    kind: SubjectKind
    subject_id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.subject_id}"

    @classmethod
    def parse(cls, value: str) -> "SubjectRef":
        """Parse 'KIND:id' form."""
        kind, sep, subject_id = str(value).partition(":")
        if not sep or not subject_id:
            raise ValidationError(f"Malformed subject reference: {value!r}")
        return cls(kind=SubjectKind.parse(kind), subject_id=subject_id)


# =============================================================================
# Attribute Conversion Helpers
# =============================================================================

def to_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    """Convert a stored or user value to Decimal via its string form."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} is not a valid decimal: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got: {value!r}")
    return result


def to_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field_name} is not an ISO date: {value!r}")


class _AttributeCodec:
    """
    Mixin converting snapshot dataclasses to and from JSON attribute maps.

    Subclasses list their Decimal, date and tuple fields so the subject
    store can persist attributes as a single JSON document.
    """

    DECIMAL_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    DATE_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    TUPLE_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    TRANSIENT_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    KEY_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"subject_id", "status"})

    def to_attributes(self) -> Dict[str, Any]:
        attrs: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self.KEY_FIELDS or f.name in self.TRANSIENT_FIELDS:
                continue
            value = getattr(self, f.name)
            if value is None:
                attrs[f.name] = None
            elif f.name in self.DECIMAL_FIELDS:
                attrs[f.name] = str(value)
            elif f.name in self.DATE_FIELDS:
                attrs[f.name] = value.isoformat()
            elif f.name in self.TUPLE_FIELDS:
                attrs[f.name] = list(value)
            else:
                attrs[f.name] = value
        return attrs

    @classmethod
    def from_attributes(
        cls,
        subject_id: str,
        status: str,
        attributes: Mapping[str, Any],
    ):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        kwargs: Dict[str, Any] = {"subject_id": str(subject_id), "status": status}
        for name, value in attributes.items():
            # Tolerate columns added by newer intake flows
            if name not in known or name in cls.KEY_FIELDS or name in cls.TRANSIENT_FIELDS:
                continue
            if name in cls.DECIMAL_FIELDS:
                value = to_decimal(value, name)
            elif name in cls.DATE_FIELDS:
                value = to_date(value, name)
            elif name in cls.TUPLE_FIELDS:
                value = tuple(value or ())
            kwargs[name] = value
        return cls(**kwargs)


# =============================================================================
# Subject Snapshots
# =============================================================================

@dataclass(frozen=True)
class DealSnapshot(_AttributeCodec):
    """A trade deal as seen by the deal rule set."""

    KIND: ClassVar[SubjectKind] = SubjectKind.DEAL
    DECIMAL_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"deal_value_usd", "quantity"})

    subject_id: str
    commodity_id: str
    origin_country: str
    destination_country: str
    incoterm: str
    deal_value_usd: Decimal
    quantity: Decimal = Decimal("0")
    quantity_unit: str = ""
    currency: str = "USD"
    status: str = "UNSCREENED"

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(self.KIND, self.subject_id)


@dataclass(frozen=True)
class ExpectedInstrument:
    """
    Expected values an instrument is cross-checked against.

    Supplied per evaluation (e.g. from the deal's funding terms); absent
    fields are simply not checked.
    """
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    beneficiary: Optional[str] = None
    issuing_bic: Optional[str] = None
    expiry_date: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["ExpectedInstrument"]:
        if not data:
            return None
        return cls(
            amount=to_decimal(data.get("amount"), "expected.amount"),
            currency=data.get("currency") or None,
            beneficiary=data.get("beneficiary") or None,
            issuing_bic=data.get("issuing_bic") or None,
            expiry_date=to_date(data.get("expiry_date"), "expected.expiry_date"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "beneficiary": self.beneficiary,
            "issuing_bic": self.issuing_bic,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }


@dataclass(frozen=True)
class DocumentAnalysis:
    """
    Advisory output of the text-generation collaborator.

    Never authoritative: additional_flags only ever become non-blocking
    WARNING findings. extra keeps whatever unknown keys the collaborator
    returned.
    """
    available: bool
    parsed_fields: Mapping[str, Any] = field(default_factory=dict)
    analysis: str = ""
    additional_flags: Tuple[str, ...] = ()
    error: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "parsed_fields": dict(self.parsed_fields),
            "analysis": self.analysis,
            "additional_flags": list(self.additional_flags),
            "error": self.error,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class InstrumentSnapshot(_AttributeCodec):
    """A banking instrument (SBLC, LC, ...) as seen by the instrument rule set."""

    KIND: ClassVar[SubjectKind] = SubjectKind.INSTRUMENT
    DECIMAL_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"amount"})
    DATE_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"expiry_date"})
    TRANSIENT_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"expected", "document_analysis"})

    subject_id: str
    instrument_type: str = "SBLC"
    issuing_bank_bic: Optional[str] = None
    advising_bank_bic: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    beneficiary_name: Optional[str] = None
    expiry_date: Optional[date] = None
    applicable_rules: Optional[str] = None
    raw_text: Optional[str] = None
    status: str = "UNVERIFIED"
    # Per-evaluation inputs, never persisted with the instrument
    expected: Optional[ExpectedInstrument] = None
    document_analysis: Optional[DocumentAnalysis] = None

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(self.KIND, self.subject_id)

    def with_inputs(
        self,
        expected: Optional[ExpectedInstrument] = None,
        document_analysis: Optional[DocumentAnalysis] = None,
    ) -> "InstrumentSnapshot":
        return replace(self, expected=expected, document_analysis=document_analysis)


@dataclass(frozen=True)
class ProposalSnapshot(_AttributeCodec):
    """A commercial proposal as seen by the proposal rule set."""

    KIND: ClassVar[SubjectKind] = SubjectKind.PROPOSAL
    DECIMAL_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {"unit_price", "total_price", "margin_pct"}
    )
    TUPLE_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"product_ids"})

    subject_id: str
    counterparty_id: str
    title: Optional[str] = None
    custom_message: Optional[str] = None
    product_ids: Tuple[str, ...] = ()
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    payment_terms: Optional[str] = None
    delivery_timeline: Optional[str] = None
    margin_pct: Optional[Decimal] = None
    status: str = "DRAFT"

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(self.KIND, self.subject_id)


Subject = Union[DealSnapshot, InstrumentSnapshot, ProposalSnapshot]

SNAPSHOT_TYPES: Dict[SubjectKind, type] = {
    SubjectKind.DEAL: DealSnapshot,
    SubjectKind.INSTRUMENT: InstrumentSnapshot,
    SubjectKind.PROPOSAL: ProposalSnapshot,
}


# =============================================================================
# Reference Data
# =============================================================================

SANCTIONS_TIERS = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class Jurisdiction:
    """Per-country compliance reference row, maintained by compliance staff."""
    country_code: str
    country: str
    sanctions_risk: str = "low"
    sanctions_notes: Optional[str] = None
    aml_notes: Optional[str] = None
    licensing_notes: Optional[str] = None
    docs_required: Tuple[str, ...] = ()
    source_urls: Tuple[str, ...] = ()
    last_reviewed_at: Optional[date] = None
    last_reviewed_by: Optional[str] = None


@dataclass(frozen=True)
class Commodity:
    """Commodity registry row."""
    commodity_id: str
    name: str
    category: str
    hs_code: Optional[str] = None
    restricted: bool = False
    restricted_reason: Optional[str] = None


@dataclass(frozen=True)
class CreditProfile:
    """Counterparty credit score (0-100) from the credit scorer."""
    counterparty_id: str
    score: int
    default_payment_terms: Optional[str] = None


@dataclass(frozen=True)
class ReferenceData:
    """
    Read-only lookup tables handed to the evaluator.

    Missing rows are returned as None; the rules turn that into findings.
    """
    jurisdictions: Mapping[str, Jurisdiction] = field(default_factory=dict)
    commodities: Mapping[str, Commodity] = field(default_factory=dict)
    credit_profiles: Mapping[str, CreditProfile] = field(default_factory=dict)

    def jurisdiction(self, country_code: Optional[str]) -> Optional[Jurisdiction]:
        if not country_code:
            return None
        return self.jurisdictions.get(country_code.strip().upper())

    def commodity(self, commodity_id: Any) -> Optional[Commodity]:
        if commodity_id is None:
            return None
        return self.commodities.get(str(commodity_id))

    def credit_profile(self, counterparty_id: Optional[str]) -> Optional[CreditProfile]:
        if not counterparty_id:
            return None
        return self.credit_profiles.get(counterparty_id)


# =============================================================================
# Evaluation Context
# =============================================================================

@dataclass(frozen=True)
class EvaluationThresholds:
    """Rule thresholds, built from GateConfig."""
    aml_edd_usd: Decimal = Decimal("50000")
    aml_reporting_usd: Decimal = Decimal("100000")
    value_reporting_usd: Decimal = Decimal("10000")
    expiry_warning_days: int = 30
    amount_tolerance: Decimal = Decimal("0.01")
    min_margin_pct: Decimal = Decimal("15")
    target_margin_pct: Decimal = Decimal("20")
    high_value_proposal_usd: Decimal = Decimal("10000")
    marginal_credit_score: int = 70


@dataclass(frozen=True)
class EvaluationContext:
    """
    Everything time- or config-dependent a rule may consult.

    Passing the same context twice is what makes evaluate() repeatable.
    """
    now: datetime
    thresholds: EvaluationThresholds = field(default_factory=EvaluationThresholds)

    def __post_init__(self) -> None:
        if self.now.tzinfo is None:
            object.__setattr__(self, "now", self.now.replace(tzinfo=timezone.utc))

    @property
    def today(self) -> date:
        return self.now.astimezone(timezone.utc).date()


__all__ = [
    "SubjectKind",
    "SubjectRef",
    "DealSnapshot",
    "ExpectedInstrument",
    "DocumentAnalysis",
    "InstrumentSnapshot",
    "ProposalSnapshot",
    "Subject",
    "SNAPSHOT_TYPES",
    "SANCTIONS_TIERS",
    "Jurisdiction",
    "Commodity",
    "CreditProfile",
    "ReferenceData",
    "EvaluationThresholds",
    "EvaluationContext",
    "to_decimal",
    "to_date",
]

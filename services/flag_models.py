"""
============================================================================
Tradegate Risk Engine - Finding (Flag) Models
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Decimal values serialised as strings, never floats
Traceability: Stored findings carry evaluation_id and correlation_id

This module defines the value type shared by every rule set:
- FlagType: what kind of policy the finding is about
- FlagSeverity: LOW < MEDIUM < HIGH < CRITICAL
- Finding: immutable verdict of one rule
- StoredFinding: a persisted Finding plus its append-only resolution
- GateJSONEncoder: JSON encoder for Decimal / datetime / UUID / Enum

SEVERITY AND BLOCKING:
    severity and blocks_execution are set independently by each rule.
    A LOW finding may block and a CRITICAL finding need not. Clearance
    depends on blocks_execution only.

============================================================================
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, Any, Mapping, Iterable, List
import json
import uuid

from services.gate_errors import ValidationError
from services.subject_models import SubjectKind, SubjectRef


# =============================================================================
# Enums
# =============================================================================

class FlagType(str, Enum):
    """Policy area a finding belongs to."""
    SANCTIONS = "SANCTIONS"
    EXPORT_CONTROL = "EXPORT_CONTROL"
    LICENSING = "LICENSING"
    AML = "AML"
    DOCUMENTATION = "DOCUMENTATION"
    INCOTERM_OBLIGATION = "INCOTERM_OBLIGATION"
    VALUE_THRESHOLD = "VALUE_THRESHOLD"
    COMMODITY_RESTRICTION = "COMMODITY_RESTRICTION"
    FIELD_FORMAT = "FIELD_FORMAT"
    FIELD_MISMATCH = "FIELD_MISMATCH"
    EXPIRY = "EXPIRY"
    CREDIT_TERMS = "CREDIT_TERMS"
    PRICING = "PRICING"


_SEVERITY_RANK = {"LOW": 0, "MEDIUM": 1, "HIGH": 2, "CRITICAL": 3}


class FlagSeverity(str, Enum):
    """
    Ordered finding severity.

    Comparison uses rank, not string order: LOW < MEDIUM < HIGH < CRITICAL.
    """
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, FlagSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, FlagSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, FlagSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, FlagSeverity):
            return NotImplemented
        return self.rank >= other.rank


# Instrument checks speak INFO / WARNING / CRITICAL. INFO checks pass and
# produce no finding; WARNING maps onto MEDIUM.
WARNING = FlagSeverity.MEDIUM


# =============================================================================
# JSON Encoder
# =============================================================================

class GateJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for engine data types.

    Handles:
    - Decimal -> str (preserves precision)
    - datetime / date -> ISO format string
    - UUID -> str
    - Enum -> value
    - tuple / frozenset -> list
    - read-only mappings -> dict
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        if isinstance(obj, Mapping):
            return dict(obj)
        return super().default(obj)


def dumps(value: Any) -> str:
    """Serialise with GateJSONEncoder and sorted keys."""
    return json.dumps(value, cls=GateJSONEncoder, sort_keys=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """
    Fixed-width ISO-8601 UTC string.

    Always carries microseconds so stored timestamps sort lexically.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# Finding
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """
    Verdict of one rule on one subject.

    ============================================================================
    FINDING FIELDS:
    ============================================================================
    - rule_id: stable identifier of the emitting rule (e.g. deal.aml.edd)
    - flag_type: policy area (FlagType)
    - severity: LOW / MEDIUM / HIGH / CRITICAL
    - message: what was observed
    - recommendation: what the reviewer should do
    - requires_human_review: reviewer must look at it
    - blocks_execution: subject cannot clear while unresolved
    - metadata: open map for rule- or collaborator-specific context
    ============================================================================

    Immutable. Resolution never edits a Finding; it is recorded on the
    StoredFinding that wraps it.
    """

    rule_id: str
    flag_type: FlagType
    severity: FlagSeverity
    message: str
    recommendation: str
    requires_human_review: bool
    blocks_execution: bool
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.rule_id, str) or not self.rule_id.strip():
            raise ValidationError("Finding.rule_id must be a non-empty string")
        try:
            object.__setattr__(self, "flag_type", FlagType(self.flag_type))
        except ValueError:
            raise ValidationError(f"Unknown flag_type: {self.flag_type!r}")
        try:
            object.__setattr__(self, "severity", FlagSeverity(self.severity))
        except ValueError:
            raise ValidationError(f"Unknown severity: {self.severity!r}")
        if not isinstance(self.message, str) or not self.message.strip():
            raise ValidationError(
                "Finding.message must be a non-empty string",
                details={"rule_id": self.rule_id},
            )
        if not isinstance(self.recommendation, str):
            raise ValidationError(
                "Finding.recommendation must be a string",
                details={"rule_id": self.rule_id},
            )
        for flag_name in ("requires_human_review", "blocks_execution"):
            if not isinstance(getattr(self, flag_name), bool):
                raise ValidationError(
                    f"Finding.{flag_name} must be a bool",
                    details={"rule_id": self.rule_id},
                )
        if not isinstance(self.metadata, Mapping):
            raise ValidationError(
                "Finding.metadata must be a mapping",
                details={"rule_id": self.rule_id},
            )
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "flag_type": self.flag_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "recommendation": self.recommendation,
            "requires_human_review": self.requires_human_review,
            "blocks_execution": self.blocks_execution,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Finding":
        metadata = data.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            rule_id=data.get("rule_id"),
            flag_type=data.get("flag_type"),
            severity=data.get("severity"),
            message=data.get("message"),
            recommendation=data.get("recommendation") or "",
            requires_human_review=bool(data.get("requires_human_review")),
            blocks_execution=bool(data.get("blocks_execution")),
            metadata=metadata,
        )


# =============================================================================
# StoredFinding
# =============================================================================

@dataclass(frozen=True)
class StoredFinding:
    """
    A persisted finding and its resolution state.

    Resolution is append-only: resolved_by / resolved_at / resolution_notes
    are filled exactly once and the wrapped Finding is never modified.
    """

    finding_id: str
    subject_ref: SubjectRef
    evaluation_id: str
    finding: Finding
    created_at: datetime
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        """Unresolved and blocks execution."""
        return self.finding.blocks_execution and not self.resolved

    def to_dict(self) -> Dict[str, Any]:
        data = self.finding.to_dict()
        data.update({
            "finding_id": self.finding_id,
            "subject_kind": self.subject_ref.kind.value,
            "subject_id": self.subject_ref.subject_id,
            "evaluation_id": self.evaluation_id,
            "created_at": self.created_at.isoformat(),
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
        })
        return data


def count_by_severity(findings: Iterable[Finding]) -> Dict[str, int]:
    """Count findings per severity, every severity present in the result."""
    counts = {severity.value: 0 for severity in FlagSeverity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


def blocking_findings(findings: Iterable[Finding]) -> List[Finding]:
    return [f for f in findings if f.blocks_execution]


__all__ = [
    "FlagType",
    "FlagSeverity",
    "WARNING",
    "GateJSONEncoder",
    "dumps",
    "utc_now",
    "isoformat_utc",
    "parse_iso",
    "Finding",
    "StoredFinding",
    "SubjectKind",
    "SubjectRef",
    "count_by_severity",
    "blocking_findings",
]

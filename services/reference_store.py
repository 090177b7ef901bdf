"""
============================================================================
Tradegate Risk Engine - Reference Data Store
============================================================================

Reliability Level: L5 High
Side Effects: Reads jurisdictions / commodities / credit_profiles

Read-only lookups for the rule evaluator, plus upserts used by the
compliance staff seeding flow and tests. The evaluator never sees this
class; it receives a ReferenceData snapshot built by load_for().

============================================================================
"""

from typing import Any, Dict, Iterable, List, Optional
import json
import logging

from sqlalchemy import text

from services.flag_models import dumps
from services.subject_models import (
    Commodity,
    CreditProfile,
    DealSnapshot,
    Jurisdiction,
    ProposalSnapshot,
    ReferenceData,
    SANCTIONS_TIERS,
    Subject,
    to_date,
)
from services.gate_errors import ValidationError

# Configure module logger
logger = logging.getLogger(__name__)


class ReferenceStore:
    """
    Jurisdiction, commodity and credit lookups over a SQLAlchemy session.

    Missing rows come back as None. Turning absence into findings is the
    rule sets' job.
    """

    def __init__(self, db_session: Any) -> None:
        self._db = db_session

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_jurisdiction(self, country_code: Optional[str]) -> Optional[Jurisdiction]:
        if not country_code:
            return None
        row = self._db.execute(
            text("SELECT * FROM jurisdictions WHERE country_code = :code"),
            {"code": country_code.strip().upper()},
        ).mappings().first()
        return _jurisdiction_from_row(row) if row else None

    def get_commodity(self, commodity_id: Any) -> Optional[Commodity]:
        if commodity_id is None or str(commodity_id) == "":
            return None
        row = self._db.execute(
            text("SELECT * FROM commodities WHERE id = :id"),
            {"id": str(commodity_id)},
        ).mappings().first()
        if row is None:
            return None
        return Commodity(
            commodity_id=row["id"],
            name=row["name"],
            category=row["category"],
            hs_code=row["hs_code"],
            restricted=bool(row["restricted"]),
            restricted_reason=row["restricted_reason"],
        )

    def get_credit_profile(self, counterparty_id: Optional[str]) -> Optional[CreditProfile]:
        if not counterparty_id:
            return None
        row = self._db.execute(
            text("SELECT * FROM credit_profiles WHERE counterparty_id = :id"),
            {"id": counterparty_id},
        ).mappings().first()
        if row is None:
            return None
        return CreditProfile(
            counterparty_id=row["counterparty_id"],
            score=int(row["score"]),
            default_payment_terms=row["default_payment_terms"],
        )

    def load_for(self, subject: Subject) -> ReferenceData:
        """Build the ReferenceData snapshot a subject's rule set needs."""
        jurisdictions: Dict[str, Jurisdiction] = {}
        commodities: Dict[str, Commodity] = {}
        credit_profiles: Dict[str, CreditProfile] = {}

        if isinstance(subject, DealSnapshot):
            for code in (subject.destination_country, subject.origin_country):
                jurisdiction = self.get_jurisdiction(code)
                if jurisdiction is not None:
                    jurisdictions[jurisdiction.country_code] = jurisdiction
            commodity = self.get_commodity(subject.commodity_id)
            if commodity is not None:
                commodities[commodity.commodity_id] = commodity
        elif isinstance(subject, ProposalSnapshot):
            profile = self.get_credit_profile(subject.counterparty_id)
            if profile is not None:
                credit_profiles[profile.counterparty_id] = profile

        return ReferenceData(
            jurisdictions=jurisdictions,
            commodities=commodities,
            credit_profiles=credit_profiles,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def upsert_jurisdiction(self, jurisdiction: Jurisdiction) -> None:
        tier = (jurisdiction.sanctions_risk or "").strip().lower()
        if tier not in SANCTIONS_TIERS:
            raise ValidationError(
                f"Unknown sanctions tier: {jurisdiction.sanctions_risk!r}",
                details={"valid_tiers": list(SANCTIONS_TIERS)},
            )
        params = {
            "country_code": jurisdiction.country_code.strip().upper(),
            "country": jurisdiction.country,
            "sanctions_risk": tier,
            "sanctions_notes": jurisdiction.sanctions_notes,
            "aml_notes": jurisdiction.aml_notes,
            "licensing_notes": jurisdiction.licensing_notes,
            "docs_required": dumps(list(jurisdiction.docs_required)),
            "source_urls": dumps(list(jurisdiction.source_urls)),
            "last_reviewed_at": (
                jurisdiction.last_reviewed_at.isoformat()
                if jurisdiction.last_reviewed_at else None
            ),
            "last_reviewed_by": jurisdiction.last_reviewed_by,
        }
        self._upsert("jurisdictions", "country_code", params)

    def upsert_commodity(self, commodity: Commodity) -> None:
        self._upsert("commodities", "id", {
            "id": str(commodity.commodity_id),
            "name": commodity.name,
            "category": commodity.category,
            "hs_code": commodity.hs_code,
            "restricted": bool(commodity.restricted),
            "restricted_reason": commodity.restricted_reason,
        })

    def upsert_credit_profile(self, profile: CreditProfile) -> None:
        if not 0 <= int(profile.score) <= 100:
            raise ValidationError(f"Credit score must be within 0-100, got: {profile.score}")
        self._upsert("credit_profiles", "counterparty_id", {
            "counterparty_id": profile.counterparty_id,
            "score": int(profile.score),
            "default_payment_terms": profile.default_payment_terms,
        })

    def seed(
        self,
        jurisdictions: Iterable[Jurisdiction] = (),
        commodities: Iterable[Commodity] = (),
        credit_profiles: Iterable[CreditProfile] = (),
    ) -> None:
        """Upsert a batch of reference rows in one transaction."""
        counts = {"jurisdictions": 0, "commodities": 0, "credit_profiles": 0}
        for jurisdiction in jurisdictions:
            self.upsert_jurisdiction(jurisdiction)
            counts["jurisdictions"] += 1
        for commodity in commodities:
            self.upsert_commodity(commodity)
            counts["commodities"] += 1
        for profile in credit_profiles:
            self.upsert_credit_profile(profile)
            counts["credit_profiles"] += 1
        self._db.commit()
        logger.info(
            f"[REFERENCE] Reference data seeded | "
            f"jurisdictions={counts['jurisdictions']} | "
            f"commodities={counts['commodities']} | "
            f"credit_profiles={counts['credit_profiles']}"
        )

    def _upsert(self, table: str, key: str, params: Dict[str, Any]) -> None:
        columns: List[str] = [c for c in params if c != key]
        assignments = ", ".join(f"{c} = :{c}" for c in columns)
        result = self._db.execute(
            text(f"UPDATE {table} SET {assignments} WHERE {key} = :{key}"),
            params,
        )
        if result.rowcount == 0:
            names = ", ".join(params)
            values = ", ".join(f":{c}" for c in params)
            self._db.execute(text(f"INSERT INTO {table} ({names}) VALUES ({values})"), params)


def _jurisdiction_from_row(row: Any) -> Jurisdiction:
    return Jurisdiction(
        country_code=row["country_code"],
        country=row["country"],
        sanctions_risk=row["sanctions_risk"],
        sanctions_notes=row["sanctions_notes"],
        aml_notes=row["aml_notes"],
        licensing_notes=row["licensing_notes"],
        docs_required=tuple(json.loads(row["docs_required"] or "[]")),
        source_urls=tuple(json.loads(row["source_urls"] or "[]")),
        last_reviewed_at=to_date(row["last_reviewed_at"], "last_reviewed_at"),
        last_reviewed_by=row["last_reviewed_by"],
    )


__all__ = ["ReferenceStore"]

"""
Shared fixtures for the Tradegate test suite.

Every database test runs against a fresh in-memory SQLite engine built by
create_schema(). StaticPool keeps the single connection alive so the
schema and data survive across sessions of one test.
"""

import os
import sys
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.database.schema import create_schema
from services.gate_config import GateConfig
from services.reference_store import ReferenceStore
from services.risk_gate import RiskGateService
from services.subject_models import (
    Commodity,
    CreditProfile,
    EvaluationContext,
    Jurisdiction,
    ReferenceData,
)


FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Reference Data
# =============================================================================

JURISDICTIONS = (
    Jurisdiction(
        country_code="ZA",
        country="South Africa",
        sanctions_risk="low",
        docs_required=("Certificate of Origin",),
        last_reviewed_at=date(2026, 7, 1),
        last_reviewed_by="compliance-team",
    ),
    Jurisdiction(
        country_code="AE",
        country="United Arab Emirates",
        sanctions_risk="medium",
        docs_required=("Certificate of Origin", "Import Permit"),
    ),
    Jurisdiction(
        country_code="RU",
        country="Russia",
        sanctions_risk="high",
        sanctions_notes="Sectoral sanctions apply.",
    ),
    Jurisdiction(
        country_code="IR",
        country="Iran",
        sanctions_risk="critical",
        sanctions_notes="Comprehensive embargo.",
    ),
)

COMMODITIES = (
    Commodity(commodity_id="COM-COPPER", name="Copper Cathode", category="metals", hs_code="7403.11"),
    Commodity(commodity_id="COM-GOLD", name="Gold Dore Bar", category="metals", hs_code="7108.12"),
    Commodity(commodity_id="COM-WHEAT", name="Milling Wheat", category="agricultural", hs_code="1001.99"),
    Commodity(
        commodity_id="COM-DUAL",
        name="Maraging Steel",
        category="metals",
        restricted=True,
        restricted_reason="Dual-use export control",
    ),
)

CREDIT_PROFILES = (
    CreditProfile(counterparty_id="CP-STRONG", score=85, default_payment_terms="net-30"),
    CreditProfile(counterparty_id="CP-MID", score=68, default_payment_terms="net-15"),
    CreditProfile(counterparty_id="CP-WEAK", score=40, default_payment_terms="prepay"),
)


def reference_data() -> ReferenceData:
    """In-memory lookups matching the seeded tables."""
    return ReferenceData(
        jurisdictions={j.country_code: j for j in JURISDICTIONS},
        commodities={c.commodity_id: c for c in COMMODITIES},
        credit_profiles={p.counterparty_id: p for p in CREDIT_PROFILES},
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def context() -> EvaluationContext:
    return EvaluationContext(now=FIXED_NOW)


@pytest.fixture
def reference() -> ReferenceData:
    return reference_data()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def seeded_session(db_session):
    ReferenceStore(db_session).seed(JURISDICTIONS, COMMODITIES, CREDIT_PROFILES)
    return db_session


@pytest.fixture
def gate_config() -> GateConfig:
    return GateConfig(allowed_reviewers={"alice", "bob"})


@pytest.fixture
def gate(seeded_session, gate_config) -> RiskGateService:
    return RiskGateService(
        seeded_session,
        config=gate_config,
        ledger_clients={},
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def deal_payload():
    return {
        "subject_id": "DEAL-001",
        "commodity_id": "COM-COPPER",
        "origin_country": "ZA",
        "destination_country": "AE",
        "incoterm": "CIF",
        "deal_value_usd": "25000.00",
        "quantity": "10",
        "quantity_unit": "MT",
    }

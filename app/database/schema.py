"""
============================================================================
Tradegate Risk Engine
Database Schema - SQLAlchemy Core Table Metadata
============================================================================

Reliability Level: L6 Critical
Side Effects: create_schema() issues DDL

Tables are declared with SQLAlchemy Core so the same metadata builds a
PostgreSQL schema in production and an in-memory SQLite schema in tests.
Application code talks to them through raw text() statements.

PORTABILITY:
- JSON documents are stored as TEXT (serialised with GateJSONEncoder)
- Timestamps are stored as ISO-8601 UTC strings
- audit_log.seq is the only autoincrement column and defines trail order

APPEND-ONLY TABLES:
- audit_log: INSERT only
- compliance_flags: INSERT, plus one conditional UPDATE per row (resolution)

============================================================================
"""

from sqlalchemy import (
    MetaData, Table, Column, String, Integer, Boolean, Text, Index,
    ForeignKey, UniqueConstraint,
)
from sqlalchemy.engine import Engine


metadata = MetaData()


screening_subjects = Table(
    "screening_subjects",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("subject_kind", String(16), primary_key=True),
    Column("status", String(32), nullable=False),
    Column("attributes", Text, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)
Index("ix_screening_subjects_status", screening_subjects.c.subject_kind, screening_subjects.c.status)


jurisdictions = Table(
    "jurisdictions",
    metadata,
    Column("country_code", String(3), primary_key=True),
    Column("country", String(128), nullable=False),
    Column("sanctions_risk", String(16), nullable=False, default="low"),
    Column("sanctions_notes", Text),
    Column("aml_notes", Text),
    Column("licensing_notes", Text),
    Column("docs_required", Text, nullable=False, default="[]"),
    Column("source_urls", Text, nullable=False, default="[]"),
    Column("last_reviewed_at", String(40)),
    Column("last_reviewed_by", String(128)),
)


commodities = Table(
    "commodities",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(128), nullable=False),
    Column("category", String(64), nullable=False),
    Column("hs_code", String(16)),
    Column("restricted", Boolean, nullable=False, default=False),
    Column("restricted_reason", Text),
)


credit_profiles = Table(
    "credit_profiles",
    metadata,
    Column("counterparty_id", String(64), primary_key=True),
    Column("score", Integer, nullable=False),
    Column("default_payment_terms", String(32)),
)


compliance_flags = Table(
    "compliance_flags",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("subject_kind", String(16), nullable=False),
    Column("subject_id", String(64), nullable=False),
    Column("evaluation_id", String(36), nullable=False),
    Column("rule_id", String(128), nullable=False),
    Column("flag_type", String(32), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("severity_rank", Integer, nullable=False),
    Column("message", Text, nullable=False),
    Column("recommendation", Text, nullable=False),
    Column("requires_human_review", Boolean, nullable=False),
    Column("blocks_execution", Boolean, nullable=False),
    Column("metadata", Text, nullable=False, default="{}"),
    Column("position", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("resolved", Boolean, nullable=False, default=False),
    Column("resolved_by", String(128)),
    Column("resolved_at", String(40)),
    Column("resolution_notes", Text),
)
Index("ix_compliance_flags_subject", compliance_flags.c.subject_kind, compliance_flags.c.subject_id)
Index("ix_compliance_flags_open", compliance_flags.c.resolved, compliance_flags.c.blocks_execution)


audit_log = Table(
    "audit_log",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(36), nullable=False, unique=True),
    Column("actor", String(128), nullable=False),
    Column("action", String(64), nullable=False),
    Column("subject_ref", String(160), nullable=False),
    Column("metadata", Text, nullable=False, default="{}"),
    Column("correlation_id", String(64)),
    Column("created_at", String(40), nullable=False),
)
Index("ix_audit_log_subject", audit_log.c.subject_ref)


proof_anchors = Table(
    "proof_anchors",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("object_type", String(64), nullable=False),
    Column("object_id", String(128), nullable=False),
    Column("canonical_hash", String(64), nullable=False),
    Column("requested_chains", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)
Index("ix_proof_anchors_object", proof_anchors.c.object_type, proof_anchors.c.object_id)


proof_anchor_chains = Table(
    "proof_anchor_chains",
    metadata,
    Column("anchor_id", String(36), ForeignKey("proof_anchors.id"), nullable=False),
    Column("chain", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("tx_hash", String(128)),
    Column("confirmed", Boolean, nullable=False, default=False),
    Column("error", Text),
    Column("submitted_at", String(40)),
    Column("confirmed_at", String(40)),
    UniqueConstraint("anchor_id", "chain", name="uq_proof_anchor_chain"),
)


def create_schema(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    metadata.create_all(engine)


__all__ = [
    "metadata",
    "screening_subjects",
    "jurisdictions",
    "commodities",
    "credit_profiles",
    "compliance_flags",
    "audit_log",
    "proof_anchors",
    "proof_anchor_chains",
    "create_schema",
]

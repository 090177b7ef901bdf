"""
============================================================================
Tradegate Risk Engine - Finding Persistence & Clearance
============================================================================

Reliability Level: L6 Critical
Side Effects: Reads/writes compliance_flags

Findings are written once per evaluation run, never merged or deduped:
each run is its own audit event. The only mutation a stored finding
ever sees is its resolution, applied by a conditional update:

    UPDATE compliance_flags
       SET resolved = true, resolved_by = ..., resolved_at = ..., resolution_notes = ...
     WHERE id = :id AND resolved = false

Clearance is computed from the table on every call, never cached.

ERROR CODES:
    - GATE-010: Empty resolver or notes
    - GATE-020: Finding not found
    - GATE-030: Finding already resolved

============================================================================
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import json
import logging
import uuid

from sqlalchemy import text

from services.flag_models import (
    Finding,
    FlagSeverity,
    StoredFinding,
    dumps,
    isoformat_utc,
    parse_iso,
    utc_now,
)
from services.gate_errors import NotFoundError, PreconditionError, ValidationError
from services.subject_models import SubjectKind, SubjectRef

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500

_SELECT_FINDINGS = """
    SELECT id, subject_kind, subject_id, evaluation_id, rule_id, flag_type,
           severity, message, recommendation, requires_human_review,
           blocks_execution, metadata, created_at, resolved, resolved_by,
           resolved_at, resolution_notes
      FROM compliance_flags
"""


class FindingStore:
    """Append-only finding persistence with compare-and-set resolution."""

    def __init__(self, db_session: Any) -> None:
        self._db = db_session

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def persist(
        self,
        ref: SubjectRef,
        evaluation_id: str,
        findings: Iterable[Finding],
        created_at: Optional[datetime] = None,
    ) -> List[StoredFinding]:
        """
        Insert each finding once, in rule order.

        Does not commit; the caller commits together with the status change.
        """
        created = created_at or utc_now()
        created_iso = isoformat_utc(created)
        stored: List[StoredFinding] = []
        for position, finding in enumerate(findings):
            finding_id = str(uuid.uuid4())
            self._db.execute(
                text("""
                    INSERT INTO compliance_flags (
                        id, subject_kind, subject_id, evaluation_id, rule_id,
                        flag_type, severity, severity_rank, message, recommendation,
                        requires_human_review, blocks_execution, metadata,
                        position, created_at, resolved
                    ) VALUES (
                        :id, :subject_kind, :subject_id, :evaluation_id, :rule_id,
                        :flag_type, :severity, :severity_rank, :message, :recommendation,
                        :requires_human_review, :blocks_execution, :metadata,
                        :position, :created_at, :resolved
                    )
                """),
                {
                    "id": finding_id,
                    "subject_kind": ref.kind.value,
                    "subject_id": ref.subject_id,
                    "evaluation_id": evaluation_id,
                    "rule_id": finding.rule_id,
                    "flag_type": finding.flag_type.value,
                    "severity": finding.severity.value,
                    "severity_rank": finding.severity.rank,
                    "message": finding.message,
                    "recommendation": finding.recommendation,
                    "requires_human_review": finding.requires_human_review,
                    "blocks_execution": finding.blocks_execution,
                    "metadata": dumps(dict(finding.metadata)),
                    "position": position,
                    "created_at": created_iso,
                    "resolved": False,
                },
            )
            stored.append(StoredFinding(
                finding_id=finding_id,
                subject_ref=ref,
                evaluation_id=evaluation_id,
                finding=finding,
                created_at=parse_iso(created_iso),
            ))
        return stored

    def resolve(
        self,
        finding_id: str,
        resolved_by: str,
        notes: str,
        resolved_at: Optional[datetime] = None,
    ) -> StoredFinding:
        """
        Resolve a finding exactly once. Commits.

        Raises:
            ValidationError: Empty resolver or notes (GATE-010)
            NotFoundError: Unknown finding (GATE-020)
            PreconditionError: Already resolved, including a lost race (GATE-030)
        """
        if not resolved_by or not resolved_by.strip():
            raise ValidationError("Resolver identity is required")
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")

        result = self._db.execute(
            text("""
                UPDATE compliance_flags
                   SET resolved = :resolved,
                       resolved_by = :resolved_by,
                       resolved_at = :resolved_at,
                       resolution_notes = :notes
                 WHERE id = :id
                   AND resolved = :unresolved
            """),
            {
                "id": finding_id,
                "resolved": True,
                "unresolved": False,
                "resolved_by": resolved_by.strip(),
                "resolved_at": isoformat_utc(resolved_at or utc_now()),
                "notes": notes.strip(),
            },
        )
        if result.rowcount != 1:
            self._db.rollback()
            existing = self.get(finding_id)
            raise PreconditionError(
                f"Finding {finding_id} is already resolved",
                details={
                    "finding_id": finding_id,
                    "resolved_by": existing.resolved_by,
                    "resolved_at": (
                        existing.resolved_at.isoformat() if existing.resolved_at else None
                    ),
                },
            )
        self._db.commit()
        return self.get(finding_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, finding_id: str) -> StoredFinding:
        row = self._db.execute(
            text(_SELECT_FINDINGS + " WHERE id = :id"),
            {"id": finding_id},
        ).mappings().first()
        if row is None:
            raise NotFoundError(
                f"Finding {finding_id} not found",
                details={"finding_id": finding_id},
            )
        return _stored_from_row(row)

    def for_subject(self, ref: SubjectRef) -> List[StoredFinding]:
        """Every finding of a subject, oldest run first, rule order within a run."""
        rows = self._db.execute(
            text(_SELECT_FINDINGS + """
                 WHERE subject_kind = :kind AND subject_id = :id
                 ORDER BY created_at ASC, position ASC
            """),
            {"kind": ref.kind.value, "id": ref.subject_id},
        ).mappings().all()
        return [_stored_from_row(row) for row in rows]

    def unresolved_blocking(self, ref: SubjectRef) -> List[StoredFinding]:
        rows = self._db.execute(
            text(_SELECT_FINDINGS + """
                 WHERE subject_kind = :kind AND subject_id = :id
                   AND blocks_execution = :blocking
                   AND resolved = :unresolved
                 ORDER BY created_at ASC, position ASC
            """),
            {
                "kind": ref.kind.value,
                "id": ref.subject_id,
                "blocking": True,
                "unresolved": False,
            },
        ).mappings().all()
        return [_stored_from_row(row) for row in rows]

    def has_unresolved_blocking(self, ref: SubjectRef) -> bool:
        return len(self.unresolved_blocking(ref)) > 0

    def list(
        self,
        subject_ref: Optional[SubjectRef] = None,
        severity: Optional[FlagSeverity] = None,
        resolved: Optional[bool] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[StoredFinding]:
        """
        Filtered listing, CRITICAL first, then newest first.

        limit is clamped to 1..MAX_LIST_LIMIT.
        """
        clauses: List[str] = []
        params: Dict[str, Any] = {"limit": max(1, min(int(limit), MAX_LIST_LIMIT))}
        if subject_ref is not None:
            clauses.append("subject_kind = :kind AND subject_id = :id")
            params.update({"kind": subject_ref.kind.value, "id": subject_ref.subject_id})
        if severity is not None:
            clauses.append("severity = :severity")
            params["severity"] = FlagSeverity(severity).value
        if resolved is not None:
            clauses.append("resolved = :resolved")
            params["resolved"] = bool(resolved)

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self._db.execute(
            text(
                _SELECT_FINDINGS + where
                + " ORDER BY severity_rank DESC, created_at DESC, position ASC LIMIT :limit"
            ),
            params,
        ).mappings().all()
        return [_stored_from_row(row) for row in rows]

    def count_unresolved_by_severity(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in FlagSeverity}
        rows = self._db.execute(
            text("""
                SELECT severity, COUNT(*) AS total
                  FROM compliance_flags
                 WHERE resolved = :unresolved
                 GROUP BY severity
            """),
            {"unresolved": False},
        ).mappings().all()
        for row in rows:
            counts[row["severity"]] = int(row["total"])
        return counts


def _stored_from_row(row: Any) -> StoredFinding:
    finding = Finding(
        rule_id=row["rule_id"],
        flag_type=row["flag_type"],
        severity=row["severity"],
        message=row["message"],
        recommendation=row["recommendation"],
        requires_human_review=bool(row["requires_human_review"]),
        blocks_execution=bool(row["blocks_execution"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )
    return StoredFinding(
        finding_id=row["id"],
        subject_ref=SubjectRef(SubjectKind(row["subject_kind"]), row["subject_id"]),
        evaluation_id=row["evaluation_id"],
        finding=finding,
        created_at=parse_iso(row["created_at"]),
        resolved=bool(row["resolved"]),
        resolved_by=row["resolved_by"],
        resolved_at=parse_iso(row["resolved_at"]),
        resolution_notes=row["resolution_notes"],
    )


__all__ = ["FindingStore", "DEFAULT_LIST_LIMIT", "MAX_LIST_LIMIT"]

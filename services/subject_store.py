"""
============================================================================
Tradegate Risk Engine - Subject Store
============================================================================

Reliability Level: L6 Critical
Side Effects: Reads/writes screening_subjects

Persistence for deals, instruments and proposals. Domain attributes are
one JSON document per row; status is a separate column so it can be
protected by compare-and-set.

COMPARE-AND-SET:
    UPDATE screening_subjects
       SET status = :target, version = version + 1, updated_at = :now
     WHERE id = :id AND subject_kind = :kind AND status = :expected

    rowcount == 1 -> the caller won
    rowcount == 0 -> the subject is missing or someone else moved it first

The store refuses to write an APPROVED label for an AUTOMATED actor, so
the automated path cannot approve even if a caller gets the state
machine wrong.

ERROR CODES:
    - GATE-010: Malformed subject / duplicate intake
    - GATE-020: Subject not found
    - GATE-030: Automated actor attempted an approval write

============================================================================
"""

from typing import Any, Dict, Optional
import json
import logging

from sqlalchemy import text

from services.flag_models import dumps, isoformat_utc, utc_now
from services.gate_errors import NotFoundError, PreconditionError, ValidationError
from services.gate_state_machine import (
    GateState,
    TransitionActor,
    from_label,
    initial_label,
)
from services.subject_models import SNAPSHOT_TYPES, Subject, SubjectRef

# Configure module logger
logger = logging.getLogger(__name__)


class SubjectStore:
    """Read/write access to screened subjects."""

    def __init__(self, db_session: Any) -> None:
        self._db = db_session

    def create(self, subject: Subject, correlation_id: Optional[str] = None) -> Subject:
        """
        Insert a new subject in its kind's initial status.

        Raises:
            ValidationError: If the subject already exists (GATE-010)
        """
        ref = subject.ref
        if self._load_row(ref) is not None:
            raise ValidationError(
                f"{ref} already exists",
                details={"subject_ref": str(ref)},
            )
        status = initial_label(ref.kind)
        now = isoformat_utc(utc_now())
        self._db.execute(
            text("""
                INSERT INTO screening_subjects (
                    id, subject_kind, status, attributes, version, created_at, updated_at
                ) VALUES (
                    :id, :kind, :status, :attributes, 1, :now, :now
                )
            """),
            {
                "id": ref.subject_id,
                "kind": ref.kind.value,
                "status": status,
                "attributes": dumps(subject.to_attributes()),
                "now": now,
            },
        )
        self._db.commit()
        logger.info(
            f"[SUBJECT] Subject created | subject_ref={ref} | status={status} | "
            f"correlation_id={correlation_id}"
        )
        return self.get(ref)

    def get(self, ref: SubjectRef) -> Subject:
        """
        Load a subject snapshot.

        Raises:
            NotFoundError: If the subject does not exist (GATE-020)
        """
        row = self._load_row(ref)
        if row is None:
            raise NotFoundError(f"{ref} not found", details={"subject_ref": str(ref)})
        snapshot_type = SNAPSHOT_TYPES[ref.kind]
        return snapshot_type.from_attributes(
            row["id"], row["status"], json.loads(row["attributes"]),
        )

    def get_status(self, ref: SubjectRef) -> str:
        row = self._load_row(ref)
        if row is None:
            raise NotFoundError(f"{ref} not found", details={"subject_ref": str(ref)})
        return row["status"]

    def get_version(self, ref: SubjectRef) -> int:
        row = self._load_row(ref)
        if row is None:
            raise NotFoundError(f"{ref} not found", details={"subject_ref": str(ref)})
        return int(row["version"])

    def compare_and_set_status(
        self,
        ref: SubjectRef,
        expected_status: str,
        target_status: str,
        actor: TransitionActor,
    ) -> bool:
        """
        Move status from expected to target in one conditional update.

        Does not commit; the caller commits together with its findings.

        Returns:
            True if this call won, False if the row was missing or moved

        Raises:
            PreconditionError: If an automated actor targets APPROVED (GATE-030)
        """
        target_state = from_label(ref.kind, target_status)
        if actor == TransitionActor.AUTOMATED and target_state == GateState.APPROVED:
            raise PreconditionError(
                f"Automated path cannot write {target_status} for {ref}",
                details={"subject_ref": str(ref), "target_status": target_status},
            )
        result = self._db.execute(
            text("""
                UPDATE screening_subjects
                   SET status = :target,
                       version = version + 1,
                       updated_at = :now
                 WHERE id = :id
                   AND subject_kind = :kind
                   AND status = :expected
            """),
            {
                "id": ref.subject_id,
                "kind": ref.kind.value,
                "expected": expected_status,
                "target": target_status,
                "now": isoformat_utc(utc_now()),
            },
        )
        return result.rowcount == 1

    def count_by_status(self) -> Dict[str, Dict[str, int]]:
        """Subjects per kind per status label."""
        rows = self._db.execute(
            text("""
                SELECT subject_kind, status, COUNT(*) AS total
                  FROM screening_subjects
                 GROUP BY subject_kind, status
            """)
        ).mappings().all()
        counts: Dict[str, Dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["subject_kind"], {})[row["status"]] = int(row["total"])
        return counts

    def _load_row(self, ref: SubjectRef) -> Optional[Any]:
        return self._db.execute(
            text("""
                SELECT id, subject_kind, status, attributes, version
                  FROM screening_subjects
                 WHERE id = :id AND subject_kind = :kind
            """),
            {"id": ref.subject_id, "kind": ref.kind.value},
        ).mappings().first()


__all__ = ["SubjectStore"]

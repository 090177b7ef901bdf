"""
============================================================================
Tradegate Risk Engine - Audit Log
============================================================================

Reliability Level: L6 Critical
Traceability: Every entry carries actor, action, subject_ref, correlation_id
Retention: 5-7 years (policy, enforced outside this module)

Append-only record of every evaluation run, finding resolution, human
decision and proof-anchor chain outcome. This log is the system of record
for "was the gate actually observed", independent of the mutable subject
and finding tables.

DURABILITY MODEL:
    record() runs after the primary mutation has committed. If the INSERT
    fails the primary mutation stands: the entry is written as JSON to the
    `audit.fallback` logger at ERROR and gate_audit_fallback_total is
    incremented. record() never raises.

There is no update or delete operation.

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
import json
import logging
import uuid

from sqlalchemy import text

from app.observability.metrics import record_audit_fallback
from services.flag_models import dumps, isoformat_utc, parse_iso, utc_now
from services.subject_models import SubjectRef

# Configure module logger
logger = logging.getLogger(__name__)

# Dedicated channel for entries that could not be persisted
fallback_logger = logging.getLogger("audit.fallback")


# =============================================================================
# Actions
# =============================================================================

class AuditAction:
    """Audit action names."""
    EVALUATION_RUN = "EVALUATION_RUN"
    FINDING_RESOLVED = "FINDING_RESOLVED"
    SUBJECT_APPROVED = "SUBJECT_APPROVED"
    SUBJECT_REJECTED = "SUBJECT_REJECTED"
    ANCHOR_PENDING = "ANCHOR_PENDING"
    ANCHOR_CHAIN_SUBMITTED = "ANCHOR_CHAIN_SUBMITTED"
    ANCHOR_CHAIN_FAILED = "ANCHOR_CHAIN_FAILED"
    ANCHOR_CHAIN_CONFIRMED = "ANCHOR_CHAIN_CONFIRMED"


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit record."""
    entry_id: str
    actor: str
    action: str
    subject_ref: str
    metadata: Mapping[str, Any]
    timestamp: datetime
    correlation_id: Optional[str] = None
    seq: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "seq": self.seq,
            "actor": self.actor,
            "action": self.action,
            "subject_ref": self.subject_ref,
            "metadata": json.loads(dumps(dict(self.metadata))),
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


class AuditLog:
    """
    Append-only audit sink over a SQLAlchemy session.

    The session must not hold uncommitted work from another operation when
    record() is called: record() commits on success and rolls back on
    failure.
    """

    def __init__(self, db_session: Any) -> None:
        self._db = db_session

    def record(
        self,
        actor: str,
        action: str,
        subject_ref: Union[SubjectRef, str],
        metadata: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """
        Append one entry. Never raises.

        Returns:
            The entry, whether it reached the database or only the fallback
            logger (seq is None in the latter case)
        """
        entry = AuditLogEntry(
            entry_id=str(uuid.uuid4()),
            actor=actor,
            action=action,
            subject_ref=str(subject_ref),
            metadata=dict(metadata or {}),
            timestamp=utc_now(),
            correlation_id=correlation_id,
        )

        try:
            self._db.execute(
                text("""
                    INSERT INTO audit_log (
                        id, actor, action, subject_ref, metadata,
                        correlation_id, created_at
                    ) VALUES (
                        :id, :actor, :action, :subject_ref, :metadata,
                        :correlation_id, :created_at
                    )
                """),
                {
                    "id": entry.entry_id,
                    "actor": entry.actor,
                    "action": entry.action,
                    "subject_ref": entry.subject_ref,
                    "metadata": dumps(dict(entry.metadata)),
                    "correlation_id": entry.correlation_id,
                    "created_at": isoformat_utc(entry.timestamp),
                },
            )
            self._db.commit()

            logger.debug(
                f"[AUDIT] Audit entry created | "
                f"action={action} | "
                f"subject_ref={entry.subject_ref} | "
                f"correlation_id={correlation_id}"
            )
        except Exception as e:
            self._rollback_quietly(correlation_id)
            logger.error(
                f"[AUDIT] Failed to persist audit entry | "
                f"action={action} | "
                f"error={str(e)} | "
                f"correlation_id={correlation_id}"
            )
            fallback_logger.error(dumps(entry.to_dict()))
            record_audit_fallback()

        return entry

    def get_audit_trail(self, subject_ref: Union[SubjectRef, str]) -> List[AuditLogEntry]:
        """Entries for one subject in insertion order."""
        rows = self._db.execute(
            text("""
                SELECT seq, id, actor, action, subject_ref, metadata,
                       correlation_id, created_at
                  FROM audit_log
                 WHERE subject_ref = :subject_ref
                 ORDER BY seq ASC
            """),
            {"subject_ref": str(subject_ref)},
        ).mappings().all()
        return [
            AuditLogEntry(
                entry_id=row["id"],
                actor=row["actor"],
                action=row["action"],
                subject_ref=row["subject_ref"],
                metadata=json.loads(row["metadata"] or "{}"),
                timestamp=parse_iso(row["created_at"]),
                correlation_id=row["correlation_id"],
                seq=int(row["seq"]),
            )
            for row in rows
        ]

    def _rollback_quietly(self, correlation_id: Optional[str]) -> None:
        try:
            self._db.rollback()
        except Exception as e:
            logger.error(
                f"[AUDIT] Rollback after failed audit write also failed | "
                f"error={str(e)} | correlation_id={correlation_id}"
            )


__all__ = ["AuditAction", "AuditLog", "AuditLogEntry", "fallback_logger"]

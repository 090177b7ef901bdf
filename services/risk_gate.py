"""
============================================================================
Tradegate Risk Engine - Risk Gate Service
============================================================================

Reliability Level: L6 Critical
Traceability: Every operation carries a correlation_id into logs and audit
Side Effects: Subject/finding writes, audit entries, metrics, collaborator
              calls (text generation, ledgers)

PRIME DIRECTIVE:
    "Rules flag. Humans clear."

Produced interface for deal, instrument and proposal screening:
    evaluate(kind, subject_id)            -> EvaluationResult
    resolve_finding(id, resolver, notes)  -> StoredFinding
    approve(ref, approver, notes)         -> DecisionResult
    reject(ref, approver, reason)         -> DecisionResult
    anchor(type, id, data, chains)        -> ProofAnchor
    get_audit_trail(ref)                  -> [AuditLogEntry]

GATE INVARIANT:
    The automated path moves a subject only to UNDER_REVIEW or REJECTED.
    APPROVED is written by approve() alone, only from UNDER_REVIEW, only
    with zero unresolved blocking findings, and only by an authorised
    human reviewer. Decisions are single-row compare-and-set updates: the
    loser of a race receives PreconditionError.

ERROR CODES:
    - GATE-010: Malformed subject, payload or decision input
    - GATE-020: Subject, finding or anchor not found
    - GATE-030: Gate precondition failed
    - GATE-050: Collaborator failure (always downgraded, never raised here)

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import time
import uuid

from app.infra.textgen_client import TextGenerationClient
from app.observability.metrics import (
    record_decision,
    record_evaluation,
    record_finding_resolved,
)
from app.schemas.subjects import ExpectedInstrumentIn, parse_intake, parse_subject
from services.audit_log import AuditAction, AuditLog, AuditLogEntry
from services.document_analysis import DocumentAnalyzer, analysis_summary
from services.finding_store import DEFAULT_LIST_LIMIT, FindingStore
from services.flag_models import FlagSeverity, StoredFinding, count_by_severity, utc_now
from services.gate_config import GateConfig, get_gate_config
from services.gate_errors import GateErrorCode, PreconditionError, ValidationError
from services.gate_state_machine import (
    GateState,
    TransitionActor,
    automated_target,
    from_label,
    require_transition,
    to_label,
)
from services.instrument_rules import InstrumentVerificationResult, summarize_instrument
from services.proof_anchor import ProofAnchor, ProofAnchorService, build_ledger_clients
from services.reference_store import ReferenceStore
from services.rule_evaluator import evaluate as run_rules
from services.subject_models import (
    EvaluationContext,
    ExpectedInstrument,
    InstrumentSnapshot,
    Subject,
    SubjectKind,
    SubjectRef,
)
from services.subject_store import SubjectStore

# Configure module logger
logger = logging.getLogger(__name__)

EVALUATOR_ACTOR = "RULE-EVALUATOR"

# Status compare-and-set attempts before an evaluation gives up
MAX_STATUS_CAS_ATTEMPTS = 3


# =============================================================================
# Result Data Classes
# =============================================================================

@dataclass
class EvaluationResult:
    """Outcome of one evaluation run."""
    evaluation_id: str
    subject_ref: SubjectRef
    findings: List[StoredFinding]
    previous_status: str
    status: str
    cleared: bool
    blocking_findings: List[StoredFinding]
    correlation_id: str
    instrument_result: Optional[InstrumentVerificationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "evaluation_id": self.evaluation_id,
            "subject_ref": str(self.subject_ref),
            "previous_status": self.previous_status,
            "status": self.status,
            "cleared": self.cleared,
            "findings": [f.to_dict() for f in self.findings],
            "blocking_finding_ids": [f.finding_id for f in self.blocking_findings],
            "correlation_id": self.correlation_id,
        }
        if self.instrument_result is not None:
            data["instrument_result"] = self.instrument_result.to_dict()
        return data


@dataclass
class DecisionResult:
    """Outcome of an explicit human approve or reject."""
    subject_ref: SubjectRef
    decision: str
    previous_status: str
    status: str
    decided_by: str
    notes: Optional[str]
    correlation_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_ref": str(self.subject_ref),
            "decision": self.decision,
            "previous_status": self.previous_status,
            "status": self.status,
            "decided_by": self.decided_by,
            "notes": self.notes,
            "correlation_id": self.correlation_id,
        }


@dataclass
class ClearanceResult:
    """Derived clearance: zero unresolved blocking findings."""
    subject_ref: SubjectRef
    status: str
    cleared: bool
    blocking_findings: List[StoredFinding] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_ref": str(self.subject_ref),
            "status": self.status,
            "cleared": self.cleared,
            "reason": self.reason,
            "blocking_findings": [f.to_dict() for f in self.blocking_findings],
        }


def _as_ref(subject_ref: Union[SubjectRef, str]) -> SubjectRef:
    if isinstance(subject_ref, SubjectRef):
        return subject_ref
    return SubjectRef.parse(subject_ref)


def _audit_key(subject_ref: Union[SubjectRef, str]) -> str:
    """
    Canonical audit key for a subject or anchored object reference.

    Subject kinds are normalised ('deal:X' -> 'DEAL:X'). Other anchored
    object types are kept as written.
    """
    if isinstance(subject_ref, SubjectRef):
        return str(subject_ref)
    kind, sep, object_id = str(subject_ref).partition(":")
    if not sep or not object_id:
        raise ValidationError(f"Malformed subject reference: {subject_ref!r}")
    if kind.strip().upper() in {k.value for k in SubjectKind}:
        return str(SubjectRef.parse(subject_ref))
    return str(subject_ref)


def _as_severity(severity: Union[FlagSeverity, str]) -> FlagSeverity:
    if isinstance(severity, FlagSeverity):
        return severity
    try:
        return FlagSeverity(str(severity).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown severity: {severity!r}",
            details={"valid_severities": [s.value for s in FlagSeverity]},
        )


def clearance_reason(blocking: Sequence[StoredFinding]) -> Optional[str]:
    """The single reason clearance fails, or None when cleared."""
    if not blocking:
        return None
    first = blocking[0].finding
    if len(blocking) == 1:
        return f"1 unresolved blocking finding: {first.message}"
    return f"{len(blocking)} unresolved blocking findings, first: {first.message}"


# =============================================================================
# RiskGateService
# =============================================================================

class RiskGateService:
    """
    Rule evaluation, finding resolution and human decisions over one session.

    ============================================================================
    RESPONSIBILITIES:
    ============================================================================
    1. Run the subject's rule set with injected time and thresholds
    2. Persist findings and recompute gate status in one transaction
    3. Serialise human decisions with compare-and-set status updates
    4. Write one audit entry per evaluation, resolution and decision
    5. Delegate proof anchoring to ProofAnchorService
    ============================================================================
    """

    def __init__(
        self,
        db_session: Any,
        config: Optional[GateConfig] = None,
        textgen_client: Optional[Any] = None,
        ledger_clients: Optional[Mapping[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Args:
            db_session: SQLAlchemy session
            config: Engine configuration (singleton if None)
            textgen_client: Text-generation collaborator; built from
                TEXTGEN_URL when None and configured
            ledger_clients: Chain name -> ledger client; built from chain
                credentials when None
            clock: Source of "now" for rule evaluation
        """
        self._db = db_session
        self._config = config or get_gate_config(validate=False)
        self._clock = clock or utc_now

        if textgen_client is None and self._config.textgen_url:
            textgen_client = TextGenerationClient(self._config.textgen_url)
        if ledger_clients is None:
            ledger_clients = build_ledger_clients(self._config)

        self.subjects = SubjectStore(db_session)
        self.references = ReferenceStore(db_session)
        self.findings = FindingStore(db_session)
        self.audit = AuditLog(db_session)
        self.analyzer = DocumentAnalyzer(textgen_client)
        self.anchors = ProofAnchorService(
            db_session,
            ledger_clients=ledger_clients,
            audit_log=self.audit,
            submit_timeout=self._config.ledger_timeout_seconds,
        )

        logger.info(
            f"[RISK-GATE] Initialized | "
            f"document_analysis={self.analyzer.enabled} | "
            f"anchor_chains={','.join(self.anchors.configured_chains()) or 'NONE'} | "
            f"allowed_reviewers_count={len(self._config.allowed_reviewers)}"
        )

    # =========================================================================
    # Intake
    # =========================================================================

    def create_subject(
        self,
        kind: Union[SubjectKind, str],
        payload: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Subject:
        """
        Validate an intake payload and store the subject in its initial status.

        Raises:
            ValidationError: Invalid payload or duplicate subject (GATE-010)
        """
        subject = parse_subject(SubjectKind.parse(kind), payload)
        return self.subjects.create(subject, correlation_id)

    # =========================================================================
    # evaluate() Method
    # =========================================================================

    def evaluate(
        self,
        kind: Union[SubjectKind, str],
        subject_id: str,
        expected: Optional[Union[ExpectedInstrument, Mapping[str, Any]]] = None,
        correlation_id: Optional[str] = None,
    ) -> EvaluationResult:
        """
        Run the subject's rule set and recompute its gate status.

        ========================================================================
        EVALUATION PROCEDURE:
        ========================================================================
        1. Load the subject snapshot (GATE-020 if missing)
        2. Instruments: attach expected values and the advisory document pass
        3. Load reference rows and build the evaluation context
        4. Evaluate rules (GATE-010 on a malformed snapshot, nothing persisted)
        5. Persist every finding, then compute clearance over all unresolved
           blocking findings of the subject
        6. Compare-and-set status to UNDER_REVIEW or REJECTED, then commit
        7. Audit entry and metrics
        ========================================================================

        Raises:
            NotFoundError: Unknown subject (GATE-020)
            ValidationError: Malformed snapshot or expected values (GATE-010)
            PreconditionError: Status kept moving under concurrent writers (GATE-030)
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        ref = SubjectRef(SubjectKind.parse(kind), subject_id)
        started = time.perf_counter()

        logger.info(f"[RISK-GATE] Evaluating | subject_ref={ref} | correlation_id={correlation_id}")

        subject = self.subjects.get(ref)

        if isinstance(subject, InstrumentSnapshot):
            subject = subject.with_inputs(
                expected=self._expected_from(expected),
                document_analysis=self.analyzer.analyze(subject, correlation_id),
            )

        reference = self.references.load_for(subject)
        context = EvaluationContext(now=self._clock(), thresholds=self._config.thresholds)
        findings = run_rules(subject, reference, context)

        evaluation_id = str(uuid.uuid4())
        try:
            stored = self.findings.persist(ref, evaluation_id, findings, created_at=context.now)
            blocking = self.findings.unresolved_blocking(ref)
            previous_status, status = self._apply_automated_status(ref, bool(blocking), correlation_id)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise

        target_state = from_label(ref.kind, status)
        self.audit.record(
            actor=EVALUATOR_ACTOR,
            action=AuditAction.EVALUATION_RUN,
            subject_ref=ref,
            metadata={
                "evaluation_id": evaluation_id,
                "finding_count": len(stored),
                "severity_counts": count_by_severity(findings),
                "blocking_finding_count": len(blocking),
                "previous_status": previous_status,
                "status": status,
                "document_analysis": analysis_summary(
                    subject.document_analysis if isinstance(subject, InstrumentSnapshot) else None
                ),
            },
            correlation_id=correlation_id,
        )
        record_evaluation(
            ref.kind.value,
            target_state.value,
            [f.severity.value for f in findings],
            time.perf_counter() - started,
            correlation_id,
        )

        logger.info(
            f"[RISK-GATE] Evaluation complete | subject_ref={ref} | "
            f"findings={len(stored)} | blocking={len(blocking)} | "
            f"{previous_status} -> {status} | correlation_id={correlation_id}"
        )

        return EvaluationResult(
            evaluation_id=evaluation_id,
            subject_ref=ref,
            findings=stored,
            previous_status=previous_status,
            status=status,
            cleared=not blocking,
            blocking_findings=blocking,
            correlation_id=correlation_id,
            instrument_result=(
                summarize_instrument(subject, findings)
                if isinstance(subject, InstrumentSnapshot) else None
            ),
        )

    def _expected_from(
        self,
        expected: Optional[Union[ExpectedInstrument, Mapping[str, Any]]],
    ) -> Optional[ExpectedInstrument]:
        if expected is None or isinstance(expected, ExpectedInstrument):
            return expected
        return parse_intake(ExpectedInstrumentIn, dict(expected)).to_expected()

    def _apply_automated_status(
        self,
        ref: SubjectRef,
        has_blocking: bool,
        correlation_id: str,
    ) -> Tuple[str, str]:
        """
        Move the subject to its automated target with compare-and-set.

        Returns:
            (previous_status, new_status)
        """
        for attempt in range(MAX_STATUS_CAS_ATTEMPTS):
            current = self.subjects.get_status(ref)
            current_state = from_label(ref.kind, current)
            target_state = automated_target(current_state, has_blocking)
            target = to_label(ref.kind, target_state)
            if target == current:
                return current, current

            require_transition(
                ref.kind, ref.subject_id, current_state, target_state,
                TransitionActor.AUTOMATED, correlation_id,
            )
            if self.subjects.compare_and_set_status(ref, current, target, TransitionActor.AUTOMATED):
                return current, target

            logger.warning(
                f"[RISK-GATE] Status moved during evaluation, retrying | "
                f"subject_ref={ref} | attempt={attempt + 1}/{MAX_STATUS_CAS_ATTEMPTS} | "
                f"correlation_id={correlation_id}"
            )

        raise PreconditionError(
            f"{ref} status kept changing during evaluation",
            details={"subject_ref": str(ref), "attempts": MAX_STATUS_CAS_ATTEMPTS},
        )

    # =========================================================================
    # resolve_finding() Method
    # =========================================================================

    def resolve_finding(
        self,
        finding_id: str,
        resolved_by: str,
        notes: str,
        correlation_id: Optional[str] = None,
    ) -> StoredFinding:
        """
        Resolve one finding and recompute clearance.

        A REJECTED subject whose last unresolved blocking finding is
        resolved returns to UNDER_REVIEW. It still needs an explicit
        approve() to reach APPROVED.

        Raises:
            ValidationError: Empty notes or resolver (GATE-010)
            NotFoundError: Unknown finding (GATE-020)
            PreconditionError: Already resolved or unauthorised resolver (GATE-030)
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        self._require_reviewer(resolved_by, "resolve", finding_id, correlation_id)

        resolved = self.findings.resolve(finding_id, resolved_by, notes)
        ref = resolved.subject_ref

        reopened_from = None
        if resolved.finding.blocks_execution and not self.findings.has_unresolved_blocking(ref):
            current = self.subjects.get_status(ref)
            if from_label(ref.kind, current) == GateState.REJECTED:
                target = to_label(ref.kind, GateState.UNDER_REVIEW)
                if self.subjects.compare_and_set_status(ref, current, target, TransitionActor.AUTOMATED):
                    self._db.commit()
                    reopened_from = current
                else:
                    self._db.rollback()

        self.audit.record(
            actor=resolved_by,
            action=AuditAction.FINDING_RESOLVED,
            subject_ref=ref,
            metadata={
                "finding_id": finding_id,
                "rule_id": resolved.finding.rule_id,
                "severity": resolved.finding.severity.value,
                "blocks_execution": resolved.finding.blocks_execution,
                "notes": resolved.resolution_notes,
                "reopened_from": reopened_from,
            },
            correlation_id=correlation_id,
        )
        record_finding_resolved(ref.kind.value, correlation_id)

        logger.info(
            f"[RISK-GATE] Finding resolved | finding_id={finding_id} | "
            f"subject_ref={ref} | resolved_by={resolved_by} | "
            f"reopened={reopened_from is not None} | correlation_id={correlation_id}"
        )
        return resolved

    # =========================================================================
    # approve() / reject() Methods
    # =========================================================================

    def approve(
        self,
        subject_ref: Union[SubjectRef, str],
        approver: str,
        notes: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> DecisionResult:
        """
        Explicit human approval, the only path to APPROVED.

        ========================================================================
        APPROVAL PROCEDURE:
        ========================================================================
        1. Verify the approver is an authorised human reviewer
        2. Verify the subject is UNDER_REVIEW
        3. Verify zero unresolved blocking findings
        4. Compare-and-set UNDER_REVIEW -> APPROVED (loser gets GATE-030)
        5. Audit entry and metrics
        ========================================================================

        Raises:
            NotFoundError: Unknown subject (GATE-020)
            PreconditionError: Any failed precondition; status unchanged (GATE-030)
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        ref = _as_ref(subject_ref)
        self._require_reviewer(approver, "approve", str(ref), correlation_id)

        current = self.subjects.get_status(ref)
        require_transition(
            ref.kind, ref.subject_id, from_label(ref.kind, current),
            GateState.APPROVED, TransitionActor.HUMAN, correlation_id,
        )

        blocking = self.findings.unresolved_blocking(ref)
        if blocking:
            logger.warning(
                f"[{GateErrorCode.PRECONDITION_FAILED}] Approval refused, unresolved "
                f"blocking findings | subject_ref={ref} | count={len(blocking)} | "
                f"correlation_id={correlation_id}"
            )
            raise PreconditionError(
                f"{ref} cannot be approved: {clearance_reason(blocking)}",
                details={
                    "subject_ref": str(ref),
                    "blocking_finding_ids": [f.finding_id for f in blocking],
                },
            )

        return self._decide(
            ref, current, GateState.APPROVED, approver, notes,
            AuditAction.SUBJECT_APPROVED, "APPROVE", correlation_id,
        )

    def reject(
        self,
        subject_ref: Union[SubjectRef, str],
        approver: str,
        reason: str,
        correlation_id: Optional[str] = None,
    ) -> DecisionResult:
        """
        Explicit human rejection of a subject under review.

        Raises:
            ValidationError: Empty reason (GATE-010)
            NotFoundError: Unknown subject (GATE-020)
            PreconditionError: Not UNDER_REVIEW, lost race or unauthorised (GATE-030)
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        ref = _as_ref(subject_ref)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", details={"subject_ref": str(ref)})
        self._require_reviewer(approver, "reject", str(ref), correlation_id)

        current = self.subjects.get_status(ref)
        require_transition(
            ref.kind, ref.subject_id, from_label(ref.kind, current),
            GateState.REJECTED, TransitionActor.HUMAN, correlation_id,
        )
        return self._decide(
            ref, current, GateState.REJECTED, approver, reason.strip(),
            AuditAction.SUBJECT_REJECTED, "REJECT", correlation_id,
        )

    def _decide(
        self,
        ref: SubjectRef,
        current: str,
        target_state: GateState,
        approver: str,
        notes: Optional[str],
        action: str,
        decision: str,
        correlation_id: str,
    ) -> DecisionResult:
        target = to_label(ref.kind, target_state)
        if not self.subjects.compare_and_set_status(ref, current, target, TransitionActor.HUMAN):
            self._db.rollback()
            logger.warning(
                f"[{GateErrorCode.PRECONDITION_FAILED}] Decision lost a concurrent update | "
                f"subject_ref={ref} | expected_status={current} | decision={decision} | "
                f"correlation_id={correlation_id}"
            )
            raise PreconditionError(
                f"{ref} is no longer {current}; another decision was recorded first",
                details={"subject_ref": str(ref), "expected_status": current},
            )
        self._db.commit()

        self.audit.record(
            actor=approver,
            action=action,
            subject_ref=ref,
            metadata={"previous_status": current, "status": target, "notes": notes},
            correlation_id=correlation_id,
        )
        record_decision(ref.kind.value, decision, correlation_id)

        logger.info(
            f"[RISK-GATE] Decision recorded | subject_ref={ref} | decision={decision} | "
            f"{current} -> {target} | decided_by={approver} | correlation_id={correlation_id}"
        )
        return DecisionResult(
            subject_ref=ref,
            decision=decision,
            previous_status=current,
            status=target,
            decided_by=approver,
            notes=notes,
            correlation_id=correlation_id,
        )

    def _require_reviewer(
        self,
        reviewer: Optional[str],
        operation: str,
        target: str,
        correlation_id: str,
    ) -> None:
        if self._config.is_reviewer_authorized(reviewer):
            return
        logger.warning(
            f"[{GateErrorCode.PRECONDITION_FAILED}] Unauthorised reviewer | "
            f"reviewer={reviewer} | operation={operation} | target={target} | "
            f"correlation_id={correlation_id}"
        )
        raise PreconditionError(
            f"Reviewer {reviewer!r} is not authorised to {operation}",
            details={"reviewer": reviewer, "operation": operation, "target": target},
        )

    # =========================================================================
    # Read Operations
    # =========================================================================

    def clearance(self, subject_ref: Union[SubjectRef, str]) -> ClearanceResult:
        """Recomputed on every call; never cached."""
        ref = _as_ref(subject_ref)
        status = self.subjects.get_status(ref)
        blocking = self.findings.unresolved_blocking(ref)
        return ClearanceResult(
            subject_ref=ref,
            status=status,
            cleared=not blocking,
            blocking_findings=blocking,
            reason=clearance_reason(blocking),
        )

    def list_findings(
        self,
        subject_ref: Optional[Union[SubjectRef, str]] = None,
        severity: Optional[Union[FlagSeverity, str]] = None,
        resolved: Optional[bool] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[StoredFinding]:
        return self.findings.list(
            subject_ref=_as_ref(subject_ref) if subject_ref is not None else None,
            severity=_as_severity(severity) if severity is not None else None,
            resolved=resolved,
            limit=limit,
        )

    def get_compliance_summary(self) -> Dict[str, Any]:
        """Subjects per gate status and unresolved findings per severity."""
        return {
            "subjects": self.subjects.count_by_status(),
            "unresolved_findings": self.findings.count_unresolved_by_severity(),
            "generated_at": utc_now().isoformat(),
        }

    def get_audit_trail(self, subject_ref: Union[SubjectRef, str]) -> List[AuditLogEntry]:
        return self.audit.get_audit_trail(_audit_key(subject_ref))

    # =========================================================================
    # Proof Anchoring
    # =========================================================================

    def anchor(
        self,
        object_type: str,
        object_id: str,
        data: Any,
        chains: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> ProofAnchor:
        return self.anchors.anchor(object_type, object_id, data, chains, correlation_id)

    def anchor_subject(
        self,
        subject_ref: Union[SubjectRef, str],
        chains: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> ProofAnchor:
        """Anchor a subject's current attributes, status and findings."""
        ref = _as_ref(subject_ref)
        subject = self.subjects.get(ref)
        data = {
            "subject": subject.to_attributes(),
            "status": self.subjects.get_status(ref),
            "findings": [f.to_dict() for f in self.findings.for_subject(ref)],
        }
        return self.anchors.anchor(ref.kind.value, ref.subject_id, data, chains, correlation_id)

    def refresh_anchor(self, anchor_id: str, correlation_id: Optional[str] = None) -> ProofAnchor:
        return self.anchors.refresh_anchor(anchor_id, correlation_id)


__all__ = [
    "ClearanceResult",
    "DecisionResult",
    "EvaluationResult",
    "MAX_STATUS_CAS_ATTEMPTS",
    "RiskGateService",
    "clearance_reason",
]

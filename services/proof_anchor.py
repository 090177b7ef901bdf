"""
============================================================================
Tradegate Risk Engine - Proof Anchor Service
============================================================================

Reliability Level: L5 High
Input Constraints: JSON-serialisable object data
Side Effects: proof_anchors / proof_anchor_chains writes, ledger relay
              submissions, audit entries

Canonicalises an object, hashes it with SHA-256 and embeds the digest in a
self-transfer on each requested ledger as tamper-evident timestamp
evidence.

CHAIN INDEPENDENCE:
    Every requested chain is submitted on its own worker thread with a
    shared timeout. A failure or timeout on one chain marks only that
    chain FAILED; a successful submission on another chain is kept and
    logged separately. Database work stays on the calling thread.

DRY RUN:
    Chains without signing credentials stay PENDING. When no requested
    chain has credentials the anchor is persisted as PENDING and a single
    ANCHOR_PENDING audit entry is written.

AGGREGATE STATUS:
    CONFIRMED  every requested chain confirmed
    SUBMITTED  at least one chain submitted or confirmed
    FAILED     at least one chain failed and none submitted
    PENDING    otherwise

Callers poll with refresh_anchor() rather than waiting for finality.

============================================================================
"""

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import hashlib
import json
import logging
import uuid

from sqlalchemy import text

from app.infra.ledger_client import LedgerClient
from app.observability.metrics import record_anchor_submission
from services.audit_log import AuditAction, AuditLog
from services.flag_models import GateJSONEncoder, isoformat_utc, parse_iso, utc_now
from services.gate_config import DEFAULT_LEDGER_TIMEOUT_SECONDS, SUPPORTED_CHAINS, GateConfig
from services.gate_errors import ExternalServiceError, NotFoundError, ValidationError

# Configure module logger
logger = logging.getLogger(__name__)

ANCHOR_ACTOR = "PROOF-ANCHOR"
DEFAULT_CHAINS = ("XRPL",)


# =============================================================================
# Status
# =============================================================================

class AnchorStatus:
    """Anchor and per-chain status values."""
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


def aggregate_status(statuses: Iterable[str]) -> str:
    """Fold per-chain statuses into the anchor status."""
    statuses = list(statuses)
    if statuses and all(s == AnchorStatus.CONFIRMED for s in statuses):
        return AnchorStatus.CONFIRMED
    if any(s in (AnchorStatus.SUBMITTED, AnchorStatus.CONFIRMED) for s in statuses):
        return AnchorStatus.SUBMITTED
    if any(s == AnchorStatus.FAILED for s in statuses):
        return AnchorStatus.FAILED
    return AnchorStatus.PENDING


# =============================================================================
# Canonicalisation
# =============================================================================

def _sorted_tree(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _sorted_tree(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sorted_tree(v) for v in value]
    return value


def canonicalize(data: Any) -> str:
    """Key-sorted, whitespace-free JSON form of data."""
    return json.dumps(
        _sorted_tree(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        cls=GateJSONEncoder,
    )


def compute_digest(data: Any) -> str:
    """SHA-256 hex digest of the canonical form."""
    return hashlib.sha256(canonicalize(data).encode("utf-8")).hexdigest()


# =============================================================================
# Data types
# =============================================================================

@dataclass
class ChainStatus:
    chain: str
    status: str = AnchorStatus.PENDING
    tx_hash: Optional[str] = None
    confirmed: bool = False
    error: Optional[str] = None
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "confirmed": self.confirmed,
            "error": self.error,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }


@dataclass
class ProofAnchor:
    anchor_id: str
    object_type: str
    object_id: str
    canonical_hash: str
    requested_chains: List[str]
    chains: Dict[str, ChainStatus] = field(default_factory=dict)
    status: str = AnchorStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def object_ref(self) -> str:
        return f"{self.object_type}:{self.object_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anchor_id": self.anchor_id,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "canonical_hash": self.canonical_hash,
            "requested_chains": list(self.requested_chains),
            "chains": {name: c.to_dict() for name, c in self.chains.items()},
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def build_ledger_clients(config: GateConfig, transport: Any = None) -> Dict[str, LedgerClient]:
    """One LedgerClient per chain whose credentials are fully configured."""
    clients: Dict[str, LedgerClient] = {}
    for chain in SUPPORTED_CHAINS:
        if not config.has_credentials(chain):
            continue
        creds = config.credentials_for(chain)
        clients[chain] = LedgerClient(
            chain=chain,
            relay_url=creds.relay_url,
            account=creds.account,
            signing_secret=creds.signing_secret,
            timeout=config.ledger_timeout_seconds,
            transport=transport,
        )
    return clients


# =============================================================================
# Service
# =============================================================================

class ProofAnchorService:
    """Creates, submits and polls proof anchors."""

    def __init__(
        self,
        db_session: Any,
        ledger_clients: Optional[Mapping[str, Any]] = None,
        audit_log: Optional[AuditLog] = None,
        submit_timeout: float = DEFAULT_LEDGER_TIMEOUT_SECONDS,
    ) -> None:
        self._db = db_session
        self._clients = {k.upper(): v for k, v in (ledger_clients or {}).items()}
        self._audit = audit_log or AuditLog(db_session)
        self._submit_timeout = submit_timeout

    def configured_chains(self) -> List[str]:
        return sorted(self._clients)

    # -------------------------------------------------------------------------
    # Anchor
    # -------------------------------------------------------------------------

    def anchor(
        self,
        object_type: str,
        object_id: str,
        data: Any,
        chains: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> ProofAnchor:
        """
        Hash data and submit the digest to every requested chain.

        Raises:
            ValidationError: Empty object identity, unknown chain or data
                that cannot be serialised (GATE-010)
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if not object_type or not str(object_type).strip():
            raise ValidationError("object_type is required")
        if not object_id or not str(object_id).strip():
            raise ValidationError("object_id is required")
        requested = self._normalize_chains(chains)

        try:
            digest = compute_digest(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Object data cannot be canonicalised: {e}",
                details={"object_type": object_type, "object_id": object_id},
            )

        now = utc_now()
        anchor = ProofAnchor(
            anchor_id=str(uuid.uuid4()),
            object_type=str(object_type),
            object_id=str(object_id),
            canonical_hash=digest,
            requested_chains=requested,
            chains={c: ChainStatus(chain=c) for c in requested},
            created_at=now,
            updated_at=now,
        )
        self._insert(anchor)

        logger.info(
            f"[ANCHOR] Anchor created | anchor_id={anchor.anchor_id} | "
            f"object={anchor.object_ref} | hash={digest} | "
            f"chains={','.join(requested)} | correlation_id={correlation_id}"
        )

        submittable = [c for c in requested if c in self._clients]
        if not submittable:
            self._audit.record(
                actor=ANCHOR_ACTOR,
                action=AuditAction.ANCHOR_PENDING,
                subject_ref=anchor.object_ref,
                metadata={
                    "anchor_id": anchor.anchor_id,
                    "hash": digest,
                    "chains": requested,
                    "dry_run": True,
                },
                correlation_id=correlation_id,
            )
            for chain in requested:
                record_anchor_submission(chain, AnchorStatus.PENDING, correlation_id)
            logger.info(
                f"[ANCHOR] No chain credentials configured, anchor left PENDING | "
                f"anchor_id={anchor.anchor_id} | correlation_id={correlation_id}"
            )
            return anchor

        self._submit_all(anchor, submittable, correlation_id)

        for chain in requested:
            outcome = anchor.chains[chain]
            if chain not in self._clients:
                action = AuditAction.ANCHOR_PENDING
            elif outcome.status == AnchorStatus.SUBMITTED:
                action = AuditAction.ANCHOR_CHAIN_SUBMITTED
            else:
                action = AuditAction.ANCHOR_CHAIN_FAILED
            self._audit.record(
                actor=ANCHOR_ACTOR,
                action=action,
                subject_ref=anchor.object_ref,
                metadata={
                    "anchor_id": anchor.anchor_id,
                    "hash": digest,
                    "chain": chain,
                    "tx_hash": outcome.tx_hash,
                    "error": outcome.error,
                },
                correlation_id=correlation_id,
            )
            record_anchor_submission(chain, outcome.status, correlation_id)

        return anchor

    def _normalize_chains(self, chains: Optional[Sequence[str]]) -> List[str]:
        if isinstance(chains, str):
            chains = [chains]
        requested: List[str] = []
        for chain in chains or DEFAULT_CHAINS:
            name = str(chain).strip().upper()
            if name not in SUPPORTED_CHAINS:
                raise ValidationError(
                    f"Unsupported chain: {chain}",
                    details={"supported": list(SUPPORTED_CHAINS)},
                )
            if name not in requested:
                requested.append(name)
        return requested

    def _submit_all(self, anchor: ProofAnchor, chains: List[str], correlation_id: str) -> None:
        """Submit to each chain in parallel and persist each outcome."""
        executor = ThreadPoolExecutor(max_workers=len(chains), thread_name_prefix="anchor")
        try:
            futures = {
                chain: executor.submit(
                    self._clients[chain].submit,
                    anchor.object_type,
                    anchor.object_id,
                    anchor.canonical_hash,
                    correlation_id,
                )
                for chain in chains
            }
            wait(list(futures.values()), timeout=self._submit_timeout)
        finally:
            # A hung relay must not hold up the caller
            executor.shutdown(wait=False)

        for chain, future in futures.items():
            outcome = anchor.chains[chain]
            if not future.done():
                future.cancel()
                outcome.status = AnchorStatus.FAILED
                outcome.error = f"Submission timed out after {self._submit_timeout}s"
            else:
                try:
                    tx_hash = future.result()
                except ExternalServiceError as e:
                    outcome.status = AnchorStatus.FAILED
                    outcome.error = e.message
                except Exception as e:
                    outcome.status = AnchorStatus.FAILED
                    outcome.error = f"{type(e).__name__}: {e}"
                else:
                    outcome.status = AnchorStatus.SUBMITTED
                    outcome.tx_hash = tx_hash
                    outcome.submitted_at = utc_now()

            if outcome.status == AnchorStatus.FAILED:
                logger.warning(
                    f"[GATE-050] Anchor submission failed | anchor_id={anchor.anchor_id} | "
                    f"chain={chain} | error={outcome.error} | correlation_id={correlation_id}"
                )
            self._save_chain(anchor.anchor_id, outcome)

        anchor.status = aggregate_status(c.status for c in anchor.chains.values())
        anchor.updated_at = utc_now()
        self._save_status(anchor)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def refresh_anchor(self, anchor_id: str, correlation_id: Optional[str] = None) -> ProofAnchor:
        """
        Poll confirmation for every SUBMITTED chain and re-aggregate.

        Lookup failures leave the chain SUBMITTED for the next poll.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        anchor = self.get_anchor(anchor_id)

        for chain, outcome in anchor.chains.items():
            if outcome.status != AnchorStatus.SUBMITTED or not outcome.tx_hash:
                continue
            client = self._clients.get(chain)
            if client is None:
                continue
            try:
                confirmed = client.is_confirmed(outcome.tx_hash, correlation_id)
            except ExternalServiceError as e:
                logger.warning(
                    f"[GATE-050] Confirmation lookup failed | anchor_id={anchor_id} | "
                    f"chain={chain} | error={e.message} | correlation_id={correlation_id}"
                )
                continue
            if not confirmed:
                continue

            outcome.status = AnchorStatus.CONFIRMED
            outcome.confirmed = True
            outcome.confirmed_at = utc_now()
            self._save_chain(anchor.anchor_id, outcome)
            self._audit.record(
                actor=ANCHOR_ACTOR,
                action=AuditAction.ANCHOR_CHAIN_CONFIRMED,
                subject_ref=anchor.object_ref,
                metadata={"anchor_id": anchor.anchor_id, "chain": chain, "tx_hash": outcome.tx_hash},
                correlation_id=correlation_id,
            )
            record_anchor_submission(chain, AnchorStatus.CONFIRMED, correlation_id)

        status = aggregate_status(c.status for c in anchor.chains.values())
        if status != anchor.status:
            logger.info(
                f"[ANCHOR] Status changed | anchor_id={anchor_id} | "
                f"{anchor.status} -> {status} | correlation_id={correlation_id}"
            )
            anchor.status = status
            anchor.updated_at = utc_now()
            self._save_status(anchor)
        return anchor

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_anchor(self, anchor_id: str) -> ProofAnchor:
        row = self._db.execute(
            text("""
                SELECT id, object_type, object_id, canonical_hash,
                       requested_chains, status, created_at, updated_at
                  FROM proof_anchors
                 WHERE id = :id
            """),
            {"id": anchor_id},
        ).mappings().first()
        if row is None:
            raise NotFoundError(f"Proof anchor not found: {anchor_id}")
        return self._anchor_from_row(row)

    def list_anchors(self, object_id: str, object_type: Optional[str] = None) -> List[ProofAnchor]:
        """Anchors for one object, oldest first."""
        sql = """
            SELECT id, object_type, object_id, canonical_hash,
                   requested_chains, status, created_at, updated_at
              FROM proof_anchors
             WHERE object_id = :object_id
        """
        params: Dict[str, Any] = {"object_id": object_id}
        if object_type is not None:
            sql += " AND object_type = :object_type"
            params["object_type"] = object_type
        sql += " ORDER BY created_at ASC, id ASC"
        rows = self._db.execute(text(sql), params).mappings().all()
        return [self._anchor_from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _insert(self, anchor: ProofAnchor) -> None:
        self._db.execute(
            text("""
                INSERT INTO proof_anchors (
                    id, object_type, object_id, canonical_hash,
                    requested_chains, status, created_at, updated_at
                ) VALUES (
                    :id, :object_type, :object_id, :canonical_hash,
                    :requested_chains, :status, :created_at, :updated_at
                )
            """),
            {
                "id": anchor.anchor_id,
                "object_type": anchor.object_type,
                "object_id": anchor.object_id,
                "canonical_hash": anchor.canonical_hash,
                "requested_chains": json.dumps(anchor.requested_chains),
                "status": anchor.status,
                "created_at": isoformat_utc(anchor.created_at),
                "updated_at": isoformat_utc(anchor.updated_at),
            },
        )
        for chain in anchor.requested_chains:
            self._db.execute(
                text("""
                    INSERT INTO proof_anchor_chains (anchor_id, chain, status, confirmed)
                    VALUES (:anchor_id, :chain, :status, :confirmed)
                """),
                {
                    "anchor_id": anchor.anchor_id,
                    "chain": chain,
                    "status": AnchorStatus.PENDING,
                    "confirmed": False,
                },
            )
        self._db.commit()

    def _save_chain(self, anchor_id: str, outcome: ChainStatus) -> None:
        # Committed per chain so one chain's outcome never depends on another's
        self._db.execute(
            text("""
                UPDATE proof_anchor_chains
                   SET status = :status,
                       tx_hash = :tx_hash,
                       confirmed = :confirmed,
                       error = :error,
                       submitted_at = :submitted_at,
                       confirmed_at = :confirmed_at
                 WHERE anchor_id = :anchor_id
                   AND chain = :chain
            """),
            {
                "anchor_id": anchor_id,
                "chain": outcome.chain,
                "status": outcome.status,
                "tx_hash": outcome.tx_hash,
                "confirmed": outcome.confirmed,
                "error": outcome.error,
                "submitted_at": isoformat_utc(outcome.submitted_at) if outcome.submitted_at else None,
                "confirmed_at": isoformat_utc(outcome.confirmed_at) if outcome.confirmed_at else None,
            },
        )
        self._db.commit()

    def _save_status(self, anchor: ProofAnchor) -> None:
        self._db.execute(
            text("""
                UPDATE proof_anchors
                   SET status = :status, updated_at = :updated_at
                 WHERE id = :id
            """),
            {
                "id": anchor.anchor_id,
                "status": anchor.status,
                "updated_at": isoformat_utc(anchor.updated_at),
            },
        )
        self._db.commit()

    def _anchor_from_row(self, row: Mapping[str, Any]) -> ProofAnchor:
        requested = json.loads(row["requested_chains"])
        chain_rows = self._db.execute(
            text("""
                SELECT chain, status, tx_hash, confirmed, error,
                       submitted_at, confirmed_at
                  FROM proof_anchor_chains
                 WHERE anchor_id = :anchor_id
            """),
            {"anchor_id": row["id"]},
        ).mappings().all()
        by_chain = {
            r["chain"]: ChainStatus(
                chain=r["chain"],
                status=r["status"],
                tx_hash=r["tx_hash"],
                confirmed=bool(r["confirmed"]),
                error=r["error"],
                submitted_at=parse_iso(r["submitted_at"]),
                confirmed_at=parse_iso(r["confirmed_at"]),
            )
            for r in chain_rows
        }
        return ProofAnchor(
            anchor_id=row["id"],
            object_type=row["object_type"],
            object_id=row["object_id"],
            canonical_hash=row["canonical_hash"],
            requested_chains=requested,
            chains={c: by_chain.get(c, ChainStatus(chain=c)) for c in requested},
            status=row["status"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


__all__ = [
    "ANCHOR_ACTOR",
    "AnchorStatus",
    "ChainStatus",
    "DEFAULT_CHAINS",
    "ProofAnchor",
    "ProofAnchorService",
    "aggregate_status",
    "build_ledger_clients",
    "canonicalize",
    "compute_digest",
]

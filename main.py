#!/usr/bin/env python3
"""
============================================================================
Tradegate Risk Engine
Operator CLI - Produced Interface from the Command Line
============================================================================

Reliability Level: L6 Critical
Traceability: Every command runs under one correlation_id

COMMANDS:
    init-db                                   Create tables
    seed --file reference.json                Upsert reference data
    create KIND --data JSON                   Intake one subject
    evaluate KIND ID [--expected JSON]        Run the rule set
    resolve FINDING_ID --by ID --notes TEXT   Resolve a finding
    approve KIND:ID --by ID [--notes TEXT]    Human approval
    reject KIND:ID --by ID --reason TEXT      Human rejection
    clearance KIND:ID                         Recompute clearance
    findings [--subject KIND:ID] [...]        List findings
    anchor TYPE ID --data JSON [--chain ...]  Anchor an object hash
    refresh-anchor ANCHOR_ID                  Poll chain confirmations
    audit-trail KIND:ID                       Audit entries of a subject
    summary                                   Compliance summary

Output is JSON on stdout. A GateError exits with status 1 and prints the
error (code, message, details) as JSON on stderr.

USAGE:
    python main.py evaluate DEAL DEAL-2026-0042

============================================================================
"""

import argparse
import json
import logging
import sys
import uuid
from typing import Any, List, Optional

from dotenv import load_dotenv

from app.database import SessionLocal, create_schema, get_engine
from app.schemas.subjects import CommodityIn, CreditProfileIn, JurisdictionIn, parse_intake
from services.flag_models import GateJSONEncoder
from services.gate_config import get_gate_config
from services.gate_errors import GateError, ValidationError
from services.risk_gate import RiskGateService

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    stream=sys.stderr,
)
logger = logging.getLogger("TRADEGATE-CLI")


def _print(value: Any) -> None:
    print(json.dumps(value, cls=GateJSONEncoder, indent=2, sort_keys=True))


def _load_json(value: str, label: str) -> Any:
    try:
        return json.loads(value)
    except ValueError as e:
        raise ValidationError(f"--{label} is not valid JSON: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradegate",
        description="Risk-flagging and human-gated approval engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--correlation-id", help="Correlation ID (uuid4 when omitted)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    seed = sub.add_parser("seed", help="Upsert reference data from a JSON file")
    seed.add_argument(
        "--file", required=True,
        help='JSON file with "jurisdictions", "commodities", "credit_profiles" lists',
    )

    create = sub.add_parser("create", help="Intake one subject")
    create.add_argument("kind", help="DEAL, INSTRUMENT or PROPOSAL")
    create.add_argument("--data", required=True, help="Subject payload as JSON")

    evaluate = sub.add_parser("evaluate", help="Run the subject's rule set")
    evaluate.add_argument("kind", help="DEAL, INSTRUMENT or PROPOSAL")
    evaluate.add_argument("subject_id")
    evaluate.add_argument("--expected", help="Expected instrument values as JSON")

    resolve = sub.add_parser("resolve", help="Resolve one finding")
    resolve.add_argument("finding_id")
    resolve.add_argument("--by", required=True, dest="resolved_by")
    resolve.add_argument("--notes", required=True)

    approve = sub.add_parser("approve", help="Approve a subject under review")
    approve.add_argument("subject_ref", help="KIND:ID")
    approve.add_argument("--by", required=True, dest="approver")
    approve.add_argument("--notes")

    reject = sub.add_parser("reject", help="Reject a subject under review")
    reject.add_argument("subject_ref", help="KIND:ID")
    reject.add_argument("--by", required=True, dest="approver")
    reject.add_argument("--reason", required=True)

    clearance = sub.add_parser("clearance", help="Recompute clearance")
    clearance.add_argument("subject_ref", help="KIND:ID")

    findings = sub.add_parser("findings", help="List findings")
    findings.add_argument("--subject", dest="subject_ref", help="KIND:ID")
    findings.add_argument("--severity", help="LOW, MEDIUM, HIGH or CRITICAL")
    findings.add_argument("--resolved", choices=["yes", "no"])
    findings.add_argument("--limit", type=int, default=100)

    anchor = sub.add_parser("anchor", help="Anchor an object hash")
    anchor.add_argument("object_type")
    anchor.add_argument("object_id")
    anchor.add_argument("--data", required=True, help="Object data as JSON")
    anchor.add_argument("--chain", action="append", dest="chains", help="XRPL or STELLAR (repeatable)")

    refresh = sub.add_parser("refresh-anchor", help="Poll chain confirmations")
    refresh.add_argument("anchor_id")

    trail = sub.add_parser("audit-trail", help="Audit entries of a subject")
    trail.add_argument("subject_ref", help="KIND:ID")

    sub.add_parser("summary", help="Compliance summary")
    return parser


def run(args: argparse.Namespace, session: Any) -> Any:
    """Dispatch one parsed command and return its JSON-ready result."""
    cid = args.correlation_id
    gate = RiskGateService(session, config=get_gate_config())

    if args.command == "seed":
        with open(args.file, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        gate.references.seed(
            jurisdictions=[parse_intake(JurisdictionIn, j).to_reference() for j in payload.get("jurisdictions", [])],
            commodities=[parse_intake(CommodityIn, c).to_reference() for c in payload.get("commodities", [])],
            credit_profiles=[
                parse_intake(CreditProfileIn, p).to_reference() for p in payload.get("credit_profiles", [])
            ],
        )
        return {"seeded": True}
    if args.command == "create":
        subject = gate.create_subject(args.kind, _load_json(args.data, "data"), cid)
        return {"subject_ref": str(subject.ref), "status": subject.status}
    if args.command == "evaluate":
        expected = _load_json(args.expected, "expected") if args.expected else None
        return gate.evaluate(args.kind, args.subject_id, expected=expected, correlation_id=cid).to_dict()
    if args.command == "resolve":
        return gate.resolve_finding(args.finding_id, args.resolved_by, args.notes, cid).to_dict()
    if args.command == "approve":
        return gate.approve(args.subject_ref, args.approver, args.notes, cid).to_dict()
    if args.command == "reject":
        return gate.reject(args.subject_ref, args.approver, args.reason, cid).to_dict()
    if args.command == "clearance":
        return gate.clearance(args.subject_ref).to_dict()
    if args.command == "findings":
        resolved = None if args.resolved is None else args.resolved == "yes"
        return [
            f.to_dict()
            for f in gate.list_findings(args.subject_ref, args.severity, resolved, args.limit)
        ]
    if args.command == "anchor":
        data = _load_json(args.data, "data")
        return gate.anchor(args.object_type, args.object_id, data, args.chains, cid).to_dict()
    if args.command == "refresh-anchor":
        return gate.refresh_anchor(args.anchor_id, cid).to_dict()
    if args.command == "audit-trail":
        return [e.to_dict() for e in gate.get_audit_trail(args.subject_ref)]
    if args.command == "summary":
        return gate.get_compliance_summary()
    raise ValidationError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    args.correlation_id = args.correlation_id or str(uuid.uuid4())

    if args.command == "init-db":
        create_schema(get_engine())
        logger.info(f"[CLI] Schema created | correlation_id={args.correlation_id}")
        _print({"initialized": True})
        return 0

    get_engine()
    session = SessionLocal()
    try:
        _print(run(args, session))
        return 0
    except GateError as e:
        logger.error(f"[{e.error_code}] {e.message} | correlation_id={args.correlation_id}")
        print(json.dumps(e.to_dict(), cls=GateJSONEncoder, sort_keys=True), file=sys.stderr)
        return 1
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())

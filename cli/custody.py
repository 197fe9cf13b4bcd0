#!/usr/bin/env python
"""
Custody Ledger CLI
==================
Ledger, verification and custody anomaly commands.

Usage:
    python -m cli.custody db init
    python -m cli.custody ledger status
    python -m cli.custody ledger verify --chain ndep-custody-chain [--fail-closed]
    python -m cli.custody ledger seal --chain ndep-evidence-chain [--reason "end of shift"]
    python -m cli.custody mirror rebuild [--chain <id>]
    python -m cli.custody evidence verify --digest <sha256>
    python -m cli.custody evidence verify --file <path> [--claimed <sha256>]
    python -m cli.custody anomalies detect --evidence EV-1 [--enable-supplemental]
    python -m cli.custody anomalies list --evidence EV-1 [--unresolved]
    python -m cli.custody anomalies resolve --id 7 --by supervisor.b --note "Explained"
    python -m cli.custody algorithms list

All commands run within a Flask app context and use the configured
database and ledger directory.
"""

import argparse
import json
import sys

from services.errors import ChainCompromised, CustodyLedgerError

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_COMPROMISED = 2


def _get_app():
    from app_config import create_app
    return create_app()


def _ensure_algorithms():
    """Import algorithm modules to trigger registration."""
    import algorithms.chain_verify  # noqa: F401
    import algorithms.custody_anomaly  # noqa: F401


def _emit(data, output=None):
    text = json.dumps(data, indent=2, default=str)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"  Result written to: {output}")
    else:
        print(text)


def _context(app):
    from models import db

    return {
        "db_session": db.session,
        "ledger_store": app.extensions["ledger_store"],
        "settings": app.config["CUSTODY_SETTINGS"],
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_db_init(app, args):
    """Create the relational tables."""
    from models import db

    db.create_all()
    print("  Tables created.")
    return EXIT_OK


def cmd_ledger_status(app, args):
    from services.evidence_verifier import EvidenceVerifier
    from models import db

    verifier = EvidenceVerifier(
        app.extensions["ledger_store"], db.session, app.config["CUSTODY_SETTINGS"]
    )
    statuses = verifier.chain_statuses()
    print(f"\n  {'Chain':<28} {'Blocks':>7} {'Intact':<7} Last linkage")
    print(f"  {'-'*28} {'-'*7} {'-'*7} {'-'*16}")
    for s in statuses:
        last = (s.last_linkage_id or "-")[:16]
        print(f"  {s.chain_id:<28} {s.block_count:>7} {str(s.intact):<7} {last}")
    print()
    return EXIT_OK if all(s.intact for s in statuses) else EXIT_COMPROMISED


def cmd_ledger_verify(app, args):
    from algorithms.base import AlgorithmParams
    from algorithms.chain_verify import ChainVerification, require_intact
    from algorithms.registry import registry

    _ensure_algorithms()
    algo = registry.get("chain_verification")
    result = algo.run(AlgorithmParams(subject_id=args.chain, actor_name="cli"), _context(app))
    if not result.success:
        print(f"  Status: FAILED\n  Error: {result.error}")
        return EXIT_ERROR

    payload = result.payload
    print(f"\n  Chain: {payload['chain_id']}")
    print(f"  Blocks: {payload['block_count']}")
    print(f"  Intact: {payload['intact']}")
    if not payload["intact"]:
        print(f"  Broken at: {payload['broken_at']} ({payload['reason']})")
    print(f"  Result hash: {result.result_hash}\n")

    if args.fail_closed:
        try:
            require_intact(ChainVerification(**payload))
        except ChainCompromised as exc:
            print(f"  {exc}")
            return EXIT_COMPROMISED
    return EXIT_OK


def cmd_ledger_seal(app, args):
    from models import db
    from services.transaction_recorder import TransactionRecorder

    recorder = TransactionRecorder(
        app.extensions["ledger_store"], db.session, app.config["CUSTODY_SETTINGS"]
    )
    result = recorder.seal(args.chain, reason=args.reason)
    print(f"  Sealed {args.chain} at block {result.block.sequence_number}: {result.block.linkage_id}")
    for warning in result.warnings:
        print(f"  Warning: {warning}")
    return EXIT_OK


def cmd_mirror_rebuild(app, args):
    from models import db
    from services.transaction_recorder import TransactionRecorder

    recorder = TransactionRecorder(
        app.extensions["ledger_store"], db.session, app.config["CUSTODY_SETTINGS"]
    )
    count = recorder.rebuild_mirror_from_ledger(args.chain)
    print(f"  Mirror rebuilt: {count} rows")
    return EXIT_OK


def cmd_evidence_verify(app, args):
    from models import db
    from services.evidence_verifier import EvidenceVerifier

    verifier = EvidenceVerifier(
        app.extensions["ledger_store"], db.session, app.config["CUSTODY_SETTINGS"]
    )
    if args.file:
        result = verifier.verify_evidence_file(args.file, claimed_digest=args.claimed)
    else:
        result = verifier.verify_evidence(args.digest)
    _emit(result.to_dict(), args.output)
    if not result.exists or result.hash_matches is False:
        return EXIT_ERROR
    return EXIT_OK if result.chain_valid else EXIT_COMPROMISED


def cmd_anomalies_detect(app, args):
    from algorithms.base import AlgorithmParams
    from algorithms.registry import registry

    _ensure_algorithms()
    algo = registry.get("custody_anomaly")
    extra = {
        "min_transfer_interval_ms": args.min_interval_ms,
        "max_gap_hours": args.max_gap_hours,
        "enable_supplemental_checks": args.enable_supplemental,
        "reconcile_with_ledger": not args.no_ledger,
    }
    params = AlgorithmParams(subject_id=args.evidence, actor_name="cli", extra=extra)
    result = algo.run(params, _context(app))
    if not result.success:
        print(f"  Status: FAILED\n  Error: {result.error}")
        return EXIT_ERROR

    payload = result.payload
    print(f"\n  Evidence: {payload['evidence_id']}")
    print(f"  Status: {payload['status']}")
    print(f"  Risk score: {payload['risk_score']}")
    for a in payload["anomalies"]:
        marker = "resolved" if a["resolved"] else a["severity"]
        print(f"    [{marker:<8}] #{a['id']} {a['type']}: {a['description']}")
    print()
    if args.output:
        _emit(result.to_dict(), args.output)
    return EXIT_OK


def cmd_anomalies_list(app, args):
    from models import db
    from services.anomaly_service import AnomalyService

    service = AnomalyService(db.session, settings=app.config["CUSTODY_SETTINGS"])
    rows = service.get_stored(args.evidence, resolved=False if args.unresolved else None)
    _emit([row.to_dict() for row in rows], args.output)
    return EXIT_OK


def cmd_anomalies_resolve(app, args):
    from models import db
    from services.anomaly_service import AnomalyService

    service = AnomalyService(db.session, settings=app.config["CUSTODY_SETTINGS"])
    row = service.resolve(args.id, args.by, args.note)
    print(f"  Anomaly #{row.id} resolved by {row.resolved_by} at {row.resolved_at}")
    return EXIT_OK


def cmd_algorithms_list(app, args):
    from algorithms.registry import registry

    _ensure_algorithms()
    algos = registry.list_algorithms()
    print(f"\n  Registered Algorithms ({len(algos)}):")
    print(f"  {'ID':<25} {'Version':<10} Description")
    print(f"  {'-'*25} {'-'*10} {'-'*40}")
    for a in algos:
        print(f"  {a['algorithm_id']:<25} {a['version']:<10} {a['description'][:50]}")
    print()
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser():
    parser = argparse.ArgumentParser(
        prog="custody",
        description="Tamper-evident evidence custody ledger",
    )
    subparsers = parser.add_subparsers(dest="command")

    db_parser = subparsers.add_parser("db", help="Database management")
    db_sub = db_parser.add_subparsers(dest="subcommand")
    db_sub.add_parser("init", help="Create tables").set_defaults(handler=cmd_db_init)

    ledger = subparsers.add_parser("ledger", help="Ledger status, verification and sealing")
    ledger_sub = ledger.add_subparsers(dest="subcommand")
    ledger_sub.add_parser("status", help="Summarize both chains").set_defaults(
        handler=cmd_ledger_status
    )
    verify = ledger_sub.add_parser("verify", help="Verify one chain")
    verify.add_argument("--chain", required=True, help="Chain ID")
    verify.add_argument("--fail-closed", action="store_true",
                        help="Exit non-zero when the chain is compromised")
    verify.set_defaults(handler=cmd_ledger_verify)
    seal = ledger_sub.add_parser("seal", help="Append a checkpoint block")
    seal.add_argument("--chain", required=True, help="Chain ID")
    seal.add_argument("--reason", help="Checkpoint reason")
    seal.set_defaults(handler=cmd_ledger_seal)

    mirror = subparsers.add_parser("mirror", help="Relational mirror maintenance")
    mirror_sub = mirror.add_subparsers(dest="subcommand")
    rebuild = mirror_sub.add_parser("rebuild", help="Regenerate mirror rows from the ledger")
    rebuild.add_argument("--chain", help="Only this chain (default: both)")
    rebuild.set_defaults(handler=cmd_mirror_rebuild)

    evidence = subparsers.add_parser("evidence", help="Evidence verification")
    evidence_sub = evidence.add_subparsers(dest="subcommand")
    ev_verify = evidence_sub.add_parser("verify", help="Verify a digest or a file")
    target = ev_verify.add_mutually_exclusive_group(required=True)
    target.add_argument("--digest", help="Claimed SHA-256 digest")
    target.add_argument("--file", help="Evidence file to digest and verify")
    ev_verify.add_argument("--claimed", help="Digest the file is expected to have")
    ev_verify.add_argument("--output", "-o", help="Output file path")
    ev_verify.set_defaults(handler=cmd_evidence_verify)

    anomalies = subparsers.add_parser("anomalies", help="Custody anomaly detection")
    anomalies_sub = anomalies.add_subparsers(dest="subcommand")
    detect = anomalies_sub.add_parser("detect", help="Run detection for one evidence item")
    detect.add_argument("--evidence", required=True, help="Evidence ID")
    detect.add_argument("--min-interval-ms", type=int, help="Rapid transfer threshold")
    detect.add_argument("--max-gap-hours", type=float, help="Time gap threshold")
    detect.add_argument("--enable-supplemental", action="store_true",
                        help="Emit a placeholder finding when nothing fires")
    detect.add_argument("--no-ledger", action="store_true",
                        help="Skip reconciliation with the custody ledger")
    detect.add_argument("--output", "-o", help="Output file path for the full result")
    detect.set_defaults(handler=cmd_anomalies_detect)
    listing = anomalies_sub.add_parser("list", help="List stored findings")
    listing.add_argument("--evidence", required=True, help="Evidence ID")
    listing.add_argument("--unresolved", action="store_true", help="Only unresolved findings")
    listing.add_argument("--output", "-o", help="Output file path")
    listing.set_defaults(handler=cmd_anomalies_list)
    resolve = anomalies_sub.add_parser("resolve", help="Resolve a finding")
    resolve.add_argument("--id", type=int, required=True, help="Anomaly ID")
    resolve.add_argument("--by", required=True, help="Resolver")
    resolve.add_argument("--note", default="", help="Resolution note")
    resolve.set_defaults(handler=cmd_anomalies_resolve)

    algos = subparsers.add_parser("algorithms", help="Algorithm registry")
    algos_sub = algos.add_subparsers(dest="subcommand")
    algos_sub.add_parser("list", help="List registered algorithms").set_defaults(
        handler=cmd_algorithms_list
    )

    return parser


def main(argv=None, app=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_ERROR

    app = app or _get_app()
    with app.app_context():
        try:
            return handler(app, args)
        except CustodyLedgerError as exc:
            print(f"  Error: {exc}", file=sys.stderr)
            return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())

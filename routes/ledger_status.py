"""
Ledger Status Endpoints
=======================
Read-only JSON endpoints for dashboards and monitoring probes.

  /ledger/status  - Chain summary for the evidence and custody ledgers.
  /ledger/health  - Database connectivity plus ledger readability.

Nothing here writes to the ledger or the database.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from services.errors import StorageCorrupt

logger = logging.getLogger(__name__)

ledger_bp = Blueprint("ledger", __name__, url_prefix="/ledger")


def _chain_summary(chain_id):
    store = current_app.extensions["ledger_store"]
    try:
        return store.status(chain_id).to_dict()
    except StorageCorrupt as exc:
        logger.error("Ledger %s unreadable: %s", chain_id, exc, extra={"chain_id": chain_id})
        return {"chain_id": chain_id, "intact": False, "error": str(exc)}


def _chain_summaries():
    settings = current_app.config["CUSTODY_SETTINGS"]
    return {
        "evidence_chain": _chain_summary(settings.evidence_chain_id),
        "custody_chain": _chain_summary(settings.custody_chain_id),
    }


@ledger_bp.route("/status", methods=["GET"])
def ledger_status():
    """Block counts, last linkage ids and integrity for both chains."""
    chains = _chain_summaries()
    store = current_app.extensions["ledger_store"]
    intact = all(c.get("intact") for c in chains.values())
    return jsonify({
        "status": "operational" if intact else "compromised",
        **chains,
        "sealing_difficulty": store.sealing_policy.difficulty,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }), 200


@ledger_bp.route("/health", methods=["GET"])
def ledger_health():
    """503 when the database is unreachable or a ledger cannot be read."""
    from models import db

    checks = {}
    try:
        db.session.execute(db.text("SELECT 1"))
        checks["database"] = {"status": "ok"}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "fail", "error": str(exc)}

    unreadable = [c for c in _chain_summaries().values() if "error" in c]
    checks["ledger"] = {"status": "fail" if unreadable else "ok"}
    if unreadable:
        checks["ledger"]["unreadable"] = [c["chain_id"] for c in unreadable]

    healthy = all(c["status"] == "ok" for c in checks.values())
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }), 200 if healthy else 503

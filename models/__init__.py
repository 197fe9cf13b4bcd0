"""
Relational store models.

The ledger files are authoritative; every table here is either external
ground truth consumed by the core (evidence, custody_transfers) or a derived,
rebuildable index (ledger_transactions) or detection output
(custody_anomalies).
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from models.anomaly import CustodyAnomaly  # noqa: E402,F401
from models.evidence import CustodyTransfer, Evidence  # noqa: E402,F401
from models.ledger import LedgerTransaction  # noqa: E402,F401

__all__ = [
    "db",
    "CustodyAnomaly",
    "CustodyTransfer",
    "Evidence",
    "LedgerTransaction",
]

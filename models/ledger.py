"""
Ledger Mirror Model
===================
Denormalized, queryable summary of every ledger block.

The ledger files are the source of truth. This table is a cache that can be
dropped and regenerated at any time with
``TransactionRecorder.rebuild_mirror_from_ledger``.
"""

from datetime import datetime, timezone

from models import db


class LedgerTransaction(db.Model):
    """One row per ledger block, keyed by chain and sequence number."""
    __tablename__ = 'ledger_transactions'

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(db.String(100), nullable=False)
    sequence_number = db.Column(db.Integer, nullable=False)
    linkage_id = db.Column(db.String(64), unique=True, nullable=False, index=True)

    # Business key derived from the payload's identifying fields
    transaction_id = db.Column(db.String(64), index=True)

    kind = db.Column(db.String(50), nullable=False)
    evidence_id = db.Column(db.String(64), index=True)
    case_id = db.Column(db.String(64), index=True)
    from_user = db.Column(db.String(300))
    to_user = db.Column(db.String(300))

    payload_digest = db.Column(db.String(64), nullable=False)
    recorded_at = db.Column(db.DateTime, nullable=False)
    verified = db.Column(db.Boolean, default=True, nullable=False)

    mirrored_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint('chain_id', 'sequence_number', name='uq_ledger_chain_sequence'),
    )

    def to_dict(self):
        return {
            "chain_id": self.chain_id,
            "sequence_number": self.sequence_number,
            "linkage_id": self.linkage_id,
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "evidence_id": self.evidence_id,
            "case_id": self.case_id,
            "from_user": self.from_user,
            "to_user": self.to_user,
            "payload_digest": self.payload_digest,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "verified": self.verified,
        }

    def __repr__(self):
        return f'<LedgerTransaction {self.chain_id}#{self.sequence_number}>'

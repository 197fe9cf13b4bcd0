"""
Evidence and Custody Timeline Models
=====================================
Rows owned by the surrounding evidence-management application and consumed
by the custody core.

Design principles:
  - Evidence identity is the opaque ``evidence_id`` string; the forensic
    anchor is ``file_hash`` (SHA-256, recorded once at intake).
  - Custody transfers are append-only: each handover creates a new row.
  - Timeline order is ``transferred_at`` ascending.
  - ``linkage_id`` points at the custody ledger block that recorded the
    transfer, when there is one.
"""

from datetime import datetime, timezone

from models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Evidence(db.Model):
    """A piece of evidence and the reference to its file on disk."""
    __tablename__ = 'evidence'

    id = db.Column(db.Integer, primary_key=True)
    evidence_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    case_id = db.Column(db.String(64), nullable=False, index=True)

    description = db.Column(db.Text)
    evidence_type = db.Column(db.String(50), nullable=False, default='other')

    # File reference; absent for physical evidence
    file_path = db.Column(db.String(1024))
    file_hash = db.Column(db.String(64), index=True)
    file_size = db.Column(db.Integer)
    mime_type = db.Column(db.String(100))

    current_location = db.Column(db.String(300))
    collected_by = db.Column(db.String(300))
    collected_at = db.Column(db.DateTime, default=_utcnow)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    transfers = db.relationship(
        'CustodyTransfer',
        primaryjoin='Evidence.evidence_id == foreign(CustodyTransfer.evidence_id)',
        order_by='CustodyTransfer.transferred_at',
        viewonly=True,
    )

    def __repr__(self):
        return f'<Evidence {self.evidence_id}>'


class CustodyTransfer(db.Model):
    """
    One custody handover. Immutable once written.
    """
    __tablename__ = 'custody_transfers'

    id = db.Column(db.Integer, primary_key=True)
    evidence_id = db.Column(db.String(64), nullable=False, index=True)

    from_user = db.Column(db.String(300))
    to_user = db.Column(db.String(300), nullable=False)
    from_location = db.Column(db.String(300))
    to_location = db.Column(db.String(300))

    transfer_type = db.Column(db.String(50), nullable=False, default='handover')
    transfer_reason = db.Column(db.Text)
    transfer_notes = db.Column(db.Text)

    # Custody ledger block that recorded this transfer
    linkage_id = db.Column(db.String(64), index=True)

    transferred_at = db.Column(db.DateTime, nullable=False, default=_utcnow, index=True)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "evidence_id": self.evidence_id,
            "from_user": self.from_user,
            "to_user": self.to_user,
            "from_location": self.from_location,
            "to_location": self.to_location,
            "transfer_type": self.transfer_type,
            "transfer_reason": self.transfer_reason,
            "transfer_notes": self.transfer_notes,
            "linkage_id": self.linkage_id,
            "transferred_at": self.transferred_at.isoformat() if self.transferred_at else None,
        }

    def __repr__(self):
        return f'<CustodyTransfer {self.evidence_id}: {self.from_user} -> {self.to_user}>'

"""
Custody Anomaly Model
=====================
Persisted findings from a custody anomaly detection run.

Severity and confidence are written once, at detection time. The only
post-creation mutation is resolution, which sets ``resolved_by``,
``resolved_at`` and ``resolution`` together and is never undone.
"""

import json
from datetime import datetime, timezone

from models import db


class CustodyAnomaly(db.Model):
    __tablename__ = 'custody_anomalies'

    id = db.Column(db.Integer, primary_key=True)
    evidence_id = db.Column(db.String(64), nullable=False, index=True)

    anomaly_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), nullable=False, index=True)
    confidence = db.Column(db.Float, nullable=False, default=0.0)

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    details_json = db.Column(db.Text, default='{}')

    # Stable identity across detection runs: type + evidence + transfer indices
    fingerprint = db.Column(db.String(64), nullable=False, index=True)

    detected_at = db.Column(db.DateTime, nullable=False,
                            default=lambda: datetime.now(timezone.utc))

    resolved = db.Column(db.Boolean, default=False, nullable=False, index=True)
    resolved_by = db.Column(db.String(300))
    resolved_at = db.Column(db.DateTime)
    resolution = db.Column(db.Text)

    @property
    def details(self):
        return json.loads(self.details_json or '{}')

    def mark_resolved(self, resolved_by, resolution, resolved_at=None):
        """Set all resolution fields at once. No-op when already resolved."""
        if self.resolved:
            return False
        self.resolved = True
        self.resolved_by = resolved_by
        self.resolved_at = resolved_at or datetime.now(timezone.utc)
        self.resolution = resolution
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "evidence_id": self.evidence_id,
            "type": self.anomaly_type,
            "severity": self.severity,
            "confidence": self.confidence,
            "title": self.title,
            "description": self.description,
            "details": self.details,
            "fingerprint": self.fingerprint,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
        }

    def __repr__(self):
        return f'<CustodyAnomaly {self.anomaly_type} {self.severity} evidence={self.evidence_id}>'

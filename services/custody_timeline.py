"""
Custody Timeline Reader
=======================
Reads the chronological custody transfers for one evidence item from the
relational store and converts them into plain ``TimelineEntry`` values for
the rule engine.
"""

from datetime import datetime, timezone
from typing import List, Optional

from models.evidence import CustodyTransfer


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def load_custody_timeline(session, evidence_id: str) -> List[CustodyTransfer]:
    """All transfers for *evidence_id*, oldest first."""
    return (
        session.query(CustodyTransfer)
        .filter(CustodyTransfer.evidence_id == evidence_id)
        .order_by(CustodyTransfer.transferred_at.asc(), CustodyTransfer.id.asc())
        .all()
    )


def timeline_entries(rows):
    """Convert ORM rows into TimelineEntry values."""
    from algorithms.custody_anomaly import TimelineEntry

    return [
        TimelineEntry(
            transfer_id=row.id,
            evidence_id=row.evidence_id,
            from_user=row.from_user,
            to_user=row.to_user,
            transferred_at=as_utc(row.transferred_at),
            from_location=row.from_location,
            to_location=row.to_location,
            transfer_type=row.transfer_type,
            linkage_id=row.linkage_id,
        )
        for row in rows
    ]

"""
Custody Anomaly Service
=======================
Runs the custody rules against the relational store and persists the
result.

Each detection run replaces the stored finding set for one evidence id in
a single transaction. Resolutions are carried over to findings whose
fingerprint recurs, so re-running detection never discards a reviewer's
decision. Runs for the same evidence id are serialized in-process.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from algorithms.base import canonical_json, hash_json
from algorithms.custody_anomaly import (
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    DetectionOptions,
    EvidenceFileRef,
    Finding,
    analyze_timeline,
    calculate_risk_score,
    detection_status,
)
from models.anomaly import CustodyAnomaly
from models.evidence import Evidence
from services.custody_timeline import load_custody_timeline, timeline_entries
from services.errors import InvalidInput, StorageCorrupt

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


@dataclass
class AnomalyReport:
    evidence_id: str
    findings: List[Finding]
    risk_score: int
    status: str
    options: Dict[str, Any]
    detected_at: str
    timeline_length: int = 0
    stored: List[CustodyAnomaly] = field(default_factory=list)

    def count(self, severity: str) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    @property
    def findings_hash(self) -> str:
        """Deterministic hash of the finding set (timestamps excluded)."""
        return hash_json([f.to_dict() for f in self.findings])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "status": self.status,
            "risk_score": self.risk_score,
            "total_anomalies": len(self.findings),
            "high_risk_anomalies": self.count(SEVERITY_HIGH),
            "medium_risk_anomalies": self.count(SEVERITY_MEDIUM),
            "low_risk_anomalies": self.count(SEVERITY_LOW),
            "timeline_length": self.timeline_length,
            "anomalies": [row.to_dict() for row in self.stored],
            "findings_hash": self.findings_hash,
            "detected_at": self.detected_at,
            "analysis_options": self.options,
        }


class AnomalyService:
    """
    Usage:
        service = AnomalyService(db.session, settings=settings, ledger_store=store)
        report = service.detect("EV-1")
        service.resolve(report.stored[0].id, "supervisor.b", "Scheduled lab run")
    """

    # Detection runs are serialized per evidence id through a fixed pool of
    # striped locks; ids sharing a stripe also wait on each other.
    _locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def __init__(self, session, settings=None, ledger_store=None):
        self.session = session
        self.settings = settings
        self.store = ledger_store

    @classmethod
    def _lock_for(cls, evidence_id: str) -> threading.Lock:
        return cls._locks[hash(evidence_id) % len(cls._locks)]

    def _default_options(self) -> DetectionOptions:
        if self.settings is None:
            return DetectionOptions()
        return DetectionOptions.from_settings(self.settings)

    # -- detection ---------------------------------------------------------

    def detect(self, evidence_id: str, options: Optional[DetectionOptions] = None) -> AnomalyReport:
        """
        Run every custody rule for *evidence_id* and replace its stored findings.

        Raises:
            InvalidInput: empty evidence id.
            SQLAlchemyError: the replace failed (rolled back, prior set intact).
        """
        if not isinstance(evidence_id, str) or not evidence_id.strip():
            raise InvalidInput("evidence_id must be a non-empty string")
        options = options or self._default_options()

        with self._lock_for(evidence_id):
            timeline = timeline_entries(load_custody_timeline(self.session, evidence_id))
            findings = analyze_timeline(
                evidence_id,
                timeline,
                options,
                evidence_file=self._evidence_file(evidence_id),
                custody_blocks=self._custody_blocks(evidence_id, options),
                file_read_timeout=(
                    self.settings.file_read_timeout_seconds if self.settings else None
                ),
            )
            stored = self._replace(evidence_id, findings)

        report = AnomalyReport(
            evidence_id=evidence_id,
            findings=findings,
            risk_score=calculate_risk_score(findings),
            status=detection_status(findings),
            options=options.to_dict(),
            detected_at=datetime.now(timezone.utc).isoformat(),
            timeline_length=len(timeline),
            stored=stored,
        )
        logger.info(
            "Custody detection for %s: %d findings, risk score %d",
            evidence_id,
            len(findings),
            report.risk_score,
            extra={"evidence_id": evidence_id},
        )
        return report

    def _evidence_file(self, evidence_id: str) -> Optional[EvidenceFileRef]:
        evidence = self.session.query(Evidence).filter_by(evidence_id=evidence_id).first()
        if evidence is None or not evidence.file_path:
            return None
        return EvidenceFileRef(
            path=evidence.file_path,
            recorded_digest=evidence.file_hash,
            description=evidence.description,
        )

    def _custody_blocks(self, evidence_id: str, options: DetectionOptions):
        if self.store is None or self.settings is None or not options.reconcile_with_ledger:
            return None
        try:
            return self.store.load(self.settings.custody_chain_id).blocks
        except StorageCorrupt:
            logger.exception(
                "Custody ledger unreadable; skipping reconciliation for %s",
                evidence_id,
                extra={"evidence_id": evidence_id},
            )
            return None

    def _replace(self, evidence_id: str, findings: List[Finding]) -> List[CustodyAnomaly]:
        query = self.session.query(CustodyAnomaly).filter(CustodyAnomaly.evidence_id == evidence_id)
        try:
            existing = query.all()
            resolutions = {
                row.fingerprint: (row.resolved_by, row.resolution, row.resolved_at)
                for row in existing
                if row.resolved
            }
            for row in existing:
                self.session.delete(row)
            self.session.flush()

            now = datetime.now(timezone.utc)
            rows = []
            for finding in findings:
                row = CustodyAnomaly(
                    evidence_id=evidence_id,
                    anomaly_type=finding.anomaly_type,
                    severity=finding.severity,
                    confidence=finding.confidence,
                    title=finding.title,
                    description=finding.description,
                    details_json=canonical_json(finding.details),
                    fingerprint=finding.fingerprint,
                    detected_at=now,
                )
                prior = resolutions.get(finding.fingerprint)
                if prior is not None:
                    row.mark_resolved(prior[0], prior[1], resolved_at=prior[2])
                rows.append(row)
            self.session.add_all(rows)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.error("Replacing anomalies for %s failed; rolled back", evidence_id)
            raise
        carried = sum(1 for r in rows if r.resolved)
        if carried:
            logger.info("Re-attached %d resolutions for %s", carried, evidence_id)
        return rows

    # -- queries and resolution --------------------------------------------

    def get_stored(self, evidence_id: str, resolved: Optional[bool] = None) -> List[CustodyAnomaly]:
        query = self.session.query(CustodyAnomaly).filter(CustodyAnomaly.evidence_id == evidence_id)
        if resolved is not None:
            query = query.filter(CustodyAnomaly.resolved.is_(resolved))
        return query.order_by(CustodyAnomaly.detected_at.desc(), CustodyAnomaly.id.asc()).all()

    def resolve(self, anomaly_id: int, resolved_by: str, resolution_note: str = "") -> CustodyAnomaly:
        """
        Mark a finding resolved. Resolving twice is a no-op.

        Raises:
            InvalidInput: unknown anomaly id or empty resolver.
        """
        if not isinstance(resolved_by, str) or not resolved_by.strip():
            raise InvalidInput("resolved_by must be a non-empty string")
        row = self.session.get(CustodyAnomaly, anomaly_id)
        if row is None:
            raise InvalidInput(f"Unknown anomaly id: {anomaly_id}")
        if row.mark_resolved(resolved_by, resolution_note or ""):
            try:
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                raise
            logger.info(
                "Anomaly %s resolved by %s",
                anomaly_id,
                resolved_by,
                extra={"evidence_id": row.evidence_id},
            )
        return row

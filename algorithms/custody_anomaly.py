"""
Custody Anomaly Detector
========================
Rule-based checks over one evidence item's custody timeline:
  - Rapid transfers (consecutive hand-offs closer than a minimum interval).
  - Evidence file hash mismatch, missing file, or unreadable file.
  - Circular transfers (custody returns to a holder two hops back).
  - Excessive transfer counts.
  - Long gaps between transfers.
  - Location discontinuities between quick consecutive transfers.
  - Divergence between the relational timeline and the custody ledger.

Design constraints:
  - Rules are pure functions over TimelineEntry values and never touch
    the database; AnomalyService owns loading and persistence.
  - Each rule is isolated: a rule that raises is logged and skipped.
  - Findings carry a stable fingerprint so resolutions survive re-runs.
  - Observations, not conclusions: every finding states its threshold.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from algorithms.base import AlgorithmBase, AlgorithmParams, hash_json
from algorithms.registry import registry
from services.errors import FileAccessError, FileMissing, InvalidInput

logger = logging.getLogger(__name__)


TYPE_RAPID_TRANSFER = "rapid_transfer"
TYPE_HASH_MISMATCH = "hash_mismatch"
TYPE_FILE_MISSING = "file_missing"
TYPE_FILE_ACCESS_ERROR = "file_access_error"
TYPE_CIRCULAR_TRANSFER = "circular_transfer"
TYPE_EXCESSIVE_TRANSFERS = "excessive_transfers"
TYPE_TIME_GAP = "time_gap"
TYPE_LOCATION_MISMATCH = "location_mismatch"
TYPE_LEDGER_DIVERGENCE = "ledger_divergence"
TYPE_SUPPLEMENTAL_CHECK = "supplemental_check"

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"

SEVERITY_POINTS = {SEVERITY_HIGH: 30, SEVERITY_MEDIUM: 15, SEVERITY_LOW: 5}
MAX_RISK_SCORE = 100

STATUS_CLEAN = "clean"
STATUS_ANOMALIES = "anomalies_detected"

RAPID_HIGH_THRESHOLD_MS = 30_000
TIME_GAP_HIGH_HOURS = 72
EXCESSIVE_TRANSFER_COUNT = 10
LOCATION_WINDOW_MINUTES = 5


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimelineEntry:
    """One custody transfer as seen by the rules."""

    transfer_id: Optional[int]
    evidence_id: str
    from_user: Optional[str]
    to_user: str
    transferred_at: datetime
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    transfer_type: Optional[str] = None
    linkage_id: Optional[str] = None


@dataclass(frozen=True)
class EvidenceFileRef:
    """The recorded file reference for an evidence item."""

    path: str
    recorded_digest: Optional[str]
    description: Optional[str] = None


@dataclass
class DetectionOptions:
    min_transfer_interval_ms: int = 60_000
    max_gap_hours: float = 24.0
    enable_supplemental_checks: bool = False
    reconcile_with_ledger: bool = True

    def __post_init__(self):
        if self.min_transfer_interval_ms < 0:
            raise InvalidInput("min_transfer_interval_ms must be >= 0")
        if self.max_gap_hours <= 0:
            raise InvalidInput("max_gap_hours must be > 0")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "DetectionOptions":
        values = {
            "min_transfer_interval_ms": settings.min_transfer_interval_ms,
            "max_gap_hours": settings.max_gap_hours,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_transfer_interval_ms": self.min_transfer_interval_ms,
            "max_gap_hours": self.max_gap_hours,
            "enable_supplemental_checks": self.enable_supplemental_checks,
            "reconcile_with_ledger": self.reconcile_with_ledger,
        }


@dataclass
class Finding:
    """A single anomaly observation, before persistence."""

    anomaly_type: str
    severity: str
    confidence: float
    title: str
    description: str
    evidence_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    transfer_indices: Tuple[int, ...] = ()
    anchor: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Stable identity: type, evidence id, transfers involved, optional anchor."""
        return hash_json({
            "type": self.anomaly_type,
            "evidence_id": self.evidence_id,
            "transfers": list(self.transfer_indices),
            "anchor": self.anchor,
        })

    @property
    def scored(self) -> bool:
        return self.anomaly_type != TYPE_SUPPLEMENTAL_CHECK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.anomaly_type,
            "severity": self.severity,
            "confidence": self.confidence,
            "title": self.title,
            "description": self.description,
            "evidence_id": self.evidence_id,
            "details": self.details,
            "transfer_indices": list(self.transfer_indices),
            "fingerprint": self.fingerprint,
        }


def _elapsed_ms(earlier: TimelineEntry, later: TimelineEntry) -> int:
    return int(round((later.transferred_at - earlier.transferred_at).total_seconds() * 1000))


# ---------------------------------------------------------------------------
# Timeline rules
# ---------------------------------------------------------------------------


def check_rapid_transfers(
    timeline: Sequence[TimelineEntry], min_interval_ms: int = 60_000
) -> List[Finding]:
    """Consecutive transfers closer together than *min_interval_ms*."""
    findings = []
    for i in range(1, len(timeline)):
        previous, current = timeline[i - 1], timeline[i]
        delta_ms = _elapsed_ms(previous, current)
        if delta_ms >= min_interval_ms:
            continue
        findings.append(Finding(
            anomaly_type=TYPE_RAPID_TRANSFER,
            severity=SEVERITY_HIGH if delta_ms < RAPID_HIGH_THRESHOLD_MS else SEVERITY_MEDIUM,
            confidence=0.95,
            title="Rapid Custody Transfer Detected",
            description=(
                f"Custody transferred from {previous.to_user} to {current.to_user} "
                f"in {round(delta_ms / 1000)} seconds"
            ),
            evidence_id=current.evidence_id,
            details={
                "from_user": previous.to_user,
                "to_user": current.to_user,
                "time_difference_ms": delta_ms,
                "previous_transfer": previous.transferred_at.isoformat(),
                "current_transfer": current.transferred_at.isoformat(),
                "threshold_ms": min_interval_ms,
                "transfer_id": current.transfer_id,
            },
            transfer_indices=(i - 1, i),
        ))
    return findings


def check_circular_transfers(timeline: Sequence[TimelineEntry]) -> List[Finding]:
    """Custody returns to the holder from two transfers earlier (A -> B -> A)."""
    findings = []
    for i in range(2, len(timeline)):
        before, previous, current = timeline[i - 2], timeline[i - 1], timeline[i]
        if current.to_user != before.to_user or current.to_user == previous.to_user:
            continue
        findings.append(Finding(
            anomaly_type=TYPE_CIRCULAR_TRANSFER,
            severity=SEVERITY_MEDIUM,
            confidence=0.85,
            title="Circular Custody Transfer Detected",
            description=f"Evidence returned to {current.to_user} after being transferred away",
            evidence_id=current.evidence_id,
            details={
                "original_user": before.to_user,
                "intermediate_user": previous.to_user,
                "final_user": current.to_user,
                "time_span_ms": _elapsed_ms(before, current),
                "transfer_id": current.transfer_id,
            },
            transfer_indices=(i - 2, i - 1, i),
        ))
    return findings


def check_excessive_transfers(
    timeline: Sequence[TimelineEntry], max_count: int = EXCESSIVE_TRANSFER_COUNT
) -> List[Finding]:
    """One finding when the timeline has more than *max_count* transfers."""
    if len(timeline) <= max_count:
        return []
    span_ms = _elapsed_ms(timeline[0], timeline[-1])
    return [Finding(
        anomaly_type=TYPE_EXCESSIVE_TRANSFERS,
        severity=SEVERITY_MEDIUM,
        confidence=0.75,
        title="Excessive Custody Transfers",
        description=(
            f"Evidence has been transferred {len(timeline)} times, which is unusually high"
        ),
        evidence_id=timeline[0].evidence_id,
        details={
            "transfer_count": len(timeline),
            "time_span_ms": span_ms,
            "average_transfer_interval_ms": span_ms / (len(timeline) - 1),
            "threshold": max_count,
        },
    )]


def check_time_gaps(
    timeline: Sequence[TimelineEntry], max_gap_hours: float = 24.0
) -> List[Finding]:
    """Consecutive transfers further apart than *max_gap_hours*."""
    findings = []
    for i in range(1, len(timeline)):
        previous, current = timeline[i - 1], timeline[i]
        hours = _elapsed_ms(previous, current) / 3_600_000
        if hours <= max_gap_hours:
            continue
        findings.append(Finding(
            anomaly_type=TYPE_TIME_GAP,
            severity=SEVERITY_HIGH if hours > TIME_GAP_HIGH_HOURS else SEVERITY_MEDIUM,
            confidence=0.9,
            title="Unusual Time Gap in Custody Chain",
            description=f"Gap of {round(hours)} hours between custody transfers",
            evidence_id=current.evidence_id,
            details={
                "time_gap_hours": hours,
                "threshold_hours": max_gap_hours,
                "previous_transfer": previous.transferred_at.isoformat(),
                "current_transfer": current.transferred_at.isoformat(),
                "from_user": previous.to_user,
                "to_user": current.to_user,
                "transfer_id": current.transfer_id,
            },
            transfer_indices=(i - 1, i),
        ))
    return findings


def check_location_mismatches(
    timeline: Sequence[TimelineEntry], window_minutes: int = LOCATION_WINDOW_MINUTES
) -> List[Finding]:
    """A quick transfer that starts somewhere other than where the last one ended."""
    findings = []
    for i in range(1, len(timeline)):
        previous, current = timeline[i - 1], timeline[i]
        if not current.from_location or not previous.to_location:
            continue
        minutes = _elapsed_ms(previous, current) / 60_000
        if minutes >= window_minutes or current.from_location == previous.to_location:
            continue
        findings.append(Finding(
            anomaly_type=TYPE_LOCATION_MISMATCH,
            severity=SEVERITY_MEDIUM,
            confidence=0.8,
            title="Location Mismatch in Custody Transfer",
            description=(
                f"Evidence location changed from {previous.to_location} to "
                f"{current.from_location} in {round(minutes)} minutes"
            ),
            evidence_id=current.evidence_id,
            details={
                "previous_location": previous.to_location,
                "current_location": current.from_location,
                "time_difference_minutes": minutes,
                "from_user": previous.to_user,
                "to_user": current.to_user,
                "transfer_id": current.transfer_id,
            },
            transfer_indices=(i - 1, i),
        ))
    return findings


# ---------------------------------------------------------------------------
# Evidence file and ledger checks
# ---------------------------------------------------------------------------


def check_evidence_file(
    evidence_id: str, ref: EvidenceFileRef, timeout: Optional[float] = None
) -> List[Finding]:
    """
    Re-digest the evidence file and compare with the recorded digest.

    Without a recorded digest there is nothing to compare against, so the
    check is skipped.
    """
    from services.hashing import digest_file

    if not ref.recorded_digest:
        logger.warning(
            "No recorded digest for %s; file check skipped",
            evidence_id,
            extra={"evidence_id": evidence_id},
        )
        return []

    try:
        current = digest_file(ref.path, timeout=timeout)
    except FileMissing:
        return [Finding(
            anomaly_type=TYPE_FILE_MISSING,
            severity=SEVERITY_HIGH,
            confidence=1.0,
            title="Evidence File Missing",
            description="Evidence file not found at expected location",
            evidence_id=evidence_id,
            details={"expected_path": ref.path, "evidence_description": ref.description},
        )]
    except FileAccessError as exc:
        # Includes FileReadTimeout.
        return [Finding(
            anomaly_type=TYPE_FILE_ACCESS_ERROR,
            severity=SEVERITY_MEDIUM,
            confidence=0.8,
            title="Evidence File Access Error",
            description="Unable to access evidence file for verification",
            evidence_id=evidence_id,
            details={"error": str(exc), "file_path": ref.path},
        )]

    if current == ref.recorded_digest:
        return []
    return [Finding(
        anomaly_type=TYPE_HASH_MISMATCH,
        severity=SEVERITY_HIGH,
        confidence=1.0,
        title="Evidence File Hash Mismatch",
        description="Evidence file hash has changed, indicating potential tampering",
        evidence_id=evidence_id,
        details={
            "original_hash": ref.recorded_digest,
            "current_hash": current,
            "file_path": ref.path,
            "evidence_description": ref.description,
        },
    )]


_COMPARED_FIELDS = ("from_user", "to_user", "transfer_type", "from_location", "to_location")


def _block_disagreements(entry: TimelineEntry, payload: Dict[str, Any]) -> List[str]:
    fields = [
        name for name in _COMPARED_FIELDS
        if (payload.get(name) or None) != (getattr(entry, name) or None)
    ]
    recorded_at = payload.get("transferred_at")
    if recorded_at:
        from services.custody_timeline import parse_timestamp

        if parse_timestamp(recorded_at) != entry.transferred_at:
            fields.append("transferred_at")
    return fields


def check_ledger_divergence(
    evidence_id: str,
    timeline: Sequence[TimelineEntry],
    custody_blocks: Iterable[Any],
) -> List[Finding]:
    """
    Reconcile the relational timeline with the custody ledger.

    Only timeline rows that carry a linkage id are reconciled; every custody
    block for this evidence id must have a timeline row.
    """
    blocks = {
        block.linkage_id: block
        for block in custody_blocks
        if block.payload.get("evidence_id") == evidence_id
    }
    findings = []
    seen = set()

    def divergence(description, details, indices=(), anchor=None):
        findings.append(Finding(
            anomaly_type=TYPE_LEDGER_DIVERGENCE,
            severity=SEVERITY_HIGH,
            confidence=0.9,
            title="Custody Timeline Diverges From Ledger",
            description=description,
            evidence_id=evidence_id,
            details=details,
            transfer_indices=tuple(indices),
            anchor=anchor,
        ))

    for i, entry in enumerate(timeline):
        if not entry.linkage_id:
            continue
        seen.add(entry.linkage_id)
        block = blocks.get(entry.linkage_id)
        if block is None:
            divergence(
                "Custody transfer is not present in the custody ledger",
                {"linkage_id": entry.linkage_id, "transfer_id": entry.transfer_id},
                indices=(i,),
                anchor=entry.linkage_id,
            )
            continue
        mismatched = _block_disagreements(entry, block.payload)
        if mismatched:
            divergence(
                f"Custody transfer differs from its ledger block in: {', '.join(mismatched)}",
                {
                    "linkage_id": entry.linkage_id,
                    "sequence_number": block.sequence_number,
                    "fields": mismatched,
                    "transfer_id": entry.transfer_id,
                },
                indices=(i,),
                anchor=entry.linkage_id,
            )

    for linkage_id, block in blocks.items():
        if linkage_id in seen:
            continue
        divergence(
            "Custody ledger block has no matching custody transfer record",
            {
                "linkage_id": linkage_id,
                "sequence_number": block.sequence_number,
                "to_user": block.payload.get("to_user"),
            },
            anchor=linkage_id,
        )
    return findings


def _supplemental_placeholder(evidence_id: str, timeline: Sequence[TimelineEntry]) -> Finding:
    return Finding(
        anomaly_type=TYPE_SUPPLEMENTAL_CHECK,
        severity=SEVERITY_LOW,
        confidence=0.0,
        title="Supplemental Check Placeholder",
        description="Supplemental statistical checks are not implemented",
        evidence_id=evidence_id,
        details={"custody_chain_length": len(timeline)},
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def analyze_timeline(
    evidence_id: str,
    timeline: Sequence[TimelineEntry],
    options: Optional[DetectionOptions] = None,
    evidence_file: Optional[EvidenceFileRef] = None,
    custody_blocks: Optional[Iterable[Any]] = None,
    file_read_timeout: Optional[float] = None,
) -> List[Finding]:
    """
    Run every rule and return findings in a deterministic order.

    An empty timeline yields no findings; the file check is skipped too.
    """
    options = options or DetectionOptions()
    if not timeline:
        return []

    rules = [
        ("rapid_transfer", lambda: check_rapid_transfers(timeline, options.min_transfer_interval_ms)),
        ("evidence_file", lambda: (
            check_evidence_file(evidence_id, evidence_file, timeout=file_read_timeout)
            if evidence_file is not None else []
        )),
        ("circular_transfer", lambda: check_circular_transfers(timeline)),
        ("excessive_transfers", lambda: check_excessive_transfers(timeline)),
        ("time_gap", lambda: check_time_gaps(timeline, options.max_gap_hours)),
        ("location_mismatch", lambda: check_location_mismatches(timeline)),
    ]
    if options.reconcile_with_ledger and custody_blocks is not None:
        blocks = list(custody_blocks)
        rules.append(
            ("ledger_divergence", lambda: check_ledger_divergence(evidence_id, timeline, blocks))
        )

    findings: List[Finding] = []
    for name, rule in rules:
        try:
            findings.extend(rule())
        except Exception:
            logger.exception("Custody rule %s failed for evidence %s", name, evidence_id)

    if options.enable_supplemental_checks and not findings:
        findings.append(_supplemental_placeholder(evidence_id, timeline))
    return findings


def calculate_risk_score(findings: Iterable[Finding]) -> int:
    """Sum of severity points over scored findings, capped at 100."""
    score = sum(SEVERITY_POINTS.get(f.severity, 0) for f in findings if f.scored)
    return min(score, MAX_RISK_SCORE)


def detection_status(findings: Iterable[Finding]) -> str:
    return STATUS_ANOMALIES if any(f.scored for f in findings) else STATUS_CLEAN


@registry.register
class CustodyAnomalyAlgorithm(AlgorithmBase):
    """Rule-based custody anomaly detection with risk scoring."""

    @property
    def algorithm_id(self) -> str:
        return "custody_anomaly"

    @property
    def algorithm_version(self) -> str:
        return "1.0.0"

    def _execute(
        self, params: AlgorithmParams, context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Context keys:
          - db_session: SQLAlchemy session.
          - settings: Settings instance.
          - ledger_store: optional LedgerStore for ledger reconciliation.
        """
        from services.anomaly_service import AnomalyService

        settings = context["settings"]
        service = AnomalyService(
            context["db_session"],
            settings=settings,
            ledger_store=context.get("ledger_store"),
        )
        options = DetectionOptions.from_settings(settings, **params.extra)
        return service.detect(params.subject_id, options).to_dict()

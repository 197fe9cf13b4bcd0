"""
Transaction Recorder
====================
Builds evidence and custody transactions, appends them to the ledger and
mirrors a summary row into the relational store.

The ledger append is the commit point. The mirror is a derived index: if it
cannot be written the append still stands, the session is rolled back and
the failure is returned as a warning on the result.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeout

from models.evidence import CustodyTransfer
from models.ledger import LedgerTransaction
from services.custody_timeline import parse_timestamp
from services.errors import InvalidInput, MirrorTimeout, MirrorWriteFailed
from services.hashing import digest_json, is_digest
from services.ledger_store import Block, BlockKind, LedgerStore

logger = logging.getLogger(__name__)

TRANSFER_TYPES = ("handover", "transport", "analysis", "court", "storage")


@dataclass
class RecordResult:
    block: Block
    mirror_record: Optional[LedgerTransaction] = None
    warnings: List[MirrorWriteFailed] = field(default_factory=list)

    @property
    def mirrored(self) -> bool:
        return self.mirror_record is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block": self.block.to_dict(),
            "mirror_record": self.mirror_record.to_dict() if self.mirror_record else None,
            "warnings": [str(w) for w in self.warnings],
        }


def evidence_transaction_id(evidence_digest, case_id, submitted_by, collected_at) -> str:
    key = f"{evidence_digest}-{case_id}-{submitted_by}-{collected_at}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def custody_transaction_id(evidence_id, from_user, to_user, transferred_at) -> str:
    key = f"{evidence_id}-{from_user}-{to_user}-{transferred_at}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{name} must be a non-empty string")
    return value


def _timestamp(name: str, value: Any) -> str:
    """ISO-8601 UTC string for *value* (now when None)."""
    if value is None:
        return datetime.now(timezone.utc).isoformat()
    try:
        return parse_timestamp(value).isoformat()
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{name} is not a valid timestamp: {value!r}") from exc


def classify_mirror_error(exc: Exception) -> MirrorWriteFailed:
    """Map a database error to MirrorTimeout or MirrorWriteFailed."""
    if isinstance(exc, PoolTimeout):
        return MirrorTimeout(f"Mirror write timed out: {exc}")
    if isinstance(exc, OperationalError):
        message = str(exc).lower()
        if "locked" in message or "timeout" in message:
            return MirrorTimeout(f"Mirror write timed out: {exc}")
    return MirrorWriteFailed(f"Mirror write failed: {exc}")


def mirror_row_for(chain_id: str, block: Block, verified: bool = True) -> LedgerTransaction:
    """Build the LedgerTransaction summary row for *block*."""
    payload = block.payload
    if block.kind is BlockKind.EVIDENCE_RECORD:
        metadata = payload.get("metadata") or {}
        evidence_id = metadata.get("evidence_id") or payload.get("evidence_digest")
        transaction_id = evidence_transaction_id(
            payload.get("evidence_digest"),
            payload.get("case_id"),
            payload.get("submitted_by"),
            payload.get("collected_at"),
        )
        case_id, from_user, to_user = payload.get("case_id"), payload.get("submitted_by"), None
    elif block.kind is BlockKind.CUSTODY_TRANSFER:
        evidence_id = payload.get("evidence_id")
        transaction_id = custody_transaction_id(
            evidence_id,
            payload.get("from_user"),
            payload.get("to_user"),
            payload.get("transferred_at"),
        )
        case_id, from_user, to_user = None, payload.get("from_user"), payload.get("to_user")
    else:
        evidence_id = transaction_id = case_id = from_user = to_user = None

    return LedgerTransaction(
        chain_id=chain_id,
        sequence_number=block.sequence_number,
        linkage_id=block.linkage_id,
        transaction_id=transaction_id,
        kind=block.kind.value,
        evidence_id=evidence_id,
        case_id=case_id,
        from_user=from_user,
        to_user=to_user,
        payload_digest=digest_json(payload),
        recorded_at=parse_timestamp(block.created_at),
        verified=verified,
    )


class TransactionRecorder:
    """
    Records evidence intake and custody transfers.

    Usage:
        recorder = TransactionRecorder(store, db.session, settings)
        result = recorder.record_evidence(digest, "CASE-1", "officer.a",
                                          metadata={"evidence_id": "EV-1"})
        if result.warnings:
            ...  # ledger has the block, mirror does not
    """

    def __init__(self, ledger_store: LedgerStore, session, settings):
        self.store = ledger_store
        self.session = session
        self.settings = settings

    @property
    def evidence_chain_id(self) -> str:
        return self.settings.evidence_chain_id

    @property
    def custody_chain_id(self) -> str:
        return self.settings.custody_chain_id

    # -- recording ---------------------------------------------------------

    def record_evidence(
        self,
        evidence_digest: str,
        case_id: str,
        submitted_by: str,
        metadata: Optional[Dict[str, Any]] = None,
        collected_at=None,
    ) -> RecordResult:
        """
        Append an EvidenceRecord block and mirror it.

        Raises:
            InvalidInput: bad digest, empty ids or non-dict metadata (nothing written).
        """
        if not is_digest(evidence_digest):
            raise InvalidInput(f"Invalid evidence digest: {evidence_digest!r}")
        _require_text("case_id", case_id)
        _require_text("submitted_by", submitted_by)
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidInput("metadata must be a dict")

        payload = {
            "evidence_digest": evidence_digest,
            "case_id": case_id,
            "submitted_by": submitted_by,
            "collected_at": _timestamp("collected_at", collected_at),
            "metadata": dict(metadata or {}),
        }
        block = self.store.append(self.evidence_chain_id, BlockKind.EVIDENCE_RECORD, payload)
        row = mirror_row_for(self.evidence_chain_id, block)
        return self._mirror(block, row)

    def record_custody_transfer(
        self,
        evidence_id: str,
        from_user: str,
        to_user: str,
        transfer_type: str = "handover",
        from_location: Optional[str] = None,
        to_location: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        transferred_at=None,
    ) -> RecordResult:
        """
        Append a CustodyTransfer block, then mirror it together with the
        timeline row that carries the block's linkage id.

        Raises:
            InvalidInput: empty ids or an unknown transfer type (nothing written).
        """
        _require_text("evidence_id", evidence_id)
        _require_text("from_user", from_user)
        _require_text("to_user", to_user)
        if transfer_type not in TRANSFER_TYPES:
            raise InvalidInput(
                f"Unknown transfer type {transfer_type!r}; expected one of {', '.join(TRANSFER_TYPES)}"
            )

        payload = {
            "evidence_id": evidence_id,
            "from_user": from_user,
            "to_user": to_user,
            "transferred_at": _timestamp("transferred_at", transferred_at),
            "transfer_type": transfer_type,
        }
        optional = {
            "from_location": from_location,
            "to_location": to_location,
            "reason": reason,
            "notes": notes,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})

        block = self.store.append(self.custody_chain_id, BlockKind.CUSTODY_TRANSFER, payload)
        row = mirror_row_for(self.custody_chain_id, block)
        timeline_row = CustodyTransfer(
            evidence_id=evidence_id,
            from_user=from_user,
            to_user=to_user,
            from_location=from_location,
            to_location=to_location,
            transfer_type=transfer_type,
            transfer_reason=reason,
            transfer_notes=notes,
            linkage_id=block.linkage_id,
            transferred_at=parse_timestamp(payload["transferred_at"]),
        )
        return self._mirror(block, row, timeline_row)

    def seal(self, chain_id: str, reason: Optional[str] = None) -> RecordResult:
        """Seal *chain_id* and mirror the checkpoint block."""
        block = self.store.seal(chain_id, reason=reason)
        return self._mirror(block, mirror_row_for(chain_id, block))

    def _mirror(self, block: Block, row: LedgerTransaction, *extra) -> RecordResult:
        try:
            self.session.add(row)
            for obj in extra:
                self.session.add(obj)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            warning = classify_mirror_error(exc)
            logger.warning(
                "Ledger block %s#%d appended but mirror write failed: %s",
                row.chain_id,
                block.sequence_number,
                warning,
                extra={"chain_id": row.chain_id, "sequence_number": block.sequence_number},
            )
            return RecordResult(block=block, warnings=[warning])
        return RecordResult(block=block, mirror_record=row)

    # -- mirror maintenance ------------------------------------------------

    def rebuild_mirror_from_ledger(self, chain_id: Optional[str] = None) -> int:
        """
        Regenerate ledger_transactions rows from the ledger files.

        Rows for the selected chains (both by default) are deleted and
        re-inserted in one transaction. Blocks at or after a broken link are
        mirrored with ``verified=False``.

        Returns:
            Number of rows written.

        Raises:
            StorageCorrupt: a ledger file cannot be parsed (nothing changed).
            MirrorWriteFailed: the database write failed (rolled back).
        """
        from algorithms.chain_verify import verify_chain

        chain_ids = [chain_id] if chain_id else [self.evidence_chain_id, self.custody_chain_id]
        rows = []
        for cid in chain_ids:
            ledger = self.store.load(cid)
            check = verify_chain(ledger, self.store.sealing_policy)
            for block in ledger.blocks:
                verified = check.intact or block.sequence_number < check.broken_at
                rows.append(mirror_row_for(cid, block, verified=verified))

        try:
            stale = (
                self.session.query(LedgerTransaction)
                .filter(LedgerTransaction.chain_id.in_(chain_ids))
                .all()
            )
            for row in stale:
                self.session.delete(row)
            self.session.flush()
            self.session.add_all(rows)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise classify_mirror_error(exc) from exc

        logger.info("Rebuilt mirror for %s: %d rows", ", ".join(chain_ids), len(rows))
        return len(rows)

"""
Evidence Verifier
=================
Answers "was this file recorded, is its ledger intact, and who has held it?"

Given a claimed digest the verifier:
  1. Finds the EvidenceRecord block carrying that digest.
  2. Verifies the evidence chain.
  3. Attaches the custody timeline for the evidence id.

Read-only. Unknown digests produce ``exists=False`` rather than an error.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from algorithms.chain_verify import verify_chain
from services.custody_timeline import load_custody_timeline
from services.errors import InvalidInput
from services.hashing import digest_file, is_digest
from services.ledger_store import BlockKind, ChainStatus, LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    claimed_digest: str
    exists: bool
    message: str
    chain_valid: Optional[bool] = None
    broken_at: Optional[int] = None
    evidence_id: Optional[str] = None
    linkage_id: Optional[str] = None
    sequence_number: Optional[int] = None
    recorded_at: Optional[str] = None
    custody_timeline: List[Dict[str, Any]] = field(default_factory=list)
    # Set only by verify_evidence_file when a claimed digest was supplied
    actual_digest: Optional[str] = None
    hash_matches: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EvidenceVerifier:
    def __init__(self, ledger_store: LedgerStore, session, settings):
        self.store = ledger_store
        self.session = session
        self.settings = settings

    def verify_evidence(self, claimed_digest: str) -> VerificationResult:
        """
        Verify a digest against the evidence ledger.

        Raises:
            InvalidInput: *claimed_digest* is not a SHA-256 hex string.
            StorageCorrupt: the evidence ledger cannot be parsed.
        """
        if isinstance(claimed_digest, str):
            claimed_digest = claimed_digest.strip().lower()
        if not is_digest(claimed_digest):
            raise InvalidInput(f"Invalid digest: {claimed_digest!r}")

        chain_id = self.settings.evidence_chain_id
        ledger = self.store.load(chain_id)
        block = next(
            (
                b for b in ledger.blocks
                if b.kind is BlockKind.EVIDENCE_RECORD
                and b.payload.get("evidence_digest") == claimed_digest
            ),
            None,
        )
        if block is None:
            logger.info("No evidence record for digest %s", claimed_digest[:12])
            return VerificationResult(
                claimed_digest=claimed_digest,
                exists=False,
                message="Evidence not found in ledger",
            )

        check = verify_chain(ledger, self.store.sealing_policy)
        metadata = block.payload.get("metadata") or {}
        evidence_id = metadata.get("evidence_id") or claimed_digest
        timeline = [row.to_dict() for row in load_custody_timeline(self.session, evidence_id)]

        if check.intact:
            message = "Evidence verified: ledger record found and chain intact"
        else:
            message = f"Evidence recorded but chain compromised at block {check.broken_at}"
            logger.warning(
                "Verification of %s found compromised chain %s at %s",
                evidence_id,
                chain_id,
                check.broken_at,
                extra={"evidence_id": evidence_id, "chain_id": chain_id},
            )

        return VerificationResult(
            claimed_digest=claimed_digest,
            exists=True,
            message=message,
            chain_valid=check.intact,
            broken_at=check.broken_at,
            evidence_id=evidence_id,
            linkage_id=block.linkage_id,
            sequence_number=block.sequence_number,
            recorded_at=block.created_at,
            custody_timeline=timeline,
        )

    def verify_evidence_file(self, path, claimed_digest: Optional[str] = None) -> VerificationResult:
        """
        Digest *path* and verify the result.

        File errors propagate as FileMissing / FileAccessError / FileReadTimeout.
        """
        actual = digest_file(path, timeout=self.settings.file_read_timeout_seconds)
        result = self.verify_evidence(actual)
        result.actual_digest = actual
        if claimed_digest is not None:
            result.hash_matches = actual == str(claimed_digest).strip().lower()
            if not result.hash_matches:
                result.message = "File digest does not match the claimed digest; " + result.message
        return result

    def chain_statuses(self) -> List[ChainStatus]:
        return [
            self.store.status(self.settings.evidence_chain_id),
            self.store.status(self.settings.custody_chain_id),
        ]

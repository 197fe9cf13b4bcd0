"""
Ledger Chain Verification
==========================
Walks a ledger and confirms every block still commits to its own content
and to its predecessor.

Checks, per block i:
  - sequence_number == i (gapless, 0-based)
  - previous_linkage_id == blocks[i-1].linkage_id (None for block 0)
  - recomputed linkage id == stored linkage id
  - the sealing policy prefix holds, when one is configured

The first failing index is reported. Pure and read-only.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from algorithms.base import AlgorithmBase, AlgorithmParams
from algorithms.registry import registry
from services.errors import ChainCompromised
from services.ledger_store import Ledger, SealingPolicy, compute_linkage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainVerification:
    chain_id: str
    intact: bool
    block_count: int
    broken_at: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "intact": self.intact,
            "block_count": self.block_count,
            "broken_at": self.broken_at,
            "reason": self.reason,
        }


def verify_chain(ledger: Ledger, sealing_policy: Optional[SealingPolicy] = None) -> ChainVerification:
    """Verify *ledger*. Empty and single-block ledgers with valid content are intact."""
    policy = sealing_policy or SealingPolicy()
    count = len(ledger.blocks)

    def broken(index: int, reason: str) -> ChainVerification:
        logger.warning("Chain %s compromised at block %d: %s", ledger.chain_id, index, reason)
        return ChainVerification(
            chain_id=ledger.chain_id,
            intact=False,
            block_count=count,
            broken_at=index,
            reason=reason,
        )

    previous = None
    for index, block in enumerate(ledger.blocks):
        if block.sequence_number != index:
            return broken(index, f"sequence number {block.sequence_number} at position {index}")
        if block.previous_linkage_id != previous:
            return broken(index, "previous linkage id does not match predecessor")
        if compute_linkage(block.linkage_material()) != block.linkage_id:
            return broken(index, "block content does not match its linkage id")
        if not policy.satisfied(block.linkage_id):
            return broken(index, f"linkage id does not meet sealing difficulty {policy.difficulty}")
        previous = block.linkage_id

    return ChainVerification(chain_id=ledger.chain_id, intact=True, block_count=count)


def require_intact(result: ChainVerification) -> ChainVerification:
    """Fail-closed helper: raise ChainCompromised unless *result* is intact."""
    if not result.intact:
        raise ChainCompromised(result.chain_id, result.broken_at, result.reason)
    return result


@registry.register
class ChainVerificationAlgorithm(AlgorithmBase):
    """Verify the hash linkage of one ledger chain."""

    @property
    def algorithm_id(self) -> str:
        return "chain_verification"

    @property
    def algorithm_version(self) -> str:
        return "1.0.0"

    def _execute(
        self, params: AlgorithmParams, context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Context keys:
          - ledger_store: LedgerStore holding the chain named by params.subject_id.
        """
        store = context["ledger_store"]
        ledger = store.load(params.subject_id)
        return verify_chain(ledger, store.sealing_policy).to_dict()

"""
Hash-Chained Ledger Store
==========================
Append-only ledgers persisted as one JSON-lines file per chain
(``<root>/<chain_id>.jsonl``, one block per line).

Design principles:
  - Blocks are never edited or deleted; ``append`` is the only write path.
  - ``linkage_id`` is the SHA-256 of the whole block minus the linkage field,
    so tampering with any stored field is detectable.
  - Appends to the same chain are serialized by a per-chain lock; different
    chains never contend.
  - A block is written with a single write + fsync. If the write fails the
    file is truncated back to its previous length.
  - There is no global chain: callers hold a ``LedgerStore`` and pass it in.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from algorithms.base import canonical_json
from services.errors import InvalidInput, StorageCorrupt
from services.hashing import digest_json

logger = logging.getLogger(__name__)

_CHAIN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")


class BlockKind(str, Enum):
    EVIDENCE_RECORD = "EvidenceRecord"
    CUSTODY_TRANSFER = "CustodyTransfer"
    SEALED = "Sealed"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Block:
    """One immutable ledger entry."""

    sequence_number: int
    created_at: str          # ISO-8601 UTC
    kind: BlockKind
    payload: Dict[str, Any]
    linkage_id: str
    previous_linkage_id: Optional[str]
    nonce: int = 0

    def linkage_material(self) -> Dict[str, Any]:
        """Everything the linkage id commits to."""
        return linkage_material(
            self.sequence_number,
            self.created_at,
            self.kind,
            self.payload,
            self.previous_linkage_id,
            self.nonce,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "created_at": self.created_at,
            "kind": self.kind.value,
            "payload": self.payload,
            "linkage_id": self.linkage_id,
            "previous_linkage_id": self.previous_linkage_id,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Block":
        payload = data["payload"]
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        return cls(
            sequence_number=int(data["sequence_number"]),
            created_at=str(data["created_at"]),
            kind=BlockKind(data["kind"]),
            payload=payload,
            linkage_id=str(data["linkage_id"]),
            previous_linkage_id=data["previous_linkage_id"],
            nonce=int(data.get("nonce", 0)),
        )


@dataclass(frozen=True)
class Ledger:
    """An ordered snapshot of one chain."""

    chain_id: str
    blocks: Tuple[Block, ...] = ()

    def __len__(self) -> int:
        return len(self.blocks)

    @property
    def last(self) -> Optional[Block]:
        return self.blocks[-1] if self.blocks else None


@dataclass(frozen=True)
class ChainStatus:
    """Summary of one chain for status displays."""

    chain_id: str
    block_count: int
    last_sequence_number: Optional[int]
    last_linkage_id: Optional[str]
    intact: bool
    broken_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "block_count": self.block_count,
            "last_sequence_number": self.last_sequence_number,
            "last_linkage_id": self.last_linkage_id,
            "intact": self.intact,
            "broken_at": self.broken_at,
        }


def linkage_material(
    sequence_number: int,
    created_at: str,
    kind: BlockKind,
    payload: Dict[str, Any],
    previous_linkage_id: Optional[str],
    nonce: int,
) -> Dict[str, Any]:
    return {
        "sequence_number": sequence_number,
        "created_at": created_at,
        "kind": BlockKind(kind).value,
        "payload": payload,
        "previous_linkage_id": previous_linkage_id,
        "nonce": nonce,
    }


def compute_linkage(material: Dict[str, Any]) -> str:
    return digest_json(material)


# ---------------------------------------------------------------------------
# Sealing cost
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SealingPolicy:
    """
    Optional proof-of-work style cost on every block.

    With ``difficulty=n`` each linkage id must start with ``n`` zero hex
    digits; the store searches ``nonce`` until it does. ``difficulty=0``
    disables the policy.
    """

    difficulty: int = 0
    max_attempts: int = 50_000_000

    def __post_init__(self):
        if self.difficulty < 0 or self.difficulty > 64:
            raise InvalidInput(f"Sealing difficulty out of range: {self.difficulty}")

    @property
    def enabled(self) -> bool:
        return self.difficulty > 0

    def satisfied(self, linkage_id: str) -> bool:
        return linkage_id.startswith("0" * self.difficulty)

    def seal(self, material: Dict[str, Any]) -> Tuple[int, str]:
        """Return (nonce, linkage_id) satisfying the policy."""
        nonce = 0
        while True:
            material["nonce"] = nonce
            linkage_id = compute_linkage(material)
            if self.satisfied(linkage_id):
                return nonce, linkage_id
            nonce += 1
            if nonce >= self.max_attempts:
                raise InvalidInput(
                    f"No nonce found within {self.max_attempts} attempts at difficulty {self.difficulty}"
                )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass
class _Tail:
    size: int
    count: int
    last_linkage_id: Optional[str]
    since_seal: int = 0


class LedgerStore:
    """
    Filesystem-backed ledgers, one file per chain.

    Root directory is created on init.
    """

    def __init__(self, root: str = "ledger-data", sealing_policy: Optional[SealingPolicy] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.sealing_policy = sealing_policy or SealingPolicy()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._tails: Dict[str, _Tail] = {}
        logger.info(
            "LedgerStore initialized at %s (sealing difficulty=%d)",
            self.root,
            self.sealing_policy.difficulty,
        )

    # -- paths and locks ---------------------------------------------------

    def path_for(self, chain_id: str) -> Path:
        if not isinstance(chain_id, str) or not _CHAIN_ID_RE.match(chain_id):
            raise InvalidInput(f"Invalid chain id: {chain_id!r}")
        return self.root / f"{chain_id}.jsonl"

    def _lock_for(self, chain_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(chain_id)
            if lock is None:
                lock = self._locks[chain_id] = threading.RLock()
            return lock

    def chain_ids(self) -> List[str]:
        return sorted(p.stem for p in self.root.glob("*.jsonl"))

    # -- reading -----------------------------------------------------------

    def _read_blocks(self, chain_id: str) -> List[Block]:
        path = self.path_for(chain_id)
        if not path.exists():
            return []
        blocks: List[Block] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.endswith("\n"):
                        raise StorageCorrupt(
                            f"{path.name}: line {line_no} is truncated"
                        )
                    if not line.strip():
                        raise StorageCorrupt(f"{path.name}: line {line_no} is empty")
                    try:
                        blocks.append(Block.from_dict(json.loads(line)))
                    except (ValueError, KeyError, TypeError) as exc:
                        raise StorageCorrupt(
                            f"{path.name}: line {line_no} cannot be parsed: {exc}"
                        ) from exc
        except UnicodeDecodeError as exc:
            raise StorageCorrupt(f"{path.name}: not valid UTF-8") from exc
        except OSError as exc:
            raise StorageCorrupt(f"{path.name}: unreadable: {exc}") from exc
        return blocks

    def _tail(self, chain_id: str) -> _Tail:
        """Current tail of the chain; caller holds the chain lock."""
        path = self.path_for(chain_id)
        size = path.stat().st_size if path.exists() else 0
        cached = self._tails.get(chain_id)
        if cached is not None and cached.size == size:
            return cached
        blocks = self._read_blocks(chain_id)
        since_seal = 0
        for block in reversed(blocks):
            if block.kind is BlockKind.SEALED:
                break
            since_seal += 1
        tail = _Tail(
            size=size,
            count=len(blocks),
            last_linkage_id=blocks[-1].linkage_id if blocks else None,
            since_seal=since_seal,
        )
        self._tails[chain_id] = tail
        return tail

    def load(self, chain_id: str) -> Ledger:
        """
        Return the full ordered chain.

        Raises:
            StorageCorrupt: a persisted line cannot be parsed.
        """
        with self._lock_for(chain_id):
            blocks = self._read_blocks(chain_id)
        return Ledger(chain_id=chain_id, blocks=tuple(blocks))

    def get_block(self, chain_id: str, sequence_number: int) -> Optional[Block]:
        blocks = self.load(chain_id).blocks
        if 0 <= sequence_number < len(blocks):
            return blocks[sequence_number]
        return None

    def find(self, chain_id: str, predicate: Callable[[Block], bool]) -> Optional[Block]:
        """First block matching *predicate*, in chain order."""
        for block in self.load(chain_id).blocks:
            if predicate(block):
                return block
        return None

    def find_by_linkage(self, chain_id: str, linkage_id: str) -> Optional[Block]:
        return self.find(chain_id, lambda b: b.linkage_id == linkage_id)

    # -- writing -----------------------------------------------------------

    def append(self, chain_id: str, kind: BlockKind, payload: Dict[str, Any]) -> Block:
        """
        Append one block and return it.

        The sequence number and previous linkage id are taken under the
        chain lock, so concurrent appenders never share a number or fork.

        Raises:
            InvalidInput: unknown kind or a payload that is not a JSON object.
            StorageCorrupt: the existing chain cannot be parsed.
            OSError: the write failed (nothing was appended).
        """
        try:
            kind = BlockKind(kind)
        except ValueError as exc:
            raise InvalidInput(f"Unknown block kind: {kind!r}") from exc
        if not isinstance(payload, dict):
            raise InvalidInput("Block payload must be a dict")
        try:
            payload = json.loads(canonical_json(payload))
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Payload is not JSON serializable: {exc}") from exc

        path = self.path_for(chain_id)
        with self._lock_for(chain_id):
            tail = self._tail(chain_id)
            material = linkage_material(
                tail.count,
                datetime.now(timezone.utc).isoformat(),
                kind,
                payload,
                tail.last_linkage_id,
                0,
            )
            if self.sealing_policy.enabled:
                nonce, linkage_id = self.sealing_policy.seal(material)
            else:
                nonce, linkage_id = 0, compute_linkage(material)

            block = Block(
                sequence_number=material["sequence_number"],
                created_at=material["created_at"],
                kind=kind,
                payload=payload,
                linkage_id=linkage_id,
                previous_linkage_id=tail.last_linkage_id,
                nonce=nonce,
            )
            line = (canonical_json(block.to_dict()) + "\n").encode("utf-8")
            self._write_line(path, line, tail.size)

            self._tails[chain_id] = _Tail(
                size=tail.size + len(line),
                count=tail.count + 1,
                last_linkage_id=linkage_id,
                since_seal=0 if kind is BlockKind.SEALED else tail.since_seal + 1,
            )

        logger.info(
            "Appended %s block #%d to %s (%s)",
            kind.value,
            block.sequence_number,
            chain_id,
            linkage_id[:12],
        )
        return block

    def _write_line(self, path: Path, line: bytes, expected_size: int) -> None:
        with open(path, "ab") as f:
            start = f.seek(0, os.SEEK_END)
            if start != expected_size:
                raise StorageCorrupt(
                    f"{path.name}: size changed under the lock ({start} != {expected_size})"
                )
            try:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            except BaseException:
                f.truncate(start)
                f.flush()
                logger.error("Append to %s failed; truncated back to %d bytes", path.name, start)
                raise

    def seal(self, chain_id: str, reason: Optional[str] = None) -> Block:
        """
        Append a checkpoint block with no business transaction.

        Valid on an empty chain, where it becomes block 0.
        """
        with self._lock_for(chain_id):
            batch_size = self._tail(chain_id).since_seal
            return self.append(
                chain_id,
                BlockKind.SEALED,
                {"sealed": True, "reason": reason or "checkpoint", "batch_size": batch_size},
            )

    # -- status ------------------------------------------------------------

    def status(self, chain_id: str) -> ChainStatus:
        from algorithms.chain_verify import verify_chain

        ledger = self.load(chain_id)
        check = verify_chain(ledger, self.sealing_policy)
        last = ledger.last
        return ChainStatus(
            chain_id=chain_id,
            block_count=len(ledger),
            last_sequence_number=last.sequence_number if last else None,
            last_linkage_id=last.linkage_id if last else None,
            intact=check.intact,
            broken_at=check.broken_at,
        )

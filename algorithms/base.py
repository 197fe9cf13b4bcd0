"""
Algorithm Base Classes
=======================
Defines the contract for every ledger and custody analysis algorithm.

Every algorithm:
  1. Declares a unique (algorithm_id, version) pair.
  2. Accepts serializable parameters (AlgorithmParams).
  3. Returns an AlgorithmResult carrying params/result hashes.
  4. Is deterministic: same inputs + params → identical result hash.
  5. Never raises out of run(); failures become an unsuccessful result.
"""

import hashlib
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical JSON serialization (deterministic)
# ---------------------------------------------------------------------------

def canonical_json(obj: Any) -> str:
    """
    Produce a deterministic JSON string.

    Keys are sorted, no extra whitespace, ASCII-safe. Values JSON cannot
    represent natively (datetimes, enums) are stringified.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def hash_json(obj: Any) -> str:
    """SHA-256 of the canonical JSON representation."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class AlgorithmParams:
    """
    Serializable parameters for an algorithm run.

    ``subject_id`` names what the run is about: an evidence id for custody
    analysis, a chain id for ledger verification.
    """
    subject_id: str
    actor_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def canonical(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class AlgorithmResult:
    """Standard result envelope for every algorithm run."""
    algorithm_id: str
    algorithm_version: str
    run_id: str

    params_hash: str = ""
    result_hash: str = ""

    payload: Dict[str, Any] = field(default_factory=dict)

    started_at: str = ""
    completed_at: str = ""
    duration_seconds: float = 0.0

    success: bool = True
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    integrity_check: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def compute_integrity(self) -> str:
        """Hash of the whole result, excluding the integrity_check field itself."""
        d = self.to_dict()
        d.pop("integrity_check", None)
        return hash_json(d)

    def finalize(self) -> "AlgorithmResult":
        self.integrity_check = self.compute_integrity()
        return self


# ---------------------------------------------------------------------------
# Algorithm base class
# ---------------------------------------------------------------------------

class AlgorithmBase(ABC):
    """
    Abstract base for registered algorithms.

    Subclasses must implement:
      - algorithm_id (property): unique identifier e.g. "chain_verification"
      - algorithm_version (property): semver string e.g. "1.0.0"
      - _execute(params, context): the deterministic core logic
    """

    @property
    @abstractmethod
    def algorithm_id(self) -> str:
        ...

    @property
    @abstractmethod
    def algorithm_version(self) -> str:
        ...

    @property
    def description(self) -> str:
        return self.__class__.__doc__ or ""

    @abstractmethod
    def _execute(
        self, params: AlgorithmParams, context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Core algorithm logic.

        Args:
            params: Algorithm parameters.
            context: Runtime handles (db_session, ledger_store, settings).

        Returns:
            Payload dict that will be wrapped in AlgorithmResult.
        """
        ...

    def run(self, params: AlgorithmParams, context: Dict[str, Any]) -> AlgorithmResult:
        """Execute the algorithm and wrap its payload with provenance metadata."""
        run_id = str(uuid.uuid4())
        started_at = datetime.now(timezone.utc)

        result = AlgorithmResult(
            algorithm_id=self.algorithm_id,
            algorithm_version=self.algorithm_version,
            run_id=run_id,
            params_hash=hash_json(params.to_dict()),
            started_at=started_at.isoformat(),
        )

        try:
            payload = self._execute(params, context)
            result.payload = payload
            result.warnings = list(payload.get("warnings", []))
            result.success = True
        except Exception as exc:
            logger.error(
                "Algorithm %s v%s run %s failed: %s",
                self.algorithm_id,
                self.algorithm_version,
                run_id,
                exc,
                exc_info=True,
            )
            result.success = False
            result.error = str(exc)

        completed_at = datetime.now(timezone.utc)
        result.completed_at = completed_at.isoformat()
        result.duration_seconds = round(
            (completed_at - started_at).total_seconds(), 4
        )
        result.result_hash = hash_json(result.payload)
        return result.finalize()

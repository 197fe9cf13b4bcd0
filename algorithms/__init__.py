"""
Ledger and Custody Algorithms
==============================
Deterministic analyses over the custody ledgers and timelines.

Package layout:
  algorithms/
    base.py             : AlgorithmBase, AlgorithmResult, AlgorithmParams, canonical JSON.
    registry.py         : Versioned algorithm registry.
    chain_verify.py     : Ledger hash-chain verification.
    custody_anomaly.py  : Rule-based custody anomaly detection and risk scoring.
"""

from algorithms.base import AlgorithmBase, AlgorithmParams, AlgorithmResult  # noqa: F401
from algorithms.registry import AlgorithmRegistry, registry  # noqa: F401

__all__ = [
    "AlgorithmBase",
    "AlgorithmResult",
    "AlgorithmParams",
    "AlgorithmRegistry",
    "registry",
]

"""
Algorithm Registry
===================
Versioned lookup of registered algorithms, used by the CLI.

    from algorithms.registry import registry

    @registry.register
    class ChainVerificationAlgorithm(AlgorithmBase):
        ...

    registry.get("chain_verification")
    registry.list_algorithms()
"""

import logging
from typing import Dict, List, Optional, Type

from algorithms.base import AlgorithmBase

logger = logging.getLogger(__name__)


def _version_key(version: str):
    parts = []
    for piece in version.split("."):
        parts.append(int(piece) if piece.isdigit() else 0)
    return tuple(parts)


class AlgorithmRegistry:
    """Maps algorithm_id → {version → instance}."""

    def __init__(self):
        self._algorithms: Dict[str, Dict[str, AlgorithmBase]] = {}

    def register(self, cls: Type[AlgorithmBase]) -> Type[AlgorithmBase]:
        """Class decorator: instantiate and register an algorithm."""
        instance = cls()
        versions = self._algorithms.setdefault(instance.algorithm_id, {})
        if instance.algorithm_version in versions:
            logger.warning(
                "Replacing algorithm %s v%s in registry",
                instance.algorithm_id,
                instance.algorithm_version,
            )
        versions[instance.algorithm_version] = instance
        logger.debug("Registered algorithm %s v%s", instance.algorithm_id, instance.algorithm_version)
        return cls

    def get(self, algorithm_id: str, version: Optional[str] = None) -> Optional[AlgorithmBase]:
        """Return the requested version, or the highest registered one."""
        versions = self._algorithms.get(algorithm_id)
        if not versions:
            return None
        if version:
            return versions.get(version)
        return versions[max(versions, key=_version_key)]

    def list_algorithms(self) -> List[Dict[str, str]]:
        result = []
        for aid, versions in sorted(self._algorithms.items()):
            for ver in sorted(versions, key=_version_key):
                doc = versions[ver].description.strip()
                result.append({
                    "algorithm_id": aid,
                    "version": ver,
                    "description": doc.split("\n")[0] if doc else "",
                })
        return result

    def ids(self) -> List[str]:
        return sorted(self._algorithms)


registry = AlgorithmRegistry()

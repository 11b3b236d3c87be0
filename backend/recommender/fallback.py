"""
Fallback Candidates
====================
What to recommend when the constraint gate removes everything.

Order of preference for the catalog provider:
  1. Last-known-good candidate for the segment (if its breakers are closed)
  2. The scenario's configured default target
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .cache import CacheBackend, TTLCacheBackend, validate_candidates
from .circuit_breaker import CircuitBreakerRegistry
from .coarse import ScoredCandidate
from .config import SCENARIOS
from .models import RawCandidate

logger = logging.getLogger(__name__)


class LastKnownGoodCache:
    """Chosen candidate of the latest exploit decision per (scenario, segment)."""

    def __init__(self, backend: Optional[CacheBackend] = None):
        self.backend = backend if backend is not None else TTLCacheBackend(max_entries=1000, ttl_s=1800)

    @staticmethod
    def _key(scenario: str, segment_key: str) -> str:
        return f"{scenario}|{segment_key}"

    def remember(self, scenario: str, segment_key: str, candidate: RawCandidate) -> None:
        self.backend.set(self._key(scenario, segment_key), candidate)

    def get(self, scenario: str, segment_key: str) -> Optional[RawCandidate]:
        return self.backend.get(self._key(scenario, segment_key))

    def clear(self) -> int:
        return self.backend.clear()


class FallbackCandidateProvider(ABC):
    """Supplies one out-of-pool candidate when the gate empties the pool."""

    @abstractmethod
    async def fallback(
        self,
        scenario: str,
        segment_key: str,
        breakers: CircuitBreakerRegistry,
    ) -> Optional[ScoredCandidate]:
        ...


class CatalogFallbackProvider(FallbackCandidateProvider):
    """
    Usage:
        provider = CatalogFallbackProvider(source, lkg)
        scored = await provider.fallback("task->model", "default|default|default", breakers)
    """

    def __init__(self, source, lkg: Optional[LastKnownGoodCache] = None):
        self.source = source
        self.lkg = lkg or LastKnownGoodCache()

    async def fallback(
        self,
        scenario: str,
        segment_key: str,
        breakers: CircuitBreakerRegistry,
    ) -> Optional[ScoredCandidate]:
        lkg = self.lkg.get(scenario, segment_key)
        if lkg is not None and not any(breakers.is_open(k) for k in lkg.breaker_keys()):
            logger.info(f"↩️  Fallback for {scenario}: last-known-good {lkg.id}")
            return ScoredCandidate(raw=lkg, reason={"fallbackSource": "last_known_good"})

        default = await self._default_candidate(scenario)
        if default is None:
            logger.error(f"❌ No fallback candidate configured for {scenario}")
            return None

        logger.info(f"↩️  Fallback for {scenario}: default {default.id}")
        return ScoredCandidate(raw=default, reason={"fallbackSource": "scenario_default"})

    async def _default_candidate(self, scenario: str) -> Optional[RawCandidate]:
        scenario_def = SCENARIOS.get(scenario)
        if scenario_def is None or not scenario_def.default_target_id:
            return None

        target_id = scenario_def.default_target_id
        row = None
        try:
            row = await self.source.get(scenario, target_id)
        except Exception as e:
            logger.warning(f"Fallback lookup of {target_id} failed: {e}")

        if row is None:
            # Not in the catalog: synthesize a minimal record of the right type
            row = {"id": target_id, "name": target_id}
            if scenario_def.target_type == "model":
                row["provider"] = target_id.split("/", 1)[0]

        validated = validate_candidates(scenario, [row])
        return validated[0] if validated else None

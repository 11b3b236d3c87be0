"""
Recommender Caches
===================
- CacheBackend          → get/set/clear interface (swap in a shared store)
- TTLCacheBackend       → cachetools.TTLCache behind a lock
- CandidatePoolCache    → fingerprinted raw candidate pools
- DecisionCache         → rank responses keyed by requestId (idempotent replay)

A cache miss never raises. A failing CandidateSource is logged and treated as
an empty pool so ranking can still fall back.
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from cachetools import TTLCache
from pydantic import TypeAdapter, ValidationError

from .config import SCENARIOS
from .models import ContextInput, RankResponse, RawCandidate, TaskInput

logger = logging.getLogger(__name__)

_raw_candidate_adapter = TypeAdapter(RawCandidate)


class CacheBackend(ABC):
    """Minimal key/value cache with expiry owned by the backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def clear(self) -> int:
        """Drop every entry. Returns how many were dropped."""
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class TTLCacheBackend(CacheBackend):
    """In-process backend. Entries expire `ttl_s` seconds after insertion."""

    def __init__(
        self,
        max_entries: int = 300,
        ttl_s: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_s, timer=clock)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def clear(self) -> int:
        with self._lock:
            self._cache.expire()
            count = len(self._cache)
            self._cache.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)


def fingerprint(scenario: str, task: Optional[TaskInput], context: Optional[ContextInput]) -> str:
    """SHA-256 of the canonical JSON of (scenario, task, context)."""
    payload = {
        "scenario": scenario,
        "task": task.model_dump(mode="json", exclude_none=True) if task else {},
        "context": context.model_dump(mode="json", exclude_none=True) if context else {},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_candidates(scenario: str, rows: List[dict]) -> List[RawCandidate]:
    """Validate raw rows against the per-type feature schemas. Invalid rows are dropped."""
    scenario_def = SCENARIOS.get(scenario)
    expected_type = scenario_def.target_type if scenario_def else None

    valid: List[RawCandidate] = []
    for row in rows:
        if not isinstance(row, dict):
            logger.warning(f"⚠️  Dropping non-object candidate in {scenario}: {row!r}")
            continue
        if expected_type and "targetType" not in row and "target_type" not in row:
            row = {**row, "targetType": expected_type}
        try:
            candidate = _raw_candidate_adapter.validate_python(row)
        except ValidationError as e:
            logger.warning(
                f"⚠️  Dropping invalid candidate {row.get('id', '?')} in {scenario}: "
                f"{e.error_count()} validation error(s)"
            )
            continue
        if expected_type and candidate.target_type != expected_type:
            logger.warning(
                f"⚠️  Dropping candidate {candidate.id}: type {candidate.target_type} "
                f"does not match scenario {scenario}"
            )
            continue
        valid.append(candidate)
    return valid


class CandidatePoolCache:
    """
    Fingerprinted cache in front of a CandidateSource.

    Usage:
        pool_cache = CandidatePoolCache(source, TTLCacheBackend(ttl_s=300))
        candidates = await pool_cache.get_or_fetch(scenario, task, context)
    """

    def __init__(
        self,
        source,
        backend: Optional[CacheBackend] = None,
        on_lookup: Optional[Callable[[bool], None]] = None,
    ):
        self.source = source
        self.backend = backend if backend is not None else TTLCacheBackend()
        self._on_lookup = on_lookup

    async def get_or_fetch(
        self,
        scenario: str,
        task: Optional[TaskInput],
        context: Optional[ContextInput],
    ) -> List[RawCandidate]:
        key = fingerprint(scenario, task, context)

        try:
            cached = self.backend.get(key)
        except Exception as e:
            logger.warning(f"Pool cache read failed ({e}), falling through to source")
            cached = None

        if cached is not None:
            if self._on_lookup:
                self._on_lookup(True)
            return list(cached)

        if self._on_lookup:
            self._on_lookup(False)

        try:
            rows = await self.source.fetch(scenario, task, context)
        except Exception as e:
            logger.error(f"❌ Candidate source failed for {scenario}: {e}")
            return []

        candidates = validate_candidates(scenario, rows or [])

        try:
            self.backend.set(key, tuple(candidates))
        except Exception as e:
            logger.warning(f"Pool cache write failed: {e}")

        logger.debug(f"Pool cache miss for {scenario} ({key[:12]}…): {len(candidates)} candidates")
        return candidates

    def clear(self) -> int:
        count = self.backend.clear()
        logger.info(f"🧹 Candidate pool cache cleared ({count} entries)")
        return count


class DecisionCache:
    """Already-recorded rank responses keyed by the caller's requestId."""

    def __init__(self, backend: Optional[CacheBackend] = None):
        self.backend = backend if backend is not None else TTLCacheBackend(max_entries=500, ttl_s=600)

    def get(self, request_id: Optional[str]) -> Optional[RankResponse]:
        if not request_id:
            return None
        return self.backend.get(request_id)

    def put(self, request_id: Optional[str], response: RankResponse) -> None:
        if request_id:
            self.backend.set(request_id, response)

    def clear(self) -> int:
        count = self.backend.clear()
        logger.info(f"🧹 Decision cache cleared ({count} entries)")
        return count

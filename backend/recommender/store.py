"""
Recommendation Store
=====================
Persistence boundary for candidate sets, decisions, outcomes, events, feedback
and per-scenario settings.

- RecommendationStore          → async interface
- InMemoryRecommendationStore  → process-local implementation (dev / tests)

The Postgres implementation lives in postgres_store.py.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import (
    CandidateSet,
    Decision,
    Event,
    Feedback,
    Outcome,
    RecommendationSetting,
    utcnow,
)

logger = logging.getLogger(__name__)


class RecommendationStore(ABC):
    name = "abstract"

    # ── Decisions ─────────────────────────────────────────────────

    @abstractmethod
    async def save_decision(self, candidate_set: CandidateSet, decision: Decision) -> None:
        """Persist both records atomically. Re-saving the same ids is a no-op."""

    @abstractmethod
    async def get_decision(self, decision_id: str) -> Optional[Decision]:
        ...

    @abstractmethod
    async def get_candidate_set(self, candidate_set_id: str) -> Optional[CandidateSet]:
        ...

    @abstractmethod
    async def list_decisions(
        self,
        since: datetime,
        scenario: Optional[str] = None,
    ) -> List[Decision]:
        ...

    @abstractmethod
    async def recent_decisions_for_subject(
        self,
        subject_key: str,
        scenario: str,
        limit: int,
    ) -> List[Decision]:
        """Newest first."""

    # ── Outcomes / events / feedback ──────────────────────────────

    @abstractmethod
    async def upsert_outcome(self, decision_id: str, values: Dict[str, Any]) -> Outcome:
        """Create or merge. Fields absent from `values` keep their stored value."""

    @abstractmethod
    async def get_outcome(self, decision_id: str) -> Optional[Outcome]:
        ...

    @abstractmethod
    async def append_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def list_events(self, decision_id: str) -> List[Event]:
        ...

    @abstractmethod
    async def add_feedback(self, feedback: Feedback) -> Feedback:
        ...

    # ── Settings ──────────────────────────────────────────────────

    @abstractmethod
    async def get_setting(self, scenario: str) -> Optional[RecommendationSetting]:
        ...

    @abstractmethod
    async def upsert_setting(self, setting: RecommendationSetting) -> RecommendationSetting:
        ...

    @abstractmethod
    async def list_settings(self) -> List[RecommendationSetting]:
        ...

    async def close(self) -> None:
        return None


class InMemoryRecommendationStore(RecommendationStore):
    """
    Dict-backed store. One asyncio lock serializes writes so the outcome merge
    and the decision/candidate-set pair are atomic within the process.

    `fail_next_saves` makes the next N save_decision calls raise (tests).
    """

    name = "memory"

    def __init__(self):
        self._lock = asyncio.Lock()
        self._candidate_sets: Dict[str, CandidateSet] = {}
        self._decisions: Dict[str, Decision] = {}
        self._outcomes: Dict[str, Outcome] = {}
        self._events: Dict[str, List[Event]] = {}
        self._feedback: Dict[str, List[Feedback]] = {}
        self._settings: Dict[str, RecommendationSetting] = {}
        self.fail_next_saves = 0

    async def save_decision(self, candidate_set: CandidateSet, decision: Decision) -> None:
        async with self._lock:
            if self.fail_next_saves > 0:
                self.fail_next_saves -= 1
                raise ConnectionError("simulated store outage")
            if decision.id in self._decisions:
                return
            self._candidate_sets.setdefault(candidate_set.id, candidate_set)
            self._decisions[decision.id] = decision

    async def get_decision(self, decision_id: str) -> Optional[Decision]:
        return self._decisions.get(decision_id)

    async def get_candidate_set(self, candidate_set_id: str) -> Optional[CandidateSet]:
        return self._candidate_sets.get(candidate_set_id)

    async def list_decisions(
        self,
        since: datetime,
        scenario: Optional[str] = None,
    ) -> List[Decision]:
        return [
            d for d in self._decisions.values()
            if d.created_at >= since and (scenario is None or d.scenario == scenario)
        ]

    async def recent_decisions_for_subject(
        self,
        subject_key: str,
        scenario: str,
        limit: int,
    ) -> List[Decision]:
        matches = [
            d for d in self._decisions.values()
            if d.subject_key == subject_key and d.scenario == scenario
        ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        return matches[:limit]

    async def upsert_outcome(self, decision_id: str, values: Dict[str, Any]) -> Outcome:
        async with self._lock:
            current = self._outcomes.get(decision_id)
            if current is None:
                outcome = Outcome(decision_id=decision_id, **values)
            else:
                merged = current.model_dump()
                merged.update(values)
                merged["updated_at"] = utcnow()
                outcome = Outcome(**merged)
            self._outcomes[decision_id] = outcome
            return outcome

    async def get_outcome(self, decision_id: str) -> Optional[Outcome]:
        return self._outcomes.get(decision_id)

    async def append_event(self, event: Event) -> Event:
        async with self._lock:
            self._events.setdefault(event.decision_id, []).append(event)
        return event

    async def list_events(self, decision_id: str) -> List[Event]:
        return list(self._events.get(decision_id, []))

    async def add_feedback(self, feedback: Feedback) -> Feedback:
        async with self._lock:
            self._feedback.setdefault(feedback.decision_id, []).append(feedback)
        return feedback

    async def get_setting(self, scenario: str) -> Optional[RecommendationSetting]:
        return self._settings.get(scenario)

    async def upsert_setting(self, setting: RecommendationSetting) -> RecommendationSetting:
        async with self._lock:
            stored = setting.model_copy(update={"updated_at": utcnow()})
            self._settings[setting.scenario] = stored
        return stored

    async def list_settings(self) -> List[RecommendationSetting]:
        return list(self._settings.values())

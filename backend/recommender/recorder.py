"""
Decision Recorder
==================
Persists the candidate set + decision pair and emits the ``expose`` event.

The decision id is generated before any side effect. Saves are retried with
linear backoff; the store makes re-saves of the same id a no-op, so a retry
after an ambiguous failure never duplicates. When every attempt fails the
caller gets DecisionPersistenceError and no decision id.
"""

import asyncio
import logging
from typing import Optional

from .config import EngineConfig
from .errors import DecisionPersistenceError
from .models import CandidateSet, Decision, Event, EventType, new_id
from .store import RecommendationStore

logger = logging.getLogger(__name__)


class DecisionRecorder:
    """
    Usage:
        recorder = DecisionRecorder(store, config)
        decision_id = recorder.new_decision_id()
        await recorder.record(candidate_set, decision)
    """

    def __init__(self, store: RecommendationStore, config: EngineConfig):
        self.store = store
        self.config = config

    @staticmethod
    def new_decision_id() -> str:
        return new_id()

    async def record(self, candidate_set: CandidateSet, decision: Decision) -> Decision:
        attempts = max(1, self.config.persist_retries)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                await self.store.save_decision(candidate_set, decision)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Decision {decision.id} save failed (attempt {attempt}/{attempts}): {e}"
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.persist_backoff_s * attempt)
        else:
            logger.error(f"❌ Decision {decision.id} not recorded after {attempts} attempts: {last_error}")
            raise DecisionPersistenceError(
                "Decision could not be recorded",
                details={"scenario": decision.scenario, "attempts": attempts},
            ) from last_error

        try:
            await self.store.append_event(Event(
                decision_id=decision.id,
                event_type=EventType.EXPOSE,
                payload={
                    "chosenTargetId": decision.chosen_target_id,
                    "mode": decision.mode.value,
                    "fallbackUsed": decision.fallback_used,
                },
            ))
        except Exception as e:
            # Decision is already saved; the expose event is best effort
            logger.warning(f"Expose event for {decision.id} failed: {e}")

        logger.info(
            f"📝 Decision {decision.id}: {decision.scenario} → {decision.chosen_target_id} "
            f"(mode={decision.mode.value}, fallback={decision.fallback_used})"
        )
        return decision

"""
Feedback Loop
==============
decision → outcome → implicit signal.

One feedback post can carry any mix of:
  - explicit feedback (userChoice + type)       → Feedback row + explicit_feedback event
  - an event (eventType + payload)              → appended as-is
  - outcome fields                              → merged into the decision's single Outcome
  - implicit-signal inputs                      → implicit_positive / implicit_negative event

Every ingest pushes the merged outcome into the metrics aggregator.
"""

import logging
from typing import List, Optional

from .errors import BadRequestError, DecisionNotFoundError, DecisionPersistenceError
from .metrics import MetricsAggregator, MetricsCollector
from .models import (
    Event,
    EventType,
    Feedback,
    FeedbackRequest,
    FeedbackResponse,
    SignalKind,
)
from .store import RecommendationStore

logger = logging.getLogger(__name__)

EDIT_DISTANCE_NEGATIVE = 0.3
POSITIVE_MIN_ADDED = 3


def infer_implicit_signal(
    added_selling_points: Optional[int],
    added_pain_points: Optional[int],
    rerun_count: Optional[int],
    edit_distance: Optional[float],
) -> Optional[SignalKind]:
    """
    Infer an implicit signal from downstream behavior.

    The count rule applies only when both added counts are known:
      nothing added, or rerun more than once      → negative
      three or more added, and never rerun        → positive
    A large edit distance is evaluated last and overrides the count rule.
    """
    signal: Optional[SignalKind] = None

    if added_selling_points is not None and added_pain_points is not None:
        total = added_selling_points + added_pain_points
        if total == 0 or (rerun_count or 0) > 1:
            signal = SignalKind.IMPLICIT_NEGATIVE
        elif total >= POSITIVE_MIN_ADDED and not rerun_count:
            signal = SignalKind.IMPLICIT_POSITIVE

    if edit_distance is not None and edit_distance > EDIT_DISTANCE_NEGATIVE:
        signal = SignalKind.IMPLICIT_NEGATIVE

    return signal


class FeedbackIngestor:
    """
    Usage:
        ingestor = FeedbackIngestor(store, aggregator, metrics)
        response = await ingestor.ingest(request)
    """

    def __init__(
        self,
        store: RecommendationStore,
        aggregator: Optional[MetricsAggregator] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.metrics = metrics

    async def ingest(self, req: FeedbackRequest) -> FeedbackResponse:
        if bool(req.user_choice) != bool(req.type):
            raise BadRequestError(
                "Explicit feedback needs both userChoice and type",
                code="FBK_BAD_REQUEST",
            )

        decision = await self.store.get_decision(req.decision_id)
        if decision is None:
            raise DecisionNotFoundError(
                f"Decision {req.decision_id} not found",
                details={"decisionId": req.decision_id},
            )

        events: List[Event] = []
        feedback: Optional[Feedback] = None

        try:
            if req.user_choice and req.type:
                feedback = await self.store.add_feedback(Feedback(
                    decision_id=decision.id,
                    feedback_type=req.type,
                    chosen_candidate_id=req.user_choice,
                    reason=req.reason,
                ))
                events.append(await self.store.append_event(Event(
                    decision_id=decision.id,
                    event_type=EventType.EXPLICIT_FEEDBACK,
                    payload={
                        "type": req.type,
                        "userChoice": req.user_choice,
                        "reason": req.reason,
                        "matchedChosen": req.user_choice == decision.chosen_target_id,
                    },
                )))

            if req.event_type is not None:
                events.append(await self.store.append_event(Event(
                    decision_id=decision.id,
                    event_type=req.event_type,
                    payload=req.payload,
                )))

            values = req.outcome_values()
            if values:
                outcome = await self.store.upsert_outcome(decision.id, values)
            else:
                outcome = await self.store.get_outcome(decision.id)

            signal = infer_implicit_signal(
                req.added_selling_points,
                req.added_pain_points,
                req.rerun_count,
                req.edit_distance,
            )
            if signal is not None:
                events.append(await self.store.append_event(Event(
                    decision_id=decision.id,
                    event_type=EventType(signal.value),
                    payload={
                        "reason": "auto_inferred",
                        "addedSellingPoints": req.added_selling_points,
                        "addedPainPoints": req.added_pain_points,
                        "rerunCount": req.rerun_count,
                        "editDistance": req.edit_distance,
                    },
                )))
        except Exception as e:
            logger.error(f"❌ Feedback for {decision.id} failed: {e}")
            raise DecisionPersistenceError(
                "Feedback could not be recorded",
                code="FBK_STORE_ERROR",
                details={"decisionId": decision.id},
            ) from e

        if outcome is not None and self.aggregator is not None:
            self.aggregator.record_outcome(outcome)
        if self.metrics is not None:
            for event in events:
                self.metrics.record_feedback(event.event_type.value)

        logger.info(
            f"💬 Feedback for {decision.id}: {len(events)} event(s)"
            + (f", signal={signal.value}" if signal else "")
        )
        return FeedbackResponse(
            decision_id=decision.id,
            feedback=feedback,
            events=events,
            outcome=outcome,
            implicit_signal=signal,
        )

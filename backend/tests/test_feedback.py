import pytest

from recommender.errors import BadRequestError, DecisionNotFoundError, DecisionPersistenceError
from recommender.feedback import infer_implicit_signal
from recommender.models import (
    EventType,
    FeedbackRequest,
    RankOptions,
    RankRequest,
    SignalKind,
    TaskInput,
)

NEG = SignalKind.IMPLICIT_NEGATIVE
POS = SignalKind.IMPLICIT_POSITIVE


@pytest.mark.parametrize("selling,pain,rerun,edit,expected", [
    (0, 0, None, None, NEG),        # nothing added
    (3, 3, 2, None, NEG),           # rerun more than once
    (2, 2, 0, None, POS),
    (2, 1, None, None, POS),
    (1, 1, None, None, None),       # too few to call
    (5, 0, 1, None, None),          # one rerun blocks positive
    (None, 5, None, None, None),    # count rule needs both counts
    (5, 5, None, 0.5, NEG),         # edit distance overrides positive
    (None, None, None, 0.31, NEG),
    (None, None, None, 0.3, None),
])
def test_infer_implicit_signal(selling, pain, rerun, edit, expected):
    assert infer_implicit_signal(selling, pain, rerun, edit) == expected


async def decide(service, **task):
    response = await service.rank(RankRequest(
        scenario="task->model",
        task=TaskInput(**task),
        options=RankOptions(explore=False),
    ))
    return response.decision_id


@pytest.mark.asyncio
async def test_outcome_upsert_keeps_a_single_row_and_merges_fields(service, store):
    decision_id = await decide(service)

    first = await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, quality_score=0.8))
    second = await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, latency_ms=1200))
    third = await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, quality_score=0.6))

    assert first.outcome.quality_score == 0.8
    assert second.outcome.quality_score == 0.8
    assert second.outcome.latency_ms == 1200
    assert third.outcome.quality_score == 0.6
    assert third.outcome.latency_ms == 1200

    stored = await store.get_outcome(decision_id)
    assert stored.quality_score == 0.6
    assert len(store._outcomes) == 1


@pytest.mark.asyncio
async def test_explicit_feedback_and_implicit_signal(service, store):
    decision_id = await decide(service)
    decision = await store.get_decision(decision_id)

    response = await service.ingest_feedback(FeedbackRequest(
        decision_id=decision_id,
        user_choice="groq/llama-3.1-8b",
        type="override",
        reason="too slow",
        event_type=EventType.SELECT,
        payload={"source": "editor"},
        added_selling_points=0,
        added_pain_points=0,
    ))

    assert response.feedback.chosen_candidate_id == "groq/llama-3.1-8b"
    assert response.implicit_signal == NEG
    types = [e.event_type for e in response.events]
    assert types == [EventType.EXPLICIT_FEEDBACK, EventType.SELECT, EventType.IMPLICIT_NEGATIVE]

    explicit = response.events[0]
    assert explicit.payload["matchedChosen"] == (decision.chosen_target_id == "groq/llama-3.1-8b")
    assert response.events[2].payload["reason"] == "auto_inferred"

    logged = [e.event_type for e in await store.list_events(decision_id)]
    assert logged == [EventType.EXPOSE] + types
    assert service.metrics.feedback_events.value == 3


@pytest.mark.asyncio
async def test_unknown_decision_is_404(service):
    with pytest.raises(DecisionNotFoundError) as exc:
        await service.ingest_feedback(FeedbackRequest(decision_id="nope", quality_score=0.9))
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_explicit_feedback_needs_choice_and_type(service):
    decision_id = await decide(service)
    with pytest.raises(BadRequestError) as exc:
        await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, user_choice="x"))
    assert exc.value.code == "FBK_BAD_REQUEST"


@pytest.mark.asyncio
async def test_outcome_feeds_the_aggregator(service):
    decision_id = await decide(service)
    await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, quality_score=0.4, rejected=True))

    snapshot = service.metrics_snapshot()
    assert snapshot["outcomeCount"] == 1
    assert snapshot["avgQuality"] == 0.4
    assert snapshot["rejectionRate"] == 1.0


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_feedback_store_error(service, store, monkeypatch):
    decision_id = await decide(service)

    async def broken(*args, **kwargs):
        raise ConnectionError("db gone")

    monkeypatch.setattr(store, "upsert_outcome", broken)
    with pytest.raises(DecisionPersistenceError) as exc:
        await service.ingest_feedback(FeedbackRequest(decision_id=decision_id, quality_score=0.9))
    assert exc.value.code == "FBK_STORE_ERROR"
    assert exc.value.status_code == 503

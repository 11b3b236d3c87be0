import pytest

from recommender.cache import validate_candidates
from recommender.coarse import CoarseRanker
from recommender.config import DEFAULT_COARSE_WEIGHTS, DEFAULT_FINE_WEIGHTS, EngineConfig
from recommender.features import recency, relevance
from recommender.fine import FineRanker
from recommender.models import TaskInput

from tests.helpers import model_row, style_row


def pool(scenario, rows):
    return validate_candidates(scenario, rows)


def test_recency_half_life():
    fresh, month, unknown = pool("task->model", [
        model_row("m/fresh", updatedDaysAgo=0),
        model_row("m/month", updatedDaysAgo=30),
        model_row("m/unknown"),
    ])
    assert recency(fresh) == pytest.approx(1.0)
    assert recency(month) == pytest.approx(0.5)
    assert recency(unknown) == 0.5


def test_relevance_prefers_matching_category_and_channel():
    match, other = pool("product->style", [
        style_row("style-a", category="beauty", channels=["tiktok"]),
        style_row("style-b", category="fashion", channels=["youtube"]),
    ])
    task = TaskInput(category="beauty", channel="tiktok")
    assert relevance(match, task, None) > relevance(other, task, None)
    assert relevance(match, None, None) == 0.5


def test_coarse_cut_never_promotes_below_the_cut():
    candidates = pool("task->model", [
        model_row("m/a", quality=0.9),
        model_row("m/b", quality=0.85),
        # Poor coarse profile, excellent fine profile
        model_row("m/c", quality=0.2, usageShare=0.9, preference=1.0, businessValue=1.0, trend=1.0, stability=1.0),
    ])
    coarse = CoarseRanker(EngineConfig()).rank(candidates, None, None, DEFAULT_COARSE_WEIGHTS, m_coarse=2)

    assert [s.id for s in coarse.survivors] == ["m/a", "m/b"]
    assert [s.id for s in coarse.extras] == ["m/c"]

    fine = FineRanker().rank(coarse.survivors, DEFAULT_FINE_WEIGHTS, k_fine=3)
    assert "m/c" not in [s.id for s in fine.top_k]
    assert len(fine.top_k) == 2


def test_coarse_scores_are_weighted_sums():
    (candidate,) = pool("task->model", [model_row("m/a", quality=0.9)])
    scored = CoarseRanker(EngineConfig()).score(candidate, None, None, DEFAULT_COARSE_WEIGHTS)
    # relevance 0.5, quality 0.9, diversity 1.0, recency 0.5
    assert scored.coarse_score == pytest.approx(0.4 * 0.5 + 0.3 * 0.9 + 0.15 * 1.0 + 0.15 * 0.5)
    assert scored.reason["coarse"]["quality"] == 0.9


def test_ties_break_by_target_id():
    candidates = pool("task->model", [model_row("m/b"), model_row("m/a"), model_row("m/c")])
    coarse = CoarseRanker(EngineConfig()).rank(candidates, None, None, DEFAULT_COARSE_WEIGHTS, m_coarse=10)
    fine = FineRanker().rank(coarse.survivors, DEFAULT_FINE_WEIGHTS, k_fine=2)

    assert [s.id for s in coarse.survivors] == ["m/a", "m/b", "m/c"]
    assert [s.id for s in fine.top_k] == ["m/a", "m/b"]
    assert [s.id for s in fine.rest] == ["m/c"]


def test_extras_and_remainder_split():
    candidates = pool("task->model", [model_row(f"m/{i}", quality=1 - i / 10) for i in range(6)])
    coarse = CoarseRanker(EngineConfig()).rank(candidates, None, None, DEFAULT_COARSE_WEIGHTS, m_coarse=2)

    assert [s.id for s in coarse.survivors] == ["m/0", "m/1"]
    assert [s.id for s in coarse.extras] == ["m/2", "m/3"]
    assert [s.id for s in coarse.remainder] == ["m/4", "m/5"]


def test_fine_reason_records_factors():
    candidates = pool("task->model", [model_row("m/a", preference=0.9)])
    coarse = CoarseRanker(EngineConfig()).rank(candidates, None, None, DEFAULT_COARSE_WEIGHTS, m_coarse=1)
    fine = FineRanker().rank(coarse.survivors, DEFAULT_FINE_WEIGHTS, k_fine=1)

    top = fine.top_k[0]
    assert top.fine_score is not None
    assert top.reason["fine"]["user_preference"] == 0.9
    assert top.to_candidate().fine_score == round(top.fine_score, 6)

import random

import pytest

from recommender.config import EngineConfig
from recommender.exploration import ExplorationPolicy, RecentChoice, effective_rate
from recommender.models import Bucket, DecisionMode, RecommendationSetting

from tests.helpers import model_row, scored, style_row


def setting(**overrides):
    return RecommendationSetting(scenario="task->model", **overrides)


def pools():
    survivors = scored("task->model", [model_row("m/top1"), model_row("m/top2"), model_row("m/top3")])
    extras = scored("task->model", [model_row("m/extra")], [0.4])
    oop = scored("task->model", [model_row("m/oop")], [0.3])
    return survivors, extras, oop


def test_effective_rate_has_a_floor():
    assert effective_rate(0.0, 0.05) == 0.05
    assert effective_rate(0.3, 0.05) == 0.3
    assert effective_rate(1.0, 0.0) == 1.0


@pytest.mark.parametrize("epsilon,min_explore,expected", [(0.3, 0.05, 0.3), (0.0, 0.05, 0.05)])
def test_explore_rate_converges(epsilon, min_explore, expected):
    policy = ExplorationPolicy(EngineConfig(), random.Random(7))
    survivors, extras, oop = pools()
    rounds = 4000

    explored = sum(
        policy.choose(survivors, extras, oop, setting(epsilon=epsilon, min_explore=min_explore)).mode
        == DecisionMode.EXPLORE
        for _ in range(rounds)
    )
    assert explored / rounds == pytest.approx(expected, abs=0.03)


def test_explore_picks_only_alternatives():
    policy = ExplorationPolicy(EngineConfig(), random.Random(1))
    survivors, extras, oop = pools()
    seen = set()
    for _ in range(500):
        selection = policy.choose(survivors, extras, oop, setting(epsilon=1.0))
        assert selection.mode == DecisionMode.EXPLORE
        assert selection.flags["explored"] is True
        seen.add((selection.bucket, selection.chosen.id))

    assert seen == {
        (Bucket.FINE_TOP2, "m/top2"),
        (Bucket.COARSE_EXTRA, "m/extra"),
        (Bucket.OUT_OF_POOL, "m/oop"),
    }


def test_bucket_weights_favour_fine_top2():
    policy = ExplorationPolicy(EngineConfig(), random.Random(3))
    survivors, extras, oop = pools()
    counts = {b: 0 for b in Bucket}
    for _ in range(3000):
        counts[policy.choose(survivors, extras, oop, setting(epsilon=1.0)).bucket] += 1

    assert counts[Bucket.FINE_TOP2] / 3000 == pytest.approx(0.60, abs=0.04)
    assert counts[Bucket.COARSE_EXTRA] / 3000 == pytest.approx(0.25, abs=0.04)
    assert counts[Bucket.OUT_OF_POOL] / 3000 == pytest.approx(0.15, abs=0.04)


def test_same_seed_same_choices():
    survivors, extras, oop = pools()
    runs = []
    for _ in range(2):
        policy = ExplorationPolicy(EngineConfig(), random.Random(99))
        runs.append([
            policy.choose(survivors, extras, oop, setting(epsilon=0.5)).chosen.id for _ in range(50)
        ])
    assert runs[0] == runs[1]


def test_exploit_paths_record_why_exploration_was_skipped():
    policy = ExplorationPolicy(EngineConfig(), random.Random(0))
    survivors, extras, oop = pools()
    always = setting(epsilon=1.0)

    disabled = policy.choose(survivors, extras, oop, always, explore_enabled=False)
    forced = policy.choose(survivors, extras, oop, always, forced_off=True)
    fallback = policy.choose(survivors[:1], [], [], always, fallback_used=True)
    lonely = policy.choose(survivors[:1], [], [], always)

    for selection, reason in [
        (disabled, "disabled"),
        (forced, "forced_off"),
        (fallback, "fallback"),
        (lonely, "no_alternatives"),
    ]:
        assert selection.mode == DecisionMode.EXPLOIT
        assert selection.bucket == Bucket.TOP1
        assert selection.chosen.id == "m/top1"
        assert selection.flags["skipped"] == reason


def test_diversity_penalty_reorders_overlapping_candidates():
    policy = ExplorationPolicy(EngineConfig(), random.Random(0))
    survivors = scored(
        "product->style",
        [style_row("style-beauty", category="beauty"), style_row("style-fashion", category="fashion")],
        [0.9, 0.8],
    )
    recent = [RecentChoice("style-old", category="Beauty")]

    selection = policy.choose(survivors, [], [], setting(), explore_enabled=False, recent=recent)

    assert selection.chosen.id == "style-fashion"
    penalized = next(s for s in survivors if s.id == "style-beauty")
    assert penalized.score == pytest.approx(0.9 * 0.85)
    assert penalized.reason["diversityPenalty"] == 0.85
    assert selection.flags["diversityLookback"] == 1


def test_diversity_matches_tags_and_can_be_disabled():
    policy = ExplorationPolicy(EngineConfig(), random.Random(0))
    survivors = scored(
        "product->style",
        [style_row("style-neon", tags=["neon"]), style_row("style-pastel", tags=["pastel"])],
        [0.9, 0.8],
    )
    recent = [RecentChoice("style-old", tags=("NEON",))]

    off = policy.choose(survivors, [], [], setting(diversity=False), explore_enabled=False, recent=recent)
    assert off.chosen.id == "style-neon"

    on = policy.choose(survivors, [], [], setting(), explore_enabled=False, recent=recent)
    assert on.chosen.id == "style-pastel"


def test_should_force_off():
    policy = ExplorationPolicy(EngineConfig())
    assert policy.should_force_off(0.5, None)
    assert policy.should_force_off(0.9, 0.3)
    assert not policy.should_force_off(0.9, 0.1)
    assert not policy.should_force_off(None, None)


@pytest.mark.parametrize("current,quality,expected", [
    (0.10, 0.90, 0.09),
    (0.10, 0.50, 0.11),
    (0.19, 0.50, 0.20),
    (0.05, 0.90, 0.05),
    (0.10, 0.70, 0.10),
    (0.10, None, 0.10),
])
def test_adapt_epsilon(current, quality, expected):
    assert ExplorationPolicy(EngineConfig()).adapt_epsilon(current, quality) == pytest.approx(expected)


def test_choose_requires_a_candidate():
    with pytest.raises(ValueError):
        ExplorationPolicy(EngineConfig()).choose([], [], [], setting())

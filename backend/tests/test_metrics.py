import csv
import io

import pytest

from recommender.config import EngineConfig
from recommender.metrics import CSV_COLUMNS, MetricsAggregator, MetricsCollector
from recommender.models import Decision, DecisionMode, Outcome

from tests.helpers import FakeClock


def decision(i, scenario="task->model", mode=DecisionMode.EXPLOIT, fallback=False, segment="beauty|us|tiktok"):
    return Decision(
        id=f"d-{i}",
        candidate_set_id=f"cs-{i}",
        scenario=scenario,
        chosen_target_id="openai/gpt-4o",
        chosen_target_type="model",
        mode=mode,
        weights_snapshot={"fallbackUsed": fallback},
        segment_key=segment,
    )


@pytest.fixture
def agg():
    return MetricsAggregator(EngineConfig(), clock=FakeClock())


def test_snapshot_rates_and_outcome_join(agg):
    agg.record_decision(decision(1), category="beauty")
    agg.record_decision(decision(2, mode=DecisionMode.EXPLORE), category="beauty")
    agg.record_decision(decision(3, fallback=True), category="fashion")
    agg.record_decision(decision(4), category="fashion")
    agg.record_outcome(Outcome(decision_id="d-1", quality_score=0.9, latency_ms=1000, cost_actual=0.01))
    agg.record_outcome(Outcome(decision_id="d-2", quality_score=0.5, rejected=True))
    agg.record_outcome(Outcome(decision_id="unknown", quality_score=0.1))

    snap = agg.snapshot()
    assert snap["totalDecisions"] == 4
    assert snap["exploreRate"] == 0.25
    assert snap["fallbackRate"] == 0.25
    assert snap["outcomeCount"] == 2
    assert snap["avgQuality"] == 0.7
    assert snap["avgLatencyMs"] == 1000
    assert snap["avgCost"] == 0.01
    assert snap["rejectionRate"] == 1.0
    assert snap["windowSeconds"] == 86400


def test_window_prunes_old_decisions():
    clock = FakeClock()
    agg = MetricsAggregator(EngineConfig(metrics_window_s=60), clock=clock)
    agg.record_decision(decision(1))
    clock.advance(61)
    agg.record_decision(decision(2))

    assert agg.snapshot()["totalDecisions"] == 1


def test_segment_breakdown(agg):
    agg.record_decision(decision(1), category="beauty")
    agg.record_decision(decision(2, scenario="product->style", mode=DecisionMode.EXPLORE), category="beauty")
    agg.record_decision(decision(3, segment="fashion|eu|youtube"), category="fashion")

    by_scenario = agg.segment_breakdown("scenario")
    assert set(by_scenario) == {"task->model", "product->style"}
    assert by_scenario["product->style"]["exploreRate"] == 1.0

    by_category = agg.segment_breakdown("category")
    assert by_category["beauty"]["totalDecisions"] == 2

    by_segment = agg.segment_breakdown("segment")
    assert by_segment["fashion|eu|youtube"]["totalDecisions"] == 1

    with pytest.raises(ValueError):
        agg.segment_breakdown("planet")


def test_segment_health_filters_scenario_and_segment(agg):
    agg.record_decision(decision(1))
    agg.record_decision(decision(2, segment="other"))
    agg.record_outcome(Outcome(decision_id="d-1", quality_score=0.3))

    health = agg.segment_health("task->model", "beauty|us|tiktok")
    assert health["totalDecisions"] == 1
    assert health["avgQuality"] == 0.3


def test_csv_export(agg):
    agg.record_decision(decision(1), category="beauty")
    agg.record_decision(decision(2, scenario="product->style"), category="beauty")

    rows = list(csv.DictReader(io.StringIO(agg.to_csv())))
    assert list(rows[0].keys()) == CSV_COLUMNS
    assert [r["segment"] for r in rows] == ["__all__", "product->style", "task->model"]
    assert rows[0]["totalDecisions"] == "2"


def test_no_alert_below_min_samples(agg):
    for i in range(5):
        agg.record_decision(decision(i, mode=DecisionMode.EXPLORE))
    assert agg.should_alert() is False
    assert agg.last_alert is None


def test_explore_rate_alert(agg):
    for i in range(20):
        agg.record_decision(decision(i, mode=DecisionMode.EXPLORE if i < 5 else DecisionMode.EXPLOIT))

    assert agg.should_alert() is True
    assert agg.last_alert["type"] == "explore_rate"
    assert agg.last_alert["snapshot"]["exploreRate"] == 0.25


def test_fallback_rate_alert(agg):
    for i in range(20):
        agg.record_decision(decision(i, fallback=i < 4))
    assert agg.should_alert() is True
    assert agg.last_alert["type"] == "fallback_rate"


def test_low_quality_alert(agg):
    for i in range(20):
        agg.record_decision(decision(i))
        agg.record_outcome(Outcome(decision_id=f"d-{i}", quality_score=0.4))
    assert agg.should_alert() is True
    assert agg.last_alert["type"] == "low_quality"


def test_collector_summary():
    collector = MetricsCollector()
    collector.record_rank("task->model", "exploit", False, 12.0, "openai/gpt-4o")
    collector.record_rank("task->model", "explore", True, 30.0, "gemini/gemini-1.5-flash")
    collector.record_cache_lookup(True)
    collector.record_cache_lookup(False)
    collector.record_error("RANK_BAD_REQUEST")

    summary = collector.summary()
    assert summary["rank_requests"]["by_label"] == {"task->model": 2}
    assert summary["rank_modes"]["by_label"] == {"exploit": 1, "fallback": 1}
    assert summary["pool_cache"]["by_label"] == {"hit": 1, "miss": 1}
    assert summary["rank_latency"]["count"] == 2
    assert len(summary["recent_decisions"]) == 2

    health = collector.health_summary()
    assert health["total_decisions"] == 2
    assert health["error_rate"] == 0.5

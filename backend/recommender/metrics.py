"""
Metrics
========
Two layers, both in-memory:

- MetricsCollector   → service counters + histograms (request latency, cache
                       hits, breaker trips, errors) for GET /metrics
- MetricsAggregator  → rolling window over decisions joined with their
                       outcomes: explore rate, fallback rate, averages,
                       segment breakdowns, CSV export and alerting

Design Pattern: Observer + Ring Buffer
- No external dependency (Prometheus, Datadog) required
- Thread-safe with locks
"""

import csv
import io
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import EngineConfig
from .models import Decision, DecisionMode, Outcome

logger = logging.getLogger(__name__)


class Counter:
    """Monotonically increasing counter."""
    def __init__(self, name: str):
        self.name = name
        self._value: int = 0
        self._per_label: Dict[str, int] = defaultdict(int)

    def inc(self, label: str = "__total__", amount: int = 1):
        self._value += amount
        self._per_label[label] += amount

    @property
    def value(self) -> int:
        return self._value

    def by_label(self) -> Dict[str, int]:
        return dict(self._per_label)

    def to_dict(self) -> dict:
        return {"name": self.name, "total": self._value, "by_label": self.by_label()}


class Histogram:
    """Distribution tracker (latency, scores, etc.)."""
    def __init__(self, name: str, max_samples: int = 500):
        self.name = name
        self._samples: deque = deque(maxlen=max_samples)

    def observe(self, value: float):
        self._samples.append(value)

    @property
    def count(self) -> int:
        return len(self._samples)

    @property
    def avg(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def p95(self) -> float:
        return self._percentile(95)

    def _percentile(self, pct: int) -> float:
        if not self._samples:
            return 0.0
        sorted_s = sorted(self._samples)
        idx = int(len(sorted_s) * pct / 100)
        return sorted_s[min(idx, len(sorted_s) - 1)]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "count": self.count,
            "avg": round(self.avg, 3),
            "p50": round(self._percentile(50), 3),
            "p95": round(self.p95, 3),
            "p99": round(self._percentile(99), 3),
        }


class MetricsCollector:
    """
    Service-level metrics.

    Metrics tracked:
    - rank_requests_total     (Counter)   — by scenario
    - rank_modes_total        (Counter)   — exploit / explore / fallback
    - rank_latency_ms         (Histogram) — end-to-end rank time
    - pool_cache_lookups      (Counter)   — hit / miss
    - decision_replays_total  (Counter)   — requestId replays
    - circuit_breaker_trips   (Counter)   — by key
    - feedback_events_total   (Counter)   — by event type
    - errors_total            (Counter)   — by error code
    - db_latency_ms           (Histogram)
    """

    def __init__(self, buffer_size: int = 1000):
        self._start_time = time.monotonic()
        self._lock = threading.Lock()

        self.rank_requests = Counter("rank_requests_total")
        self.rank_modes = Counter("rank_modes_total")
        self.pool_cache = Counter("pool_cache_lookups")
        self.decision_replays = Counter("decision_replays_total")
        self.circuit_breaker_trips = Counter("circuit_breaker_trips")
        self.feedback_events = Counter("feedback_events_total")
        self.errors_total = Counter("errors_total")

        self.rank_latency = Histogram("rank_latency_ms", buffer_size)
        self.db_latency = Histogram("db_latency_ms", buffer_size)

        self._recent_decisions: deque = deque(maxlen=50)

    def record_rank(self, scenario: str, mode: str, fallback_used: bool, latency_ms: float, chosen_id: str):
        with self._lock:
            self.rank_requests.inc(scenario)
            self.rank_modes.inc("fallback" if fallback_used else mode)
            self.rank_latency.observe(latency_ms)
            self._recent_decisions.append({
                "scenario": scenario,
                "chosen": chosen_id,
                "mode": mode,
                "fallback_used": fallback_used,
                "latency_ms": round(latency_ms, 1),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

    def record_cache_lookup(self, hit: bool):
        with self._lock:
            self.pool_cache.inc("hit" if hit else "miss")

    def record_replay(self, scenario: str):
        with self._lock:
            self.decision_replays.inc(scenario)

    def record_db_call(self, latency_ms: float):
        with self._lock:
            self.db_latency.observe(latency_ms)

    def record_circuit_trip(self, key: str):
        """Record a circuit breaker trip."""
        with self._lock:
            self.circuit_breaker_trips.inc(key)

    def record_feedback(self, event_type: str):
        with self._lock:
            self.feedback_events.inc(event_type)

    def record_error(self, error_type: str):
        """Record an error."""
        with self._lock:
            self.errors_total.inc(error_type)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    def summary(self) -> Dict[str, Any]:
        """Full metrics summary for /metrics endpoint."""
        with self._lock:
            return {
                "uptime_seconds": round(self.uptime_seconds, 1),
                "rank_requests": self.rank_requests.to_dict(),
                "rank_modes": self.rank_modes.to_dict(),
                "rank_latency": self.rank_latency.to_dict(),
                "pool_cache": self.pool_cache.to_dict(),
                "decision_replays": self.decision_replays.to_dict(),
                "db_latency": self.db_latency.to_dict(),
                "circuit_breaker_trips": self.circuit_breaker_trips.to_dict(),
                "feedback_events": self.feedback_events.to_dict(),
                "errors": self.errors_total.to_dict(),
                "recent_decisions": list(self._recent_decisions)[-10:],
            }

    def health_summary(self) -> Dict[str, Any]:
        """Compact summary for health endpoint."""
        with self._lock:
            return {
                "uptime_s": round(self.uptime_seconds, 0),
                "total_decisions": self.rank_requests.value,
                "avg_latency_ms": round(self.rank_latency.avg, 1),
                "p95_latency_ms": round(self.rank_latency.p95, 1),
                "error_rate": (
                    round(self.errors_total.value / max(self.rank_requests.value, 1), 4)
                ),
            }


# ══════════════════════════════════════════════════════════════════
#  Rolling decision/outcome aggregation
# ══════════════════════════════════════════════════════════════════

@dataclass
class DecisionSample:
    decision_id: str
    scenario: str
    category: str
    segment_key: str
    mode: str
    fallback_used: bool
    timestamp: float
    quality: Optional[float] = None
    latency_ms: Optional[float] = None
    cost: Optional[float] = None
    rejected: Optional[bool] = None


def _avg(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 4) if values else None


def summarize(samples: Iterable[DecisionSample]) -> Dict[str, Any]:
    samples = list(samples)
    total = len(samples)
    explore = sum(1 for s in samples if s.mode == DecisionMode.EXPLORE.value)
    fallback = sum(1 for s in samples if s.fallback_used)
    qualities = [s.quality for s in samples if s.quality is not None]
    latencies = [s.latency_ms for s in samples if s.latency_ms is not None]
    costs = [s.cost for s in samples if s.cost is not None]
    rejections = [s.rejected for s in samples if s.rejected is not None]
    return {
        "totalDecisions": total,
        "exploreCount": explore,
        "exploreRate": round(explore / total, 4) if total else 0.0,
        "fallbackCount": fallback,
        "fallbackRate": round(fallback / total, 4) if total else 0.0,
        "outcomeCount": len(qualities),
        "avgQuality": _avg(qualities),
        "avgLatencyMs": _avg(latencies),
        "avgCost": _avg(costs),
        "rejectionRate": round(sum(rejections) / len(rejections), 4) if rejections else None,
    }


CSV_COLUMNS = [
    "segment",
    "totalDecisions",
    "exploreRate",
    "fallbackRate",
    "avgQuality",
    "avgLatencyMs",
    "avgCost",
    "rejectionRate",
]


class MetricsAggregator:
    """
    Rolling window over recorded decisions and their outcomes.

    Usage:
        agg = MetricsAggregator(config)
        agg.record_decision(decision, category="beauty")
        agg.record_outcome(outcome)
        agg.snapshot()
        if agg.should_alert(): agg.last_alert
    """

    GROUPINGS = ("scenario", "category", "segment")

    def __init__(self, config: EngineConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: Dict[str, DecisionSample] = {}
        self._order: deque = deque()
        self._last_alert: Optional[Dict[str, Any]] = None

    # ── Ingest ────────────────────────────────────────────────────

    def record_decision(self, decision: Decision, category: Optional[str] = None):
        sample = DecisionSample(
            decision_id=decision.id,
            scenario=decision.scenario,
            category=category or "default",
            segment_key=decision.segment_key,
            mode=decision.mode.value,
            fallback_used=decision.fallback_used,
            timestamp=self._clock(),
        )
        with self._lock:
            if decision.id not in self._samples:
                self._order.append(decision.id)
            self._samples[decision.id] = sample
            self._prune()

    def record_outcome(self, outcome: Outcome):
        """Join outcome values onto the decision's sample. Unknown ids are ignored."""
        with self._lock:
            sample = self._samples.get(outcome.decision_id)
            if sample is None:
                return
            sample.quality = outcome.quality_score
            sample.latency_ms = outcome.latency_ms
            sample.cost = outcome.cost_actual
            sample.rejected = outcome.rejected

    def _prune(self):
        cutoff = self._clock() - self.config.metrics_window_s
        while self._order:
            oldest = self._samples.get(self._order[0])
            if oldest is not None and oldest.timestamp >= cutoff:
                break
            self._order.popleft()
            if oldest is not None:
                del self._samples[oldest.decision_id]

    def _window(self, scenario: Optional[str] = None) -> List[DecisionSample]:
        self._prune()
        return [
            s for s in self._samples.values()
            if scenario is None or s.scenario == scenario
        ]

    # ── Read ──────────────────────────────────────────────────────

    def snapshot(self, scenario: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            samples = self._window(scenario)
        result = summarize(samples)
        result["windowSeconds"] = self.config.metrics_window_s
        return result

    def segment_breakdown(self, by: str = "scenario") -> Dict[str, Dict[str, Any]]:
        if by not in self.GROUPINGS:
            raise ValueError(f"Unknown grouping '{by}' (expected one of {', '.join(self.GROUPINGS)})")
        attr = "segment_key" if by == "segment" else by
        groups: Dict[str, List[DecisionSample]] = defaultdict(list)
        with self._lock:
            for s in self._window():
                groups[getattr(s, attr)].append(s)
        return {key: summarize(members) for key, members in sorted(groups.items())}

    def segment_health(self, scenario: str, segment_key: str) -> Dict[str, Any]:
        """Quality/rejection for one scenario+segment (feeds the exploration guard)."""
        with self._lock:
            samples = [
                s for s in self._window(scenario) if s.segment_key == segment_key
            ]
        return summarize(samples)

    def to_csv(self, by: str = "scenario") -> str:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerow({"segment": "__all__", **self.snapshot()})
        for key, row in self.segment_breakdown(by).items():
            writer.writerow({"segment": key, **row})
        return buf.getvalue()

    # ── Alerting ──────────────────────────────────────────────────

    def should_alert(self) -> bool:
        snap = self.snapshot()
        total = snap["totalDecisions"]
        cfg = self.config

        alert = None
        if total >= cfg.alert_min_samples and snap["exploreRate"] > cfg.alert_explore_rate:
            alert = ("explore_rate", f"explore rate {snap['exploreRate']:.2%} > {cfg.alert_explore_rate:.0%}")
        elif total >= cfg.alert_min_samples and snap["fallbackRate"] > cfg.alert_fallback_rate:
            alert = ("fallback_rate", f"fallback rate {snap['fallbackRate']:.2%} > {cfg.alert_fallback_rate:.0%}")
        elif (
            snap["outcomeCount"] >= cfg.alert_min_samples
            and snap["avgQuality"] is not None
            and snap["avgQuality"] < cfg.alert_min_quality
        ):
            alert = ("low_quality", f"avg quality {snap['avgQuality']:.2f} < {cfg.alert_min_quality:.2f}")

        if alert is None:
            return False

        alert_type, detail = alert
        with self._lock:
            self._last_alert = {
                "type": alert_type,
                "detail": detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "snapshot": snap,
            }
        logger.warning(f"🚨 Recommendation alert [{alert_type}]: {detail}")
        return True

    @property
    def last_alert(self) -> Optional[Dict[str, Any]]:
        return self._last_alert

"""
Recommendation Service
=======================
Wires the ranking pipeline together and exposes the admin operations.

Rank pipeline:
  1. Validate scenario/task, replay by requestId if already decided
  2. Resolve setting + weights (inheritance chain)
  3. Candidate pool (fingerprinted cache → source)
  4. Coarse rank → fine rank → constraint gate (→ fallback)
  5. Exploration policy picks the chosen candidate
  6. Record candidate set + decision, emit expose event
  7. Update LKG, metrics, decision cache
"""

import logging
import random
import time
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .cache import CandidatePoolCache, DecisionCache, TTLCacheBackend
from .circuit_breaker import CircuitBreakerRegistry
from .coarse import CoarseRanker, sort_key
from .config import SCENARIOS, SETTING_DEFAULTS, EngineConfig
from .errors import BadRequestError, NoFallbackCandidateError
from .exploration import ExplorationPolicy, RecentChoice
from .fallback import CatalogFallbackProvider, FallbackCandidateProvider, LastKnownGoodCache
from .feedback import FeedbackIngestor
from .fine import FineRanker
from .gate import ConstraintGate
from .metrics import MetricsAggregator, MetricsCollector
from .models import (
    Alternatives,
    Bucket,
    CandidateSet,
    ContextInput,
    Decision,
    DecisionMode,
    FeedbackRequest,
    FeedbackResponse,
    RankRequest,
    RankResponse,
    RecommendationSetting,
    RecommendationSettingUpdate,
    TaskInput,
    utcnow,
)
from .recorder import DecisionRecorder
from .store import RecommendationStore
from .weights import WeightRegistry

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_TEMPLATE = "{category}|{region}|{channel}"


class _SegmentValues(dict):
    def __missing__(self, key):
        return "default"


def segment_key_for(
    task: Optional[TaskInput],
    context: Optional[ContextInput],
    template: str = "",
) -> str:
    """Segment key from the setting's template, default `category|region|channel`."""
    values = _SegmentValues()
    if task is not None:
        for k, v in task.model_dump(exclude_none=True).items():
            if isinstance(v, (str, int, float)):
                values[k] = v
    if context is not None:
        for k, v in context.model_dump(exclude_none=True).items():
            if isinstance(v, (str, int, float)):
                values.setdefault(k, v)
    try:
        return (template or DEFAULT_SEGMENT_TEMPLATE).format_map(values)
    except (ValueError, IndexError) as e:
        logger.warning(f"Bad segment template '{template}': {e}")
        return DEFAULT_SEGMENT_TEMPLATE.format_map(values)


class RecommendationService:
    """
    Usage:
        service = RecommendationService(config, store, source)
        response = await service.rank(request)
        await service.ingest_feedback(feedback_request)
    """

    def __init__(
        self,
        config: EngineConfig,
        store: RecommendationStore,
        source,
        weights: Optional[WeightRegistry] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
        aggregator: Optional[MetricsAggregator] = None,
        fallback_provider: Optional[FallbackCandidateProvider] = None,
        rng: Optional[random.Random] = None,
        clock=time.monotonic,
    ):
        self.config = config
        self.store = store
        self.source = source
        self.weights = weights or WeightRegistry()
        self.metrics = metrics or MetricsCollector(buffer_size=config.metrics_buffer_size)
        self.aggregator = aggregator or MetricsAggregator(config)
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=config.cb_failure_threshold,
            failure_window_s=config.cb_failure_window_s,
            recovery_timeout_s=config.cb_recovery_timeout_s,
            max_recovery_timeout_s=config.cb_max_recovery_timeout_s,
            clock=clock,
            on_trip=self.metrics.record_circuit_trip,
        )

        self.pool_cache = CandidatePoolCache(
            source,
            TTLCacheBackend(config.pool_cache_max_entries, config.pool_cache_ttl_s, clock),
            on_lookup=self.metrics.record_cache_lookup,
        )
        self.decision_cache = DecisionCache(
            TTLCacheBackend(config.decision_cache_max_entries, config.decision_cache_ttl_s, clock)
        )
        self.lkg = LastKnownGoodCache(TTLCacheBackend(1000, config.lkg_ttl_s, clock))
        self.fallback_provider = fallback_provider or CatalogFallbackProvider(source, self.lkg)

        self.coarse = CoarseRanker(config)
        self.fine = FineRanker()
        self.gate = ConstraintGate(config, self.breakers)
        self.policy = ExplorationPolicy(config, rng)
        self.recorder = DecisionRecorder(store, config)
        self.feedback = FeedbackIngestor(store, self.aggregator, self.metrics)

    # ══════════════════════════════════════════════════════════════
    #  Settings
    # ══════════════════════════════════════════════════════════════

    @staticmethod
    def _require_scenario(scenario: str, code: str = "RANK_BAD_REQUEST"):
        if scenario not in SCENARIOS:
            raise BadRequestError(
                f"Unknown scenario '{scenario}'",
                code=code,
                details={"supported": sorted(SCENARIOS)},
            )

    async def get_setting(self, scenario: str) -> RecommendationSetting:
        self._require_scenario(scenario, "SET_BAD_REQUEST")
        stored = await self.store.get_setting(scenario)
        return stored or RecommendationSetting(scenario=scenario, **SETTING_DEFAULTS)

    async def list_settings(self) -> List[RecommendationSetting]:
        stored = {s.scenario: s for s in await self.store.list_settings()}
        return [
            stored.get(name) or RecommendationSetting(scenario=name, **SETTING_DEFAULTS)
            for name in SCENARIOS
        ]

    async def update_setting(
        self,
        scenario: str,
        update: RecommendationSettingUpdate,
    ) -> RecommendationSetting:
        current = await self.get_setting(scenario)
        merged = current.model_copy(update=update.model_dump(exclude_none=True))

        if merged.quality_floor_rej > merged.quality_floor_str:
            raise BadRequestError(
                "qualityFloorRej must not exceed qualityFloorStr",
                code="SET_BAD_REQUEST",
            )
        if merged.latency_soft_ms > merged.latency_hard_ms:
            raise BadRequestError(
                "latencySoftMs must not exceed latencyHardMs",
                code="SET_BAD_REQUEST",
            )

        # Round-trip through validation so range checks apply to the merged row
        validated = RecommendationSetting.model_validate(merged.model_dump())
        saved = await self.store.upsert_setting(validated)
        logger.info(f"⚙️  Setting updated for {scenario}: {update.model_dump(exclude_none=True)}")
        return saved

    # ══════════════════════════════════════════════════════════════
    #  Rank
    # ══════════════════════════════════════════════════════════════

    def _validate(self, req: RankRequest):
        self._require_scenario(req.scenario)
        if req.task is None:
            raise BadRequestError("Missing task", details={"scenario": req.scenario})
        if SCENARIOS[req.scenario].require_category and not req.task.category:
            raise BadRequestError(
                f"Scenario {req.scenario} requires task.category",
                details={"scenario": req.scenario},
            )

    async def _recent_choices(self, scenario: str, subject_key: Optional[str]) -> List[RecentChoice]:
        if not subject_key:
            return []
        try:
            decisions = await self.store.recent_decisions_for_subject(
                subject_key, scenario, self.config.diversity_lookback
            )
        except Exception as e:
            logger.warning(f"Recent choices lookup failed for {subject_key}: {e}")
            return []
        return [
            RecentChoice(d.chosen_target_id, d.chosen_category, tuple(d.chosen_tags))
            for d in decisions
        ]

    def _exploration_forced_off(self, scenario: str, segment_key: str) -> bool:
        health = self.aggregator.segment_health(scenario, segment_key)
        if health["outcomeCount"] < self.config.explore_guard_min_samples:
            return False
        return self.policy.should_force_off(health["avgQuality"], health["rejectionRate"])

    async def rank(self, req: RankRequest) -> RankResponse:
        start = time.monotonic()
        self._validate(req)

        request_id = req.options.request_id
        replay = self.decision_cache.get(request_id)
        if replay is not None and replay.scenario == req.scenario:
            self.metrics.record_replay(req.scenario)
            logger.info(f"🔁 Replaying decision {replay.decision_id} for request {request_id}")
            return replay

        decision_id = self.recorder.new_decision_id()
        scenario_def = SCENARIOS[req.scenario]
        task, context, constraints = req.task, req.context, req.constraints
        warnings: List[str] = []
        timings: Dict[str, float] = {}

        setting = await self.get_setting(req.scenario)
        resolved = self.weights.resolve(task, self.config.weight_total)
        segment_key = segment_key_for(task, context, setting.segment_template)
        subject_key = task.subject_key()

        # 1. Candidate pool
        t0 = time.monotonic()
        pool = await self.pool_cache.get_or_fetch(req.scenario, task, context)
        timings["poolMs"] = round((time.monotonic() - t0) * 1000, 2)
        if not pool:
            warnings.append("empty_pool")

        # 2. Coarse → fine
        t0 = time.monotonic()
        coarse = self.coarse.rank(pool, task, context, resolved.coarse, setting.m_coarse)
        k_fine = req.options.top_k or setting.k_fine
        fine = self.fine.rank(coarse.survivors, resolved.fine, k_fine)
        timings["rankMs"] = round((time.monotonic() - t0) * 1000, 2)

        # 3. Gate (+ fallback)
        t0 = time.monotonic()
        gated = await self.gate.run(
            fine.top_k, task, context, constraints, setting,
            self.fallback_provider, req.scenario, segment_key,
        )
        if gated.fallback_used and gated.fallback is None:
            raise NoFallbackCandidateError(
                f"No candidate passed the gate for {req.scenario} and no fallback is available",
                details={"removed": gated.removed},
            )
        # Survivors that missed the fine top-K rank ahead of the below-the-cut extras
        coarse_extras = fine.rest + coarse.extras
        extras = self.gate.admissible(coarse_extras, task, context, constraints, setting)
        out_of_pool = self.gate.admissible(coarse.remainder, task, context, constraints, setting)
        out_of_pool = out_of_pool[: self.config.out_of_pool_size]
        timings["gateMs"] = round((time.monotonic() - t0) * 1000, 2)

        if gated.fallback_used:
            warnings.append("fallback_used")
        for removed in gated.removed:
            warnings.append(f"removed:{removed['targetId']}:{removed['reason']}")
        if gated.flagged:
            warnings.append(f"below_strict_floor:{','.join(gated.flagged)}")

        # 4. Exploration
        forced_off = self._exploration_forced_off(req.scenario, segment_key)
        if forced_off and req.options.explore:
            warnings.append("exploration_forced_off")
        recent = await self._recent_choices(req.scenario, subject_key) if setting.diversity else []
        selection = self.policy.choose(
            gated.chosen_pool,
            extras,
            out_of_pool,
            setting,
            explore_enabled=req.options.explore,
            fallback_used=gated.fallback_used,
            forced_off=forced_off,
            recent=recent,
        )
        chosen = selection.chosen

        # 5. Candidate set as shown (ordered: top-K, extras, out-of-pool)
        top_pool = sorted(gated.chosen_pool, key=sort_key)
        top_candidates = []
        for rank, scored in enumerate(top_pool):
            bucket = Bucket.TOP1 if rank == 0 else (Bucket.FINE_TOP2 if rank == 1 else None)
            top_candidates.append(scored.to_candidate(bucket))
        extra_candidates = [s.to_candidate(Bucket.COARSE_EXTRA) for s in coarse_extras]
        oop_candidates = [s.to_candidate(Bucket.OUT_OF_POOL) for s in out_of_pool]
        removed_candidates = [s.to_candidate() for s in fine.top_k if "removed" in s.reason]

        shown = {c.target_id: c for c in top_candidates + extra_candidates + oop_candidates}
        chosen_candidate = shown.get(chosen.id) or chosen.to_candidate(selection.bucket)

        all_candidates = top_candidates + extra_candidates + oop_candidates + removed_candidates
        candidate_set = CandidateSet(
            scenario=req.scenario,
            subject_snapshot=task.model_dump(mode="json", by_alias=True, exclude_none=True),
            context_snapshot=context.model_dump(mode="json", by_alias=True, exclude_none=True),
            candidates=tuple(all_candidates),
        )

        decision = Decision(
            id=decision_id,
            candidate_set_id=candidate_set.id,
            scenario=req.scenario,
            chosen_target_id=chosen.id,
            chosen_target_type=scenario_def.target_type,
            mode=selection.mode,
            weights_snapshot={
                **resolved.to_snapshot(),
                "mCoarse": setting.m_coarse,
                "kFine": k_fine,
                "settingMode": setting.mode,
                "fallbackUsed": gated.fallback_used,
                "gate": {"removed": gated.removed, "flagged": gated.flagged},
            },
            explore_flags=selection.flags,
            strategy_version=req.options.strategy_version or "v1",
            request_id=request_id,
            segment_key=segment_key,
            subject_key=subject_key,
            chosen_category=chosen.raw.category,
            chosen_tags=list(chosen.raw.tags),
        )

        # 6. Record
        t0 = time.monotonic()
        await self.recorder.record(candidate_set, decision)
        timings["recordMs"] = round((time.monotonic() - t0) * 1000, 2)

        # 7. Bookkeeping
        if selection.mode == DecisionMode.EXPLOIT and not gated.fallback_used:
            self.lkg.remember(req.scenario, segment_key, chosen.raw)
        self.aggregator.record_decision(decision, category=task.category)

        elapsed = (time.monotonic() - start) * 1000
        timings["totalMs"] = round(elapsed, 2)
        self.metrics.record_rank(
            req.scenario, selection.mode.value, gated.fallback_used, elapsed, chosen.id
        )

        response = RankResponse(
            decision_id=decision.id,
            candidate_set_id=candidate_set.id,
            scenario=req.scenario,
            chosen=chosen_candidate,
            top_k=top_candidates,
            alternatives=Alternatives(
                fine_top2=top_candidates[1] if len(top_candidates) > 1 else None,
                coarse_extras=extra_candidates,
                out_of_pool=oop_candidates,
            ),
            mode=selection.mode,
            fallback_used=gated.fallback_used,
            strategy_version=decision.strategy_version,
            warnings=warnings,
            timings=timings,
        )
        self.decision_cache.put(request_id, response)
        return response

    # ══════════════════════════════════════════════════════════════
    #  Feedback & execution reports
    # ══════════════════════════════════════════════════════════════

    async def ingest_feedback(self, req: FeedbackRequest) -> FeedbackResponse:
        return await self.feedback.ingest(req)

    def report_execution(self, key: str, success: bool) -> Dict[str, Any]:
        if success:
            state = self.breakers.record_success(key)
        else:
            state = self.breakers.record_failure(key)
        return {"key": key, "state": state.value}

    # ══════════════════════════════════════════════════════════════
    #  Admin
    # ══════════════════════════════════════════════════════════════

    def clear_caches(self) -> Dict[str, int]:
        return {
            "candidatePools": self.pool_cache.clear(),
            "decisions": self.decision_cache.clear(),
            "lastKnownGood": self.lkg.clear(),
        }

    def clear_circuit_breakers(self) -> int:
        return self.breakers.clear_all()

    def reset_circuit_breaker(self, key: str) -> Dict[str, Any]:
        state = self.breakers.reset(key)
        return {"key": key, "state": state.value}

    def circuit_breaker_status(self) -> Dict[str, dict]:
        return self.breakers.all_status()

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.aggregator.snapshot()

    def metrics_csv(self) -> str:
        return self.aggregator.to_csv()

    def segment_breakdown(self, by: str = "scenario") -> Dict[str, Dict[str, Any]]:
        try:
            return self.aggregator.segment_breakdown(by)
        except ValueError as e:
            raise BadRequestError(str(e), code="ADM_BAD_REQUEST") from e

    def alerts(self) -> Dict[str, Any]:
        alerting = self.aggregator.should_alert()
        return {"alerting": alerting, "lastAlert": self.aggregator.last_alert}

    async def decision_stats(self, hours: float = 24) -> Dict[str, Any]:
        """Explore/fallback rates over recently recorded decisions, plus epsilon suggestions."""
        if hours <= 0:
            raise BadRequestError("hours must be positive", code="ADM_BAD_REQUEST")

        since = utcnow() - timedelta(hours=hours)
        decisions = await self.store.list_decisions(since)

        by_scenario: Dict[str, Dict[str, int]] = defaultdict(lambda: {"total": 0, "explore": 0, "fallback": 0})
        for d in decisions:
            row = by_scenario[d.scenario]
            row["total"] += 1
            row["explore"] += d.mode == DecisionMode.EXPLORE
            row["fallback"] += d.fallback_used

        total = len(decisions)
        explore = sum(r["explore"] for r in by_scenario.values())
        fallback = sum(r["fallback"] for r in by_scenario.values())

        scenarios = {}
        for name, row in sorted(by_scenario.items()):
            setting = await self.get_setting(name)
            quality = self.aggregator.snapshot(name)["avgQuality"]
            scenarios[name] = {
                **row,
                "exploreRate": round(row["explore"] / row["total"], 4),
                "fallbackRate": round(row["fallback"] / row["total"], 4),
                "epsilon": setting.epsilon,
                "suggestedEpsilon": self.policy.adapt_epsilon(setting.epsilon, quality),
            }

        return {
            "hours": hours,
            "totalDecisions": total,
            "exploreRate": round(explore / total, 4) if total else 0.0,
            "fallbackRate": round(fallback / total, 4) if total else 0.0,
            "byScenario": scenarios,
        }

    async def close(self):
        await self.store.close()

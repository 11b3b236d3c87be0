"""
Constraint Gate
================
Runs on the fine top-K, in order:

  1. Hard capability filters   json mode, tool use, provider allow/deny, min safety   → removed
  2. Circuit breaker           provider key or target id open                         → removed
  3. Soft latency / cost       over latencySoftMs or costOverrunMul × tier budget     → score × soft_penalty
  4. Hard latency / cost       over the tightest latency cap or maxCostUSD            → removed
  5. Quality floor             < qualityFloorRej removed, < qualityFloorStr flagged

Survivors are re-sorted by gated score. When nothing survives the fallback
provider supplies one out-of-pool candidate and the result is marked
``fallback_used``. An empty gate is not an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .circuit_breaker import CircuitBreakerRegistry
from .coarse import ScoredCandidate, sort_key
from .config import BUDGET_TIER_USD, SAFETY_LEVELS, EngineConfig
from .models import Constraints, ContextInput, RecommendationSetting, TaskInput

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    survivors: List[ScoredCandidate] = field(default_factory=list)
    removed: List[Dict[str, str]] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    fallback_used: bool = False
    fallback: Optional[ScoredCandidate] = None

    @property
    def chosen_pool(self) -> List[ScoredCandidate]:
        if self.fallback_used and self.fallback is not None:
            return [self.fallback]
        return self.survivors


def requires_tool_use(task: Optional[TaskInput]) -> bool:
    if task is None:
        return False
    return task.require_tool_use or (task.task_type or "").lower() == "vision"


def budget_for(
    task: Optional[TaskInput],
    context: Optional[ContextInput],
    config: EngineConfig,
) -> float:
    tier = (
        (task.budget_tier if task else None)
        or (context.budget_tier if context else None)
        or config.default_budget_tier
    )
    return BUDGET_TIER_USD.get(tier, BUDGET_TIER_USD[config.default_budget_tier])


class ConstraintGate:
    """
    Usage:
        gate = ConstraintGate(config, breakers)
        result = gate.apply(fine_top_k, task, context, constraints, setting)
    """

    def __init__(self, config: EngineConfig, breakers: CircuitBreakerRegistry):
        self.config = config
        self.breakers = breakers

    # ── Step 1 ────────────────────────────────────────────────────

    def _capability_violation(
        self,
        scored: ScoredCandidate,
        task: Optional[TaskInput],
        constraints: Constraints,
    ) -> Optional[str]:
        raw = scored.raw

        needs_json = constraints.require_json_mode or (task.json_requirement if task else False)
        if needs_json and raw.supports_json_mode is False:
            return "json_mode_unsupported"

        if requires_tool_use(task) and raw.supports_tool_use is False:
            return "tool_use_unsupported"

        provider = raw.provider_key
        if provider:
            allow = {p.lower() for p in constraints.allow_providers}
            deny = {p.lower() for p in constraints.deny_providers}
            if allow and provider not in allow:
                return f"provider_not_allowed:{provider}"
            if provider in deny:
                return f"provider_denied:{provider}"

        if constraints.min_safety_level:
            if SAFETY_LEVELS[raw.safety_level] < SAFETY_LEVELS[constraints.min_safety_level]:
                return f"safety_below:{constraints.min_safety_level}"

        return None

    # ── Step 2 ────────────────────────────────────────────────────

    def _open_breaker(self, scored: ScoredCandidate) -> Optional[str]:
        for key in scored.raw.breaker_keys():
            if self.breakers.is_open(key):
                return key
        return None

    # ── Steps 3 & 4 ───────────────────────────────────────────────

    @staticmethod
    def hard_latency_cap(
        setting: RecommendationSetting,
        constraints: Constraints,
        context: Optional[ContextInput],
    ) -> float:
        caps = [float(setting.latency_hard_ms)]
        if constraints.max_latency_ms is not None:
            caps.append(constraints.max_latency_ms)
        if context is not None and context.max_latency_ms is not None:
            caps.append(context.max_latency_ms)
        return min(caps)

    # ── Pipeline ──────────────────────────────────────────────────

    def screen(
        self,
        scored: ScoredCandidate,
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        constraints: Constraints,
        setting: RecommendationSetting,
    ) -> Optional[str]:
        """
        Run steps 1-5 on one candidate. Sets its gated score and reason.
        Returns the removal reason, or None when the candidate is kept.
        """
        raw = scored.raw
        scored.gated_score = scored.fine_score if scored.fine_score is not None else scored.coarse_score

        violation = self._capability_violation(scored, task, constraints)
        if violation:
            return violation

        open_key = self._open_breaker(scored)
        if open_key:
            return f"circuit_open:{open_key}"

        penalties = []
        latency = raw.expected_latency_ms
        cost = raw.expected_cost_usd
        soft_cost_cap = setting.cost_overrun_mul * budget_for(task, context, self.config)
        if latency is not None and latency > setting.latency_soft_ms:
            penalties.append("latency_soft")
        if cost is not None and cost > soft_cost_cap:
            penalties.append("cost_soft")
        if penalties:
            scored.gated_score *= self.config.soft_penalty
            scored.reason["penalties"] = penalties

        if latency is not None and latency > self.hard_latency_cap(setting, constraints, context):
            return "latency_hard"
        if constraints.max_cost_usd is not None and cost is not None and cost > constraints.max_cost_usd:
            return "cost_hard"

        if raw.quality < setting.quality_floor_rej:
            return "quality_below_floor"
        if raw.quality < setting.quality_floor_str:
            scored.reason["belowStrictFloor"] = True
        return None

    def apply(
        self,
        top_k: List[ScoredCandidate],
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        constraints: Constraints,
        setting: RecommendationSetting,
    ) -> GateResult:
        result = GateResult()
        for scored in top_k:
            reason = self.screen(scored, task, context, constraints, setting)
            if reason:
                self._remove(result, scored, reason)
                continue
            if scored.reason.get("belowStrictFloor"):
                result.flagged.append(scored.id)
            result.survivors.append(scored)

        result.survivors.sort(key=sort_key)
        return result

    def admissible(
        self,
        candidates: List[ScoredCandidate],
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        constraints: Constraints,
        setting: RecommendationSetting,
    ) -> List[ScoredCandidate]:
        """Alternatives that would pass the gate, in their current order."""
        return [
            c for c in candidates
            if self.screen(c, task, context, constraints, setting) is None
        ]

    def _remove(self, result: GateResult, scored: ScoredCandidate, reason: str):
        scored.reason["removed"] = reason
        result.removed.append({"targetId": scored.id, "reason": reason})
        logger.debug(f"Gate removed {scored.id}: {reason}")

    async def run(
        self,
        top_k: List[ScoredCandidate],
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        constraints: Constraints,
        setting: RecommendationSetting,
        fallback_provider,
        scenario: str,
        segment_key: str,
    ) -> GateResult:
        """`apply` plus the fallback step when the gate empties the pool."""
        result = self.apply(top_k, task, context, constraints, setting)
        if result.survivors:
            return result

        logger.warning(
            f"⚠️  Gate removed all {len(top_k)} candidates for {scenario} "
            f"({[r['reason'] for r in result.removed]}) → fallback"
        )
        fallback = await fallback_provider.fallback(scenario, segment_key, self.breakers)
        if fallback is not None:
            fallback.gated_score = fallback.score
            fallback.reason["fallback"] = True
        result.fallback = fallback
        result.fallback_used = True
        return result

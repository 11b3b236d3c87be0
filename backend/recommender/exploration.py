"""
Exploration Policy
===================
Epsilon-greedy with a floor:

    rate = clamp(max(epsilon, minExplore), 0, 1)

With probability ``rate`` the pick comes from the alternatives
{fine-rank-2, a coarse extra, an out-of-pool candidate}; bucket weights favour
fine-rank-2 (0.60 / 0.25 / 0.15, renormalized over the buckets that exist).
Otherwise rank-1 is chosen in exploit mode.

With ``diversity`` on, candidates whose category or tags overlap what was
chosen for the same subject in the last few decisions are scored down by
``diversity_penalty`` before selection.

The random source is injectable so runs are reproducible under a seed.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .coarse import ScoredCandidate, sort_key
from .config import EngineConfig
from .models import Bucket, DecisionMode, RecommendationSetting

logger = logging.getLogger(__name__)


@dataclass
class RecentChoice:
    """What was chosen for a subject in an earlier decision."""
    target_id: str
    category: Optional[str] = None
    tags: Sequence[str] = ()


@dataclass
class Selection:
    chosen: ScoredCandidate
    mode: DecisionMode
    bucket: Bucket
    flags: Dict[str, Any] = field(default_factory=dict)


def effective_rate(epsilon: float, min_explore: float) -> float:
    return min(1.0, max(0.0, max(epsilon, min_explore)))


def overlaps(scored: ScoredCandidate, recent: Sequence[RecentChoice]) -> bool:
    category = (scored.raw.category or "").lower()
    tags = {t.lower() for t in scored.raw.tags}
    for choice in recent:
        if category and choice.category and category == choice.category.lower():
            return True
        if tags and tags.intersection(t.lower() for t in choice.tags):
            return True
    return False


class ExplorationPolicy:
    """
    Usage:
        policy = ExplorationPolicy(config, rng=random.Random(42))
        selection = policy.choose(survivors, extras, oop, setting)
    """

    def __init__(self, config: EngineConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()

    # ── Diversity ─────────────────────────────────────────────────

    def apply_diversity(
        self,
        candidates: List[ScoredCandidate],
        recent: Sequence[RecentChoice],
    ) -> List[ScoredCandidate]:
        """Penalize overlap with recent picks and re-sort. Mutates scores in place."""
        if not recent:
            return candidates
        window = list(recent)[: self.config.diversity_lookback]
        for scored in candidates:
            if overlaps(scored, window):
                scored.gated_score = scored.score * self.config.diversity_penalty
                scored.reason["diversityPenalty"] = self.config.diversity_penalty
        return sorted(candidates, key=sort_key)

    # ── Selection ─────────────────────────────────────────────────

    def _pick_weighted(self, pool: List[ScoredCandidate]) -> ScoredCandidate:
        if len(pool) == 1:
            return pool[0]
        weights = [max(s.score, 0.0) for s in pool]
        if sum(weights) <= 0:
            return self.rng.choice(pool)
        return self.rng.choices(pool, weights=weights, k=1)[0]

    def choose(
        self,
        survivors: List[ScoredCandidate],
        coarse_extras: List[ScoredCandidate],
        out_of_pool: List[ScoredCandidate],
        setting: RecommendationSetting,
        explore_enabled: bool = True,
        fallback_used: bool = False,
        forced_off: bool = False,
        recent: Sequence[RecentChoice] = (),
    ) -> Selection:
        if not survivors:
            raise ValueError("ExplorationPolicy.choose needs at least one candidate")

        rate = effective_rate(setting.epsilon, setting.min_explore)
        flags: Dict[str, Any] = {
            "epsilon": setting.epsilon,
            "minExplore": setting.min_explore,
            "effectiveRate": rate,
            "explored": False,
        }

        if fallback_used:
            flags["skipped"] = "fallback"
            return Selection(survivors[0], DecisionMode.EXPLOIT, Bucket.TOP1, flags)

        if setting.diversity and recent:
            survivors = self.apply_diversity(survivors, recent)
            coarse_extras = self.apply_diversity(coarse_extras, recent)
            out_of_pool = self.apply_diversity(out_of_pool, recent)
            flags["diversityLookback"] = min(len(recent), self.config.diversity_lookback)

        top1 = survivors[0]
        buckets = []
        if len(survivors) > 1:
            buckets.append((Bucket.FINE_TOP2, self.config.explore_weight_fine, [survivors[1]]))
        if coarse_extras:
            buckets.append((Bucket.COARSE_EXTRA, self.config.explore_weight_coarse, coarse_extras))
        if out_of_pool:
            buckets.append((Bucket.OUT_OF_POOL, self.config.explore_weight_oop, out_of_pool))

        if not explore_enabled:
            flags["skipped"] = "disabled"
            return Selection(top1, DecisionMode.EXPLOIT, Bucket.TOP1, flags)
        if forced_off:
            flags["skipped"] = "forced_off"
            return Selection(top1, DecisionMode.EXPLOIT, Bucket.TOP1, flags)
        if not buckets:
            flags["skipped"] = "no_alternatives"
            return Selection(top1, DecisionMode.EXPLOIT, Bucket.TOP1, flags)

        draw = self.rng.random()
        flags["draw"] = round(draw, 6)
        if draw >= rate:
            return Selection(top1, DecisionMode.EXPLOIT, Bucket.TOP1, flags)

        total = sum(w for _, w, _ in buckets)
        roll = self.rng.random() * total
        bucket, _, pool = buckets[-1]
        acc = 0.0
        for name, weight, members in buckets:
            acc += weight
            if roll < acc:
                bucket, pool = name, members
                break

        picked = self._pick_weighted(pool)
        flags.update({"explored": True, "bucket": bucket.value, "pickedId": picked.id})
        logger.info(f"🎲 Exploring: {picked.id} from {bucket.value} (rate={rate:.2f})")
        return Selection(picked, DecisionMode.EXPLORE, bucket, flags)

    # ── Guard rails ───────────────────────────────────────────────

    def should_force_off(
        self,
        avg_quality: Optional[float],
        rejection_rate: Optional[float],
    ) -> bool:
        """Turn exploration off for a segment whose recent outcomes are poor."""
        if avg_quality is not None and avg_quality < self.config.explore_min_quality:
            return True
        if rejection_rate is not None and rejection_rate > self.config.explore_max_rejection:
            return True
        return False

    def adapt_epsilon(self, current: float, avg_quality: Optional[float]) -> float:
        """Suggested epsilon: shrink when quality is high, grow when it is low."""
        suggested = current
        if avg_quality is not None:
            if avg_quality > 0.8:
                suggested = current * 0.9
            elif avg_quality < 0.6:
                suggested = current * 1.1
        return round(min(self.config.epsilon_max, max(self.config.epsilon_min, suggested)), 4)

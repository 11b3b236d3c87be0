"""
Coarse Ranker
==============
Cheap first pass over the whole pool.

    coarseScore = Σ weight[f] × factor[f]   for f in {relevance, quality, diversity, recency}

Sorted by coarseScore descending, ties by target id ascending. The top
``mCoarse`` go on to fine ranking; the next few below the cut become the
``coarseExtras`` alternatives. Nothing below the cut is ever promoted.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import EngineConfig
from .features import coarse_factors, weighted_sum
from .models import Bucket, Candidate, ContextInput, RawCandidate, TaskInput

logger = logging.getLogger(__name__)


@dataclass
class ScoredCandidate:
    """A raw candidate moving through the pipeline, accumulating scores and reasons."""
    raw: RawCandidate
    coarse_score: float = 0.0
    fine_score: Optional[float] = None
    gated_score: Optional[float] = None
    reason: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.raw.id

    @property
    def score(self) -> float:
        """Best available score: gated, then fine, then coarse."""
        if self.gated_score is not None:
            return self.gated_score
        if self.fine_score is not None:
            return self.fine_score
        return self.coarse_score

    def to_candidate(self, bucket: Optional[Bucket] = None) -> Candidate:
        reason = dict(self.reason)
        # Gate and diversity adjustments are per request; fineScore stays the ranker output
        if self.gated_score is not None:
            reason["finalScore"] = round(self.gated_score, 6)
        return Candidate(
            target_id=self.raw.id,
            target_type=self.raw.target_type,
            title=self.raw.title,
            name=self.raw.name or self.raw.id,
            coarse_score=round(self.coarse_score, 6),
            fine_score=round(self.fine_score, 6) if self.fine_score is not None else None,
            reason=reason,
            bucket=bucket,
        )


def sort_key(scored: ScoredCandidate):
    return (-scored.score, scored.id)


@dataclass
class CoarseResult:
    survivors: List[ScoredCandidate]
    extras: List[ScoredCandidate]
    remainder: List[ScoredCandidate] = field(default_factory=list)


class CoarseRanker:
    """
    Usage:
        ranker = CoarseRanker(config)
        result = ranker.rank(pool, task, context, weights, m_coarse=10)
    """

    def __init__(self, config: EngineConfig):
        self.config = config

    def score(
        self,
        candidate: RawCandidate,
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        weights: Dict[str, float],
    ) -> ScoredCandidate:
        factors = coarse_factors(candidate, task, context)
        return ScoredCandidate(
            raw=candidate,
            coarse_score=weighted_sum(factors, weights),
            reason={"coarse": {k: round(v, 4) for k, v in factors.items()}},
        )

    def rank(
        self,
        pool: List[RawCandidate],
        task: Optional[TaskInput],
        context: Optional[ContextInput],
        weights: Dict[str, float],
        m_coarse: int,
    ) -> CoarseResult:
        scored = [self.score(c, task, context, weights) for c in pool]
        scored.sort(key=sort_key)

        cut = max(0, m_coarse)
        survivors = scored[:cut]
        below = scored[cut:]
        extras = below[: self.config.coarse_extras_size]

        if below:
            logger.debug(
                f"Coarse cut kept {len(survivors)}/{len(scored)} "
                f"(extras: {[s.id for s in extras]})"
            )
        return CoarseResult(
            survivors=survivors,
            extras=extras,
            remainder=below[self.config.coarse_extras_size:],
        )

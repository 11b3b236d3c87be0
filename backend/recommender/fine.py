"""
Fine Ranker
============
Re-scores coarse survivors on {userPreference, businessValue, technicalQuality,
marketTrend}. The top ``kFine`` form the fine top-K: rank-1 is the provisional
pick, rank-2 the ``fineTop2`` alternative.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from .coarse import ScoredCandidate, sort_key
from .features import fine_factors, weighted_sum

logger = logging.getLogger(__name__)


@dataclass
class FineResult:
    top_k: List[ScoredCandidate]
    rest: List[ScoredCandidate]


class FineRanker:
    def rank(
        self,
        survivors: List[ScoredCandidate],
        weights: Dict[str, float],
        k_fine: int,
    ) -> FineResult:
        for scored in survivors:
            factors = fine_factors(scored.raw)
            scored.fine_score = weighted_sum(factors, weights)
            scored.reason["fine"] = {k: round(v, 4) for k, v in factors.items()}

        ranked = sorted(survivors, key=sort_key)
        k = max(0, k_fine)
        return FineResult(top_k=ranked[:k], rest=ranked[k:])

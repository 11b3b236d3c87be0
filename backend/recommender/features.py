"""
Factor Extraction
==================
Turns a raw candidate + the request into the factor values the rankers weigh.
Every factor is in [0, 1]; missing data maps to a neutral 0.5.
"""

import math
from typing import Dict, List, Optional

from .models import ContextInput, RawCandidate, TaskInput

RECENCY_HALF_LIFE_DAYS = 30.0


def _match(candidate_value: Optional[str], wanted: Optional[str]) -> float:
    if not wanted or not candidate_value:
        return 0.5
    return 1.0 if candidate_value.lower() == wanted.lower() else 0.2


def _membership(values: List[str], wanted: Optional[str]) -> float:
    if not wanted or not values:
        return 0.5
    return 1.0 if wanted.lower() in {v.lower() for v in values} else 0.1


def _tag_overlap(tags: List[str], wanted: List[str]) -> float:
    if not wanted or not tags:
        return 0.5
    have = {t.lower() for t in tags}
    hits = sum(1 for w in wanted if w.lower() in have)
    return hits / len(wanted)


def relevance(candidate: RawCandidate, task: Optional[TaskInput], context: Optional[ContextInput]) -> float:
    """How well the candidate fits what the task asks for."""
    if task is None:
        return 0.5

    parts = [
        _match(candidate.category, task.category),
        _membership(candidate.langs, task.language),
    ]

    channel = task.channel or (context.channel if context else None)
    channels = getattr(candidate, "channels", None)
    if channels is not None:
        parts.append(_membership(channels, channel))

    task_types = getattr(candidate, "task_types", None)
    if task_types is not None:
        parts.append(_membership(task_types, task.task_type))

    if task.style_tags:
        parts.append(_tag_overlap(candidate.tags, task.style_tags))

    if task.json_requirement and candidate.supports_json_mode is not None:
        parts.append(1.0 if candidate.supports_json_mode else 0.0)

    return sum(parts) / len(parts)


def recency(candidate: RawCandidate) -> float:
    """Exponential decay on days since the candidate was last updated."""
    if candidate.updated_days_ago is None:
        return 0.5
    return math.exp(-math.log(2) * candidate.updated_days_ago / RECENCY_HALF_LIFE_DAYS)


def coarse_factors(
    candidate: RawCandidate,
    task: Optional[TaskInput],
    context: Optional[ContextInput],
) -> Dict[str, float]:
    return {
        "relevance": relevance(candidate, task, context),
        "quality": candidate.quality,
        "diversity": 1.0 - candidate.usage_share,
        "recency": recency(candidate),
    }


def fine_factors(candidate: RawCandidate) -> Dict[str, float]:
    return {
        "user_preference": candidate.preference,
        "business_value": candidate.business_value,
        "technical_quality": min(1.0, max(0.0, candidate.technical_quality)),
        "market_trend": candidate.trend,
    }


def weighted_sum(factors: Dict[str, float], weights: Dict[str, float]) -> float:
    return sum(factors.get(name, 0.0) * w for name, w in weights.items())

"""Shared builders for recommender tests."""

from typing import List

from recommender.cache import validate_candidates
from recommender.coarse import ScoredCandidate


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def model_row(target_id: str, **overrides) -> dict:
    row = {
        "id": target_id,
        "name": target_id.split("/", 1)[-1],
        "provider": target_id.split("/", 1)[0],
        "quality": 0.8,
        "jsonMode": True,
        "toolUse": True,
        "maxContext": 128000,
        "expectedCostUsd": 0.004,
        "expectedLatencyMs": 1500,
    }
    row.update(overrides)
    return row


def style_row(target_id: str, category: str = "beauty", **overrides) -> dict:
    row = {
        "id": target_id,
        "name": target_id,
        "category": category,
        "quality": 0.8,
        "channels": ["tiktok"],
    }
    row.update(overrides)
    return row


MODEL_ROWS = [
    model_row("openai/gpt-4o", quality=0.92, preference=0.8, trend=0.8, expectedCostUsd=0.01, expectedLatencyMs=3000),
    model_row("openai/gpt-4o-mini", quality=0.82, preference=0.65, businessValue=0.7),
    model_row("anthropic/claude-3-haiku", quality=0.78, jsonMode=False, usageShare=0.05),
    model_row("gemini/gemini-1.5-flash", quality=0.75, businessValue=0.7, usageShare=0.3),
    model_row("groq/llama-3.1-8b", quality=0.6, toolUse=False, maxContext=8192, expectedCostUsd=0.0005),
]

STYLE_ROWS = [
    style_row("style-default", category="general", quality=0.7),
    style_row("style-pastel-glow", quality=0.86, tags=["pastel"]),
    style_row("style-bold-neon", quality=0.8, tags=["neon"]),
    style_row("style-ugc-handheld", category="fashion", quality=0.78, tags=["ugc"]),
]


def sample_catalog() -> dict:
    return {
        "task->model": [dict(r) for r in MODEL_ROWS],
        "product->style": [dict(r) for r in STYLE_ROWS],
    }


def scored(scenario: str, rows: List[dict], scores: List[float] = None) -> List[ScoredCandidate]:
    """ScoredCandidates with fine scores set (defaults descend from 0.9)."""
    raws = validate_candidates(scenario, rows)
    scores = scores or [0.9 - 0.1 * i for i in range(len(raws))]
    return [
        ScoredCandidate(raw=raw, coarse_score=s, fine_score=s)
        for raw, s in zip(raws, scores)
    ]

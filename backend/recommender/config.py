"""
Recommender Configuration
==========================
Centralized configuration with environment variable overrides.
All magic numbers, thresholds, scenario definitions and default weights live here.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class ScenarioDefinition:
    """Defines a recommendation scenario the engine can rank for."""
    name: str
    label: str
    target_type: str                      # model | prompt | style | script | content-element
    description: str = ""
    default_target_id: Optional[str] = None   # Static fallback when the gate empties the pool
    require_category: bool = False        # Reject rank requests without task.category


# ── Scenario Registry ────────────────────────────────────────────
SCENARIOS: Dict[str, ScenarioDefinition] = {
    "task->model": ScenarioDefinition(
        name="task->model",
        label="AI Model",
        target_type="model",
        description="Pick the provider/model that should execute a generation task.",
        default_target_id="gemini/gemini-1.5-flash",
    ),
    "task->prompt": ScenarioDefinition(
        name="task->prompt",
        label="Prompt Template",
        target_type="prompt",
        description="Pick the prompt template for a generation task.",
        default_target_id="prompt-default",
    ),
    "product->style": ScenarioDefinition(
        name="product->style",
        label="Visual Style",
        target_type="style",
        description="Pick the visual style for a product video.",
        default_target_id="style-default",
        require_category=True,
    ),
    "product->script": ScenarioDefinition(
        name="product->script",
        label="Video Script",
        target_type="script",
        description="Pick the script template for a product video.",
        default_target_id="script-default",
        require_category=True,
    ),
    "product->content-elements": ScenarioDefinition(
        name="product->content-elements",
        label="Content Elements",
        target_type="content-element",
        description="Pick selling points / pain points / audience elements for a product.",
        default_target_id="elements-default",
        require_category=True,
    ),
}


# ── RecommendationSetting defaults (per-scenario rows override these) ──
SETTING_DEFAULTS: Dict[str, object] = {
    "mode": "rule",
    "m_coarse": 10,
    "k_fine": 3,
    "epsilon": 0.10,
    "min_explore": 0.05,
    "diversity": True,
    "quality_floor_rej": 0.20,
    "quality_floor_str": 0.90,
    "cost_overrun_mul": 1.50,
    "latency_soft_ms": 6000,
    "latency_hard_ms": 8000,
    "segment_template": "",
}


# ── Weight profiles (global level of the inheritance chain) ──────
DEFAULT_COARSE_WEIGHTS: Dict[str, float] = {
    "relevance": 0.40,
    "quality": 0.30,
    "diversity": 0.15,
    "recency": 0.15,
}

DEFAULT_FINE_WEIGHTS: Dict[str, float] = {
    "user_preference": 0.30,
    "business_value": 0.25,
    "technical_quality": 0.30,
    "market_trend": 0.15,
}

# Expected spend per call by budget tier (USD). Soft cost constraint compares
# against cost_overrun_mul × this value.
BUDGET_TIER_USD: Dict[str, float] = {
    "low": 0.005,
    "mid": 0.02,
    "high": 0.10,
}

SAFETY_LEVELS: Dict[str, int] = {"low": 0, "medium": 1, "high": 2}


# ── Engine Config ────────────────────────────────────────────────

@dataclass(frozen=True)
class EngineConfig:
    """Tuning knobs for the ranking pipeline and its collaborators."""

    # Ranking
    weight_total: float = 1.0             # Resolved weights are normalized to this sum
    coarse_extras_size: int = 2           # How many below-the-cut candidates to keep as alternatives
    out_of_pool_size: int = 2             # Out-of-pool alternatives offered for exploration
    soft_penalty: float = 0.8             # Score multiplier for soft latency/cost violations
    default_budget_tier: str = "mid"

    # Exploration
    explore_weight_fine: float = 0.60     # Bucket weights when exploring
    explore_weight_coarse: float = 0.25
    explore_weight_oop: float = 0.15
    diversity_penalty: float = 0.85       # Multiplier for candidates overlapping recent picks
    diversity_lookback: int = 5           # Recent decisions per subject considered
    explore_min_quality: float = 0.60     # Segment quality below this → exploration off
    explore_max_rejection: float = 0.20
    explore_guard_min_samples: int = 5    # Outcomes needed before the guard can turn exploration off
    epsilon_min: float = 0.05
    epsilon_max: float = 0.20

    # Caches
    pool_cache_ttl_s: int = 300
    pool_cache_max_entries: int = 300
    decision_cache_ttl_s: int = 600
    decision_cache_max_entries: int = 500
    lkg_ttl_s: int = 1800

    # Circuit breaker
    cb_failure_threshold: int = 5         # Consecutive failures before opening
    cb_failure_window_s: int = 120        # Failures older than this restart the count
    cb_recovery_timeout_s: int = 60       # Base cool-down before half-open
    cb_max_recovery_timeout_s: int = 1800 # Cap for exponential backoff on reopen

    # Persistence
    persist_retries: int = 3
    persist_backoff_s: float = 0.05

    # Metrics & alerting
    metrics_window_s: int = 86400
    metrics_buffer_size: int = 1000
    alert_explore_rate: float = 0.20
    alert_fallback_rate: float = 0.15
    alert_min_quality: float = 0.60
    alert_min_samples: int = 20


def load_config() -> EngineConfig:
    """Load config with environment variable overrides."""
    overrides = {}
    env_map = {
        "RECO_WEIGHT_TOTAL": ("weight_total", float),
        "RECO_SOFT_PENALTY": ("soft_penalty", float),
        "RECO_DIVERSITY_PENALTY": ("diversity_penalty", float),
        "RECO_DIVERSITY_LOOKBACK": ("diversity_lookback", int),
        "RECO_POOL_CACHE_TTL": ("pool_cache_ttl_s", int),
        "RECO_DECISION_CACHE_TTL": ("decision_cache_ttl_s", int),
        "RECO_LKG_TTL": ("lkg_ttl_s", int),
        "RECO_CB_FAILURE_THRESHOLD": ("cb_failure_threshold", int),
        "RECO_CB_FAILURE_WINDOW": ("cb_failure_window_s", int),
        "RECO_CB_RECOVERY_TIMEOUT": ("cb_recovery_timeout_s", int),
        "RECO_CB_MAX_RECOVERY_TIMEOUT": ("cb_max_recovery_timeout_s", int),
        "RECO_PERSIST_RETRIES": ("persist_retries", int),
        "RECO_METRICS_WINDOW": ("metrics_window_s", int),
        "RECO_ALERT_EXPLORE_RATE": ("alert_explore_rate", float),
        "RECO_ALERT_FALLBACK_RATE": ("alert_fallback_rate", float),
        "RECO_ALERT_MIN_QUALITY": ("alert_min_quality", float),
    }
    for env_key, (field_name, cast_fn) in env_map.items():
        val = os.getenv(env_key)
        if val is not None:
            try:
                overrides[field_name] = cast_fn(val)
            except (ValueError, TypeError):
                pass
    return EngineConfig(**overrides)

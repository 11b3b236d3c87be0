"""
Recommendation Decision Service Package v1.0
=============================================
Picks a model, prompt, style, script or content elements for a task and
records every decision so feedback can tune the engine.

Architecture:
- config.py          → EngineConfig, scenario registry, setting defaults, weights
- models.py          → Pydantic models (API contracts, persisted records, candidates)
- errors.py          → Error codes rendered by the API layer
- cache.py           → Candidate pool + decision caches (cachetools TTL)
- sources.py         → Candidate sources (JSON catalog)
- weights.py         → Weight inheritance (template → product → category → global)
- features.py        → Factor extraction
- coarse.py          → Coarse ranker (mCoarse cut)
- fine.py            → Fine ranker (kFine top-K)
- gate.py            → Constraint gate (capabilities, breakers, cost, latency, quality)
- fallback.py        → Last-known-good + scenario default fallbacks
- exploration.py     → Epsilon-greedy exploration with diversity penalty
- circuit_breaker.py → Per provider/model circuit breaker
- store.py           → Store interface + in-memory store
- postgres_store.py  → asyncpg store
- recorder.py        → Decision persistence with retries
- feedback.py        → Outcomes, events, implicit signals
- metrics.py         → Service metrics + rolling decision aggregator
- service.py         → Pipeline wiring and admin operations
- main.py            → FastAPI application (HTTP layer)
"""

from .config import SCENARIOS, EngineConfig, load_config
from .models import (
    Candidate,
    CandidateSet,
    Decision,
    DecisionMode,
    Outcome,
    RankRequest,
    RankResponse,
    RecommendationSetting,
)
from .errors import (
    BadRequestError,
    DecisionNotFoundError,
    DecisionPersistenceError,
    RecommendationError,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .feedback import infer_implicit_signal
from .metrics import MetricsAggregator, MetricsCollector
from .service import RecommendationService

__all__ = [
    "SCENARIOS",
    "EngineConfig",
    "load_config",
    "Candidate",
    "CandidateSet",
    "Decision",
    "DecisionMode",
    "Outcome",
    "RankRequest",
    "RankResponse",
    "RecommendationSetting",
    "BadRequestError",
    "DecisionNotFoundError",
    "DecisionPersistenceError",
    "RecommendationError",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "infer_implicit_signal",
    "MetricsAggregator",
    "MetricsCollector",
    "RecommendationService",
]

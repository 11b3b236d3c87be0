"""Test fixtures: deterministic clock, seeded RNG, in-memory store."""

import random

import pytest

from recommender.circuit_breaker import CircuitBreakerRegistry
from recommender.config import EngineConfig
from recommender.metrics import MetricsAggregator, MetricsCollector
from recommender.service import RecommendationService
from recommender.sources import CatalogCandidateSource
from recommender.store import InMemoryRecommendationStore

from tests.helpers import FakeClock, sample_catalog


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EngineConfig(persist_backoff_s=0.0)


@pytest.fixture
def store():
    return InMemoryRecommendationStore()


@pytest.fixture
def source():
    return CatalogCandidateSource(sample_catalog())


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(failure_threshold=3, recovery_timeout_s=60, clock=clock)


@pytest.fixture
def service(config, store, source, clock):
    metrics = MetricsCollector()
    return RecommendationService(
        config,
        store,
        source,
        metrics=metrics,
        aggregator=MetricsAggregator(config, clock=clock),
        rng=random.Random(42),
        clock=clock,
    )

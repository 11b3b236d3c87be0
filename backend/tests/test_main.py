import pytest

from recommender import main
from recommender.postgres_store import PostgresRecommendationStore


class ClosingPool:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def test_relative_catalog_path_resolves_against_backend(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    source = main.load_source("catalog.example.json")
    assert "task->model" in source.scenarios


def test_missing_catalog_is_an_empty_source(tmp_path):
    source = main.load_source(str(tmp_path / "nope.json"))
    assert source.scenarios == []


@pytest.mark.asyncio
async def test_schema_failure_closes_pool_and_uses_memory(monkeypatch):
    pool = ClosingPool()

    async def create_pool(**kwargs):
        return pool

    async def broken_schema(self):
        raise RuntimeError("permission denied for schema public")

    monkeypatch.setenv("RECO_DB_URL", "postgresql://reco@localhost/reco")
    monkeypatch.delenv("RECO_CATALOG_PATH", raising=False)
    monkeypatch.setattr(main.asyncpg, "create_pool", create_pool)
    monkeypatch.setattr(PostgresRecommendationStore, "ensure_schema", broken_schema)

    service = await main.build_service()

    assert pool.closed
    assert service.store.name == "memory"

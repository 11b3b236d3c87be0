import json
from contextlib import asynccontextmanager

import pytest

from recommender.models import Candidate, CandidateSet, Decision, RecommendationSetting, utcnow
from recommender.postgres_store import PostgresRecommendationStore


class FakeConnection:
    def __init__(self, log, rows):
        self.log = log
        self.rows = rows

    @asynccontextmanager
    async def transaction(self):
        self.log.append(("BEGIN",))
        yield
        self.log.append(("COMMIT",))

    async def execute(self, sql, *args):
        self.log.append((" ".join(sql.split()), args))

    async def fetchrow(self, sql, *args):
        self.log.append((" ".join(sql.split()), args))
        return self.rows.pop(0) if self.rows else None

    async def fetch(self, sql, *args):
        self.log.append((" ".join(sql.split()), args))
        return self.rows


class FakePool:
    """Records SQL instead of talking to Postgres."""

    def __init__(self, rows=None):
        self.log = []
        self.rows = rows or []
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self.log, self.rows)

    async def close(self):
        self.closed = True


def make_pair():
    candidate_set = CandidateSet(
        scenario="task->model",
        candidates=(Candidate(target_id="openai/gpt-4o", target_type="model", coarse_score=0.7),),
    )
    decision = Decision(
        id="d-1",
        candidate_set_id=candidate_set.id,
        scenario="task->model",
        chosen_target_id="openai/gpt-4o",
        chosen_target_type="model",
        weights_snapshot={"fallbackUsed": False},
        chosen_tags=["fast"],
    )
    return candidate_set, decision


@pytest.mark.asyncio
async def test_save_decision_is_one_idempotent_transaction():
    pool = FakePool()
    timings = []
    store = PostgresRecommendationStore(pool, on_db_call=timings.append)

    await store.save_decision(*make_pair())

    assert pool.log[0] == ("BEGIN",)
    assert pool.log[-1] == ("COMMIT",)
    inserts = [entry[0] for entry in pool.log[1:-1]]
    assert inserts[0].startswith("INSERT INTO reco_candidate_sets")
    assert inserts[1].startswith("INSERT INTO reco_decisions")
    assert all("ON CONFLICT (id) DO NOTHING" in sql for sql in inserts)

    decision_args = pool.log[2][1]
    assert decision_args[0] == "d-1"
    assert json.loads(decision_args[6]) == {"fallbackUsed": False}
    assert json.loads(decision_args[13]) == ["fast"]
    assert len(timings) == 1


@pytest.mark.asyncio
async def test_upsert_outcome_merges_with_coalesce():
    row = {
        "decision_id": "d-1",
        "latency_ms": 900.0,
        "cost_actual": None,
        "quality_score": 0.8,
        "conversion": None,
        "rejected": None,
        "edit_distance": None,
        "notes": None,
        "updated_at": utcnow(),
    }
    pool = FakePool(rows=[row])
    store = PostgresRecommendationStore(pool)

    outcome = await store.upsert_outcome("d-1", {"quality_score": 0.8})

    sql, args = pool.log[0]
    assert "ON CONFLICT (decision_id) DO UPDATE" in sql
    assert "quality_score = COALESCE(EXCLUDED.quality_score, reco_outcomes.quality_score)" in sql
    assert args[0] == "d-1"
    assert args[3] == 0.8
    assert outcome.latency_ms == 900.0


@pytest.mark.asyncio
async def test_decision_rows_decode_json_columns():
    _, decision = make_pair()
    row = {
        **decision.model_dump(),
        "chosen_target_type": "model",
        "mode": "exploit",
        "weights_snapshot": json.dumps({"fallbackUsed": True}),
        "explore_flags": None,
        "chosen_tags": json.dumps(["fast"]),
    }
    store = PostgresRecommendationStore(FakePool(rows=[row]))

    loaded = await store.get_decision("d-1")
    assert loaded.fallback_used is True
    assert loaded.chosen_tags == ["fast"]
    assert await store.get_decision("missing") is None


@pytest.mark.asyncio
async def test_settings_are_stored_as_json():
    saved_at = utcnow()
    pool = FakePool(rows=[{"updated_at": saved_at}])
    store = PostgresRecommendationStore(pool)

    saved = await store.upsert_setting(RecommendationSetting(scenario="task->model", epsilon=0.2))
    _, args = pool.log[0]
    assert args[0] == "task->model"
    assert json.loads(args[1])["epsilon"] == 0.2
    assert saved.updated_at == saved_at

    await store.close()
    assert pool.closed

"""
Postgres Recommendation Store (asyncpg)
========================================
Durable implementation of RecommendationStore.

- Candidate set + decision are written in one transaction
- Inserts use ON CONFLICT DO NOTHING keyed by id, so recorder retries never duplicate
- Outcome upsert merges with COALESCE: omitted fields keep their stored value
- JSON columns are jsonb, written as json.dumps strings
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from .models import (
    OUTCOME_FIELDS,
    CandidateSet,
    Decision,
    Event,
    Feedback,
    Outcome,
    RecommendationSetting,
)
from .store import RecommendationStore

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS reco_candidate_sets (
    id               TEXT PRIMARY KEY,
    scenario         TEXT NOT NULL,
    subject_snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
    context_snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
    candidates       JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS reco_decisions (
    id                 TEXT PRIMARY KEY,
    candidate_set_id   TEXT NOT NULL UNIQUE REFERENCES reco_candidate_sets(id),
    scenario           TEXT NOT NULL,
    chosen_target_id   TEXT NOT NULL,
    chosen_target_type TEXT NOT NULL,
    mode               TEXT NOT NULL,
    weights_snapshot   JSONB NOT NULL DEFAULT '{}'::jsonb,
    explore_flags      JSONB,
    strategy_version   TEXT NOT NULL,
    request_id         TEXT,
    segment_key        TEXT NOT NULL,
    subject_key        TEXT,
    chosen_category    TEXT,
    chosen_tags        JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS reco_decisions_created_idx ON reco_decisions (created_at);
CREATE INDEX IF NOT EXISTS reco_decisions_subject_idx ON reco_decisions (subject_key, scenario, created_at DESC);

CREATE TABLE IF NOT EXISTS reco_outcomes (
    decision_id   TEXT PRIMARY KEY REFERENCES reco_decisions(id),
    latency_ms    DOUBLE PRECISION,
    cost_actual   DOUBLE PRECISION,
    quality_score DOUBLE PRECISION,
    conversion    BOOLEAN,
    rejected      BOOLEAN,
    edit_distance DOUBLE PRECISION,
    notes         TEXT,
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS reco_events (
    id          TEXT PRIMARY KEY,
    decision_id TEXT NOT NULL REFERENCES reco_decisions(id),
    event_type  TEXT NOT NULL,
    payload     JSONB,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS reco_events_decision_idx ON reco_events (decision_id, created_at);

CREATE TABLE IF NOT EXISTS reco_feedback (
    id                  TEXT PRIMARY KEY,
    decision_id         TEXT NOT NULL REFERENCES reco_decisions(id),
    feedback_type       TEXT NOT NULL,
    chosen_candidate_id TEXT NOT NULL,
    reason              TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS reco_settings (
    scenario TEXT PRIMARY KEY,
    setting  JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _loads(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


def _row_to_decision(row) -> Decision:
    return Decision(
        id=row["id"],
        candidate_set_id=row["candidate_set_id"],
        scenario=row["scenario"],
        chosen_target_id=row["chosen_target_id"],
        chosen_target_type=row["chosen_target_type"],
        mode=row["mode"],
        weights_snapshot=_loads(row["weights_snapshot"]) or {},
        explore_flags=_loads(row["explore_flags"]),
        strategy_version=row["strategy_version"],
        request_id=row["request_id"],
        segment_key=row["segment_key"],
        subject_key=row["subject_key"],
        chosen_category=row["chosen_category"],
        chosen_tags=_loads(row["chosen_tags"]) or [],
        created_at=row["created_at"],
    )


def _row_to_outcome(row) -> Outcome:
    return Outcome(**{k: row[k] for k in ("decision_id", *OUTCOME_FIELDS, "updated_at")})


class PostgresRecommendationStore(RecommendationStore):
    """
    Usage:
        pool = await asyncpg.create_pool(dsn=DB_URL)
        store = PostgresRecommendationStore(pool)
        await store.ensure_schema()
    """

    name = "postgres"

    def __init__(self, pool: asyncpg.Pool, on_db_call=None):
        self.pool = pool
        self._on_db_call = on_db_call

    def _observe(self, start: float):
        if self._on_db_call:
            self._on_db_call((time.monotonic() - start) * 1000)

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("✅ Recommendation schema ready")

    async def close(self) -> None:
        await self.pool.close()

    # ── Decisions ─────────────────────────────────────────────────

    async def save_decision(self, candidate_set: CandidateSet, decision: Decision) -> None:
        start = time.monotonic()
        candidates = json.dumps([c.model_dump(mode="json", by_alias=True) for c in candidate_set.candidates])
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO reco_candidate_sets
                        (id, scenario, subject_snapshot, context_snapshot, candidates, created_at)
                    VALUES ($1, $2, $3::jsonb, $4::jsonb, $5::jsonb, $6)
                    ON CONFLICT (id) DO NOTHING
                """, candidate_set.id, candidate_set.scenario,
                    json.dumps(candidate_set.subject_snapshot),
                    json.dumps(candidate_set.context_snapshot),
                    candidates, candidate_set.created_at)

                await conn.execute("""
                    INSERT INTO reco_decisions
                        (id, candidate_set_id, scenario, chosen_target_id, chosen_target_type,
                         mode, weights_snapshot, explore_flags, strategy_version, request_id,
                         segment_key, subject_key, chosen_category, chosen_tags, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10, $11, $12, $13, $14::jsonb, $15)
                    ON CONFLICT (id) DO NOTHING
                """, decision.id, decision.candidate_set_id, decision.scenario,
                    decision.chosen_target_id, decision.chosen_target_type.value,
                    decision.mode.value, json.dumps(decision.weights_snapshot),
                    json.dumps(decision.explore_flags) if decision.explore_flags is not None else None,
                    decision.strategy_version, decision.request_id, decision.segment_key,
                    decision.subject_key, decision.chosen_category,
                    json.dumps(decision.chosen_tags), decision.created_at)
        self._observe(start)

    async def get_decision(self, decision_id: str) -> Optional[Decision]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM reco_decisions WHERE id = $1", decision_id)
        return _row_to_decision(row) if row else None

    async def get_candidate_set(self, candidate_set_id: str) -> Optional[CandidateSet]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM reco_candidate_sets WHERE id = $1", candidate_set_id
            )
        if not row:
            return None
        return CandidateSet(
            id=row["id"],
            scenario=row["scenario"],
            subject_snapshot=_loads(row["subject_snapshot"]) or {},
            context_snapshot=_loads(row["context_snapshot"]) or {},
            candidates=tuple(_loads(row["candidates"]) or []),
            created_at=row["created_at"],
        )

    async def list_decisions(
        self,
        since: datetime,
        scenario: Optional[str] = None,
    ) -> List[Decision]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM reco_decisions
                WHERE created_at >= $1 AND ($2::text IS NULL OR scenario = $2)
                ORDER BY created_at
            """, since, scenario)
        return [_row_to_decision(r) for r in rows]

    async def recent_decisions_for_subject(
        self,
        subject_key: str,
        scenario: str,
        limit: int,
    ) -> List[Decision]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM reco_decisions
                WHERE subject_key = $1 AND scenario = $2
                ORDER BY created_at DESC
                LIMIT $3
            """, subject_key, scenario, limit)
        return [_row_to_decision(r) for r in rows]

    # ── Outcomes / events / feedback ──────────────────────────────

    async def upsert_outcome(self, decision_id: str, values: Dict[str, Any]) -> Outcome:
        params = [decision_id] + [values.get(f) for f in OUTCOME_FIELDS]
        updates = ",\n                    ".join(
            f"{f} = COALESCE(EXCLUDED.{f}, reco_outcomes.{f})" for f in OUTCOME_FIELDS
        )
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO reco_outcomes
                    (decision_id, {", ".join(OUTCOME_FIELDS)})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (decision_id) DO UPDATE SET
                    {updates},
                    updated_at = NOW()
                RETURNING *
            """, *params)
        return _row_to_outcome(row)

    async def get_outcome(self, decision_id: str) -> Optional[Outcome]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM reco_outcomes WHERE decision_id = $1", decision_id
            )
        return _row_to_outcome(row) if row else None

    async def append_event(self, event: Event) -> Event:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO reco_events (id, decision_id, event_type, payload, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                ON CONFLICT (id) DO NOTHING
            """, event.id, event.decision_id, event.event_type.value,
                json.dumps(event.payload) if event.payload is not None else None,
                event.created_at)
        return event

    async def list_events(self, decision_id: str) -> List[Event]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM reco_events WHERE decision_id = $1 ORDER BY created_at
            """, decision_id)
        return [
            Event(
                id=r["id"],
                decision_id=r["decision_id"],
                event_type=r["event_type"],
                payload=_loads(r["payload"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def add_feedback(self, feedback: Feedback) -> Feedback:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO reco_feedback
                    (id, decision_id, feedback_type, chosen_candidate_id, reason, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO NOTHING
            """, feedback.id, feedback.decision_id, feedback.feedback_type,
                feedback.chosen_candidate_id, feedback.reason, feedback.created_at)
        return feedback

    # ── Settings ──────────────────────────────────────────────────

    async def get_setting(self, scenario: str) -> Optional[RecommendationSetting]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT setting, updated_at FROM reco_settings WHERE scenario = $1", scenario
            )
        if not row:
            return None
        return RecommendationSetting(**_loads(row["setting"]), updated_at=row["updated_at"])

    async def upsert_setting(self, setting: RecommendationSetting) -> RecommendationSetting:
        body = setting.model_dump(mode="json", exclude={"updated_at"})
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO reco_settings (scenario, setting, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (scenario) DO UPDATE SET
                    setting = EXCLUDED.setting,
                    updated_at = NOW()
                RETURNING updated_at
            """, setting.scenario, json.dumps(body))
        logger.info(f"⚙️  Setting for {setting.scenario} saved")
        return setting.model_copy(update={"updated_at": row["updated_at"]})

    async def list_settings(self) -> List[RecommendationSetting]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT setting, updated_at FROM reco_settings ORDER BY scenario")
        return [
            RecommendationSetting(**_loads(r["setting"]), updated_at=r["updated_at"])
            for r in rows
        ]

"""
Recommendation Decision Service
================================
Port: 8020

┌──────────────────────────────────────────────────────────────────────────┐
│                        Recommendation Service                            │
│                                                                          │
│  ┌──────────┐  ┌────────────┐  ┌──────────┐  ┌──────────┐  ┌─────────┐  │
│  │ API Layer │──► Pool Cache  │──► Coarse → │──► Gate     │──► Explore │  │
│  │ (FastAPI) │  │ (TTL)      │  │ Fine     │  │ (+fallbk)│  │ policy  │  │
│  └──────────┘  └────────────┘  └──────────┘  └──────────┘  └─────────┘  │
│       │                                          │              │        │
│       ▼                                          ▼              ▼        │
│  ┌──────────┐  ┌────────────┐  ┌──────────────────────┐  ┌───────────┐  │
│  │ Feedback │──► Store       │  │ Circuit Breakers     │  │ Metrics   │  │
│  │ Ingestor │  │ (asyncpg)  │  │ (per provider/model) │  │ + Alerts  │  │
│  └──────────┘  └────────────┘  └──────────────────────┘  └───────────┘  │
└──────────────────────────────────────────────────────────────────────────┘

Environment:
  RECO_DB_URL        Postgres DSN; unset → in-memory store
  RECO_CATALOG_PATH  JSON candidate catalog (default: backend/catalog.example.json)
  RECO_*             Engine overrides (see config.load_config)
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncpg
from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import load_config
from .errors import RecommendationError
from .metrics import MetricsCollector
from .models import (
    ExecutionReport,
    FeedbackRequest,
    FeedbackResponse,
    HealthResponse,
    RankRequest,
    RankResponse,
    RecommendationSetting,
    RecommendationSettingUpdate,
)
from .postgres_store import PostgresRecommendationStore
from .service import RecommendationService
from .sources import CatalogCandidateSource
from .store import InMemoryRecommendationStore
from .weights import WeightRegistry

# ── Environment ──────────────────────────────────────────────────
backend_root = Path(__file__).parent.parent
load_dotenv(dotenv_path=backend_root / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("recommender")

DEFAULT_CATALOG = backend_root / "catalog.example.json"


def load_source(path: Optional[str] = None) -> CatalogCandidateSource:
    catalog_path = Path(path or os.getenv("RECO_CATALOG_PATH") or DEFAULT_CATALOG)
    if not catalog_path.is_absolute():
        catalog_path = backend_root / catalog_path
    if not catalog_path.exists():
        logger.warning(f"⚠️  Catalog {catalog_path} not found — every rank will use fallbacks")
        return CatalogCandidateSource()
    return CatalogCandidateSource.from_file(catalog_path)


async def build_service() -> RecommendationService:
    """
    Startup: Config → Catalog → Store (Postgres or memory) → Service
    """
    config = load_config()
    source = load_source()
    metrics = MetricsCollector(buffer_size=config.metrics_buffer_size)

    store = None
    pool = None
    db_url = os.getenv("RECO_DB_URL", "")
    if db_url:
        try:
            pool = await asyncpg.create_pool(
                dsn=db_url,
                min_size=2,
                max_size=10,
                command_timeout=30,
                statement_cache_size=0,  # PgBouncer compatibility
            )
            store = PostgresRecommendationStore(pool, on_db_call=metrics.record_db_call)
            await store.ensure_schema()
            logger.info("✅ Database pool created (2–10 connections)")
        except Exception as e:
            logger.error(f"❌ Database pool failed: {e} — using in-memory store")
            if pool is not None:
                await pool.close()
            store = None
    else:
        logger.warning("⚠️  RECO_DB_URL not set — decisions are kept in memory only")

    service = RecommendationService(
        config,
        store or InMemoryRecommendationStore(),
        source,
        weights=WeightRegistry.from_dict(source.weight_profiles),
        metrics=metrics,
    )
    logger.info(
        f"✅ Recommendation service ready (store={service.store.name}, "
        f"cb_threshold={config.cb_failure_threshold}, pool_ttl={config.pool_cache_ttl_s}s)"
    )
    return service


def create_app(service: Optional[RecommendationService] = None) -> FastAPI:
    """Build the FastAPI app. Pass a prebuilt service to skip env-driven startup (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or await build_service()
        logger.info("🚀 Recommendation service up")
        yield
        await app.state.service.close()
        logger.info("Recommendation service shut down cleanly")

    app = FastAPI(
        title="Recommendation Decision Service",
        version="1.0.0",
        description="Coarse-to-fine ranking with exploration, constraint gating and feedback",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RecommendationError)
    async def recommendation_error_handler(request: Request, exc: RecommendationError):
        svc: RecommendationService = request.app.state.service
        svc.metrics.record_error(exc.code)
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def svc(request: Request) -> RecommendationService:
        return request.app.state.service

    # ══════════════════════════════════════════════════════════════
    #  ROUTES: Core
    # ══════════════════════════════════════════════════════════════

    @app.get("/")
    async def root():
        return {
            "service": "Recommendation Decision Service",
            "version": "1.0.0",
            "port": 8020,
            "features": [
                "coarse-to-fine-ranking",
                "weight-inheritance",
                "constraint-gate",
                "circuit-breakers",
                "epsilon-greedy-exploration",
                "decision-audit-trail",
                "implicit-feedback",
                "metrics-alerting",
            ],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        service_ = svc(request)
        breakers = service_.circuit_breaker_status()
        open_keys = [k for k, v in breakers.items() if v["state"] == "open"]
        return HealthResponse(
            status="degraded" if open_keys else "healthy",
            store=service_.store.name,
            uptime_seconds=service_.metrics.uptime_seconds,
            circuit_breakers={"total": len(breakers), "open": open_keys},
            metrics_summary=service_.metrics.health_summary(),
        )

    @app.post("/recommend/rank", response_model=RankResponse)
    async def rank(body: RankRequest, request: Request):
        """
        Rank candidates for a scenario and commit to one chosen candidate.
        The decision is recorded before the response is returned.
        """
        return await svc(request).rank(body)

    @app.post("/recommend/feedback", response_model=FeedbackResponse)
    async def feedback(body: FeedbackRequest, request: Request):
        """Explicit feedback, events, outcome values and implicit signals for a decision."""
        return await svc(request).ingest_feedback(body)

    @app.post("/executions/report")
    async def report_execution(body: ExecutionReport, request: Request):
        """Executors report provider/model call results here to drive the breakers."""
        return svc(request).report_execution(body.key, body.success)

    # ══════════════════════════════════════════════════════════════
    #  ROUTES: Admin
    # ══════════════════════════════════════════════════════════════

    @app.post("/admin/caches/clear")
    async def clear_caches(request: Request):
        return {"status": "ok", "cleared": svc(request).clear_caches()}

    @app.post("/admin/circuit-breakers/clear")
    async def clear_circuit_breakers(request: Request):
        return {"status": "ok", "cleared": svc(request).clear_circuit_breakers()}

    @app.get("/admin/circuit-breakers")
    async def get_circuit_breakers(request: Request):
        """Circuit breaker status for every provider/model key seen so far."""
        return svc(request).circuit_breaker_status()

    @app.post("/admin/circuit-breakers/{key:path}/reset")
    async def reset_circuit_breaker(key: str, request: Request):
        """Manually reset a circuit breaker (admin action)."""
        return {"status": "ok", **svc(request).reset_circuit_breaker(key)}

    @app.get("/admin/metrics")
    async def get_metrics_snapshot(
        request: Request,
        format: str = Query("json", pattern="^(json|csv)$"),
    ):
        if format == "csv":
            return PlainTextResponse(
                svc(request).metrics_csv(),
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=recommendation-metrics.csv"},
            )
        return svc(request).metrics_snapshot()

    @app.get("/admin/metrics/segments")
    async def get_segment_breakdown(request: Request, by: str = "scenario"):
        return {"by": by, "segments": svc(request).segment_breakdown(by)}

    @app.get("/admin/alerts")
    async def get_alerts(request: Request):
        return svc(request).alerts()

    @app.get("/admin/decision-stats")
    async def get_decision_stats(request: Request, hours: float = 24):
        return await svc(request).decision_stats(hours)

    @app.get("/admin/settings", response_model=list[RecommendationSetting])
    async def list_settings(request: Request):
        return await svc(request).list_settings()

    @app.get("/admin/settings/{scenario:path}", response_model=RecommendationSetting)
    async def get_setting(scenario: str, request: Request):
        return await svc(request).get_setting(scenario)

    @app.put("/admin/settings/{scenario:path}", response_model=RecommendationSetting)
    async def update_setting(scenario: str, body: RecommendationSettingUpdate, request: Request):
        return await svc(request).update_setting(scenario, body)

    # ══════════════════════════════════════════════════════════════
    #  ROUTES: Observability
    # ══════════════════════════════════════════════════════════════

    @app.get("/metrics")
    async def get_metrics(request: Request):
        """Service counters and histograms (requests, cache, breakers, errors)."""
        return svc(request).metrics.summary()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════════
#  Run Server
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "recommender.main:app",
        host="0.0.0.0",
        port=8020,
        reload=True,
        log_level="info",
    )

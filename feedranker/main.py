"""
Feed Ranking API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool and create tables if not present
  3. Connect to Redis (ranking model cache)
  4. Build the shared ranking components: model cache + metrics, trainer
     pool, nearby-school lookup, feature flags
  5. Start periodic model-cache metrics logging
  6. Expose Prometheus /metrics endpoint
"""
import asyncio
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from feedranker.config import settings
from feedranker.database import AsyncSessionLocal, engine, init_db
from feedranker.telemetry import setup_tracing, instrument_app
from feedranker.clients.meta_client import MetaClient
from feedranker.clients.proximity_client import ProximityClient
from feedranker.clients.redis_client import close_redis, init_redis
from feedranker.ranking.model_cache import CacheMetrics, RankingModelCache
from feedranker.ranking.trainer import ModelTrainer
from feedranker.routers import feed

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing(engine)


async def _log_cache_metrics(metrics: CacheMetrics) -> None:
    while True:
        await asyncio.sleep(settings.metrics_log_interval_seconds)
        metrics.log_metrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Feed Ranking API (env=%s)", settings.environment)

    await init_db()
    redis = await init_redis()

    metrics = CacheMetrics()
    app.state.model_cache = RankingModelCache(redis, metrics)
    app.state.trainer = ModelTrainer()
    app.state.proximity = ProximityClient(AsyncSessionLocal)
    app.state.meta = MetaClient(AsyncSessionLocal)
    metrics_task = asyncio.create_task(_log_cache_metrics(metrics))

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    metrics_task.cancel()
    await app.state.trainer.drain()
    app.state.trainer.shutdown()
    await close_redis()


app = FastAPI(
    title="Feed Ranking API",
    description=(
        "Personalised home timeline: social-graph posts blended with a "
        "per-user trained relevance model, school proximity and author diversity."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}

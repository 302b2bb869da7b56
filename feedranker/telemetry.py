"""
Observability for the ranking engine.

Prometheus
  feed_latency_seconds            histogram  GET /feed end to end
  feed_candidates_total{pool}     counter    candidates per acquisition pool
  model_cache_events_total{outcome}
                                  counter    every model-cache hit / miss /
                                             rejection / write
  model_training_seconds          histogram  per-user training runs
  ranking_errors_total{stage}     counter    stages that degraded instead of
                                             failing the request

OpenTelemetry
  Spans are exported over OTLP gRPC when otel_exporter_otlp_endpoint is set.
  FastAPI, Redis and the SQLAlchemy engine are auto-instrumented; the ranking
  pipeline adds one span per stage.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from feedranker.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "End-to-end latency of GET /feed",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

FEED_CANDIDATES_TOTAL = Counter(
    "feed_candidates_total",
    "Candidate posts gathered per pool",
    ["pool"],  # 'timeline' | 'recommended' | 'second_degree'
)

MODEL_CACHE_EVENTS_TOTAL = Counter(
    "model_cache_events_total",
    "Ranking model cache lookups and writes by outcome",
    ["outcome"],
)

TRAINING_LATENCY = Histogram(
    "model_training_seconds",
    "Time spent training a per-user ranking model",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

RANKING_ERRORS_TOTAL = Counter(
    "ranking_errors_total",
    "Feed stages that failed and fell back to degraded output",
    ["stage"],  # 'recommendation' | 'second_degree' | 'proximity'
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
_tracing_configured = False


def setup_tracing(sql_engine=None) -> None:
    """
    Install the global TracerProvider once per process. `sql_engine` is the
    AsyncEngine to instrument; without it SQL spans are not recorded.
    """
    global _tracing_configured
    if _tracing_configured:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "deployment.environment": settings.environment,
            }
        )
    )

    endpoint = settings.otel_exporter_otlp_endpoint
    if endpoint:
        try:
            exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
            provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("OTel tracing configured → %s", endpoint)
        except Exception as exc:
            logger.warning("OTLP exporter unavailable (%s); spans stay local", exc)
    else:
        logger.info("No OTLP endpoint set; spans are not exported")

    trace.set_tracer_provider(provider)

    RedisInstrumentor().instrument()
    if sql_engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=sql_engine.sync_engine)
    _tracing_configured = True


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)

"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for ranking, classification and the taste graph

Tracing is initialised once at startup; metrics are module-level collectors
exported by the /metrics ASGI app.
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

from personalization.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
RANKING_LATENCY = Histogram(
    "ranking_latency_seconds",
    "End-to-end latency of a ranking call",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

RANKING_FALLBACK_TOTAL = Counter(
    "ranking_fallback_total",
    "Ranking calls served in recency order instead of personalised order",
    ["reason"],  # 'no_user', 'no_posts', 'unavailable', 'error'
)

CLASSIFICATION_TOTAL = Counter(
    "classification_total",
    "Posts classified",
    ["outcome"],  # 'ok', 'partial', 'failed'
)

SIGNAL_FAILURES_TOTAL = Counter(
    "classification_signal_failures_total",
    "Signal generator failures (classification continued without them)",
    ["signal"],
)

ENGAGEMENTS_TOTAL = Counter(
    "taste_graph_engagements_total",
    "Engagements folded into taste graphs",
    ["source"],
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)

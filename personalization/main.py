"""
Personalization API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Build services (DB, locks, Qdrant, taxonomy, taste graph, classifier,
     ranking) and keep them on app.state
  3. Expose Prometheus /metrics endpoint
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from personalization.bootstrap import build_services
from personalization.config import Settings, settings
from personalization.routers import classifications, interests, ranking, taste_graph
from personalization.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services at startup, release connections at shutdown."""
        logger.info("Starting Personalization API (env=%s)", app_settings.environment)

        services = await build_services(app_settings)
        app.state.settings = app_settings
        app.state.services = services
        app.state.taxonomy = services.taxonomy
        app.state.taste_graph = services.taste_graph
        app.state.posts = services.posts
        app.state.classifier = services.classifier
        app.state.ranking = services.ranking

        logger.info("All services connected. API ready.")
        yield

        logger.info("Shutting down...")
        await services.close()

    app = FastAPI(
        title="Personalization API",
        description=(
            "Interest taxonomy, per-user taste graphs, post classification "
            "and taste-based feed ranking."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(interests.router, prefix="/interests", tags=["Interests"])
    app.include_router(taste_graph.router, prefix="/taste-graph", tags=["Taste graph"])
    app.include_router(classifications.posts_router, prefix="/posts", tags=["Posts"])
    app.include_router(
        classifications.router, prefix="/classifications", tags=["Classifications"]
    )
    app.include_router(ranking.router, prefix="/rank", tags=["Ranking"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    app.mount("/metrics", make_asgi_app())

    # ── OTel FastAPI instrumentation ──────────────────────────────────────
    instrument_app(app)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": app_settings.service_name}

    return app


app = create_app()

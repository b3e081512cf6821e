"""Prometheus scrape endpoint.

Serves the ``fills`` counter plus process, platform and GC collectors from a
registry owned by the caller rather than the global default registry.
"""

from __future__ import annotations

from fastapi import FastAPI, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    GCCollector,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)


def create_metrics_registry() -> CollectorRegistry:
    """Registry with the process-default collectors attached."""
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)
    return registry


def create_metrics_app(registry: CollectorRegistry) -> FastAPI:
    app = FastAPI(title="fillfeed metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app

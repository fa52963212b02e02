# backend/classbook/main.py
"""FastAPI application factory for the class booking engine."""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from . import __version__
from .core.config import settings
from .core.exceptions import DomainException
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes.v1 import bookings as bookings_v1
from .routes.v1 import instances as instances_v1
from .routes.v1 import waitlist as waitlist_v1

logger = logging.getLogger(__name__)


async def _domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, DomainException)
    http_exc = exc.to_http_exception()
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


def create_app() -> FastAPI:
    app = FastAPI(title="Class Booking Engine", version=__version__)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(instances_v1.router, prefix="/instances")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(waitlist_v1.router, prefix="/waitlist")
    app.include_router(api_v1)

    app.add_exception_handler(DomainException, _domain_exception_handler)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    logger.info("Application created", extra={"environment": settings.environment})
    return app


app = create_app()

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Starlette ASGI application for the EcoPulse REST API.

Identity comes from the upstream session provider (see ``identity``).
Every request runs inside a correlation context so log lines emitted while
serving it share one id, echoed back as ``X-Correlation-Id``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..core.engine import TrustEngine
from ..core.logging import configure_logging, correlation_context
from .config import get_settings
from .endpoints.observations import (
    batch_import_endpoint,
    confirm_disclosure_endpoint,
    get_observation_endpoint,
    refresh_observation_endpoint,
    resolve_conflict_endpoint,
    submit_observation_endpoint,
    sync_observations_endpoint,
    validate_timestamp_endpoint,
)
from .endpoints.users import get_credibility_endpoint
from .endpoints.verification import (
    cast_vote_endpoint,
    get_dispute_endpoint,
    raise_dispute_endpoint,
    submit_verification_endpoint,
)
from .identity import CREDIBILITY_HEADER, EXPERTISE_HEADER, USER_HEADER

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Scope a correlation id to each request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex[:16]
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def _check_database() -> str:
    from ..core.db import check_connection

    return "connected" if check_connection() else "unreachable"


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint."""
    settings = get_settings()

    health_data: dict[str, Any] = {
        "status": "healthy",
        "server": settings.server_name,
        "version": settings.server_version,
    }

    if request.app.state.check_database:
        try:
            health_data["database"] = await asyncio.to_thread(_check_database)
        except Exception as e:  # Intentionally broad: health check should report all errors
            health_data["database"] = f"error: {e}"
        if health_data["database"] != "connected":
            health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(health_data, status_code=status_code)


def create_app(engine: TrustEngine | None = None) -> Starlette:
    """Create the Starlette ASGI application.

    Args:
        engine: Engine to serve. When omitted, a PostgreSQL-backed engine is
            built from settings at startup and the health check probes the
            database.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        if app.state.engine is None:
            app.state.engine = TrustEngine.from_config(settings)
        logger.info(f"EcoPulse API ready on {settings.host}:{settings.port}")
        yield
        logger.info("EcoPulse API shutting down")

    API_V1 = "/api/v1"

    routes = [
        Route(f"{API_V1}/health", health_endpoint, methods=["GET"]),
        # Observation intake
        Route(f"{API_V1}/observations", submit_observation_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/validate-timestamp", validate_timestamp_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/sync", sync_observations_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/batch", batch_import_endpoint, methods=["POST"]),
        # Single observation
        Route(f"{API_V1}/observations/{{id}}", get_observation_endpoint, methods=["GET"]),
        Route(f"{API_V1}/observations/{{id}}/disclosure", confirm_disclosure_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/{{id}}/conflict", resolve_conflict_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/{{id}}/refresh", refresh_observation_endpoint, methods=["POST"]),
        # Verification and disputes
        Route(f"{API_V1}/observations/{{id}}/verifications", submit_verification_endpoint, methods=["POST"]),
        Route(f"{API_V1}/observations/{{id}}/disputes", raise_dispute_endpoint, methods=["POST"]),
        Route(f"{API_V1}/disputes/{{id}}", get_dispute_endpoint, methods=["GET"]),
        Route(f"{API_V1}/disputes/{{id}}/votes", cast_vote_endpoint, methods=["POST"]),
        # Contributors
        Route(f"{API_V1}/users/{{id}}/credibility", get_credibility_endpoint, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", USER_HEADER, EXPERTISE_HEADER, CREDIBILITY_HEADER, CORRELATION_HEADER],
            expose_headers=[CORRELATION_HEADER],
        ),
        Middleware(CorrelationMiddleware),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.engine = engine
    app.state.check_database = engine is None
    return app


def run() -> None:
    """Run the server using uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, log_file=settings.log_file)

    logger.info(f"Starting EcoPulse API on {settings.host}:{settings.port}")

    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    run()

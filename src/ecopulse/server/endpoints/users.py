# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""REST endpoints for contributor standing.

Routes:
    GET    /api/v1/users/:id/credibility   - get_credibility_endpoint
"""

from __future__ import annotations

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..endpoint_utils import call_engine, get_engine


async def get_credibility_endpoint(request: Request) -> JSONResponse:
    """GET /api/v1/users/:id/credibility - Score, components, history and suggestions."""
    engine = get_engine(request)
    return await call_engine(engine.credibility, request.path_params["id"])

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""REST endpoints for verification and disputes.

Routes:
    POST   /api/v1/observations/:id/verifications   - submit_verification_endpoint
    POST   /api/v1/observations/:id/disputes        - raise_dispute_endpoint
    GET    /api/v1/disputes/:id                     - get_dispute_endpoint
    POST   /api/v1/disputes/:id/votes               - cast_vote_endpoint
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..endpoint_utils import call_engine, get_engine, parse_body
from ..identity import identify
from ..models import DisputeCreate, VerificationCreate, VoteCreate

logger = logging.getLogger(__name__)


async def submit_verification_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/:id/verifications - Record a peer or expert verification."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, VerificationCreate)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(
        engine.submit_verification,
        request.path_params["id"],
        actor,
        body.tier,
        body.confidence,
        body.notes,
        status_code=201,
    )


async def raise_dispute_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/:id/disputes - Contest a verification."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, DisputeCreate)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(
        engine.raise_dispute,
        request.path_params["id"],
        actor,
        body.reason,
        body.evidence_ref,
        body.verification_id,
        status_code=201,
    )


async def get_dispute_endpoint(request: Request) -> JSONResponse:
    """GET /api/v1/disputes/:id - Dispute with its current tally. Never resolves."""
    engine = get_engine(request)
    dispute_id = request.path_params["id"]

    def load() -> dict[str, Any]:
        data = engine.get_dispute(dispute_id).to_dict()
        data["tally"] = engine.tally(dispute_id).to_dict()
        return data

    return await call_engine(load)


async def cast_vote_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/disputes/:id/votes - Cast one vote on an open dispute."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, VoteCreate)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(engine.cast_vote, request.path_params["id"], actor, body.choice, status_code=201)

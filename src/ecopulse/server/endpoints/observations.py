# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""REST endpoints for observation intake and lifecycle.

Routes:
    POST   /api/v1/observations                          - submit_observation_endpoint
    POST   /api/v1/observations/validate-timestamp       - validate_timestamp_endpoint
    POST   /api/v1/observations/sync                     - sync_observations_endpoint
    POST   /api/v1/observations/batch                    - batch_import_endpoint
    GET    /api/v1/observations/:id                      - get_observation_endpoint
    POST   /api/v1/observations/:id/disclosure           - confirm_disclosure_endpoint
    POST   /api/v1/observations/:id/conflict             - resolve_conflict_endpoint
    POST   /api/v1/observations/:id/refresh              - refresh_observation_endpoint
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from ...core.engine import TrustEngine
from ...core.ingest import IngestResult, IngestStatus
from ...core.models import Actor
from ..endpoint_utils import call_engine, get_engine, parse_body, read_json
from ..errors import VALIDATION_INVALID_VALUE, error_response
from ..identity import identify, viewer_id
from ..models import BatchRequest, ConflictChoice, DisclosureConfirm, RefreshRequest

logger = logging.getLogger(__name__)


def _ingest_status(result: IngestResult) -> int:
    if result.status == IngestStatus.REJECTED:
        return 400
    return 200 if result.replayed else 201


def _render_results(results: list[IngestResult]) -> dict[str, Any]:
    return {
        "results": [r.to_dict() for r in results],
        "accepted": sum(1 for r in results if r.accepted),
        "rejected": sum(1 for r in results if not r.accepted),
    }


def _then_view(engine: TrustEngine, actor: Actor, observation_id: str, operation, *args: Any) -> dict[str, Any]:
    """Run an owner operation and return the owner's view of the result."""
    operation(observation_id, actor, *args)
    return engine.observation_view(observation_id, actor.user_id)


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


async def submit_observation_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations - Validate and store one observation."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    if not isinstance(body, dict):
        return error_response(VALIDATION_INVALID_VALUE, "Request body must be a JSON object", field="body")

    engine = get_engine(request)
    return await call_engine(engine.validate_and_ingest, body, actor, status_code=_ingest_status)


async def validate_timestamp_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/validate-timestamp - Dry-run the temporal checks."""
    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    if not isinstance(body, dict):
        return error_response(VALIDATION_INVALID_VALUE, "Request body must be a JSON object", field="body")

    engine = get_engine(request)

    def check() -> dict[str, Any]:
        result = engine.check_timestamp(body).to_dict()
        min_date, max_date = engine.validation_window()
        result["window"] = {"min_date": min_date.isoformat(), "max_date": max_date.isoformat()}
        return result

    return await call_engine(check)


async def sync_observations_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/sync - Process an offline queue in order."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, BatchRequest)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(engine.sync_batch, body.items, actor, render=_render_results)


async def batch_import_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/batch - Validate, then import expert CSV rows."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, BatchRequest)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    if body.dry_run:
        return await call_engine(engine.validate_batch, body.items, actor)
    return await call_engine(engine.import_batch, body.items, actor)


# ---------------------------------------------------------------------------
# Single observation
# ---------------------------------------------------------------------------


async def get_observation_endpoint(request: Request) -> JSONResponse:
    """GET /api/v1/observations/:id - Observation as the caller may see it."""
    engine = get_engine(request)
    observation_id = request.path_params["id"]
    return await call_engine(engine.observation_view, observation_id, viewer_id(request))


async def confirm_disclosure_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/:id/disclosure - Acknowledge a buffer-zone disclosure."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, DisclosureConfirm)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(
        _then_view, engine, actor, request.path_params["id"], engine.confirm_disclosure, body.precision_m
    )


async def resolve_conflict_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/:id/conflict - Apply the owner's conflict choice."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, ConflictChoice)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(engine.resolve_conflict, request.path_params["id"], actor, body.choice)


async def refresh_observation_endpoint(request: Request) -> JSONResponse:
    """POST /api/v1/observations/:id/refresh - Attach new evidence to an expired observation."""
    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor

    body = await parse_body(request, RefreshRequest)
    if isinstance(body, JSONResponse):
        return body

    engine = get_engine(request)
    return await call_engine(
        _then_view, engine, actor, request.path_params["id"], engine.refresh_expired, body.evidence_refs
    )

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Caller identity for REST endpoints.

Authentication happens upstream; the session provider forwards the
caller as headers:

    X-User-Id            required
    X-Expertise-Level    beginner | intermediate | expert (default beginner)
    X-Credibility-Score  optional first-contact seed, capped at the beginner band

Usage in endpoints::

    actor = identify(request)
    if isinstance(actor, JSONResponse):
        return actor
"""

from __future__ import annotations

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..core.models import Actor, ExpertiseLevel
from .errors import VALIDATION_INVALID_VALUE, error_response, identity_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
EXPERTISE_HEADER = "X-Expertise-Level"
CREDIBILITY_HEADER = "X-Credibility-Score"


def identify(request: Request) -> Actor | JSONResponse:
    """Build the calling ``Actor`` or return an error response."""
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        return identity_error(f"{USER_HEADER} header is required")

    level_raw = request.headers.get(EXPERTISE_HEADER, ExpertiseLevel.BEGINNER.value).strip().lower()
    try:
        level = ExpertiseLevel(level_raw)
    except ValueError:
        return error_response(
            VALIDATION_INVALID_VALUE,
            f"{EXPERTISE_HEADER} must be one of {', '.join(e.value for e in ExpertiseLevel)}",
            field=EXPERTISE_HEADER,
        )

    score = None
    score_raw = request.headers.get(CREDIBILITY_HEADER)
    if score_raw:
        try:
            score = int(score_raw)
        except ValueError:
            return error_response(
                VALIDATION_INVALID_VALUE, f"{CREDIBILITY_HEADER} must be an integer", field=CREDIBILITY_HEADER
            )

    return Actor(user_id=user_id, expertise_level=level, credibility_score=score)


def viewer_id(request: Request) -> str | None:
    """The caller's user id on read endpoints where identity is optional."""
    return request.headers.get(USER_HEADER, "").strip() or None

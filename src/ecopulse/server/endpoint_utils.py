# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Shared helpers for REST endpoint handlers."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..core.engine import TrustEngine
from ..core.exceptions import EcoPulseException
from .errors import VALIDATION_INVALID_VALUE, domain_error, error_response, internal_error, invalid_json_error

logger = logging.getLogger(__name__)


class _Encoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def json_response(data: Any, **kw: Any) -> JSONResponse:
    body = json.dumps(data, cls=_Encoder)
    return JSONResponse(content=json.loads(body), **kw)


def get_engine(request: Request) -> TrustEngine:
    return request.app.state.engine


async def read_json(request: Request) -> Any | JSONResponse:
    """Decoded request body, or a 400 response when it is not JSON."""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return invalid_json_error()


async def parse_body(request: Request, model: type[BaseModel]) -> BaseModel | JSONResponse:
    """Validate the request body against ``model``."""
    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    if not isinstance(body, dict):
        return error_response(VALIDATION_INVALID_VALUE, "Request body must be a JSON object", field="body")
    try:
        return model(**body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        return error_response(VALIDATION_INVALID_VALUE, first.get("msg", "Invalid request body"), field=field)


async def call_engine(
    fn: Callable[..., Any],
    *args: Any,
    status_code: int | Callable[[Any], int] = 200,
    render: Callable[[Any], Any] | None = None,
    **kwargs: Any,
) -> JSONResponse:
    """Run a blocking engine operation off the event loop and render the result.

    ``status_code`` may be a callable deriving the status from the result.
    Domain errors become standard error bodies; anything else is a 500.
    """
    try:
        result = await asyncio.to_thread(fn, *args, **kwargs)
    except EcoPulseException as e:
        return domain_error(e)
    except Exception:
        logger.exception(f"Error in {getattr(fn, '__name__', 'engine call')}")
        return internal_error()

    if callable(status_code):
        status_code = status_code(result)
    if render is not None:
        result = render(result)
    elif hasattr(result, "to_dict"):
        result = result.to_dict()
    return json_response(result, status_code=status_code)

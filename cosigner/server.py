from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Mapping

from aiohttp import web

from cosigner.common import log_event
from cosigner.errors import (
    KeyCustodyError,
    LedgerRejectedError,
    LedgerUnavailableError,
    OperationError,
    PositionSdkError,
    PriceUnavailableError,
    ValidationError,
)
from cosigner.operations import OperationSequencer

UPSTREAM_ERRORS = (
    KeyCustodyError,
    LedgerRejectedError,
    LedgerUnavailableError,
    PositionSdkError,
    PriceUnavailableError,
)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
HealthCheck = Callable[[], Awaitable[None]]

LOGGER_KEY: web.AppKey[logging.Logger] = web.AppKey("logger")
SEQUENCERS_KEY: web.AppKey[dict[str, OperationSequencer]] = web.AppKey("sequencers")
HEALTHCHECK_KEY: web.AppKey[HealthCheck | None] = web.AppKey("healthcheck")


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError as error:
        raise ValidationError("Request body must be valid JSON.") from error
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _sequencer(request: web.Request) -> OperationSequencer:
    operation = request.match_info["operation"]
    sequencer = request.app[SEQUENCERS_KEY].get(operation)
    if sequencer is None:
        raise web.HTTPNotFound(
            text=json.dumps({"kind": "not_found", "error": f"Unknown operation: {operation}"}),
            content_type="application/json",
        )
    return sequencer


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    logger = request.app[LOGGER_KEY]
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except OperationError as error:
        log_event(
            logger,
            level="error" if error.http_status >= 500 else "warning",
            event="request_failed",
            message=error.message,
            path=request.path,
            kind=error.kind,
            status=error.http_status,
        )
        return web.json_response(error.to_dict(), status=error.http_status)
    except UPSTREAM_ERRORS as error:
        log_event(
            logger,
            level="error",
            event="upstream_failed",
            message="Upstream dependency failed",
            path=request.path,
            error=str(error),
            error_type=type(error).__name__,
        )
        return web.json_response({"kind": "upstream", "error": str(error)}, status=502)
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="request_unhandled_error",
            message="Unhandled request error",
            path=request.path,
            error=str(error),
        )
        return web.json_response({"kind": "internal", "error": "Internal server error"}, status=500)


async def handle_build(request: web.Request) -> web.Response:
    sequencer = _sequencer(request)
    payload = await _read_json(request)
    result = await sequencer.build(payload)
    return web.json_response(result.to_dict())


async def handle_confirm(request: web.Request) -> web.Response:
    sequencer = _sequencer(request)
    payload = await _read_json(request)
    result = await sequencer.confirm(payload.get("requestId"), payload.get("signedTransactions"))
    return web.json_response(result.to_dict())


async def handle_health(request: web.Request) -> web.Response:
    check = request.app[HEALTHCHECK_KEY]
    operations = sorted(request.app[SEQUENCERS_KEY])
    if check is not None:
        try:
            await check()
        except Exception as error:
            log_event(
                request.app[LOGGER_KEY],
                level="warning",
                event="healthcheck_failed",
                message="Healthcheck failed",
                error=str(error),
            )
            return web.json_response({"status": "down", "operations": operations}, status=503)
    return web.json_response({"status": "ok", "operations": operations})


def create_app(
    *,
    logger: logging.Logger,
    sequencers: Mapping[str, OperationSequencer],
    healthcheck: HealthCheck | None = None,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[LOGGER_KEY] = logger
    app[SEQUENCERS_KEY] = dict(sequencers)
    app[HEALTHCHECK_KEY] = healthcheck

    app.router.add_get("/health", handle_health)
    app.router.add_post("/{operation}/build", handle_build)
    app.router.add_post("/{operation}/confirm", handle_confirm)
    return app

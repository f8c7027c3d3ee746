"""HTTP interface exposing health checks and task status pages."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable

from aiohttp import web

from jobwatch.status import StatusResponse, TaskLabel, TaskStatuses, WatcherAppContext

logger = logging.getLogger(__name__)

MAX_REQUEST_BODY = 1_024_000

HEALTHZ_MESSAGE = "Yup, I'm healthy!"
HOMEPAGE_MESSAGE = "Index page"

_ALLOWED_METHODS = "GET,HEAD"
_ALLOWED_HEADERS = "content-type"

CONTEXT_KEY = web.AppKey("context", WatcherAppContext)
STATUSES_KEY = web.AppKey("statuses", TaskStatuses)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def _trace(request: web.Request, handler: _Handler) -> web.StreamResponse:
    logger.info("started processing request %s %s", request.method, request.path)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        logger.info("finished processing request %s %s: %d", request.method, request.path, exc.status)
        raise
    logger.info(
        "finished processing request %s %s: %d", request.method, request.path, response.status
    )
    return response


@web.middleware
async def _cors(request: web.Request, handler: _Handler) -> web.StreamResponse:
    if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
        return web.Response(
            status=200,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": _ALLOWED_METHODS,
                "Access-Control-Allow-Headers": _ALLOWED_HEADERS,
            },
        )
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers["Access-Control-Allow-Origin"] = "*"
        raise
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


def _to_response(result: StatusResponse) -> web.Response:
    return web.Response(
        body=result.body.encode("utf-8"),
        status=result.status_code,
        headers={"Content-Type": result.content_type},
    )


def _respond_with_status(request: web.Request, label: TaskLabel | None) -> web.Response:
    context = request.app[CONTEXT_KEY]
    statuses = request.app[STATUSES_KEY]
    accept = request.headers.get("Accept")
    if accept is not None and "application/json" in accept:
        result = statuses.render_json(context, label)
    elif accept is not None and "text/plain" in accept:
        result = statuses.render_text(context, label)
    else:
        result = statuses.render_html(context, label)
    return _to_response(result)


async def _homepage(request: web.Request) -> web.Response:
    return web.Response(text=HOMEPAGE_MESSAGE)


async def _healthz(request: web.Request) -> web.Response:
    return web.Response(text=HEALTHZ_MESSAGE)


async def _status_all(request: web.Request) -> web.Response:
    return _respond_with_status(request, None)


async def _status_single(request: web.Request) -> web.Response:
    return _respond_with_status(request, TaskLabel(request.match_info["label"]))


def create_app(context: WatcherAppContext, statuses: TaskStatuses) -> web.Application:
    """Build the web application serving health and status endpoints."""
    app = web.Application(middlewares=[_trace, _cors], client_max_size=MAX_REQUEST_BODY)
    app[CONTEXT_KEY] = context
    app[STATUSES_KEY] = statuses
    app.router.add_get("/", _homepage)
    app.router.add_get("/healthz", _healthz)
    app.router.add_get("/status/{label:.+}", _status_single)
    app.router.add_get("/status", _status_all)
    return app


async def start_rest_api(
    context: WatcherAppContext, statuses: TaskStatuses, sock: socket.socket
) -> None:
    """Serve the status application on ``sock`` until cancelled."""
    runner = web.AppRunner(create_app(context, statuses))
    await runner.setup()
    try:
        site = web.SockSite(runner, sock)
        await site.start()
        logger.info("Launching server")
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
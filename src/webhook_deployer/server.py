"""aiohttp webhook listener.

Endpoints:
- ``POST /webhook``: authenticate, acknowledge, run the pipeline in the background
- ``GET /health``: unauthenticated liveness
- ``GET /status``: pipeline state, queue depth, last run, recent app exits
- ``GET /history``: recent pipeline runs
"""

from __future__ import annotations

import asyncio
import time

from aiohttp import web

from webhook_deployer.auth import authenticate, resolve_secret
from webhook_deployer.config import Settings, get_settings
from webhook_deployer.errors import AuthenticationError
from webhook_deployer.logging import get_logger
from webhook_deployer.pipeline import UpdatePipeline

log = get_logger("webhook_deployer.server")

PIPELINE_KEY = web.AppKey("pipeline", UpdatePipeline)
SECRET_KEY = web.AppKey("secret", str)
STARTED_KEY = web.AppKey("started_at", float)

ACK_TEXT = "Webhook request received"
DENIED_TEXT = "Invalid secret token"


def _is_authorized(request: web.Request) -> bool:
    try:
        authenticate(request.headers, request.app[SECRET_KEY])
    except AuthenticationError:
        log.warning("webhook_auth_rejected", path=request.path, remote=request.remote)
        return False
    return True


async def handle_webhook(request: web.Request) -> web.Response:
    if not _is_authorized(request):
        return web.Response(status=403, text=DENIED_TEXT)

    # Payload is drained but not interpreted: every push runs the same pipeline.
    await request.read()

    pipeline = request.app[PIPELINE_KEY]
    pipeline.trigger("webhook")
    log.info("webhook_accepted", scheduled_runs=pipeline.scheduled_runs, busy=pipeline.is_busy)
    return web.Response(text=ACK_TEXT)


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def handle_status(request: web.Request) -> web.Response:
    if not _is_authorized(request):
        return web.json_response({"error": DENIED_TEXT}, status=403)

    status = request.app[PIPELINE_KEY].status_snapshot()
    status.uptime_seconds = round(time.monotonic() - request.app[STARTED_KEY], 2)
    return web.json_response(status.to_dict())


async def handle_history(request: web.Request) -> web.Response:
    if not _is_authorized(request):
        return web.json_response({"error": DENIED_TEXT}, status=403)

    pipeline = request.app[PIPELINE_KEY]
    return web.json_response({"entries": [r.to_dict() for r in pipeline.history]})


def create_app(pipeline: UpdatePipeline, secret: str) -> web.Application:
    """Build the aiohttp application around an existing pipeline."""
    app = web.Application()
    app[PIPELINE_KEY] = pipeline
    app[SECRET_KEY] = secret
    app[STARTED_KEY] = time.monotonic()

    app.router.add_post("/webhook", handle_webhook)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/history", handle_history)
    return app


async def run_server(settings: Settings | None = None) -> None:
    """Probe the application, run the startup pipeline and serve webhooks."""
    settings = settings or get_settings()
    pipeline = UpdatePipeline.from_settings(settings)
    secret = resolve_secret(settings)

    await pipeline.initialize()
    # Scheduled before the listener opens so it is first in line for the lock.
    pipeline.trigger("startup")

    runner = web.AppRunner(create_app(pipeline, secret))
    await runner.setup()
    site = web.TCPSite(runner, settings.webhook_host, settings.webhook_port)
    await site.start()
    log.info(
        "webhook_server_started",
        host=settings.webhook_host,
        port=settings.webhook_port,
        repo_path=str(settings.git_repo_path),
        app_port=settings.app_port,
        change_detection=settings.change_detection,
    )

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await pipeline.close(settings.shutdown_grace_seconds)
        await pipeline.supervisor.close()
        log.info("webhook_server_stopped")

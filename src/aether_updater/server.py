"""aiohttp REST surface for triggering and observing system updates.

Endpoints:
    GET  /health                  Liveness probe (no auth)
    GET  /update/status           Live orchestrator status
    GET  /update/logs             Logs of the current or last attempt
    POST /update                  Start an update
    GET  /update/history          Audit records, newest first
    GET  /update/history/latest   Most recent audit record
    GET  /update/history/{id}     One audit record

Every route except ``/health`` requires the ``X-Updater-Secret`` header
when a secret is configured.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-not-found,import-untyped]
from aiohttp import web

from aether_updater.audit import (
    DEFAULT_LIST_LIMIT,
    AuditRecorder,
    InMemoryAuditRecorder,
    PostgresAuditRecorder,
)
from aether_updater.auth import SECRET_HEADER, get_or_create_secret, validate_secret
from aether_updater.config import Settings, get_settings
from aether_updater.logging import get_logger
from aether_updater.models import AuditStatus, UpdateOutcome
from aether_updater.orchestrator import DISABLED_MESSAGE, IN_PROGRESS_MESSAGE, create_orchestrator
from aether_updater.rate_limit import UpdateRateLimiter

if TYPE_CHECKING:
    from aether_updater.orchestrator import UpdateOrchestrator

log = get_logger("aether_updater.server")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]

_PUBLIC_PATHS = frozenset({"/health"})

_OUTCOME_HTTP_STATUS: dict[UpdateOutcome, int] = {
    UpdateOutcome.COMPLETED: 200,
    UpdateOutcome.UP_TO_DATE: 200,
    UpdateOutcome.ALREADY_IN_PROGRESS: 409,
    UpdateOutcome.DISABLED: 403,
    UpdateOutcome.FAILED: 500,
    UpdateOutcome.ROLLED_BACK: 500,
}


def _auth_middleware(secret: str) -> Middleware:
    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if not secret or request.path in _PUBLIC_PATHS:
            return await handler(request)
        if not validate_secret(request.headers.get(SECRET_HEADER), secret):
            log.warning("updater_auth_rejected", path=request.path, remote=request.remote)
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    return middleware


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def handle_status(request: web.Request) -> web.Response:
    orchestrator: UpdateOrchestrator = request.app["orchestrator"]
    return web.json_response(orchestrator.get_status())


async def handle_logs(request: web.Request) -> web.Response:
    orchestrator: UpdateOrchestrator = request.app["orchestrator"]
    return web.json_response({"logs": [entry.to_dict() for entry in orchestrator.logs]})


async def handle_update(request: web.Request) -> web.Response:
    """Start an update in the background, or run it inline with ``wait``."""
    orchestrator: UpdateOrchestrator = request.app["orchestrator"]
    rate_limiter: UpdateRateLimiter | None = request.app["rate_limiter"]

    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "Invalid JSON body"}, status=400)

    initiated_by = body.get("initiated_by")
    if not isinstance(initiated_by, str) or not initiated_by.strip():
        return web.json_response({"error": "Missing required field: initiated_by"}, status=400)
    initiated_by = initiated_by.strip()

    if not orchestrator.updates_enabled:
        return web.json_response({"error": DISABLED_MESSAGE}, status=403)

    tasks: set[asyncio.Task[Any]] = request.app["update_tasks"]
    if orchestrator.in_progress or tasks:
        return web.json_response({"error": IN_PROGRESS_MESSAGE}, status=409)

    if rate_limiter is not None:
        retry_after = rate_limiter.hit(initiated_by)
        if retry_after is not None:
            minutes = max(1, math.ceil(retry_after / 60))
            log.info("update_rate_limited", initiated_by=initiated_by, retry_after=retry_after)
            return web.json_response(
                {
                    "error": f"Too many update requests. Try again in {minutes} minutes.",
                    "retry_after_minutes": minutes,
                },
                status=429,
            )

    log.info("update_requested", initiated_by=initiated_by, wait=bool(body.get("wait")))

    if body.get("wait"):
        result = await orchestrator.perform_update(initiated_by)
        return web.json_response(
            result.to_dict(), status=_OUTCOME_HTTP_STATUS.get(result.outcome, 500)
        )

    task = asyncio.create_task(_run_in_background(orchestrator, initiated_by))
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return web.json_response({"message": "Update started", "status": "in_progress"}, status=202)


async def _run_in_background(orchestrator: UpdateOrchestrator, initiated_by: str) -> None:
    try:
        result = await orchestrator.perform_update(initiated_by)
    except Exception:
        log.exception("background_update_crashed", initiated_by=initiated_by)
        return
    log.info(
        "background_update_finished",
        initiated_by=initiated_by,
        outcome=result.outcome.value,
        audit_id=result.audit_id,
    )


async def handle_history(request: web.Request) -> web.Response:
    recorder: AuditRecorder = request.app["recorder"]

    try:
        limit = int(request.query.get("limit", DEFAULT_LIST_LIMIT))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    if limit < 1:
        return web.json_response({"error": "limit must be positive"}, status=400)

    status = request.query.get("status")
    if status:
        try:
            records = (await recorder.list_by_status(AuditStatus(status)))[:limit]
        except ValueError:
            return web.json_response({"error": f"Unknown status: {status}"}, status=400)
    else:
        records = await recorder.list(limit=limit)

    return web.json_response({"records": [record.to_dict() for record in records]})


async def handle_history_latest(request: web.Request) -> web.Response:
    recorder: AuditRecorder = request.app["recorder"]
    record = await recorder.latest()
    if record is None:
        return web.json_response({"error": "No update history"}, status=404)
    return web.json_response(record.to_dict())


async def handle_history_item(request: web.Request) -> web.Response:
    recorder: AuditRecorder = request.app["recorder"]
    try:
        record_id = int(request.match_info["record_id"])
    except ValueError:
        return web.json_response({"error": "Invalid record id"}, status=400)
    record = await recorder.get(record_id)
    if record is None:
        return web.json_response({"error": "Audit record not found"}, status=404)
    return web.json_response(record.to_dict())


async def _drain_update_tasks(app: web.Application) -> None:
    tasks: set[asyncio.Task[Any]] = app["update_tasks"]
    if tasks:
        log.info("waiting_for_update_tasks", count=len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# App factory and entry point
# ---------------------------------------------------------------------------


def create_app(
    orchestrator: UpdateOrchestrator,
    recorder: AuditRecorder,
    secret: str = "",
    rate_limiter: UpdateRateLimiter | None = None,
) -> web.Application:
    """Build the aiohttp application. An empty *secret* disables auth."""
    app = web.Application(middlewares=[_auth_middleware(secret)])
    app["orchestrator"] = orchestrator
    app["recorder"] = recorder
    app["rate_limiter"] = rate_limiter
    app["update_tasks"] = set()

    app.router.add_get("/health", handle_health)
    app.router.add_get("/update/status", handle_status)
    app.router.add_get("/update/logs", handle_logs)
    app.router.add_post("/update", handle_update)
    app.router.add_get("/update/history", handle_history)
    app.router.add_get("/update/history/latest", handle_history_latest)
    app.router.add_get("/update/history/{record_id}", handle_history_item)

    app.on_cleanup.append(_drain_update_tasks)
    return app


async def run_server(settings: Settings | None = None) -> None:
    """Wire storage, orchestrator and HTTP surface, then serve forever."""
    settings = settings or get_settings()
    secret = get_or_create_secret(settings.updater_secret_path)

    pool = None
    recorder: AuditRecorder
    if settings.database_url is not None:
        pool = await asyncpg.create_pool(dsn=settings.database_url.get_secret_value())
        postgres = PostgresAuditRecorder()
        await postgres.initialize(pool)
        recorder = postgres
    else:
        log.warning("audit_storage_in_memory", reason="DATABASE_URL not set")
        recorder = InMemoryAuditRecorder()

    orchestrator = create_orchestrator(settings, recorder)
    app = create_app(
        orchestrator=orchestrator,
        recorder=recorder,
        secret=secret,
        rate_limiter=UpdateRateLimiter(settings.update_rate_limit_seconds),
    )

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.server_host, settings.server_port)
    await site.start()
    log.info(
        "updater_server_started",
        host=settings.server_host,
        port=settings.server_port,
        updates_enabled=settings.enable_system_update,
    )

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()
        if pool is not None:
            await pool.close()
        log.info("updater_server_stopped")

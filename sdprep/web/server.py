"""JSON and WebSocket API for sdprep.

Routes:
    GET  /health           liveness and current job state
    GET  /api/candidates   classified devices (``?all=1`` includes rejected)
    GET  /api/job          current job, or ``{"state": "idle"}``
    POST /api/job          ``{"device", "label", "typed_path"}``: request and confirm
    POST /api/job/cancel   cancel the current job
    POST /api/job/ack      clear a finished job
    GET  /ws/job           stream of job events, current log backlog first
"""

from __future__ import annotations

import asyncio
import json
import weakref
from typing import Any, Optional, cast

from aiohttp import WSCloseCode, web

from sdprep.__version__ import __version__
from sdprep.domain.models import RiskPolicy
from sdprep.logging import LoggerFactory
from sdprep.services.drives import DeviceInventory, candidate_payload, list_candidates
from sdprep.services.jobs import JobService, build_orchestrator
from sdprep.storage.exceptions import (
    ConfirmationMismatchError,
    DeviceNotFoundError,
    DeviceValidationError,
    GuardError,
    InventoryError,
    JobActiveError,
    StorageError,
)
from sdprep.storage.format import FormatOrchestrator


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

WEBSOCKETS_KEY: web.AppKey[weakref.WeakSet[web.WebSocketResponse]] = web.AppKey(
    "websockets", cast(Any, weakref.WeakSet)
)
JOBS_KEY: web.AppKey[JobService] = web.AppKey("jobs", JobService)
INVENTORY_KEY: web.AppKey[DeviceInventory] = web.AppKey("inventory", DeviceInventory)
POLICY_KEY: web.AppKey[RiskPolicy] = web.AppKey("policy", RiskPolicy)


def _build_headers() -> dict[str, str]:
    return {
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
    }


def _error(status: int, error: Exception | str, **extra: Any) -> web.Response:
    payload: dict[str, Any] = {"error": str(error)}
    payload.update(extra)
    return web.json_response(payload, status=status, headers=_build_headers())


async def _on_shutdown(app: web.Application) -> None:
    """Close WebSockets with GOING_AWAY and stop any running job."""
    log = LoggerFactory.for_web()
    jobs = app.get(JOBS_KEY)
    if jobs is not None and jobs.cancel():
        log.warning("Server shutting down, cancelling the running format job")
        await jobs.wait()

    websockets = app.get(WEBSOCKETS_KEY)
    active_ws = set(websockets) if websockets else set()
    if not active_ws:
        return
    log.info(
        f"Closing {len(active_ws)} WebSocket connection(s) gracefully",
        tags=["ws", "websocket", "shutdown"],
    )
    await asyncio.gather(
        *(_close_websocket_gracefully(ws, log) for ws in active_ws),
        return_exceptions=True,
    )


async def _close_websocket_gracefully(ws: web.WebSocketResponse, log) -> None:
    try:
        if not ws.closed:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
    except (ConnectionError, RuntimeError) as exc:
        log.debug(
            f"Error closing WebSocket: {exc}",
            tags=["ws", "websocket", "shutdown", "error"],
        )


async def handle_health(request: web.Request) -> web.Response:
    jobs = request.app[JOBS_KEY]
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "job_state": jobs.orchestrator.state.value,
        },
        headers=_build_headers(),
    )


async def handle_candidates(request: web.Request) -> web.Response:
    jobs = request.app[JOBS_KEY]
    inventory = request.app[INVENTORY_KEY]
    include_rejected = request.query.get("all", "").lower() in ("1", "true", "yes")
    # lsblk is not re-run against a disk that is being partitioned
    busy_device = jobs.orchestrator.busy_device
    results = await asyncio.to_thread(
        list_candidates,
        request.app[POLICY_KEY],
        include_rejected,
        inventory,
        refresh=busy_device is None,
    )
    return web.json_response(
        {
            "candidates": [candidate_payload(result) for result in results],
            "inventory_error": inventory.last_error,
            "operation_active": busy_device is not None,
        },
        headers=_build_headers(),
    )


async def handle_get_job(request: web.Request) -> web.Response:
    return web.json_response(request.app[JOBS_KEY].status(), headers=_build_headers())


async def handle_post_job(request: web.Request) -> web.Response:
    log = LoggerFactory.for_web()
    jobs = request.app[JOBS_KEY]
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        return _error(400, f"Invalid JSON body: {error}")
    if not isinstance(data, dict) or not isinstance(data.get("device"), str):
        return _error(400, "Field 'device' is required")

    try:
        job = await jobs.confirm(
            data["device"],
            label=data.get("label"),
            typed_path=data.get("typed_path"),
        )
    except JobActiveError as error:
        return _error(409, error, state=error.state)
    except DeviceNotFoundError as error:
        return _error(404, error)
    except ConfirmationMismatchError as error:
        return _error(422, error, expected=error.expected, requires_retype=True)
    except (GuardError, InventoryError) as error:
        log.error(f"Format request refused, system state unknown: {error}")
        return _error(503, error)
    except (DeviceValidationError, StorageError) as error:
        return _error(422, error)
    log.info(f"Format job {job.job_id} started on {job.target.path}", tags=["web", "format"])
    return web.json_response(job.to_dict(), status=202, headers=_build_headers())


async def handle_cancel_job(request: web.Request) -> web.Response:
    cancelled = request.app[JOBS_KEY].cancel()
    return web.json_response({"cancelled": cancelled}, headers=_build_headers())


async def handle_ack_job(request: web.Request) -> web.Response:
    try:
        acknowledged = request.app[JOBS_KEY].acknowledge()
    except JobActiveError as error:
        return _error(409, error, state=error.state)
    return web.json_response({"acknowledged": acknowledged}, headers=_build_headers())


async def _stream_events(ws: web.WebSocketResponse, jobs: JobService) -> None:
    async for event in jobs.subscribe():
        if ws.closed:
            break
        await ws.send_json(event.to_dict())


async def handle_job_ws(request: web.Request) -> web.WebSocketResponse:
    """WebSocket handler that streams format job events.

    Client messages are ignored except ``{"action": "cancel"}``.
    """
    jobs = request.app[JOBS_KEY]
    ws = web.WebSocketResponse(autoping=True)
    await ws.prepare(request)

    websockets = request.app.get(WEBSOCKETS_KEY)
    if websockets is not None:
        websockets.add(ws)
    connection_id = id(ws)
    log = LoggerFactory.for_web(str(connection_id))
    log.debug(
        f"Job WebSocket connected from {request.remote}",
        tags=["ws", "websocket", "connection"],
    )

    sender = asyncio.create_task(_stream_events(ws, jobs))
    try:
        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError as e:
                    await ws.send_json({"error": f"Invalid message format: {e}"})
                    continue
                if isinstance(data, dict) and data.get("action") == "cancel":
                    jobs.cancel()
            elif msg.type == web.WSMsgType.ERROR:
                log.debug(
                    f"Job WebSocket error: {ws.exception()}",
                    tags=["ws", "websocket", "error"],
                )
                break
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        if websockets is not None:
            websockets.discard(ws)
        if not ws.closed:
            await ws.close()
        log.debug(
            f"Job WebSocket disconnected from {request.remote}",
            tags=["ws", "websocket", "connection"],
        )
    return ws


def create_app(
    policy: Optional[RiskPolicy] = None,
    orchestrator: Optional[FormatOrchestrator] = None,
    inventory: Optional[DeviceInventory] = None,
) -> web.Application:
    policy = policy or RiskPolicy()
    if orchestrator is None:
        orchestrator = build_orchestrator(policy)
    app = web.Application()
    app[WEBSOCKETS_KEY] = weakref.WeakSet()
    app[JOBS_KEY] = JobService(orchestrator)
    app[INVENTORY_KEY] = inventory or DeviceInventory()
    app[POLICY_KEY] = policy
    app.on_shutdown.append(cast(Any, _on_shutdown))

    app.router.add_get("/health", handle_health)
    app.router.add_get("/api/candidates", handle_candidates)
    app.router.add_get("/api/job", handle_get_job)
    app.router.add_post("/api/job", handle_post_job)
    app.router.add_post("/api/job/cancel", handle_cancel_job)
    app.router.add_post("/api/job/ack", handle_ack_job)
    app.router.add_get("/ws/job", handle_job_ws)
    return app


async def start_site(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def serve(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    policy: Optional[RiskPolicy] = None,
) -> None:
    log = LoggerFactory.for_web()
    runner = await start_site(create_app(policy), host, port)
    log.info(f"Web server started at http://{host}:{port}")
    try:
        await asyncio.Event().wait()
    finally:
        log.debug("Web server shutting down...", tags=["web", "shutdown"])
        # on_shutdown closes WebSockets and stops a running job
        await runner.cleanup()
        log.info("Web server stopped", tags=["web", "shutdown"])


def run_server(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    policy: Optional[RiskPolicy] = None,
) -> None:
    try:
        asyncio.run(serve(host, port, policy))
    except KeyboardInterrupt:
        LoggerFactory.for_web().info("Interrupted")

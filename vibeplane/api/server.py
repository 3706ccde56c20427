"""HTTP control plane for the vibeplane session orchestrator.

Thin aiohttp layer over OperationScheduler. Mutating endpoints return
as soon as the guard is set (202); clients poll GET /sessions/{id} to
observe progress and outcome.

Endpoints:
    GET    /health                -> {status, workingDir}
    GET    /sessions              -> {sessions: [...]}
    POST   /sessions              -> create session (provisioned in background)
    POST   /sessions/adopt        -> bind a session to an existing branch
    GET    /sessions/{id}         -> full session
    DELETE /sessions/{id}         -> remove session
    POST   /sessions/{id}/chat    -> send message to the agent
    POST   /sessions/{id}/merge   -> merge into trunk and push
    POST   /sessions/{id}/switch  -> check out the session branch
    POST   /sessions/{id}/push    -> push the session branch
    GET    /branches              -> adoptable branches and current HEAD
"""
from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from vibeplane.engine.errors import (
    BranchNotFoundError,
    SessionConflictError,
    SessionNotFoundError,
    VcsError,
)
from vibeplane.engine.scheduler import OperationScheduler

logger = logging.getLogger(__name__)


def _is_loopback(remote: str | None) -> bool:
    if not remote:
        return False
    try:
        return ipaddress.ip_address(remote.split("%", 1)[0]).is_loopback
    except ValueError:
        return remote == "localhost"


def _summary(session) -> dict[str, Any]:
    return {
        "id": session.id,
        "branchName": session.branch_name,
        "status": session.status.value,
        "operation": session.operation.value,
    }


class ControlPlaneServer:
    """aiohttp server exposing session operations over localhost HTTP."""

    def __init__(
        self,
        scheduler: OperationScheduler,
        *,
        host: str = "127.0.0.1",
        port: int = 3001,
        allow_remote_clients: bool = False,
    ) -> None:
        self._scheduler = scheduler
        self._host = host
        self._port = port
        self._allow_remote = allow_remote_clients
        self._started_at = time.time()
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._loopback_only_middleware,
        ])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-vibe-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _loopback_only_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if not self._allow_remote and not _is_loopback(request.remote):
            logger.warning("Rejected non-loopback client %s", request.remote)
            return web.json_response(
                {"error": "Forbidden: control plane only accepts localhost connections"},
                status=403,
            )
        return await handler(request)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_post("/sessions/adopt", self._handle_adopt_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_delete("/sessions/{id}", self._handle_remove_session)
        r.add_post("/sessions/{id}/chat", self._handle_chat)
        r.add_post("/sessions/{id}/merge", self._handle_merge)
        r.add_post("/sessions/{id}/switch", self._handle_switch)
        r.add_post("/sessions/{id}/push", self._handle_push)
        r.add_get("/branches", self._handle_list_branches)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout, serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("vibeplane server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info(
            "vibeplane server listening on %s:%d cwd=%s",
            self._host, actual_port, self._scheduler.git.working_dir,
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._scheduler.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any]:
        """Parse an optional JSON object body. Raises ValueError when malformed."""
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON body: {exc.msg}") from exc
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        return body

    @staticmethod
    def _error(message: str, status: int, *, ack: bool = False) -> web.Response:
        payload: dict[str, Any] = {"error": message}
        if ack:
            payload = {"success": False, **payload}
        return web.json_response(payload, status=status)

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "workingDir": str(self._scheduler.git.working_dir),
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self._scheduler.registry.list()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_body(request)
        except ValueError as exc:
            return self._error(str(exc), 400)
        base_ref = str(body.get("baseRef") or "").strip() or None
        session = self._scheduler.create(base_ref)
        return web.json_response(_summary(session), status=202)

    async def _handle_adopt_session(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_body(request)
            session = await self._scheduler.adopt(str(body.get("branch") or ""))
        except ValueError as exc:
            return self._error(str(exc), 400)
        except BranchNotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionConflictError as exc:
            return self._error(str(exc), 409)
        except VcsError as exc:
            return self._error(str(exc), 500)
        return web.json_response(_summary(session), status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        try:
            session = self._scheduler.registry.get(request.match_info["id"])
        except SessionNotFoundError as exc:
            return self._error(str(exc), 404)
        return web.json_response(session.to_dict())

    async def _handle_remove_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if not self._scheduler.delete(session_id):
            return self._error(str(SessionNotFoundError(session_id)), 404)
        return web.json_response({"status": "removed", "id": session_id})

    async def _handle_chat(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            body = await self._read_body(request)
            message = body.get("message")
            if not isinstance(message, str):
                raise ValueError("message is required")
            status = self._scheduler.send_message(session_id, message)
        except ValueError as exc:
            return self._error(str(exc), 400)
        except SessionNotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionConflictError as exc:
            return self._error(str(exc), 409)
        return web.json_response({"status": status.value}, status=202)

    async def _handle_merge(self, request: web.Request) -> web.Response:
        return self._run_operation(self._scheduler.merge, request.match_info["id"])

    async def _handle_switch(self, request: web.Request) -> web.Response:
        return self._run_operation(self._scheduler.switch_to, request.match_info["id"])

    async def _handle_push(self, request: web.Request) -> web.Response:
        return self._run_operation(self._scheduler.push, request.match_info["id"])

    def _run_operation(self, entry, session_id: str) -> web.Response:
        try:
            ack = entry(session_id)
        except SessionNotFoundError as exc:
            return self._error(str(exc), 404, ack=True)
        except SessionConflictError as exc:
            return self._error(str(exc), 409, ack=True)
        return web.json_response(ack.to_dict(), status=202)

    async def _handle_list_branches(self, request: web.Request) -> web.Response:
        try:
            branches, current = await self._scheduler.list_adoptable_branches()
        except VcsError as exc:
            return self._error(str(exc), 500)
        return web.json_response({"branches": branches, "current": current})

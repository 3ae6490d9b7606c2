"""HTTP surface: realtime websocket endpoint, command endpoint and health."""

from __future__ import annotations

import contextlib
import functools
import logging
from typing import Optional

from aiohttp import WSCloseCode, WSMsgType, web

from .auth import AuthorizationGate, bearer_token
from .commands import CommandDispatcher, CommandDispatchError, build_command
from .health import HealthReporter
from .registry import AdmissionRejected, ConnectionRegistry

LOGGER = logging.getLogger(__name__)

COMMAND_ROUTE = "/api/devices/{device_id}/command"
HEALTH_ROUTE = "/api/health"


class RealtimeServer:
    """aiohttp application hosting the realtime and command endpoints."""

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        dispatcher: CommandDispatcher,
        gate: AuthorizationGate,
        health: HealthReporter,
        host: str = "0.0.0.0",
        port: int = 3001,
        websocket_path: str = "/",
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._gate = gate
        self._health = health
        self._host = host
        self._port = port
        self._websocket_path = websocket_path
        self._heartbeat = heartbeat_seconds or None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self._websocket_path, self._handle_websocket)
        app.router.add_post(COMMAND_ROUTE, self._handle_command)
        app.router.add_get(HEALTH_ROUTE, self._handle_health)
        app.on_shutdown.append(self._close_subscribers)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Realtime endpoint listening on ws://%s:%s%s",
            self._host,
            self._port,
            self._websocket_path,
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        try:
            await self._registry.admit(
                ws,
                request.query.get("token"),
                accept=functools.partial(ws.prepare, request),
            )
        except AdmissionRejected:
            return web.json_response({"error": "Unauthorized"}, status=401)

        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    LOGGER.warning(
                        "Realtime connection error: %s", ws.exception()
                    )
        finally:
            self._registry.remove(ws)
        return ws

    async def _handle_command(self, request: web.Request) -> web.Response:
        token = bearer_token(request.headers.get("Authorization"))
        if token is None:
            return web.json_response({"error": "Access token required"}, status=401)
        if not self._gate.verify(token).valid:
            return web.json_response({"error": "Invalid or expired token"}, status=403)

        device_id = request.match_info["device_id"]
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Request body must be JSON"}, status=400)

        try:
            command = build_command(device_id, body)
            self._dispatcher.publish_command(device_id, command)
        except CommandDispatchError as exc:
            status = 502 if exc.code == "publish_failed" else 400
            return web.json_response({"error": str(exc)}, status=status)

        return web.json_response(
            {"message": "Command sent successfully", "command": command.to_payload()}
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._health.snapshot()
        snapshot["websocket_clients"] = len(self._registry)
        status = 200 if snapshot["status"] == "healthy" else 503
        return web.json_response(snapshot, status=status)

    async def _close_subscribers(self, app: web.Application) -> None:
        for subscriber in self._registry.snapshot():
            close = getattr(subscriber.connection, "close", None)
            if close is not None:
                with contextlib.suppress(Exception):
                    await close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
            self._registry.remove(subscriber.connection)

#!/usr/bin/env python3
# avrbridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
avrbridge service (avr-bridge)

Exposes Denon/Marantz receivers as volume controls to a home-audio host.
The host sends volume/mute requests over HTTP and receives state updates over
a WebSocket; the VolumeCoordinator does the receiver side.

Port: 8780 (bridge.port in config.json)

  POST /bridge/volume/{index}   {"mode": "absolute"|"relative"|"relative_step", "value": n}
  POST /bridge/mute/{index}     {"action": "mute"|"unmute"}
  GET  /bridge/receivers        volume-control registration payloads
  GET  /bridge/status           status line + per-receiver state
  GET  /bridge/settings         current receiver list
  POST /bridge/settings         replace receiver list (?dry_run=1 to validate only)
  GET  /ws                      push: {"type": "volume_state", "index": i, "data": {...}}
"""

import asyncio
import json
import logging

import aiohttp
from aiohttp import web

from .lib.config import cfg, load_receivers, poll_interval
from .lib.errors import ConfigurationError, RequestError
from .lib.settings import SettingsManager
from .lib.volume_control import VolumeCoordinator
from .lib.watchdog import sd_status, watchdog_loop

logger = logging.getLogger("avrbridge.bridge")

DEFAULT_BRIDGE_PORT = 8780


class Bridge:
    """Glue between the HTTP surface, settings and the coordinator."""

    def __init__(self):
        self.coordinator: VolumeCoordinator | None = None
        self.settings = SettingsManager()
        self.status_message = "Starting up..."
        self.status_is_error = False
        self.last_errors: dict[int, str] = {}
        self._session: aiohttp.ClientSession | None = None
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._watchdog_task: asyncio.Task | None = None

    async def start(self):
        self._session = aiohttp.ClientSession()
        self.coordinator = VolumeCoordinator(
            self._session,
            on_state=self._on_state,
            on_error=self._on_error,
            poll_interval=poll_interval(),
        )
        try:
            receivers = load_receivers()
        except ConfigurationError as e:
            logger.error("Configuration error: %s", e)
            receivers = []
        self.settings = SettingsManager(receivers, on_change=self._apply_settings)
        self.coordinator.initialize(receivers)
        self._update_status()
        self._watchdog_task = asyncio.create_task(watchdog_loop())
        logger.info("Bridge started (%d receivers)", len(receivers))

    async def stop(self):
        if self._watchdog_task:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        if self.coordinator:
            self.coordinator.destroy()
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Bridge stopped")

    def _apply_settings(self, receivers):
        self.last_errors.clear()
        self.coordinator.update_settings(receivers)
        self._update_status()

    def _update_status(self, message: str | None = None, is_error: bool = False):
        if message is None:
            message, is_error = self.settings.status_message()
        self.status_message = message
        self.status_is_error = is_error
        sd_status(message)
        log = logger.warning if is_error else logger.info
        log("Status: %s", message)

    # ── coordinator callbacks ──

    def _on_state(self, index: int, state: dict):
        self.last_errors.pop(index, None)
        asyncio.ensure_future(self.broadcast("volume_state", {"index": index, "data": state}))

    def _on_error(self, index: int, error: Exception):
        self.last_errors[index] = str(error)

    # ── WebSocket ──

    async def broadcast(self, event_type: str, data: dict):
        """Push an event to all connected WebSocket clients."""
        if not self._ws_clients:
            return
        message = json.dumps({"type": event_type, **data})
        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)
        self._ws_clients -= disconnected

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._ws_clients.add(ws)
        logger.info("WebSocket client connected (%d total)", len(self._ws_clients))
        try:
            for index in range(len(self.coordinator)):
                await ws.send_json({"type": "volume_state", "index": index,
                                    "data": self.coordinator.state(index)})
            async for msg in ws:
                pass  # push-only
        finally:
            self._ws_clients.discard(ws)
            logger.info("WebSocket client disconnected (%d remaining)",
                        len(self._ws_clients))
        return ws

    def get_status(self) -> dict:
        coordinator = self.coordinator
        receivers = []
        if coordinator is not None:
            for index, endpoint in enumerate(coordinator.endpoints):
                client_state = coordinator.client(index).state
                receivers.append({
                    "index": index,
                    "label": endpoint.label,
                    "address": endpoint.address,
                    "port": endpoint.port,
                    "phase": coordinator.phase(index),
                    "power_on": client_state.power_on,
                    "last_polled_at": client_state.last_polled_at,
                    "last_error": self.last_errors.get(index),
                    **coordinator.state(index),
                })
        return {
            "status": self.status_message,
            "is_error": self.status_is_error,
            "generation": coordinator.generation if coordinator else 0,
            "receivers": receivers,
        }


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------
BRIDGE_KEY = web.AppKey("bridge", Bridge)


def _index(request: web.Request) -> int:
    try:
        return int(request.match_info["index"])
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "index must be an integer"}),
            content_type="application/json") from None


async def _json_body(request: web.Request) -> dict:
    try:
        data = await request.json()
    except Exception:
        data = None
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "expected a JSON object"}),
            content_type="application/json")
    return data


async def handle_volume(request: web.Request) -> web.Response:
    """POST /bridge/volume/{index} queues a volume change."""
    bridge = request.app[BRIDGE_KEY]
    index = _index(request)
    data = await _json_body(request)
    try:
        bridge.coordinator.set_volume(index, data.get("mode"), data.get("value"))
    except RequestError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response({"status": "ok"})


async def handle_mute(request: web.Request) -> web.Response:
    """POST /bridge/mute/{index} mutes or unmutes right away."""
    bridge = request.app[BRIDGE_KEY]
    index = _index(request)
    data = await _json_body(request)
    try:
        ok = await bridge.coordinator.set_mute(index, data.get("action"))
    except RequestError as e:
        return web.json_response({"error": str(e)}, status=400)
    if not ok:
        return web.json_response(
            {"status": "error", "error": bridge.last_errors.get(index)}, status=502)
    return web.json_response({"status": "ok"})


async def handle_receivers(request: web.Request) -> web.Response:
    coordinator = request.app[BRIDGE_KEY].coordinator
    return web.json_response(
        [coordinator.volume_control_info(i) for i in range(len(coordinator))])


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(request.app[BRIDGE_KEY].get_status())


async def handle_settings_get(request: web.Request) -> web.Response:
    return web.json_response(request.app[BRIDGE_KEY].settings.to_dict())


async def handle_settings_post(request: web.Request) -> web.Response:
    """POST /bridge/settings validates and applies a new receiver list."""
    bridge = request.app[BRIDGE_KEY]
    data = await _json_body(request)
    dry_run = request.query.get("dry_run", "") in ("1", "true", "yes") or bool(data.get("dry_run"))
    values = data.get("values", data)
    try:
        receivers = bridge.settings.save(values, dry_run=dry_run)
    except ConfigurationError as e:
        return web.json_response({"status": "NotValid", "error": str(e)}, status=400)
    return web.json_response({
        "status": "Success",
        "dry_run": dry_run,
        "receivers": [r.to_dict() for r in receivers],
    })


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    await app[BRIDGE_KEY].start()


async def on_cleanup(app: web.Application):
    await app[BRIDGE_KEY].stop()


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def create_app(bridge: Bridge | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[BRIDGE_KEY] = bridge or Bridge()
    app.router.add_post("/bridge/volume/{index}", handle_volume)
    app.router.add_post("/bridge/mute/{index}", handle_mute)
    app.router.add_get("/bridge/receivers", handle_receivers)
    app.router.add_get("/bridge/status", handle_status)
    app.router.add_get("/bridge/settings", handle_settings_get)
    app.router.add_post("/bridge/settings", handle_settings_post)
    app.router.add_get("/ws", app[BRIDGE_KEY].handle_ws)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    port = int(cfg("bridge", "port", default=DEFAULT_BRIDGE_PORT))
    web.run_app(create_app(), host="0.0.0.0", port=port, print=lambda msg: logger.info(msg))


if __name__ == "__main__":
    main()

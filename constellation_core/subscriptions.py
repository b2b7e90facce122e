"""
Push channels that relay bus events to connected clients.

Two transports, both scoped to one address:

* ``GET /events/{address}``: Server-Sent Events.  Each bus event becomes

      event: request
      data: {"hash": ..., "txenv": ..., "msg": ..., "progress": ...}

  and an SSE comment line is written when the stream has been idle for
  ``keepalive_seconds``.  An idle stream also checks every ``poll_seconds``
  whether its client has closed the connection, so a vanished client
  releases its subscription without waiting for the next write.

* ``GET /ws/{address}``: WebSocket.  Events are sent as JSON with a
  ``type`` field; the client may send ``{"command": "ping"}``.

Closing the connection releases the topic subscription immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import aiohttp
from aiohttp import web

from constellation_core.keys import is_valid_address
from constellation_core.pubsub import EventBus, Subscription

log = logging.getLogger("constellation.subscriptions")


def format_sse(event: dict[str, Any]) -> bytes:
    data = dict(event)
    command = data.pop("command", "message")
    return f"event: {command}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


class SubscriptionGateway:
    """Bridges per-address bus topics to long-lived HTTP connections."""

    def __init__(self, bus: EventBus, keepalive_seconds: float = 15.0, poll_seconds: float = 1.0):
        self.bus = bus
        self.keepalive_seconds = keepalive_seconds
        # how often an idle SSE stream checks whether its client has gone
        self.poll_seconds = poll_seconds
        self._connections: dict[str, int] = {}

    # ── bookkeeping ─────────────────────────────────────────────

    def connection_count(self, address: str | None = None) -> int:
        if address is not None:
            return self._connections.get(address, 0)
        return sum(self._connections.values())

    def _open(self, address: str) -> Subscription:
        sub = self.bus.subscribe(address)
        self._connections[address] = self._connections.get(address, 0) + 1
        log.info("Subscriber connected for %s (%d live)", address, self._connections[address])
        return sub

    def _release(self, address: str, sub: Subscription) -> None:
        self.bus.unsubscribe(sub)
        remaining = self._connections.get(address, 1) - 1
        if remaining > 0:
            self._connections[address] = remaining
        else:
            self._connections.pop(address, None)
        log.info("Subscriber disconnected for %s", address)

    @staticmethod
    def _address(request: web.Request) -> str:
        address = request.match_info["address"]
        if not is_valid_address(address):
            raise web.HTTPBadRequest(text=f"Invalid address: {address}")
        return address

    # ── Server-Sent Events ──────────────────────────────────────

    async def sse_handler(self, request: web.Request) -> web.StreamResponse:
        address = self._address(request)
        resp = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        poll = min(self.keepalive_seconds, self.poll_seconds)
        sub = self._open(address)
        try:
            await resp.prepare(request)
            await resp.write(b": connected\n\n")
            idle = 0.0
            while True:
                try:
                    event = await sub.get(timeout=poll)
                except asyncio.TimeoutError:
                    if self._client_gone(request):
                        log.debug("SSE client for %s closed the connection", address)
                        break
                    idle += poll
                    if idle >= self.keepalive_seconds:
                        await resp.write(b": keepalive\n\n")
                        idle = 0.0
                    continue
                if event is None:
                    break
                await resp.write(format_sse(event))
                idle = 0.0
        except ConnectionResetError:
            log.debug("SSE client for %s went away", address)
        finally:
            self._release(address, sub)
        return resp

    @staticmethod
    def _client_gone(request: web.Request) -> bool:
        transport = request.transport
        return transport is None or transport.is_closing()

    # ── WebSocket ───────────────────────────────────────────────

    async def websocket_handler(self, request: web.Request) -> web.WebSocketResponse:
        address = self._address(request)
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        sub = self._open(address)
        pump = asyncio.create_task(self._pump(ws, sub))
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        await ws.send_json({"error": "invalid_json"})
                        continue
                    command = data.get("command", "") if isinstance(data, dict) else ""
                    if command == "ping":
                        await ws.send_json({"type": "pong", "time": int(time.time())})
                    else:
                        await ws.send_json({
                            "error": "unknownCmd",
                            "error_message": f"Unknown command: {command}",
                        })
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning("WebSocket error for %s: %s", address, ws.exception())
                    break
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            self._release(address, sub)
        return ws

    @staticmethod
    async def _pump(ws: web.WebSocketResponse, sub: Subscription) -> None:
        async for event in sub:
            data = dict(event)
            command = data.pop("command", "message")
            try:
                await ws.send_json({"type": command, **data})
            except ConnectionResetError:
                return
        # subscription ended (dropped or shutdown): let the client reconnect
        await ws.close()

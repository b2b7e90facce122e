"""
REST / HTTP API for the signature server.

Built on ``aiohttp``.

Endpoints
---------
POST /transaction                 Propose a transaction  {txenv, msg?}
PUT  /transaction/{hash}          Offer signature(s)     {sig: str | [str]}
GET  /transaction/{hash}          Signing progress
POST /transaction/{hash}/submit   Retry submission of an authorised transaction
GET  /events/{address}            Server-Sent Events stream (request / progress)
GET  /ws/{address}                WebSocket stream (request / progress)
GET  /health                      Store and subscriber summary

Responses for submit/sign are ``202`` while signatures are still being
collected and ``200`` once the ledger accepted the transaction.  Errors
are JSON: ``{"error": {"code": ..., "message": ...}}``.

Security
--------
- API-key authentication on POST/PUT/DELETE via ``X-API-Key`` header only
  (timing-safe comparison).
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware with explicit origins.
- Request body size cap.
- Optional TLS for the HTTP listener.

Usage:
    api = APIServer(coordinator, gateway, host="127.0.0.1", port=4711)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import sqlite3
import ssl as _ssl
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from constellation_core.coordinator import CoordinationResult, SignatureCoordinator
from constellation_core.errors import ConstellationError, InvalidEncodingError
from constellation_core.state import SigningStatus
from constellation_core.subscriptions import SubscriptionGateway

if TYPE_CHECKING:
    from constellation_core.config import APIConfig

logger = logging.getLogger("constellation.api")


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_error_middleware():
    """Turn engine errors into JSON responses; never let one request crash the server."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ConstellationError as exc:
            level = logging.ERROR if exc.status >= 500 else logging.WARNING
            logger.log(level, "%s %s -> %s: %s", request.method, request.path,
                       exc.code, exc.message, extra={"code": exc.code})
            return web.json_response({"error": exc.to_dict()}, status=exc.status)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return web.json_response(
                {"error": {"code": "internal_error", "message": "Internal server error"}},
                status=500,
            )

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST/PUT/DELETE.

    The key is only read from the ``X-API-Key`` header, never from the
    query string.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for explicitly listed origins."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


# ═══════════════════════════════════════════════════════════════════
#  Server
# ═══════════════════════════════════════════════════════════════════

class APIServer:
    """aiohttp front end for a SignatureCoordinator."""

    def __init__(
        self,
        coordinator: SignatureCoordinator,
        gateway: SubscriptionGateway,
        host: str = "127.0.0.1",
        port: int = 4711,
        *,
        api_config: APIConfig | None = None,
    ):
        self.coordinator = coordinator
        self.gateway = gateway
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        middlewares: list = [_make_error_middleware()]
        max_body = 262_144

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        ssl_ctx = None
        cfg = self._api_config
        if cfg is not None and cfg.tls_cert and cfg.tls_key:
            ssl_ctx = _ssl.SSLContext(_ssl.PROTOCOL_TLS_SERVER)
            ssl_ctx.minimum_version = _ssl.TLSVersion.TLSv1_2
            ssl_ctx.load_cert_chain(cfg.tls_cert, cfg.tls_key)

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port, ssl_context=ssl_ctx)
        await site.start()
        scheme = "https" if ssl_ctx else "http"
        logger.info("API listening on %s://%s:%s", scheme, self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_post("/transaction", self._submit_transaction)
        app.router.add_put("/transaction/{hash}", self._sign_transaction)
        app.router.add_get("/transaction/{hash}", self._transaction_status)
        app.router.add_post("/transaction/{hash}/submit", self._resubmit_transaction)
        app.router.add_get("/events/{address}", self.gateway.sse_handler)
        app.router.add_get("/ws/{address}", self.gateway.websocket_handler)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        store = self.coordinator.store
        try:
            collecting = store.count(SigningStatus.COLLECTING)
            authorized = store.count(SigningStatus.AUTHORIZED)
            store_ok = True
        except sqlite3.Error as exc:
            logger.error("Health check could not read the store: %s", exc)
            collecting = authorized = 0
            store_ok = False
        gateway = self.coordinator.gateway
        return web.json_response({
            "ok": store_ok,
            "pending": {"collecting": collecting, "authorized": authorized},
            "submissions": {"succeeded": gateway.submitted, "failed": gateway.failed},
            "subscribers": self.gateway.bus.subscriber_count(),
            "connections": self.gateway.connection_count(),
            "checks": {"store": "ok" if store_ok else "degraded"},
        }, status=200 if store_ok else 503)

    async def _submit_transaction(self, request: web.Request) -> web.Response:
        """
        POST /transaction
        Body: {"txenv": "<base64 envelope>", "msg": "optional note for signers"}
        """
        body = await _json_body(request)
        txenv = body.get("txenv")
        if not isinstance(txenv, str) or not txenv:
            raise InvalidEncodingError("txenv is required")
        msg = body.get("msg")
        if msg is not None and not isinstance(msg, str):
            raise InvalidEncodingError("msg must be a string")

        result = await self.coordinator.submit(txenv, msg or None)
        return _result_response(result)

    async def _sign_transaction(self, request: web.Request) -> web.Response:
        """
        PUT /transaction/{hash}
        Body: {"sig": "<base64 signature>"} or {"sig": ["...", "..."]}
        """
        body = await _json_body(request)
        if "sig" not in body:
            raise InvalidEncodingError("sig is required")
        result = await self.coordinator.sign(request.match_info["hash"], body["sig"])
        return _result_response(result)

    async def _transaction_status(self, request: web.Request) -> web.Response:
        result = self.coordinator.status(request.match_info["hash"])
        return web.json_response(result.to_dict())

    async def _resubmit_transaction(self, request: web.Request) -> web.Response:
        result = await self.coordinator.resubmit(request.match_info["hash"])
        return _result_response(result)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _result_response(result: CoordinationResult) -> web.Response:
    return web.json_response(result.to_dict(), status=200 if result.submitted else 202)

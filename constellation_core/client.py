"""
Client library for a Constellation signature server.

    async with ConstellationClient("http://127.0.0.1:4711") as client:
        await client.submit_transaction(envelope, msg="rent for May")
        async for event in client.subscribe(keypair.address):
            if event.kind == "request":
                await client.submit_signature(event.envelope, keypair)

``subscribe`` reads the server's event stream and yields one
``SigningEvent`` per ``request`` / ``progress`` notification, with the
progress snapshot already decoded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from constellation_core.broadcast import decode_progress
from constellation_core.errors import ConstellationError
from constellation_core.keys import Keypair
from constellation_core.transaction import TESTNET_PASSPHRASE, TransactionEnvelope

logger = logging.getLogger("constellation.client")


@dataclass
class SigningEvent:
    kind: str                                   # "request" | "progress"
    tx_hash: str
    envelope: TransactionEnvelope | None = None
    message: str | None = None
    progress: dict[str, dict[str, int]] = field(default_factory=dict)


def parse_event(kind: str, data: dict[str, Any]) -> SigningEvent:
    envelope = None
    if data.get("txenv"):
        envelope = TransactionEnvelope.from_base64(data["txenv"])
    progress = decode_progress(data["progress"]) if data.get("progress") else {}
    return SigningEvent(kind, data.get("hash", ""), envelope, data.get("msg"), progress)


class ConstellationClient:
    def __init__(
        self,
        url: str,
        network_passphrase: str = TESTNET_PASSPHRASE,
        api_key: str = "",
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = url.rstrip("/")
        self.network_passphrase = network_passphrase
        self._headers = {"X-API-Key": api_key} if api_key else {}
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ConstellationClient:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── requests ────────────────────────────────────────────────

    async def submit_transaction(
        self, envelope: TransactionEnvelope | str, msg: str | None = None,
    ) -> dict[str, Any]:
        txenv = envelope if isinstance(envelope, str) else envelope.to_base64()
        body: dict[str, Any] = {"txenv": txenv}
        if msg:
            body["msg"] = msg
        return await self._request("POST", "/transaction", body)

    async def submit_signature(
        self, envelope: TransactionEnvelope | str, keypair: Keypair,
    ) -> dict[str, Any]:
        """Sign a transaction (an envelope or its hex hash) and offer the signature."""
        if isinstance(envelope, str):
            tx_hash = bytes.fromhex(envelope)
        else:
            tx_hash = envelope.hash(self.network_passphrase)
        sig = keypair.sign_decorated(tx_hash)
        return await self._request("PUT", f"/transaction/{tx_hash.hex()}",
                                   {"sig": sig.to_base64()})

    async def transaction_status(self, tx_hash: str) -> dict[str, Any]:
        return await self._request("GET", f"/transaction/{tx_hash}")

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self.start()
        async with self._session.request(method, self.url + path, json=body,
                                         headers=self._headers) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {"detail": await resp.text()}
            if resp.status >= 400:
                raise _error_from_response(resp.status, data)
            return data

    # ── events ──────────────────────────────────────────────────

    async def subscribe(self, address: str) -> AsyncIterator[SigningEvent]:
        """Yield signing events for *address* until the server ends the stream."""
        await self.start()
        timeout = aiohttp.ClientTimeout(total=None, sock_read=None)
        async with self._session.get(f"{self.url}/events/{address}", timeout=timeout,
                                     headers={"Accept": "text/event-stream"}) as resp:
            if resp.status >= 400:
                raise ConstellationError(
                    f"Subscription for {address} refused (HTTP {resp.status})",
                    "subscription_refused",
                )
            kind, data_lines = "message", []
            async for raw in resp.content:
                line = raw.decode("utf-8").rstrip("\r\n")
                if not line:
                    if data_lines:
                        yield parse_event(kind, json.loads("\n".join(data_lines)))
                    kind, data_lines = "message", []
                elif line.startswith(":"):
                    continue
                elif line.startswith("event:"):
                    kind = line[6:].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
        logger.info("Event stream for %s ended", address)


def _error_from_response(status: int, data: Any) -> ConstellationError:
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        exc = ConstellationError(err.get("message", ""), err.get("code"))
    else:
        exc = ConstellationError(f"HTTP {status}", "http_error")
    exc.status = status
    return exc

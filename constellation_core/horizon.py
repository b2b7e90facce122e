"""
HTTP client for a ledger REST service.

    GET  {url}/accounts/{address}   -> account document
    POST {url}/transactions  tx=... -> submission result

The aiohttp session is created by ``start()`` and released by
``close()``; nothing is opened at import or construction time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from constellation_core.account import AccountSnapshot
from constellation_core.errors import (
    AccountNotFoundError,
    LedgerUnavailableError,
    SubmissionError,
)
from constellation_core.ledger import LedgerClient
from constellation_core.transaction import TESTNET_PASSPHRASE, TransactionEnvelope

logger = logging.getLogger("constellation.horizon")


class HorizonClient(LedgerClient):
    def __init__(
        self,
        base_url: str,
        network_passphrase: str = TESTNET_PASSPHRASE,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network_passphrase = network_passphrase
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            await self.start()
        return self._session

    async def get_account(self, address: str) -> AccountSnapshot:
        session = await self._ensure_session()
        url = f"{self.base_url}/accounts/{address}"
        try:
            async with session.get(url) as resp:
                if resp.status == 404:
                    raise AccountNotFoundError(address)
                if resp.status >= 400:
                    raise LedgerUnavailableError(
                        f"Account lookup for {address} failed with HTTP {resp.status}"
                    )
                doc = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerUnavailableError(f"Ledger unreachable: {exc}") from exc
        return AccountSnapshot.from_horizon(doc)

    async def submit_transaction(self, envelope: TransactionEnvelope) -> dict[str, Any]:
        session = await self._ensure_session()
        url = f"{self.base_url}/transactions"
        tx_hash = envelope.hash_hex(self.network_passphrase)
        try:
            async with session.post(url, data={"tx": envelope.to_base64()}) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = {"detail": await resp.text()}
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerUnavailableError(f"Ledger unreachable: {exc}") from exc

        if status >= 500:
            raise LedgerUnavailableError(f"Submission of {tx_hash} failed with HTTP {status}")
        if status >= 400:
            extras = body.get("extras", {}) if isinstance(body, dict) else {}
            result = {"hash": tx_hash, **extras} if extras else {"hash": tx_hash, "detail": body}
            raise SubmissionError(f"Ledger rejected {tx_hash} (HTTP {status})", result)
        logger.info("Submitted %s", tx_hash)
        return body

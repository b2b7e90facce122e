#!/usr/bin/env python3
"""
Constellation Server Runner: starts the signature coordination server with:
  - HTTP API for proposing transactions and offering signatures
  - SSE / WebSocket push channels per address
  - Periodic sweep of abandoned pending transactions

Usage:
    python run_server.py --config constellation.toml --port 4711
    python run_server.py --ledger memory --accounts-file accounts.json

Environment variables (alternative to flags): see constellation_core/config.py
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from constellation_core.api import APIServer  # noqa: E402
from constellation_core.config import ConstellationConfig, load_config  # noqa: E402
from constellation_core.coordinator import SignatureCoordinator  # noqa: E402
from constellation_core.horizon import HorizonClient  # noqa: E402
from constellation_core.ledger import InMemoryLedger, LedgerClient  # noqa: E402
from constellation_core.logging_config import setup_logging  # noqa: E402
from constellation_core.pubsub import EventBus  # noqa: E402
from constellation_core.store import PendingStore  # noqa: E402
from constellation_core.subscriptions import SubscriptionGateway  # noqa: E402

logger = logging.getLogger("server")


# ===================================================================
#  Constellation server
# ===================================================================

class ConstellationServer:
    """Wires ledger, store, bus, coordinator and HTTP front end together."""

    def __init__(self, config: ConstellationConfig):
        self.config = config
        self.ledger = build_ledger(config)
        self.store = PendingStore(config.storage.path)
        self.bus = EventBus(queue_size=config.coordination.subscriber_queue_size)
        self.coordinator = SignatureCoordinator(
            self.ledger,
            self.store,
            self.bus,
            pending_ttl=config.coordination.pending_ttl_seconds,
        )
        self.gateway = SubscriptionGateway(
            self.bus, keepalive_seconds=config.coordination.keepalive_seconds,
        )
        self.api = APIServer(
            self.coordinator,
            self.gateway,
            host=config.server.host,
            port=config.server.port,
            api_config=config.api,
        )
        self._bg_tasks: list[asyncio.Task] = []

    # ---- lifecycle ----

    async def start(self) -> None:
        await self.api.start()
        if self.config.coordination.pending_ttl_seconds > 0:
            self._bg_tasks.append(asyncio.create_task(self._sweep_loop()))
        logger.info(
            "Constellation started | ledger=%s | store=%s | ttl=%ss",
            self.config.ledger.backend,
            self.config.storage.path,
            self.config.coordination.pending_ttl_seconds,
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        await asyncio.gather(*self._bg_tasks, return_exceptions=True)
        self._bg_tasks.clear()
        # end open event streams so the HTTP runner can drain
        self.bus.close()
        await self.api.stop()
        await self.ledger.close()
        self.store.close()
        logger.info("Constellation stopped")

    async def _sweep_loop(self) -> None:
        """Expire abandoned transactions periodically."""
        interval = self.config.coordination.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.coordinator.expire_pending()
            except Exception:
                logger.exception("Pending sweep failed")


def build_ledger(config: ConstellationConfig) -> LedgerClient:
    cfg = config.ledger
    if cfg.backend == "memory":
        if cfg.accounts_file:
            return InMemoryLedger.from_file(cfg.accounts_file, cfg.network_passphrase)
        logger.warning("In-memory ledger started without accounts; every lookup will fail")
        return InMemoryLedger(cfg.network_passphrase)
    if cfg.backend == "horizon":
        return HorizonClient(cfg.horizon_url, cfg.network_passphrase, cfg.timeout_seconds)
    raise ValueError(f"Unknown ledger backend: {cfg.backend!r}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="Constellation signature server")
    p.add_argument("--config", default=os.environ.get("CONSTELLATION_CONFIG"),
                   help="Path to constellation.toml config file")
    p.add_argument("--host", default=None, help="Listen host")
    p.add_argument("--port", type=int, default=None, help="Listen port")
    p.add_argument("--db-path", default=None, help="SQLite file for pending transactions")
    p.add_argument("--ledger", choices=["horizon", "memory"], default=None,
                   help="Ledger backend")
    p.add_argument("--horizon-url", default=None, help="Ledger REST endpoint")
    p.add_argument("--accounts-file", default=None,
                   help="JSON account documents for the in-memory ledger")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return p.parse_args()


def apply_args(cfg: ConstellationConfig, args: argparse.Namespace) -> ConstellationConfig:
    """CLI flags override config file and environment."""
    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    if args.db_path:
        cfg.storage.path = args.db_path
    if args.ledger:
        cfg.ledger.backend = args.ledger
    if args.horizon_url:
        cfg.ledger.horizon_url = args.horizon_url
    if args.accounts_file:
        cfg.ledger.accounts_file = args.accounts_file
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    return cfg


async def main():
    args = parse_args()

    # Load config (TOML + env overrides), then CLI flags
    cfg = apply_args(load_config(args.config), args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file,
                  cfg.logging.access_log)

    server = ConstellationServer(cfg)
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        await server.stop()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())

"""
SQLite-backed store for pending transaction states.

Each row holds one ``PendingTransaction`` as JSON plus a ``version``
column.  Updates go through ``compare_and_swap`` so that two writers
(two worker processes sharing one database file) can never silently
overwrite each other's weight updates: the loser gets a
``StaleStateError`` and must re-read.

Usage:
    store = PendingStore("data/constellation.db")
    store.put(state)
    state = store.get(tx_hash)
    store.compare_and_swap(state, state.version)
    store.delete(tx_hash)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from constellation_core.errors import StaleStateError
from constellation_core.state import PendingTransaction, SigningStatus

logger = logging.getLogger("constellation.store")


class PendingStore:
    """Thin SQLite wrapper keyed by transaction hash."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/constellation.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        # busy_timeout prevents "database is locked" under contention
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info("Pending store opened: %s", db_path)

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS pending_transactions (
                tx_hash    TEXT PRIMARY KEY,
                state      TEXT NOT NULL,
                status     TEXT NOT NULL,
                version    INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_pending_created
            ON pending_transactions (status, created_at)
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION})."
            )

    # ── pending states ───────────────────────────────────────────

    def put(self, state: PendingTransaction) -> None:
        """Insert a new state; fails if the hash is already pending."""
        state.version = 1
        try:
            self._conn.execute(
                """INSERT INTO pending_transactions
                   (tx_hash, state, status, version, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (state.tx_hash, json.dumps(state.to_dict()), state.status.value,
                 state.version, state.created_at, state.updated_at),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            state.version = 0
            raise StaleStateError(f"Transaction {state.tx_hash} is already pending") from exc

    def get(self, tx_hash: str) -> PendingTransaction | None:
        row = self._conn.execute(
            "SELECT state, version FROM pending_transactions WHERE tx_hash = ?",
            (tx_hash,),
        ).fetchone()
        if row is None:
            return None
        state = PendingTransaction.from_dict(json.loads(row["state"]))
        state.version = row["version"]
        return state

    def compare_and_swap(self, state: PendingTransaction, expected_version: int) -> None:
        """Write *state* only if the stored row is still at *expected_version*."""
        new_version = expected_version + 1
        data = state.to_dict()
        data["version"] = new_version
        cur = self._conn.execute(
            """UPDATE pending_transactions
               SET state = ?, status = ?, version = ?, updated_at = ?
               WHERE tx_hash = ? AND version = ?""",
            (json.dumps(data), state.status.value, new_version, state.updated_at,
             state.tx_hash, expected_version),
        )
        self._conn.commit()
        if cur.rowcount != 1:
            raise StaleStateError(
                f"Transaction {state.tx_hash} changed since version {expected_version}"
            )
        state.version = new_version

    def delete(self, tx_hash: str) -> bool:
        cur = self._conn.execute(
            "DELETE FROM pending_transactions WHERE tx_hash = ?", (tx_hash,)
        )
        self._conn.commit()
        return cur.rowcount > 0

    def expired(self, cutoff: float) -> list[str]:
        """
        Hashes of collecting states created before *cutoff* and of
        authorised states last updated before it.
        """
        rows = self._conn.execute(
            """SELECT tx_hash FROM pending_transactions
               WHERE (status = ? AND created_at < ?)
                  OR (status = ? AND updated_at < ?)
               ORDER BY created_at""",
            (SigningStatus.COLLECTING.value, cutoff,
             SigningStatus.AUTHORIZED.value, cutoff),
        ).fetchall()
        return [r["tx_hash"] for r in rows]

    def count(self, status: SigningStatus | None = None) -> int:
        if status is None:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM pending_transactions"
            ).fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM pending_transactions WHERE status = ?",
                (status.value,),
            ).fetchone()
        return row["n"]

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

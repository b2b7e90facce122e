"""
Ledger network collaborators.

The coordinator only needs two things from the ledger: account
snapshots and transaction submission.  ``LedgerClient`` is that
interface; ``HorizonClient`` (see ``horizon.py``) talks to a real
network over HTTP and ``InMemoryLedger`` is a self-contained ledger for
standalone runs and tests that enforces signatures and thresholds the
way the network does.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from constellation_core.account import AccountSnapshot
from constellation_core.errors import (
    AccountNotFoundError,
    InvalidSignatureError,
    SubmissionError,
)
from constellation_core.thresholds import required_threshold, source_categories
from constellation_core.transaction import TESTNET_PASSPHRASE, TransactionEnvelope
from constellation_core.verifier import build_hint_directory, verify_signatures

logger = logging.getLogger("constellation.ledger")


class LedgerClient:
    """Interface to the ledger network."""

    network_passphrase: str = TESTNET_PASSPHRASE

    async def get_account(self, address: str) -> AccountSnapshot:
        raise NotImplementedError

    async def submit_transaction(self, envelope: TransactionEnvelope) -> dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryLedger(LedgerClient):
    """A single-node ledger holding account snapshots in memory."""

    def __init__(self, network_passphrase: str = TESTNET_PASSPHRASE):
        self.network_passphrase = network_passphrase
        self.accounts: dict[str, AccountSnapshot] = {}
        self.submitted: list[TransactionEnvelope] = []
        self._applied: set[str] = set()
        self.ledger_sequence = 1

    @classmethod
    def from_file(cls, path: str, network_passphrase: str = TESTNET_PASSPHRASE) -> InMemoryLedger:
        """Load a JSON list of account documents (same shape as the REST API)."""
        ledger = cls(network_passphrase)
        docs = json.loads(Path(path).read_text(encoding="utf-8"))
        for doc in docs:
            ledger.add_account(AccountSnapshot.from_horizon(doc))
        logger.info("Loaded %d account(s) from %s", len(ledger.accounts), path)
        return ledger

    def add_account(self, snapshot: AccountSnapshot) -> AccountSnapshot:
        self.accounts[snapshot.address] = snapshot
        return snapshot

    async def get_account(self, address: str) -> AccountSnapshot:
        try:
            return self.accounts[address]
        except KeyError:
            raise AccountNotFoundError(address) from None

    async def submit_transaction(self, envelope: TransactionEnvelope) -> dict[str, Any]:
        tx_hash = envelope.hash(self.network_passphrase)
        hash_hex = tx_hash.hex()
        if hash_hex in self._applied:
            raise SubmissionError("Transaction already applied", _result(hash_hex, "tx_bad_seq"))

        categories = source_categories(envelope.tx)
        snapshots = []
        for address in categories:
            snapshot = self.accounts.get(address)
            if snapshot is None:
                raise SubmissionError(
                    f"Source account {address} does not exist",
                    _result(hash_hex, "tx_no_source_account"),
                )
            snapshots.append(snapshot)

        directory = build_hint_directory(s.address for snap in snapshots for s in snap.signers)
        try:
            verified = verify_signatures(envelope.signatures, tx_hash, directory)
        except InvalidSignatureError as exc:
            raise SubmissionError(exc.message, _result(hash_hex, "tx_bad_auth_extra")) from exc

        signers = {v.signer for v in verified}
        for snapshot in snapshots:
            weight = sum(s.weight for s in snapshot.signers if s.address in signers)
            needed = required_threshold(snapshot.thresholds, categories[snapshot.address])
            if weight < needed:
                raise SubmissionError(
                    f"Insufficient signer weight for {snapshot.address}: {weight}/{needed}",
                    _result(hash_hex, "tx_bad_auth"),
                )

        self._applied.add(hash_hex)
        self.submitted.append(envelope)
        self.ledger_sequence += 1
        logger.info("Applied %s in ledger %d", hash_hex, self.ledger_sequence)
        return {"hash": hash_hex, "ledger": self.ledger_sequence, "successful": True}


def _result(tx_hash: str, code: str) -> dict[str, Any]:
    return {"hash": tx_hash, "result_codes": {"transaction": code}}

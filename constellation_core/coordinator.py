"""
Signature coordination engine.

Ties the pieces together:

    submit(txenv)  -> derive categories, load account snapshots,
                      initialise state, apply attached signatures
                      -> authorised? submit : persist + signing request
    sign(hash, s)  -> verify against persisted state, apply
                      -> persist + progress; authorised? submit

Every read-modify-write of a pending state happens under a per-hash
``asyncio.Lock`` and is persisted with a compare-and-swap, so weights
are never lost or counted twice even with several worker processes on
one store.  The ledger submission itself runs outside the lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import string
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from constellation_core.broadcast import Broadcaster
from constellation_core.errors import (
    InvalidEncodingError,
    InvalidStateTransitionError,
    StaleStateError,
    UnknownTransactionError,
)
from constellation_core.ledger import LedgerClient
from constellation_core.pubsub import EventBus
from constellation_core.state import PendingTransaction, SigningStatus, initialize
from constellation_core.store import PendingStore
from constellation_core.submission import SubmissionGateway
from constellation_core.thresholds import source_categories
from constellation_core.transaction import (
    DecoratedSignature,
    TransactionEnvelope,
    decode_signatures,
)
from constellation_core.verifier import verify_signatures

logger = logging.getLogger("constellation.coordinator")

DEFAULT_PENDING_TTL = 7 * 24 * 3600


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._locks: dict[str, list] = {}   # key -> [lock, users]

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class CoordinationResult:
    status: str                 # "pending" | "authorized" | "submitted"
    tx_hash: str
    progress: dict[str, dict[str, int]] = field(default_factory=dict)
    result: dict[str, Any] | None = None

    @property
    def submitted(self) -> bool:
        return self.status == "submitted"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "status": self.status,
            "hash": self.tx_hash,
            "progress": self.progress,
        }
        if self.result is not None:
            d["result"] = self.result
        return d


def _normalise_hash(tx_hash: str) -> str:
    h = (tx_hash or "").strip().lower()
    if len(h) != 64 or any(c not in string.hexdigits for c in h):
        raise InvalidEncodingError(f"Invalid transaction hash: {tx_hash!r}")
    return h


class SignatureCoordinator:
    def __init__(
        self,
        ledger: LedgerClient,
        store: PendingStore,
        bus: EventBus,
        pending_ttl: float = DEFAULT_PENDING_TTL,
        max_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.store = store
        self.broadcaster = Broadcaster(bus)
        self.gateway = SubmissionGateway(ledger)
        self.pending_ttl = pending_ttl
        self.max_retries = max_retries
        self.clock = clock
        self.locks = KeyedLocks()

    @property
    def network_passphrase(self) -> str:
        return self.ledger.network_passphrase

    # ── proposer ────────────────────────────────────────────────

    async def submit(self, txenv: str, message: str | None = None) -> CoordinationResult:
        """
        Accept a proposed transaction envelope.

        Signatures already attached to the envelope are verified and
        counted.  If that satisfies every account the transaction goes
        straight to the ledger and nothing is stored.  A hash that is
        already pending gets the attached signatures merged in.
        """
        envelope = TransactionEnvelope.from_base64(txenv)
        tx_hash = envelope.hash_hex(self.network_passphrase)
        logger.info("Submit %s (%d attached signature(s))", tx_hash, len(envelope.signatures))

        for _attempt in range(self.max_retries):
            direct = False
            async with self.locks.hold(tx_hash):
                existing = self._load(tx_hash)
                if existing is not None:
                    try:
                        state, ready = self._apply_locked(existing, envelope.signatures)
                    except StaleStateError:
                        continue
                else:
                    state = await self._initialize(tx_hash, envelope, txenv, message)
                    if state.is_authorized():
                        state.mark_authorized(self.clock())
                        direct = True
                    else:
                        try:
                            self.store.put(state)
                        except StaleStateError:
                            # another worker created it first; merge on the next pass
                            continue
                        self.broadcaster.signing_request(state)
                        logger.info("Pending %s: %s", tx_hash, state.progress_snapshot())
                        return self._result("pending", state)
            if direct:
                return await self._submit(state, state.signed_envelope(), persisted=False)
            return await self._finish(state, ready)
        raise StaleStateError(f"Gave up on {tx_hash} after {self.max_retries} conflicting writes")

    async def _initialize(
        self, tx_hash: str, envelope: TransactionEnvelope, txenv: str, message: str | None,
    ) -> PendingTransaction:
        categories = source_categories(envelope.tx)
        snapshots = await asyncio.gather(*(self.ledger.get_account(a) for a in categories))
        state = initialize(tx_hash, txenv, list(snapshots), categories, message, self.clock())
        verified = verify_signatures(envelope.signatures, bytes.fromhex(tx_hash),
                                     state.address_by_hint)
        state.apply(verified, self.clock())
        return state

    # ── signer ──────────────────────────────────────────────────

    async def sign(
        self, tx_hash: str, signatures: str | list[str] | list[DecoratedSignature],
    ) -> CoordinationResult:
        """Apply one or more offered signatures to a pending transaction."""
        tx_hash = _normalise_hash(tx_hash)
        if signatures and all(isinstance(s, DecoratedSignature) for s in signatures):
            sigs = list(signatures)
        else:
            sigs = decode_signatures(signatures)

        for _attempt in range(self.max_retries):
            async with self.locks.hold(tx_hash):
                state = self._load(tx_hash)
                if state is None:
                    raise UnknownTransactionError(tx_hash)
                try:
                    state, ready = self._apply_locked(state, sigs)
                except StaleStateError:
                    continue
            return await self._finish(state, ready)
        raise StaleStateError(f"Gave up on {tx_hash} after {self.max_retries} conflicting writes")

    def _apply_locked(
        self, state: PendingTransaction, sigs: list[DecoratedSignature],
    ) -> tuple[PendingTransaction, bool]:
        """
        Verify and apply *sigs*, persist, broadcast progress.

        Returns the new state and whether it is authorised and should be
        submitted.  Must be called with the hash lock held.
        """
        verified = verify_signatures(sigs, bytes.fromhex(state.tx_hash), state.address_by_hint)
        if state.status is SigningStatus.AUTHORIZED:
            return state, True
        expected = state.version
        now = self.clock()
        accepted = state.apply(verified, now)
        if state.is_authorized():
            state.mark_authorized(now)
        self.store.compare_and_swap(state, expected)
        logger.info("Applied %d new signature(s) to %s: %s",
                    len(accepted), state.tx_hash, state.progress_snapshot())
        self.broadcaster.progress(state)
        return state, state.status is SigningStatus.AUTHORIZED

    async def _finish(self, state: PendingTransaction, ready: bool) -> CoordinationResult:
        if not ready:
            return self._result("pending", state)
        return await self._submit(state, state.signed_envelope(), persisted=True)

    # ── submission ──────────────────────────────────────────────

    async def resubmit(self, tx_hash: str) -> CoordinationResult:
        """Retry submission of an authorised transaction from its stored signatures."""
        tx_hash = _normalise_hash(tx_hash)
        async with self.locks.hold(tx_hash):
            state = self._load(tx_hash)
            if state is None:
                raise UnknownTransactionError(tx_hash)
            if state.status is not SigningStatus.AUTHORIZED:
                raise InvalidStateTransitionError(
                    f"Transaction {tx_hash} is still collecting signatures"
                )
        return await self._submit(state, state.signed_envelope(), persisted=True)

    async def _submit(
        self, state: PendingTransaction, envelope: TransactionEnvelope, persisted: bool,
    ) -> CoordinationResult:
        if self.gateway.in_flight(state.tx_hash):
            return self._result("authorized", state)
        # a failure propagates and leaves the authorised state in the store
        result = await self.gateway.submit(state.tx_hash, envelope)
        state.mark_submitted(self.clock())
        if persisted:
            async with self.locks.hold(state.tx_hash):
                self.store.delete(state.tx_hash)
        return self._result("submitted", state, result)

    # ── queries & housekeeping ──────────────────────────────────

    def status(self, tx_hash: str) -> CoordinationResult:
        tx_hash = _normalise_hash(tx_hash)
        state = self._load(tx_hash)
        if state is None:
            raise UnknownTransactionError(tx_hash)
        label = "pending" if state.status is SigningStatus.COLLECTING else state.status.value
        return self._result(label, state)

    def pending_state(self, tx_hash: str) -> PendingTransaction | None:
        return self._load(_normalise_hash(tx_hash))

    async def expire_pending(self) -> int:
        """Delete states whose TTL has run out; returns how many went."""
        if self.pending_ttl <= 0:
            return 0
        removed = 0
        for tx_hash in self.store.expired(self.clock() - self.pending_ttl):
            async with self.locks.hold(tx_hash):
                state = self.store.get(tx_hash)
                if state is not None and self._is_expired(state):
                    self.store.delete(tx_hash)
                    removed += 1
        if removed:
            logger.info("Expired %d abandoned transaction(s)", removed)
        return removed

    def _is_expired(self, state: PendingTransaction) -> bool:
        # collecting rounds age from creation, authorised ones from authorisation
        if self.pending_ttl <= 0:
            return False
        if state.status is SigningStatus.COLLECTING:
            started = state.created_at
        elif state.status is SigningStatus.AUTHORIZED:
            started = state.updated_at
        else:
            return False
        return self.clock() - started > self.pending_ttl

    def _load(self, tx_hash: str) -> PendingTransaction | None:
        state = self.store.get(tx_hash)
        if state is not None and self._is_expired(state):
            logger.info("Pending %s expired", tx_hash)
            self.store.delete(tx_hash)
            return None
        return state

    @staticmethod
    def _result(
        status: str, state: PendingTransaction, result: dict[str, Any] | None = None,
    ) -> CoordinationResult:
        return CoordinationResult(status, state.tx_hash, state.progress_snapshot(), result)

"""
End-to-end tests for the signature coordination engine: proposing,
signing, broadcasting, submission and expiry.
"""

import asyncio
import base64

import pytest

from constellation_core.account import AccountSnapshot
from constellation_core.broadcast import decode_progress
from constellation_core.coordinator import DEFAULT_PENDING_TTL, KeyedLocks, SignatureCoordinator
from constellation_core.errors import (
    AccountNotFoundError,
    InvalidEncodingError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    LedgerUnavailableError,
    StaleStateError,
    UnknownTransactionError,
)
from constellation_core.ledger import InMemoryLedger
from constellation_core.state import SigningStatus
from constellation_core.store import PendingStore
from constellation_core.transaction import (
    TESTNET_PASSPHRASE,
    DecoratedSignature,
    TransactionEnvelope,
    create_allow_trust,
    create_payment,
    decode_signatures,
)
from constellation_core.verifier import verify_signatures


class FlakyLedger(InMemoryLedger):
    """Fails the first *failures* submissions, then behaves normally."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def submit_transaction(self, envelope):
        if self.failures:
            self.failures -= 1
            raise LedgerUnavailableError("ledger down")
        return await super().submit_transaction(envelope)


class InterleavedStore(PendingStore):
    """Runs *writer* right after each of the first *times* reads of an existing row."""

    def __init__(self, db_path, writer, times=1):
        super().__init__(db_path)
        self.writer = writer
        self.times = times

    def get(self, tx_hash):
        state = super().get(tx_hash)
        if state is not None and self.times:
            self.times -= 1
            self.writer(tx_hash)
        return state


def _sig(env, kp) -> str:
    return kp.sign_decorated(env.hash(TESTNET_PASSPHRASE)).to_base64()


def _weighted_account(ledger, alice, bob, carol, medium=10):
    """Account A: low-category threshold *medium*, signers bob=6 and carol=5."""
    ledger.add_account(AccountSnapshot.create(
        alice.address, medium=medium, signers=[(bob.address, 6), (carol.address, 5)]))


def _payment(alice, dave) -> TransactionEnvelope:
    return TransactionEnvelope(create_payment(alice.address, dave.address, "25"))


@pytest.mark.asyncio
class TestSingleAccount:

    async def test_weights_accumulate_until_submission(self, coordinator, ledger, store,
                                                       alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)

        result = await coordinator.submit(env.to_base64())
        assert result.status == "pending"
        assert result.progress == {alice.address: {"threshold": 10, "weight": 0}}
        tx_hash = result.tx_hash
        assert tx_hash == env.hash_hex(TESTNET_PASSPHRASE)

        bob_sig = _sig(env, bob)
        result = await coordinator.sign(tx_hash, bob_sig)
        assert result.status == "pending"
        assert result.progress[alice.address]["weight"] == 6

        carol_sig = _sig(env, carol)
        result = await coordinator.sign(tx_hash, carol_sig)
        assert result.submitted
        assert result.progress[alice.address]["weight"] == 11
        assert result.result["successful"] is True

        submitted = ledger.submitted[0]
        assert [s.to_base64() for s in submitted.signatures] == [bob_sig, carol_sig]
        assert store.get(tx_hash) is None

    async def test_duplicate_signature_counted_once(self, coordinator, ledger, store,
                                                    alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash

        await coordinator.sign(tx_hash, _sig(env, bob))
        result = await coordinator.sign(tx_hash, [_sig(env, bob), _sig(env, bob)])
        assert result.status == "pending"
        assert result.progress[alice.address]["weight"] == 6
        assert len(store.get(tx_hash).signatures) == 1

    async def test_bad_batch_leaves_state_unchanged(self, coordinator, ledger, store,
                                                    alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        before = store.get(tx_hash)

        with pytest.raises(InvalidSignatureError):
            await coordinator.sign(tx_hash, [_sig(env, bob), _sig(env, dave)])

        after = store.get(tx_hash)
        assert after.progress_snapshot() == before.progress_snapshot()
        assert after.signatures == []
        assert after.version == before.version

    async def test_signature_over_other_transaction_rejected(self, coordinator, ledger,
                                                             alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        other = TransactionEnvelope(create_payment(alice.address, dave.address, "26"))
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        with pytest.raises(InvalidSignatureError):
            await coordinator.sign(tx_hash, _sig(other, bob))

    async def test_attached_signatures_count(self, coordinator, ledger, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        env.sign(bob, TESTNET_PASSPHRASE)
        result = await coordinator.submit(env.to_base64())
        assert result.progress[alice.address]["weight"] == 6

    async def test_fully_signed_goes_straight_to_ledger(self, coordinator, ledger, store, bus,
                                                        alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        sub = bus.subscribe(bob.address)
        env = _payment(alice, dave)
        env.sign(bob, TESTNET_PASSPHRASE)
        env.sign(carol, TESTNET_PASSPHRASE)

        result = await coordinator.submit(env.to_base64())
        assert result.submitted
        assert store.count() == 0
        assert sub.pending() == 0
        assert len(ledger.submitted) == 1

    async def test_invalid_attached_signature_rejected(self, coordinator, ledger, store,
                                                       alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        env.sign(dave, TESTNET_PASSPHRASE)
        with pytest.raises(InvalidSignatureError):
            await coordinator.submit(env.to_base64())
        assert store.count() == 0

    async def test_resubmitting_pending_hash_merges(self, coordinator, ledger, store,
                                                    alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        await coordinator.submit(env.to_base64())
        env.sign(bob, TESTNET_PASSPHRASE)
        result = await coordinator.submit(env.to_base64())
        assert result.status == "pending"
        assert result.progress[alice.address]["weight"] == 6
        assert store.count() == 1

    async def test_allow_trust_needs_one_signature(self, coordinator, ledger, alice, bob):
        ledger.add_account(AccountSnapshot.create(alice.address, low=5, medium=10, high=20))
        env = TransactionEnvelope(create_allow_trust(alice.address, bob.address, "USD"))
        result = await coordinator.submit(env.to_base64())
        assert result.progress == {alice.address: {"threshold": 1, "weight": 0}}
        result = await coordinator.sign(result.tx_hash, _sig(env, alice))
        assert result.submitted


@pytest.mark.asyncio
class TestTwoAccounts:

    async def test_waits_for_every_account(self, coordinator, ledger, bus, alice, bob, carol, dave):
        ledger.add_account(AccountSnapshot.create(alice.address, medium=3,
                                                  signers=[(alice.address, 3)]))
        ledger.add_account(AccountSnapshot.create(bob.address, medium=5,
                                                  signers=[(bob.address, 2), (carol.address, 3)]))
        sub = bus.subscribe(carol.address)
        tx = create_payment(alice.address, dave.address, "1")
        tx.operations += create_payment(bob.address, dave.address, "1",
                                        op_source=bob.address).operations
        env = TransactionEnvelope(tx)
        env.sign(alice, TESTNET_PASSPHRASE)
        env.sign(bob, TESTNET_PASSPHRASE)

        result = await coordinator.submit(env.to_base64(), "settle up")
        assert result.status == "pending"
        assert result.progress == {
            alice.address: {"threshold": 3, "weight": 3},
            bob.address: {"threshold": 5, "weight": 2},
        }

        request = await sub.get(timeout=1)
        assert request["command"] == "request"
        assert request["msg"] == "settle up"
        assert decode_progress(request["progress"]) == result.progress

        result = await coordinator.sign(result.tx_hash, _sig(env, carol))
        assert result.submitted
        progress = await sub.get(timeout=1)
        assert progress["command"] == "progress"
        assert decode_progress(progress["progress"])[bob.address]["weight"] == 5
        assert len(ledger.submitted[0].signatures) == 3

    async def test_signer_shared_by_two_accounts(self, coordinator, ledger, alice, bob, carol, dave):
        ledger.add_account(AccountSnapshot.create(alice.address, medium=2,
                                                  signers=[(carol.address, 2)]))
        ledger.add_account(AccountSnapshot.create(bob.address, medium=2,
                                                  signers=[(carol.address, 2)]))
        tx = create_payment(alice.address, dave.address, "1")
        tx.operations += create_payment(bob.address, dave.address, "1",
                                        op_source=bob.address).operations
        env = TransactionEnvelope(tx)
        result = await coordinator.submit(env.to_base64())
        result = await coordinator.sign(result.tx_hash, _sig(env, carol))
        assert result.submitted
        assert len(ledger.submitted[0].signatures) == 1


@pytest.mark.asyncio
class TestErrors:

    async def test_unknown_account(self, coordinator, store, alice, dave):
        with pytest.raises(AccountNotFoundError):
            await coordinator.submit(_payment(alice, dave).to_base64())
        assert store.count() == 0

    async def test_malformed_envelope(self, coordinator):
        with pytest.raises(InvalidEncodingError):
            await coordinator.submit("not base64!")

    async def test_unknown_hash(self, coordinator, bob):
        with pytest.raises(UnknownTransactionError):
            await coordinator.sign("ab" * 32, bob.sign_decorated(b"\x00" * 32).to_base64())

    async def test_malformed_hash(self, coordinator, bob):
        with pytest.raises(InvalidEncodingError):
            await coordinator.sign("xyz", bob.sign_decorated(b"\x00" * 32).to_base64())

    async def test_malformed_signature(self, coordinator, ledger, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        tx_hash = (await coordinator.submit(_payment(alice, dave).to_base64())).tx_hash
        with pytest.raises(InvalidEncodingError):
            await coordinator.sign(tx_hash, "@@@")
        with pytest.raises(InvalidEncodingError):
            await coordinator.sign(tx_hash, [])

    async def test_status(self, coordinator, ledger, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        tx_hash = (await coordinator.submit(_payment(alice, dave).to_base64())).tx_hash
        assert coordinator.status(tx_hash.upper()).status == "pending"
        with pytest.raises(UnknownTransactionError):
            coordinator.status("cd" * 32)


@pytest.mark.asyncio
class TestSubmissionFailure:

    async def test_failure_keeps_authorization_and_resubmit_works(self, store, bus, clock,
                                                                  alice, bob, carol, dave):
        ledger = FlakyLedger()
        _weighted_account(ledger, alice, bob, carol)
        coordinator = SignatureCoordinator(ledger, store, bus, clock=clock)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        await coordinator.sign(tx_hash, _sig(env, bob))

        with pytest.raises(LedgerUnavailableError):
            await coordinator.sign(tx_hash, _sig(env, carol))
        state = store.get(tx_hash)
        assert state.status is SigningStatus.AUTHORIZED
        assert coordinator.status(tx_hash).status == "authorized"
        assert coordinator.gateway.failed == 1

        result = await coordinator.resubmit(tx_hash)
        assert result.submitted
        assert store.get(tx_hash) is None
        assert len(ledger.submitted[0].signatures) == 2

    async def test_forged_signature_rejected_after_failed_submission(self, store, bus, clock,
                                                                     alice, bob, carol, dave):
        ledger = FlakyLedger()
        _weighted_account(ledger, alice, bob, carol)
        coordinator = SignatureCoordinator(ledger, store, bus, clock=clock)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        await coordinator.sign(tx_hash, _sig(env, bob))
        with pytest.raises(LedgerUnavailableError):
            await coordinator.sign(tx_hash, _sig(env, carol))

        with pytest.raises(InvalidSignatureError):
            await coordinator.sign(tx_hash, base64.b64encode(b"\x00" * 68).decode())
        with pytest.raises(InvalidSignatureError):
            zeroed = DecoratedSignature(bob.signature_hint(), b"\x00" * 64)
            await coordinator.sign(tx_hash, zeroed.to_base64())
        assert ledger.submitted == []
        assert store.get(tx_hash).status is SigningStatus.AUTHORIZED

        result = await coordinator.sign(tx_hash, _sig(env, bob))
        assert result.submitted
        assert len(ledger.submitted) == 1

    async def test_resubmit_needs_authorization(self, coordinator, ledger, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        tx_hash = (await coordinator.submit(_payment(alice, dave).to_base64())).tx_hash
        with pytest.raises(InvalidStateTransitionError):
            await coordinator.resubmit(tx_hash)

    async def test_resubmit_unknown(self, coordinator):
        with pytest.raises(UnknownTransactionError):
            await coordinator.resubmit("ef" * 32)


@pytest.mark.asyncio
class TestConcurrency:

    async def test_concurrent_signatures_are_all_counted(self, coordinator, ledger, store,
                                                         alice, bob, carol, dave):
        ledger.add_account(AccountSnapshot.create(
            alice.address, medium=100,
            signers=[(bob.address, 6), (carol.address, 5), (dave.address, 4)]))
        env = _payment(alice, bob)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash

        await asyncio.gather(*(coordinator.sign(tx_hash, _sig(env, kp)) for kp in (bob, carol, dave)))
        state = store.get(tx_hash)
        assert state.progress[alice.address].weight == 15
        assert len(state.signatures) == 3
        assert len(coordinator.locks) == 0

    async def test_concurrent_completion_submits_once(self, coordinator, ledger, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol, medium=11)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash

        results = await asyncio.gather(coordinator.sign(tx_hash, _sig(env, bob)),
                                       coordinator.sign(tx_hash, _sig(env, carol)))
        assert sorted(r.status for r in results) == ["pending", "submitted"]
        assert len(ledger.submitted) == 1

    async def test_concurrent_proposals_share_one_state(self, coordinator, ledger, store, bus,
                                                        alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        results = await asyncio.gather(coordinator.submit(env.to_base64()),
                                       coordinator.submit(env.to_base64()))
        assert [r.status for r in results] == ["pending", "pending"]
        assert store.count() == 1


@pytest.mark.asyncio
class TestSharedStore:
    """Two workers on one database file, each with its own in-process locks."""

    @staticmethod
    def _other_worker_signs(path, env, kp, clock):
        def write(tx_hash):
            with PendingStore(path) as other:
                state = other.get(tx_hash)
                verified = verify_signatures(decode_signatures(_sig(env, kp)),
                                             bytes.fromhex(tx_hash), state.address_by_hint)
                state.apply(verified, clock())
                other.compare_and_swap(state, state.version)
        return write

    async def test_conflicting_write_is_retried(self, store, bus, clock, alice, bob, carol, dave):
        ledger = InMemoryLedger()
        _weighted_account(ledger, alice, bob, carol, medium=100)
        env = _payment(alice, dave)
        await SignatureCoordinator(ledger, store, bus, clock=clock).submit(env.to_base64())

        shared = InterleavedStore(store.db_path, self._other_worker_signs(store.db_path, env, carol, clock))
        try:
            coordinator = SignatureCoordinator(ledger, shared, bus, clock=clock)
            result = await coordinator.sign(env.hash_hex(TESTNET_PASSPHRASE), _sig(env, bob))
        finally:
            shared.close()

        assert result.progress[alice.address]["weight"] == 11
        state = store.get(result.tx_hash)
        assert state.version == 3
        assert sorted(state.signed_by) == sorted([bob.address, carol.address])

    async def test_gives_up_after_max_retries(self, store, bus, clock, alice, bob, carol, dave):
        ledger = InMemoryLedger()
        _weighted_account(ledger, alice, bob, carol, medium=100)
        env = _payment(alice, dave)
        await SignatureCoordinator(ledger, store, bus, clock=clock).submit(env.to_base64())

        shared = InterleavedStore(store.db_path,
                                  self._other_worker_signs(store.db_path, env, carol, clock),
                                  times=10)
        try:
            coordinator = SignatureCoordinator(ledger, shared, bus, max_retries=2, clock=clock)
            with pytest.raises(StaleStateError):
                await coordinator.sign(env.hash_hex(TESTNET_PASSPHRASE), _sig(env, bob))
        finally:
            shared.close()

        state = store.get(env.hash_hex(TESTNET_PASSPHRASE))
        assert state.progress[alice.address].weight == 5
        assert state.version == 3


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_serialises_same_key(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0


@pytest.mark.asyncio
class TestExpiry:

    async def test_expired_state_is_gone(self, coordinator, ledger, clock, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        clock.advance(DEFAULT_PENDING_TTL + 1)
        with pytest.raises(UnknownTransactionError):
            await coordinator.sign(tx_hash, _sig(env, bob))

    async def test_sweep(self, coordinator, ledger, store, clock, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        await coordinator.submit(_payment(alice, dave).to_base64())
        clock.advance(3600)
        await coordinator.submit(TransactionEnvelope(
            create_payment(alice.address, dave.address, "99")).to_base64())
        clock.advance(DEFAULT_PENDING_TTL - 1800)

        assert await coordinator.expire_pending() == 1
        assert store.count() == 1

    async def test_authorized_round_expires_from_authorization(self, store, bus, clock,
                                                               alice, bob, carol, dave):
        ledger = FlakyLedger(failures=100)
        _weighted_account(ledger, alice, bob, carol)
        coordinator = SignatureCoordinator(ledger, store, bus, pending_ttl=60, clock=clock)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        await coordinator.sign(tx_hash, _sig(env, bob))
        clock.advance(30)
        with pytest.raises(LedgerUnavailableError):
            await coordinator.sign(tx_hash, _sig(env, carol))

        clock.advance(45)
        assert await coordinator.expire_pending() == 0
        assert store.get(tx_hash).status is SigningStatus.AUTHORIZED

        clock.advance(20)
        assert await coordinator.expire_pending() == 1
        assert store.get(tx_hash) is None
        with pytest.raises(UnknownTransactionError):
            await coordinator.resubmit(tx_hash)

    async def test_zero_ttl_keeps_forever(self, ledger, store, bus, clock, alice, bob, carol, dave):
        _weighted_account(ledger, alice, bob, carol)
        coordinator = SignatureCoordinator(ledger, store, bus, pending_ttl=0, clock=clock)
        env = _payment(alice, dave)
        tx_hash = (await coordinator.submit(env.to_base64())).tx_hash
        clock.advance(10 * DEFAULT_PENDING_TTL)
        assert await coordinator.expire_pending() == 0
        result = await coordinator.sign(tx_hash, _sig(env, bob))
        assert result.progress[alice.address]["weight"] == 6

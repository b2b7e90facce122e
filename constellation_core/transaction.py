"""
Transactions, decorated signatures and envelopes.

A transaction envelope travels as base64 of canonical JSON:

    {"tx": {"source": "G...", "sequence": 7, "fee": 100, "memo": "",
            "operations": [{"type": "payment", "source": "G...", ...}]},
     "signatures": ["<base64 hint||signature>", ...]}

The value that gets signed is the transaction hash:

    sha256( sha256(network_passphrase) || b"TX" || canonical_json(tx) )

so signatures are bound to one network and one exact transaction body.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from constellation_core.errors import InvalidEncodingError, InvalidTransactionError
from constellation_core.keys import HINT_LENGTH, SIGNATURE_LENGTH, Keypair, is_valid_address

TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"

OPERATION_TYPES = frozenset({
    "create_account",
    "payment",
    "path_payment",
    "manage_offer",
    "create_passive_offer",
    "set_options",
    "change_trust",
    "allow_trust",
    "account_merge",
    "inflation",
    "manage_data",
    "bump_sequence",
})


def canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _b64decode(value: str, what: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidEncodingError(f"{what} must be a base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise InvalidEncodingError(f"{what} is not valid base64") from exc


# ===================================================================
#  Operations & transactions
# ===================================================================

@dataclass
class Operation:
    """A single ledger operation, optionally with its own source account."""
    type: str
    source: str | None = None
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, **self.params}
        if self.source:
            d["source"] = self.source
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Operation:
        if not isinstance(data, dict):
            raise InvalidEncodingError("operation must be an object")
        params = dict(data)
        op_type = params.pop("type", None)
        source = params.pop("source", None)
        if not isinstance(op_type, str) or op_type not in OPERATION_TYPES:
            raise InvalidTransactionError(f"Unknown operation type: {op_type!r}")
        if source is not None and (not isinstance(source, str) or not is_valid_address(source)):
            raise InvalidTransactionError(f"Invalid operation source: {source!r}")
        return cls(type=op_type, source=source, params=params)


@dataclass
class Transaction:
    source: str
    sequence: int
    fee: int = 100
    operations: list[Operation] = field(default_factory=list)
    memo: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "sequence": self.sequence,
            "fee": self.fee,
            "memo": self.memo,
            "operations": [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        if not isinstance(data, dict):
            raise InvalidEncodingError("transaction must be an object")
        source = data.get("source")
        if not isinstance(source, str) or not is_valid_address(source):
            raise InvalidTransactionError(f"Invalid transaction source: {source!r}")
        ops = data.get("operations")
        if not isinstance(ops, list) or not ops:
            raise InvalidTransactionError("Transaction needs at least one operation")
        try:
            sequence = int(data.get("sequence", 0))
            fee = int(data.get("fee", 100))
        except (TypeError, ValueError) as exc:
            raise InvalidEncodingError("sequence and fee must be integers") from exc
        return cls(
            source=source,
            sequence=sequence,
            fee=fee,
            operations=[Operation.from_dict(o) for o in ops],
            memo=str(data.get("memo", "")),
        )

    def signature_base(self, network_passphrase: str) -> bytes:
        network_id = hashlib.sha256(network_passphrase.encode("utf-8")).digest()
        return network_id + b"TX" + canonical_json(self.to_dict())

    def hash(self, network_passphrase: str) -> bytes:
        return hashlib.sha256(self.signature_base(network_passphrase)).digest()

    def hash_hex(self, network_passphrase: str) -> str:
        return self.hash(network_passphrase).hex()


# ===================================================================
#  Signatures & envelopes
# ===================================================================

@dataclass(frozen=True)
class DecoratedSignature:
    """A signature plus the hint of the key that produced it."""
    hint: bytes
    signature: bytes

    def __post_init__(self):
        if len(self.hint) != HINT_LENGTH:
            raise InvalidEncodingError("signature hint must be 4 bytes")
        if len(self.signature) != SIGNATURE_LENGTH:
            raise InvalidEncodingError("signature must be 64 bytes")

    @property
    def hint_hex(self) -> str:
        return self.hint.hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.hint + self.signature).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> DecoratedSignature:
        raw = _b64decode(value, "signature")
        if len(raw) != HINT_LENGTH + SIGNATURE_LENGTH:
            raise InvalidEncodingError(
                f"decorated signature must be {HINT_LENGTH + SIGNATURE_LENGTH} bytes"
            )
        return cls(hint=raw[:HINT_LENGTH], signature=raw[HINT_LENGTH:])


def decode_signatures(value: str | list[str]) -> list[DecoratedSignature]:
    """Decode one base64 signature or a list of them."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value:
        raise InvalidEncodingError("sig must be a string or a non-empty list")
    return [DecoratedSignature.from_base64(v) for v in value]


@dataclass
class TransactionEnvelope:
    tx: Transaction
    signatures: list[DecoratedSignature] = field(default_factory=list)

    def hash(self, network_passphrase: str) -> bytes:
        return self.tx.hash(network_passphrase)

    def hash_hex(self, network_passphrase: str) -> str:
        return self.tx.hash_hex(network_passphrase)

    def sign(self, keypair: Keypair, network_passphrase: str) -> DecoratedSignature:
        sig = keypair.sign_decorated(self.hash(network_passphrase))
        self.signatures.append(sig)
        return sig

    def with_signatures(self, signatures: list[DecoratedSignature]) -> TransactionEnvelope:
        """Copy of this envelope carrying exactly *signatures*."""
        return TransactionEnvelope(tx=self.tx, signatures=list(signatures))

    def to_base64(self) -> str:
        body = {
            "tx": self.tx.to_dict(),
            "signatures": [s.to_base64() for s in self.signatures],
        }
        return base64.b64encode(canonical_json(body)).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> TransactionEnvelope:
        raw = _b64decode(value, "txenv")
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidEncodingError("txenv does not contain a JSON envelope") from exc
        if not isinstance(body, dict) or "tx" not in body:
            raise InvalidEncodingError("txenv is missing the transaction body")
        sigs = body.get("signatures") or []
        if not isinstance(sigs, list):
            raise InvalidEncodingError("envelope signatures must be a list")
        return cls(
            tx=Transaction.from_dict(body["tx"]),
            signatures=[DecoratedSignature.from_base64(s) for s in sigs],
        )


# ===================================================================
#  Builders
# ===================================================================

def create_payment(
    source: str,
    destination: str,
    amount: str,
    asset: str = "native",
    sequence: int = 1,
    fee: int = 100,
    op_source: str | None = None,
    memo: str = "",
) -> Transaction:
    op = Operation("payment", op_source,
                   {"destination": destination, "amount": amount, "asset": asset})
    return Transaction(source, sequence, fee, [op], memo)


def create_change_trust(
    source: str,
    asset: str,
    limit: str = "922337203685.4775807",
    sequence: int = 1,
    fee: int = 100,
    op_source: str | None = None,
) -> Transaction:
    op = Operation("change_trust", op_source, {"asset": asset, "limit": limit})
    return Transaction(source, sequence, fee, [op])


def create_allow_trust(
    source: str,
    trustor: str,
    asset_code: str,
    authorize: bool = True,
    sequence: int = 1,
    fee: int = 100,
) -> Transaction:
    op = Operation("allow_trust", None,
                   {"trustor": trustor, "asset_code": asset_code, "authorize": authorize})
    return Transaction(source, sequence, fee, [op])


def create_set_options(
    source: str,
    sequence: int = 1,
    fee: int = 100,
    op_source: str | None = None,
    **options: Any,
) -> Transaction:
    """Build a SetOptions transaction; ``None`` options are omitted."""
    params = {k: v for k, v in options.items() if v is not None}
    return Transaction(source, sequence, fee, [Operation("set_options", op_source, params)])

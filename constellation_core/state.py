"""
Per-transaction signing state.

A ``PendingTransaction`` is the authoritative record of one coordination
round: which signers exist (and their hints), what each signer
contributes to which source account, the weight accumulated so far, and
the signatures accepted.  It moves strictly forward:

    collecting  ->  authorized  ->  submitted

Weights only grow, and a signer is counted at most once no matter how
often its signature is offered.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from constellation_core.account import AccountSnapshot
from constellation_core.errors import InvalidStateTransitionError
from constellation_core.thresholds import CategoryVector, required_threshold
from constellation_core.transaction import DecoratedSignature, TransactionEnvelope
from constellation_core.verifier import VerifiedSignature, build_hint_directory


class SigningStatus(str, Enum):
    COLLECTING = "collecting"
    AUTHORIZED = "authorized"
    SUBMITTED = "submitted"


@dataclass
class Progress:
    threshold: int
    weight: int = 0

    @property
    def satisfied(self) -> bool:
        return self.weight >= self.threshold

    def to_dict(self) -> dict[str, int]:
        return {"threshold": self.threshold, "weight": self.weight}


@dataclass(frozen=True)
class Contribution:
    """Weight one signer adds to one source account."""
    account: str
    weight: int


@dataclass
class PendingTransaction:
    tx_hash: str
    txenv: str
    message: str | None = None
    address_by_hint: dict[str, list[str]] = field(default_factory=dict)
    contributions: dict[str, list[Contribution]] = field(default_factory=dict)
    progress: dict[str, Progress] = field(default_factory=dict)
    signatures: list[str] = field(default_factory=list)
    signed_by: list[str] = field(default_factory=list)
    status: SigningStatus = SigningStatus.COLLECTING
    created_at: float = 0.0
    updated_at: float = 0.0
    version: int = 0

    # ---- queries ----

    def is_authorized(self) -> bool:
        return all(p.satisfied for p in self.progress.values())

    def progress_snapshot(self) -> dict[str, dict[str, int]]:
        return {account: p.to_dict() for account, p in self.progress.items()}

    def recipients(self) -> list[str]:
        """Every address with a stake in this transaction: signers and source accounts."""
        return sorted(set(self.contributions) | set(self.progress))

    def pending_accounts(self) -> list[str]:
        return [a for a, p in self.progress.items() if not p.satisfied]

    def decoded_signatures(self) -> list[DecoratedSignature]:
        return [DecoratedSignature.from_base64(s) for s in self.signatures]

    def signed_envelope(self) -> TransactionEnvelope:
        """The working envelope with its signatures replaced by exactly the collected set."""
        envelope = TransactionEnvelope.from_base64(self.txenv)
        return envelope.with_signatures(self.decoded_signatures())

    # ---- transitions ----

    def apply(
        self, verified: list[VerifiedSignature], now: float | None = None,
    ) -> list[VerifiedSignature]:
        """
        Add verified signatures to the state.

        Returns the signatures that were newly accepted; a signer that has
        already been counted is skipped.
        """
        if self.status is not SigningStatus.COLLECTING:
            raise InvalidStateTransitionError(
                f"Cannot apply signatures to a {self.status.value} transaction"
            )
        accepted = []
        for v in verified:
            if v.signer in self.signed_by:
                continue
            for contribution in self.contributions.get(v.signer, ()):
                self.progress[contribution.account].weight += contribution.weight
            self.signed_by.append(v.signer)
            self.signatures.append(v.signature.to_base64())
            accepted.append(v)
        self.updated_at = time.time() if now is None else now
        return accepted

    def mark_authorized(self, now: float | None = None) -> None:
        if self.status is not SigningStatus.COLLECTING or not self.is_authorized():
            raise InvalidStateTransitionError(
                f"Transaction {self.tx_hash} is not ready for authorization"
            )
        self.status = SigningStatus.AUTHORIZED
        self.updated_at = time.time() if now is None else now

    def mark_submitted(self, now: float | None = None) -> None:
        if self.status is not SigningStatus.AUTHORIZED:
            raise InvalidStateTransitionError(
                f"Transaction {self.tx_hash} is {self.status.value}, not authorized"
            )
        self.status = SigningStatus.SUBMITTED
        self.updated_at = time.time() if now is None else now

    # ---- serialisation ----

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "txenv": self.txenv,
            "message": self.message,
            "address_by_hint": self.address_by_hint,
            "contributions": {
                signer: [{"account": c.account, "weight": c.weight} for c in items]
                for signer, items in self.contributions.items()
            },
            "progress": self.progress_snapshot(),
            "signatures": list(self.signatures),
            "signed_by": list(self.signed_by),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingTransaction:
        return cls(
            tx_hash=data["tx_hash"],
            txenv=data["txenv"],
            message=data.get("message"),
            address_by_hint={h: list(a) for h, a in data.get("address_by_hint", {}).items()},
            contributions={
                signer: [Contribution(c["account"], c["weight"]) for c in items]
                for signer, items in data.get("contributions", {}).items()
            },
            progress={
                account: Progress(p["threshold"], p["weight"])
                for account, p in data.get("progress", {}).items()
            },
            signatures=list(data.get("signatures", [])),
            signed_by=list(data.get("signed_by", [])),
            status=SigningStatus(data.get("status", SigningStatus.COLLECTING.value)),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            version=data.get("version", 0),
        )


def initialize(
    tx_hash: str,
    txenv: str,
    snapshots: list[AccountSnapshot],
    categories: dict[str, CategoryVector],
    message: str | None = None,
    now: float | None = None,
) -> PendingTransaction:
    """Build a fresh COLLECTING state from account snapshots and category vectors."""
    now = time.time() if now is None else now
    contributions: dict[str, list[Contribution]] = {}
    progress: dict[str, Progress] = {}
    for snapshot in snapshots:
        if snapshot.address not in categories:
            raise ValueError(f"No category vector for {snapshot.address}")
        for signer in snapshot.signers:
            contributions.setdefault(signer.address, []).append(
                Contribution(snapshot.address, signer.weight)
            )
        progress[snapshot.address] = Progress(
            threshold=required_threshold(snapshot.thresholds, categories[snapshot.address]),
        )
    missing = set(categories) - set(progress)
    if missing:
        raise ValueError(f"Missing account snapshots: {sorted(missing)}")
    return PendingTransaction(
        tx_hash=tx_hash,
        txenv=txenv,
        message=message,
        address_by_hint=build_hint_directory(contributions),
        contributions=contributions,
        progress=progress,
        created_at=now,
        updated_at=now,
    )

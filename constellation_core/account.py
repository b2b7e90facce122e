"""
Account snapshots as read from the ledger.

A snapshot is captured once per coordination round and never mutated:
the signer set and thresholds in force when the transaction was first
submitted are the ones its signatures are weighed against.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from constellation_core.errors import InvalidEncodingError
from constellation_core.keys import is_valid_address


@dataclass(frozen=True)
class Thresholds:
    """Low / medium / high weight thresholds (0 = disabled)."""
    low: int = 0
    medium: int = 0
    high: int = 0

    def __post_init__(self):
        if min(self.low, self.medium, self.high) < 0:
            raise ValueError("Thresholds must be non-negative")

    def to_dict(self) -> dict[str, int]:
        return {
            "low_threshold": self.low,
            "med_threshold": self.medium,
            "high_threshold": self.high,
        }


@dataclass(frozen=True)
class Signer:
    """A key allowed to sign for an account."""
    address: str
    weight: int


@dataclass(frozen=True)
class AccountSnapshot:
    address: str
    thresholds: Thresholds = field(default_factory=Thresholds)
    signers: tuple[Signer, ...] = ()

    def total_weight(self) -> int:
        return sum(s.weight for s in self.signers)

    def signer_weight(self, address: str) -> int:
        return sum(s.weight for s in self.signers if s.address == address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.address,
            "thresholds": self.thresholds.to_dict(),
            "signers": [{"key": s.address, "weight": s.weight} for s in self.signers],
        }

    @classmethod
    def create(
        cls,
        address: str,
        low: int = 0,
        medium: int = 0,
        high: int = 0,
        signers: list[tuple[str, int]] | None = None,
    ) -> AccountSnapshot:
        """Convenience builder; without signers the master key signs with weight 1."""
        entries = signers if signers is not None else [(address, 1)]
        return cls(
            address=address,
            thresholds=Thresholds(low, medium, high),
            signers=tuple(Signer(a, w) for a, w in entries if w > 0),
        )

    @classmethod
    def from_horizon(cls, doc: dict[str, Any]) -> AccountSnapshot:
        """
        Parse a ledger REST account document.

        Signers of weight 0 are dropped: they cannot contribute to any
        threshold.
        """
        try:
            address = doc.get("account_id") or doc["id"]
            raw_thresholds = doc.get("thresholds") or {}
            thresholds = Thresholds(
                low=int(raw_thresholds.get("low_threshold", 0)),
                medium=int(raw_thresholds.get("med_threshold", 0)),
                high=int(raw_thresholds.get("high_threshold", 0)),
            )
            signers = []
            for entry in doc.get("signers") or []:
                key = entry.get("key") or entry.get("public_key") or entry.get("address")
                weight = int(entry.get("weight", 0))
                if not key or not is_valid_address(key):
                    continue
                if weight > 0:
                    signers.append(Signer(key, weight))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise InvalidEncodingError("Malformed account document") from exc
        if not is_valid_address(address):
            raise InvalidEncodingError(f"Malformed account id: {address!r}")
        return cls(address=address, thresholds=thresholds, signers=tuple(signers))

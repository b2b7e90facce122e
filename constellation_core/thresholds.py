"""
Threshold policy: which accounts must sign a transaction, and how much
signer weight each of them needs.

Every operation is assigned one category:

* ``HIGH``         – changes signer weights or thresholds (``set_options``
                     touching ``master_weight``, ``*_threshold`` or ``signer``)
* ``NO_THRESHOLD`` – the issuer authorising a holder's trust line
                     (``allow_trust``); the issuer must sign, but no
                     weight requirement is derived from it
* ``LOW``          – everything else

The responsible account is the operation's own source or, failing that,
the transaction source.  Categories for one account are OR-ed together.
The required weight is ``max(medium * LOW, high * HIGH)``, never less
than 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from constellation_core.account import Thresholds
from constellation_core.transaction import Operation, Transaction

SENSITIVE_OPTIONS = ("master_weight", "low_threshold", "med_threshold",
                     "high_threshold", "signer")


class OperationCategory(IntEnum):
    NO_THRESHOLD = 0
    LOW = 1
    HIGH = 2


@dataclass(frozen=True)
class CategoryVector:
    """Which categories an account is responsible for."""
    no_threshold: bool = False
    low: bool = False
    high: bool = False

    @classmethod
    def of(cls, *categories: OperationCategory) -> CategoryVector:
        vec = cls()
        for c in categories:
            vec = vec.with_category(c)
        return vec

    def with_category(self, category: OperationCategory) -> CategoryVector:
        return self | CategoryVector(
            no_threshold=category is OperationCategory.NO_THRESHOLD,
            low=category is OperationCategory.LOW,
            high=category is OperationCategory.HIGH,
        )

    def __or__(self, other: CategoryVector) -> CategoryVector:
        return CategoryVector(
            no_threshold=self.no_threshold or other.no_threshold,
            low=self.low or other.low,
            high=self.high or other.high,
        )

    def as_list(self) -> list[int]:
        return [int(self.no_threshold), int(self.low), int(self.high)]


def operation_category(op: Operation) -> OperationCategory:
    if op.type == "set_options":
        # an explicit 0 (e.g. disabling the master key) is still sensitive
        if any(op.params.get(k) is not None for k in SENSITIVE_OPTIONS):
            return OperationCategory.HIGH
        return OperationCategory.LOW
    if op.type == "allow_trust":
        return OperationCategory.NO_THRESHOLD
    return OperationCategory.LOW


def responsible_account(op: Operation, tx: Transaction) -> str:
    return op.source or tx.source


def source_categories(tx: Transaction) -> dict[str, CategoryVector]:
    """Map each responsible account to its category vector, in first-seen order."""
    accounts: dict[str, CategoryVector] = {}
    for op in tx.operations:
        source = responsible_account(op, tx)
        accounts[source] = accounts.get(source, CategoryVector()).with_category(
            operation_category(op)
        )
    return accounts


def required_threshold(thresholds: Thresholds, vector: CategoryVector) -> int:
    threshold = max(
        thresholds.medium * int(vector.low),
        thresholds.high * int(vector.high),
    )
    return threshold or 1

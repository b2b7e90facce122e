"""
Signature verification against a snapshot of account signers.

Signatures arrive with a four-byte hint instead of a full public key.
The hint space is small, so several signers may share one hint; every
candidate is kept and tried in registration order, and the first key
that verifies wins.

Verification is all-or-nothing: one bad signature rejects the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from constellation_core.errors import InvalidSignatureError
from constellation_core.keys import Keypair, hint_for_address
from constellation_core.transaction import DecoratedSignature

logger = logging.getLogger("constellation.verifier")


@dataclass(frozen=True)
class VerifiedSignature:
    signature: DecoratedSignature
    signer: str


def build_hint_directory(addresses: Iterable[str]) -> dict[str, list[str]]:
    """Map hex hint -> candidate signer addresses (registration order, no duplicates)."""
    directory: dict[str, list[str]] = {}
    for address in addresses:
        candidates = directory.setdefault(hint_for_address(address), [])
        if address not in candidates:
            candidates.append(address)
    return directory


def resolve_signer(
    signature: DecoratedSignature,
    message: bytes,
    address_by_hint: dict[str, list[str]],
) -> str | None:
    """Return the address whose key verifies *signature*, or None."""
    for address in address_by_hint.get(signature.hint_hex, ()):
        if Keypair.from_address(address).verify(message, signature.signature):
            return address
    return None


def verify_signatures(
    signatures: list[DecoratedSignature],
    tx_hash: bytes,
    address_by_hint: dict[str, list[str]],
) -> list[VerifiedSignature]:
    """
    Verify every signature in the batch against *tx_hash*.

    Raises InvalidSignatureError on the first signature that matches no
    known signer or does not verify; nothing of the batch is returned in
    that case.
    """
    verified = []
    for sig in signatures:
        if sig.hint_hex not in address_by_hint:
            raise InvalidSignatureError(f"No signer matches hint {sig.hint_hex}")
        signer = resolve_signer(sig, tx_hash, address_by_hint)
        if signer is None:
            raise InvalidSignatureError(f"Signature with hint {sig.hint_hex} does not verify")
        verified.append(VerifiedSignature(sig, signer))
    logger.debug("Verified %d signature(s) for %s", len(verified), tx_hash.hex())
    return verified


def has_valid_signatures(
    signatures: list[DecoratedSignature],
    tx_hash: bytes,
    address_by_hint: dict[str, list[str]],
) -> bool:
    try:
        verify_signatures(signatures, tx_hash, address_by_hint)
    except InvalidSignatureError:
        return False
    return True

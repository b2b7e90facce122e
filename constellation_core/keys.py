"""
Ed25519 key pairs, account addresses and signature hints.

Addresses and seeds use the "strkey" encoding:

    base32( version_byte || payload || crc16_xmodem(version_byte || payload) )

with the checksum stored little-endian.  Account addresses start with
``G`` and secret seeds with ``S``.  A signature hint is the last four
bytes of the signer's public key; it is what a decorated signature
carries so the server can find the matching signer cheaply.
"""

from __future__ import annotations

import base64
import binascii
import os
import struct

from ecdsa import BadSignatureError, SigningKey, VerifyingKey
from ecdsa.curves import Ed25519
from ecdsa.errors import MalformedPointError

from constellation_core.errors import InvalidEncodingError

VERSION_ACCOUNT_ID = 6 << 3     # "G..."
VERSION_SEED = 18 << 3          # "S..."

KEY_LENGTH = 32
HINT_LENGTH = 4
SIGNATURE_LENGTH = 64


# ===================================================================
#  strkey encoding
# ===================================================================

def _crc16(data: bytes) -> bytes:
    return struct.pack("<H", binascii.crc_hqx(data, 0))


def encode_check(version: int, payload: bytes) -> str:
    """Encode *payload* as a strkey with the given version byte."""
    body = bytes([version]) + payload
    return base64.b32encode(body + _crc16(body)).decode("ascii")


def decode_check(version: int, encoded: str) -> bytes:
    """Decode a strkey, validating version byte, length and checksum."""
    if not isinstance(encoded, str) or not encoded:
        raise InvalidEncodingError("strkey must be a non-empty string")
    try:
        raw = base64.b32decode(encoded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise InvalidEncodingError(f"Invalid strkey: {encoded!r}") from exc
    if len(raw) != 1 + KEY_LENGTH + 2:
        raise InvalidEncodingError(f"Invalid strkey length: {encoded!r}")
    body, checksum = raw[:-2], raw[-2:]
    if body[0] != version:
        raise InvalidEncodingError(f"Unexpected strkey version: {encoded!r}")
    if _crc16(body) != checksum:
        raise InvalidEncodingError(f"Invalid strkey checksum: {encoded!r}")
    return body[1:]


def is_valid_address(address: str) -> bool:
    try:
        decode_check(VERSION_ACCOUNT_ID, address)
    except InvalidEncodingError:
        return False
    return True


def hint_for_address(address: str) -> str:
    """Hex signature hint for an account address."""
    return decode_check(VERSION_ACCOUNT_ID, address)[-HINT_LENGTH:].hex()


# ===================================================================
#  Key pairs
# ===================================================================

class Keypair:
    """
    An Ed25519 key pair.

    A keypair built from an address only carries the public half and can
    verify but not sign.
    """

    def __init__(self, verifying_key: VerifyingKey, signing_key: SigningKey | None = None):
        self._vk = verifying_key
        self._sk = signing_key

    # ---- factory methods ----

    @classmethod
    def random(cls) -> Keypair:
        return cls.from_raw_seed(os.urandom(KEY_LENGTH))

    @classmethod
    def from_raw_seed(cls, raw_seed: bytes) -> Keypair:
        if len(raw_seed) != KEY_LENGTH:
            raise InvalidEncodingError("Ed25519 seed must be 32 bytes")
        sk = SigningKey.from_string(raw_seed, curve=Ed25519)
        return cls(sk.get_verifying_key(), sk)

    @classmethod
    def from_seed(cls, seed: str) -> Keypair:
        """Create a signing keypair from an ``S...`` seed."""
        return cls.from_raw_seed(decode_check(VERSION_SEED, seed))

    @classmethod
    def from_public_key(cls, public_key: bytes) -> Keypair:
        try:
            vk = VerifyingKey.from_string(public_key, curve=Ed25519)
        except (ValueError, MalformedPointError) as exc:
            raise InvalidEncodingError("Invalid Ed25519 public key") from exc
        return cls(vk)

    @classmethod
    def from_address(cls, address: str) -> Keypair:
        """Create a verify-only keypair from a ``G...`` address."""
        return cls.from_public_key(decode_check(VERSION_ACCOUNT_ID, address))

    # ---- properties ----

    @property
    def public_key(self) -> bytes:
        return self._vk.to_string()

    @property
    def address(self) -> str:
        return encode_check(VERSION_ACCOUNT_ID, self.public_key)

    @property
    def raw_seed(self) -> bytes:
        if self._sk is None:
            raise ValueError("Keypair has no secret key")
        return self._sk.to_string()

    @property
    def seed(self) -> str:
        return encode_check(VERSION_SEED, self.raw_seed)

    def can_sign(self) -> bool:
        return self._sk is not None

    def signature_hint(self) -> bytes:
        return self.public_key[-HINT_LENGTH:]

    # ---- signing ----

    def sign(self, data: bytes) -> bytes:
        if self._sk is None:
            raise ValueError("Keypair has no secret key")
        return self._sk.sign(data)

    def verify(self, data: bytes, signature: bytes) -> bool:
        if len(signature) != SIGNATURE_LENGTH:
            return False
        try:
            return bool(self._vk.verify(signature, data))
        except (BadSignatureError, MalformedPointError, ValueError):
            return False

    def sign_decorated(self, data: bytes):
        """Sign *data* and return a :class:`DecoratedSignature`."""
        from constellation_core.transaction import DecoratedSignature
        return DecoratedSignature(self.signature_hint(), self.sign(data))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Keypair) and other.public_key == self.public_key

    def __hash__(self) -> int:
        return hash(self.public_key)

    def __repr__(self) -> str:
        return f"Keypair({self.address})"

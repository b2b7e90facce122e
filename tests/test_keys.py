"""
Tests for Ed25519 key pairs, strkey addresses and signature hints.
"""

import base64
import unittest

from constellation_core.errors import InvalidEncodingError
from constellation_core.keys import (
    VERSION_ACCOUNT_ID,
    VERSION_SEED,
    Keypair,
    decode_check,
    encode_check,
    hint_for_address,
    is_valid_address,
)


class TestStrkey(unittest.TestCase):

    def test_address_and_seed_prefixes(self):
        kp = Keypair.from_raw_seed(b"\x01" * 32)
        self.assertTrue(kp.address.startswith("G"))
        self.assertTrue(kp.seed.startswith("S"))
        self.assertEqual(len(kp.address), 56)

    def test_decode_returns_payload(self):
        payload = bytes(range(32))
        encoded = encode_check(VERSION_ACCOUNT_ID, payload)
        self.assertEqual(decode_check(VERSION_ACCOUNT_ID, encoded), payload)

    def test_wrong_version_rejected(self):
        encoded = encode_check(VERSION_SEED, bytes(32))
        with self.assertRaises(InvalidEncodingError):
            decode_check(VERSION_ACCOUNT_ID, encoded)

    def test_bad_checksum_rejected(self):
        raw = bytearray(base64.b32decode(encode_check(VERSION_ACCOUNT_ID, bytes(32))))
        raw[-1] ^= 0xFF
        tampered = base64.b32encode(bytes(raw)).decode()
        with self.assertRaises(InvalidEncodingError):
            decode_check(VERSION_ACCOUNT_ID, tampered)

    def test_garbage_rejected(self):
        for bad in ("", "not-base32!", "GAAA"):
            with self.assertRaises(InvalidEncodingError):
                decode_check(VERSION_ACCOUNT_ID, bad)

    def test_is_valid_address(self):
        kp = Keypair.from_raw_seed(b"\x02" * 32)
        self.assertTrue(is_valid_address(kp.address))
        self.assertFalse(is_valid_address(kp.seed))
        self.assertFalse(is_valid_address("rAlice"))


class TestKeypair(unittest.TestCase):

    def setUp(self):
        self.kp = Keypair.from_raw_seed(b"\x07" * 32)

    def test_seed_round_trip(self):
        again = Keypair.from_seed(self.kp.seed)
        self.assertEqual(again, self.kp)
        self.assertEqual(again.raw_seed, b"\x07" * 32)

    def test_from_address_is_verify_only(self):
        public = Keypair.from_address(self.kp.address)
        self.assertFalse(public.can_sign())
        with self.assertRaises(ValueError):
            public.sign(b"data")

    def test_sign_and_verify(self):
        sig = self.kp.sign(b"hello")
        self.assertEqual(len(sig), 64)
        public = Keypair.from_address(self.kp.address)
        self.assertTrue(public.verify(b"hello", sig))
        self.assertFalse(public.verify(b"hellO", sig))

    def test_verify_rejects_wrong_length(self):
        self.assertFalse(self.kp.verify(b"hello", b"\x00" * 10))

    def test_other_key_does_not_verify(self):
        other = Keypair.from_raw_seed(b"\x08" * 32)
        self.assertFalse(other.verify(b"hello", self.kp.sign(b"hello")))

    def test_hint_is_last_four_bytes(self):
        self.assertEqual(self.kp.signature_hint(), self.kp.public_key[-4:])
        self.assertEqual(hint_for_address(self.kp.address), self.kp.public_key[-4:].hex())

    def test_sign_decorated_carries_hint(self):
        sig = self.kp.sign_decorated(b"\xab" * 32)
        self.assertEqual(sig.hint, self.kp.signature_hint())
        self.assertTrue(self.kp.verify(b"\xab" * 32, sig.signature))

    def test_bad_seed_length(self):
        with self.assertRaises(InvalidEncodingError):
            Keypair.from_raw_seed(b"short")

    def test_random_keys_differ(self):
        self.assertNotEqual(Keypair.random(), Keypair.random())

    def test_hashable(self):
        same = Keypair.from_raw_seed(b"\x07" * 32)
        self.assertEqual(len({self.kp, same}), 1)
        self.assertIn(self.kp.address, repr(self.kp))


if __name__ == "__main__":
    unittest.main()

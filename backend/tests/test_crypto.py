from __future__ import annotations

import base64
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.app.utils import crypto
from backend.app.utils.crypto import CredentialCipher
from backend.app.utils.errors import DecryptionFailed


def _cipher(secret: str = "server-secret") -> CredentialCipher:
    # 测试里用较少的迭代次数，避免拖慢用例
    return CredentialCipher(secret, salt="test-salt", iterations=1_000)


class CredentialCipherTests(unittest.TestCase):
    def test_round_trip(self):
        cipher = _cipher()
        for plaintext in ("hunter2", "", "pässwörd mit Ümlauten", "x" * 500):
            with self.subTest(length=len(plaintext)):
                self.assertEqual(cipher.decrypt(cipher.encrypt(plaintext)), plaintext)

    def test_encryption_is_randomized(self):
        cipher = _cipher()
        self.assertNotEqual(cipher.encrypt("same"), cipher.encrypt("same"))

    def test_ciphertext_does_not_contain_plaintext(self):
        token = _cipher().encrypt("very-secret-password")
        self.assertNotIn("very-secret-password", token)
        self.assertNotIn(b"very-secret-password", base64.b64decode(token))

    def test_tampered_ciphertext_fails(self):
        cipher = _cipher()
        blob = bytearray(base64.b64decode(cipher.encrypt("hunter2")))
        blob[-1] ^= 0x01
        with self.assertRaises(DecryptionFailed):
            cipher.decrypt(base64.b64encode(bytes(blob)).decode("ascii"))

    def test_foreign_key_fails(self):
        token = _cipher("key-a").encrypt("hunter2")
        with self.assertRaises(DecryptionFailed):
            _cipher("key-b").decrypt(token)

    def test_malformed_input_fails(self):
        cipher = _cipher()
        for bad in ("", "   ", "not base64 !!", base64.b64encode(b"short").decode("ascii")):
            with self.subTest(bad=bad):
                with self.assertRaises(DecryptionFailed):
                    cipher.decrypt(bad)

    def test_verify(self):
        cipher = _cipher()
        self.assertTrue(cipher.verify(cipher.encrypt("hunter2")))
        self.assertFalse(cipher.verify("garbage"))


class ProcessCipherTests(unittest.TestCase):
    def setUp(self):
        crypto.get_credential_cipher.cache_clear()

    def tearDown(self):
        crypto.get_credential_cipher.cache_clear()

    def test_missing_key_fails_closed(self):
        with patch.object(crypto.settings, "encryption_key", None):
            with self.assertRaises(DecryptionFailed):
                crypto.encrypt_secret("hunter2")

    def test_module_helpers_use_configured_key(self):
        with (
            patch.object(crypto.settings, "encryption_key", "configured-secret"),
            patch.object(crypto.settings, "encryption_iterations", 1_000),
        ):
            token = crypto.encrypt_secret("hunter2")
            self.assertEqual(crypto.decrypt_secret(token), "hunter2")
            self.assertTrue(crypto.verify_ciphertext(token))
            self.assertFalse(crypto.verify_ciphertext("garbage"))


if __name__ == "__main__":
    unittest.main()

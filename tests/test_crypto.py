"""Test the application key cipher and AccessToken derivation."""
from __future__ import annotations

import pytest
from Crypto.Cipher import AES

from connector_hub import CryptoError, compute_access_token, decrypt, encrypt, recover_token
from connector_hub.crypto import normalize_key

from .mocks.fake_hub_client import CONNECTOR_KEY, HUB_TOKEN

class TestCipher:
    """Test encrypt() and decrypt()."""

    @pytest.mark.parametrize("length", [0, 1, 15, 16, 17, 31, 32, 100])
    def test_decrypt_inverts_encrypt(self, length: int):
        """Payloads of any length, block aligned or not, survive a round trip."""
        plaintext = bytes(i % 256 for i in range(length))
        ciphertext = encrypt(plaintext, CONNECTOR_KEY)
        assert len(ciphertext) % 16 == 0
        assert len(ciphertext) > length
        assert decrypt(ciphertext, CONNECTOR_KEY) == plaintext

    def test_str_payload_is_utf8_encoded(self):
        """Text payloads are encrypted as UTF-8."""
        ciphertext = encrypt('{"msgType":"GetDeviceList"}', CONNECTOR_KEY)
        assert decrypt(ciphertext, CONNECTOR_KEY) == b'{"msgType":"GetDeviceList"}'

    def test_key_may_be_bytes(self):
        """A bytes key is equivalent to the same key as text."""
        ciphertext = encrypt(b"payload", CONNECTOR_KEY.encode("utf-8"))
        assert decrypt(ciphertext, CONNECTOR_KEY) == b"payload"

    @pytest.mark.parametrize("key", ["", "short", "12345678-1234-123"])
    def test_invalid_key_length_raises(self, key: str):
        """Keys that are not 16, 24 or 32 bytes are rejected."""
        with pytest.raises(CryptoError):
            encrypt(b"payload", key)

    def test_accepted_key_lengths(self):
        """AES-128, AES-192 and AES-256 keys are all usable."""
        for length in (16, 24, 32):
            assert len(normalize_key("k" * length)) == length

    def test_misaligned_ciphertext_raises(self):
        """Truncated ciphertext is a CryptoError, not a crash."""
        ciphertext = encrypt(b"some payload", CONNECTOR_KEY)
        with pytest.raises(CryptoError):
            decrypt(ciphertext[:-1], CONNECTOR_KEY)

    def test_empty_ciphertext_raises(self):
        """Empty ciphertext is a CryptoError."""
        with pytest.raises(CryptoError):
            decrypt(b"", CONNECTOR_KEY)

    def test_wrong_key_raises(self):
        """Decrypting with any other key is always a CryptoError, never garbage plaintext."""
        ciphertext = encrypt(b'{"msgType":"WriteDeviceAck"}', CONNECTOR_KEY)
        for i in range(500):
            wrong_key = f"wrong-key-{i:06d}"
            with pytest.raises(CryptoError):
                decrypt(ciphertext, wrong_key)

    def test_altered_ciphertext_raises(self):
        """Flipping any bit of the ciphertext or its tag is detected."""
        ciphertext = encrypt(b"some payload", CONNECTOR_KEY)
        for i in range(len(ciphertext)):
            altered = bytearray(ciphertext)
            altered[i] ^= 0x01
            with pytest.raises(CryptoError):
                decrypt(bytes(altered), CONNECTOR_KEY)

class TestAccessToken:
    """Test compute_access_token() and recover_token()."""

    def test_access_token_is_single_block_aes(self):
        """A 16-character token is encrypted as one unpadded block, hex encoded in upper case."""
        expected = AES.new(CONNECTOR_KEY.encode("utf-8"), AES.MODE_ECB).encrypt(HUB_TOKEN.encode("utf-8")).hex().upper()
        access_token = compute_access_token(HUB_TOKEN, CONNECTOR_KEY)
        assert access_token == expected
        assert len(access_token) == 32

    def test_recover_token_inverts_compute(self):
        """The hub side can recover the session token."""
        for token in (HUB_TOKEN, "short", "a-token-longer-than-one-block"):
            assert recover_token(compute_access_token(token, CONNECTOR_KEY), CONNECTOR_KEY) == token

    def test_recover_token_accepts_lower_case_hex(self):
        """Hex case does not matter."""
        access_token = compute_access_token(HUB_TOKEN, CONNECTOR_KEY).lower()
        assert recover_token(access_token, CONNECTOR_KEY) == HUB_TOKEN

    @pytest.mark.parametrize("access_token", ["not hex", "ABC", "00" * 15, ""])
    def test_malformed_access_token_raises(self, access_token: str):
        """Malformed AccessTokens are reported as CryptoError."""
        with pytest.raises(CryptoError):
            recover_token(access_token, CONNECTOR_KEY)

#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Symmetric encryption with the Connector application key.

Hubs authenticate write requests with an AccessToken, which is the hub's
session token encrypted with AES-ECB under the 16-character application key
shown in the Connector app, hex encoded in upper case. General payloads are
encrypted with the same cipher using PKCS#7 padding so that any length
round-trips exactly, followed by an HMAC-SHA256 tag over the ciphertext so that
decrypting with the wrong key or tampered data is always detected.

All functions are stateless.
"""

from __future__ import annotations

import binascii

from Crypto.Cipher import AES
from Crypto.Hash import HMAC, SHA256
from Crypto.Util.Padding import pad, unpad

from .internal_types import *
from .exceptions import CryptoError

KeyLike = Union[str, bytes]

VALID_KEY_LENGTHS = (16, 24, 32)

TAG_SIZE = SHA256.digest_size
"""The length of the authentication tag appended by encrypt()."""

MAC_KEY_LABEL = b'connector_hub.crypto.mac:'

def normalize_key(key: KeyLike) -> bytes:
    """Returns the application key as bytes, raising CryptoError if it cannot be used as an AES key."""
    if isinstance(key, str):
        key = key.encode('utf-8')
    if not isinstance(key, bytes):
        raise CryptoError(f"Application key must be str or bytes, not {type(key).__name__}")
    if len(key) not in VALID_KEY_LENGTHS:
        raise CryptoError(f"Application key must be 16, 24 or 32 bytes long, got {len(key)}")
    return key

def _new_cipher(key: KeyLike):
    return AES.new(normalize_key(key), AES.MODE_ECB)

def _new_mac(key: KeyLike, ciphertext: bytes) -> HMAC.HMAC:
    # separate key for authentication, derived from the application key
    mac_key = SHA256.new(MAC_KEY_LABEL + normalize_key(key)).digest()
    return HMAC.new(mac_key, ciphertext, digestmod=SHA256)

def encrypt(plaintext: Union[str, bytes], key: KeyLike) -> bytes:
    """Encrypts an arbitrary-length payload; str payloads are UTF-8 encoded first."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode('utf-8')
    ciphertext = _new_cipher(key).encrypt(pad(plaintext, AES.block_size))
    return ciphertext + _new_mac(key, ciphertext).digest()

def decrypt(ciphertext: bytes, key: KeyLike) -> bytes:
    """Decrypts a payload produced by encrypt().

    Raises CryptoError if the data is truncated, was encrypted with a different key, or
    has been altered.
    """
    cipher = _new_cipher(key)
    body, tag = ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:]
    if len(ciphertext) <= TAG_SIZE or len(body) % AES.block_size != 0:
        raise CryptoError(f"Ciphertext length {len(ciphertext)} is not valid")
    try:
        _new_mac(key, body).verify(tag)
    except ValueError as e:
        raise CryptoError("Ciphertext authentication failed; wrong key or corrupted data") from e
    try:
        return unpad(cipher.decrypt(body), AES.block_size)
    except ValueError as e:
        raise CryptoError(f"Decryption failed: {e}") from e

def compute_access_token(token: str, key: KeyLike) -> str:
    """Derives the AccessToken for a hub from the session token in its device list reply.

    Hub tokens are 16 characters, so they are encrypted as a single block with no padding.
    Tokens that are not block aligned are padded.
    """
    raw = token.encode('utf-8')
    cipher = _new_cipher(key)
    if len(raw) == 0 or len(raw) % AES.block_size != 0:
        raw = pad(raw, AES.block_size)
    return binascii.hexlify(cipher.encrypt(raw)).decode('ascii').upper()

def recover_token(access_token: str, key: KeyLike) -> str:
    """Inverse of compute_access_token(). Raises CryptoError if access_token is malformed."""
    cipher = _new_cipher(key)
    try:
        encrypted = binascii.unhexlify(access_token)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"AccessToken is not valid hex: {e}") from e
    if len(encrypted) == 0 or len(encrypted) % AES.block_size != 0:
        raise CryptoError(f"AccessToken length {len(encrypted)} is not a positive multiple of {AES.block_size}")
    raw = cipher.decrypt(encrypted)
    try:
        raw = unpad(raw, AES.block_size)
    except ValueError:
        # an unpadded, block-aligned token
        pass
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise CryptoError(f"AccessToken does not decrypt to a valid token: {e}") from e

"""AES-128-GCM helpers for chat payloads keyed by a pairing secret."""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# AES-128 uses 16-byte keys
AES_KEY_SIZE = 16
# GCM standard nonce length
NONCE_SIZE = 12


def encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> bytes:
    """
    Encrypts plaintext with AES-128-GCM.

    key: 16-byte AES key (see dh.derive_aes_key)
    plaintext: The data to encrypt
    aad: Additional authenticated data, e.g. sender and recipient ids
    Returns: nonce || ciphertext || tag
    """
    if len(key) != AES_KEY_SIZE:
        raise ValueError("Key must be 16 bytes (AES-128)")

    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def decrypt(key: bytes, blob: bytes, aad: bytes = b"") -> bytes:
    """
    Reverses encrypt(). Raises ValueError if the blob was tampered with,
    the AAD differs or the key is wrong.
    """
    if len(key) != AES_KEY_SIZE:
        raise ValueError("Key must be 16 bytes (AES-128)")
    if len(blob) < NONCE_SIZE + 16:
        raise ValueError("Ciphertext too short")

    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise ValueError("Failed to authenticate chat payload") from e

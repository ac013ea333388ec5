"""Classic DH helpers over a fixed group + Trunc16(SHA256(Ks)) derivation."""

import hashlib
from typing import Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dh

from relaychat.common.utils import b64d, b64e

# RFC 3526 group 14 (2048-bit MODP). Both peers of a relayed pairing must use
# the same group, and neither side can negotiate it, so it is fixed here.
MODP_2048_P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)
MODP_2048_G = 2

_PARAMETERS = dh.DHParameterNumbers(p=MODP_2048_P, g=MODP_2048_G).parameters()


def generate_key_pair() -> dh.DHPrivateKey:
    """Generates a fresh private key in the shared group."""
    return _PARAMETERS.generate_private_key()


def encode_public_key(public_key: dh.DHPublicKey) -> str:
    """Base64 of the DER SubjectPublicKeyInfo, safe to put on the wire."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64e(der)


def encode_private_key(private_key: dh.DHPrivateKey) -> str:
    """Base64 of the unencrypted DER PKCS8 blob. Only ever written to the local store."""
    der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64e(der)


def decode_public_key(text: str) -> dh.DHPublicKey:
    """
    Loads a peer's public key from its transport encoding.
    Raises ValueError if the text is not a DH public key in our group.
    """
    try:
        key = serialization.load_der_public_key(b64d(text))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Invalid peer public key: {e}") from e
    if not isinstance(key, dh.DHPublicKey):
        raise ValueError("Peer public key is not a DH key")
    numbers = key.parameters().parameter_numbers()
    if (numbers.p, numbers.g) != (MODP_2048_P, MODP_2048_G):
        raise ValueError("Peer public key uses a different DH group")
    return key


def decode_private_key(text: str) -> dh.DHPrivateKey:
    """Loads a stored private key. Raises ValueError if the blob is corrupt."""
    try:
        key = serialization.load_der_private_key(b64d(text), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Invalid stored private key: {e}") from e
    if not isinstance(key, dh.DHPrivateKey):
        raise ValueError("Stored private key is not a DH key")
    return key


def generate_encoded_key_pair() -> Tuple[str, str]:
    """Returns (public_key_text, private_key_text) for a fresh key pair."""
    private_key = generate_key_pair()
    return encode_public_key(private_key.public_key()), encode_private_key(private_key)


def get_shared_secret(private_key: dh.DHPrivateKey, peer_public_key: dh.DHPublicKey) -> bytes:
    """
    Computes the raw shared secret Ks from our private key and the
    peer's public key. Raises ValueError on an invalid peer value.
    """
    return private_key.exchange(peer_public_key)


def derive_shared_secret(private_key_text: str, peer_public_key_text: str) -> bytes:
    """Transport-encoded variant of get_shared_secret."""
    private_key = decode_private_key(private_key_text)
    peer_public_key = decode_public_key(peer_public_key_text)
    return get_shared_secret(private_key, peer_public_key)


def derive_aes_key(shared_secret_ks: bytes) -> bytes:
    """
    Derives the final 16-byte AES key from the raw shared secret (Ks)
    using the formula: K = Trunc16(SHA256(big-endian(Ks)))
    """
    hash_bytes = hashlib.sha256(shared_secret_ks).digest()
    return hash_bytes[:16]

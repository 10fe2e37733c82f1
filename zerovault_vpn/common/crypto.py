# STATUS: done
"""
Cryptographic functions for ZeroVault VPN.
Provides X25519 key handling, session key derivation and AES-GCM sealing
of tunnel datagrams.
"""

import os
import base64
import binascii
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import AES_KEY_SIZE, AES_NONCE_SIZE, HKDF_INFO, X25519_KEY_SIZE


class CryptoError(Exception):
    """Raised when cryptographic operations fail."""
    pass


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt plaintext using AES-GCM with a random nonce.

    Args:
        plaintext: The data to encrypt
        key: 32-byte AES key

    Returns:
        bytes: nonce (12 bytes) + ciphertext + auth_tag

    Raises:
        CryptoError: If encryption fails
    """
    if len(key) != AES_KEY_SIZE:
        raise CryptoError(f"Key must be {AES_KEY_SIZE} bytes, got {len(key)}")

    try:
        nonce = os.urandom(AES_NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, plaintext, None)
    except Exception as e:
        raise CryptoError(f"Encryption failed: {e}")


def decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """
    Decrypt ciphertext using AES-GCM.

    Args:
        ciphertext: nonce + encrypted_data + auth_tag
        key: 32-byte AES key

    Returns:
        bytes: The decrypted plaintext

    Raises:
        CryptoError: If decryption or authentication fails
    """
    if len(key) != AES_KEY_SIZE:
        raise CryptoError(f"Key must be {AES_KEY_SIZE} bytes, got {len(key)}")

    if len(ciphertext) < AES_NONCE_SIZE:
        raise CryptoError("Ciphertext too short")

    nonce = ciphertext[:AES_NONCE_SIZE]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext[AES_NONCE_SIZE:], None)
    except InvalidTag:
        raise CryptoError("Decryption failed: authentication tag mismatch")
    except Exception as e:
        raise CryptoError(f"Decryption failed: {e}")


def key_to_base64(key: bytes) -> str:
    """Convert key bytes to base64 string."""
    return base64.b64encode(key).decode('ascii')


def key_from_base64(key_b64: str) -> bytes:
    """Convert a base64 X25519 key string to its 32 raw bytes."""
    try:
        key = base64.b64decode(key_b64.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise CryptoError(f"Key is not valid base64: {e}")
    if len(key) != X25519_KEY_SIZE:
        raise CryptoError(f"Decoded key must be {X25519_KEY_SIZE} bytes, got {len(key)}")
    return key


def generate_keypair() -> Tuple[str, str]:
    """
    Generate a fresh X25519 keypair.

    Returns:
        Tuple[str, str]: (private_key_base64, public_key_base64)
    """
    private_key = X25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return key_to_base64(private_raw), key_to_base64(public_raw)


def public_key_for(private_key_b64: str) -> str:
    """Return the base64 public key matching a base64 private key."""
    private_key = X25519PrivateKey.from_private_bytes(key_from_base64(private_key_b64))
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return key_to_base64(public_raw)


def derive_session_key(private_key_b64: str, peer_public_key_b64: str) -> bytes:
    """
    Derive the symmetric tunnel key shared with the peer.

    Both sides compute X25519(own private, other public) and expand the shared
    secret with HKDF-SHA256, so the two ends arrive at the same AES key.

    Args:
        private_key_b64: Local private key (base64)
        peer_public_key_b64: Peer public key (base64)

    Returns:
        bytes: 32-byte AES-GCM key

    Raises:
        CryptoError: If either key is malformed or the exchange fails
    """
    private_key = X25519PrivateKey.from_private_bytes(key_from_base64(private_key_b64))
    peer_key = X25519PublicKey.from_public_bytes(key_from_base64(peer_public_key_b64))

    try:
        shared_secret = private_key.exchange(peer_key)
    except ValueError as e:
        raise CryptoError(f"Key exchange failed: {e}")

    return HKDF(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=None,
        info=HKDF_INFO,
    ).derive(shared_secret)

# STATUS: done
"""
Test cases for ZeroVault VPN crypto module.
"""

import os
import base64

import pytest

from zerovault_vpn.common.crypto import (
    encrypt,
    decrypt,
    CryptoError,
    generate_keypair,
    public_key_for,
    derive_session_key,
    key_from_base64,
)


class TestKeys:
    """Test cases for X25519 key handling."""

    def test_keypair_generation(self):
        """Test that keypairs are fresh, base64 and 32 bytes."""
        private1, public1 = generate_keypair()
        private2, _ = generate_keypair()

        assert private1 != private2
        assert len(base64.b64decode(private1)) == 32
        assert len(base64.b64decode(public1)) == 32

    def test_public_key_for(self):
        """Test that the public key can be recomputed from the private key."""
        private, public = generate_keypair()

        assert public_key_for(private) == public

    @pytest.mark.parametrize("bad", ["A", "not base64!", base64.b64encode(b"short").decode()])
    def test_malformed_keys_rejected(self, bad):
        """Test that opaque or wrong-sized keys raise CryptoError."""
        with pytest.raises(CryptoError):
            key_from_base64(bad)

    def test_both_sides_derive_same_key(self):
        """Test that client and peer arrive at the same session key."""
        client_private, client_public = generate_keypair()
        peer_private, peer_public = generate_keypair()

        client_key = derive_session_key(client_private, peer_public)
        peer_key = derive_session_key(peer_private, client_public)

        assert client_key == peer_key
        assert len(client_key) == 32

    def test_different_peers_different_keys(self):
        """Test that the session key depends on the peer."""
        client_private, _ = generate_keypair()
        _, peer1 = generate_keypair()
        _, peer2 = generate_keypair()

        assert derive_session_key(client_private, peer1) != derive_session_key(client_private, peer2)

    def test_derive_with_opaque_keys(self):
        """Test that non-key strings fail derivation cleanly."""
        with pytest.raises(CryptoError):
            derive_session_key("A", "B")


class TestSealing:
    """Test cases for AES-GCM datagram sealing."""

    def test_seal_and_open(self):
        """Test that a sealed packet opens with the same key."""
        key = os.urandom(32)
        packet = b"\x45" + b"\x00" * 59

        assert decrypt(encrypt(packet, key), key) == packet

    def test_nonce_is_random(self):
        """Test that sealing twice gives different datagrams."""
        key = os.urandom(32)

        assert encrypt(b"same", key) != encrypt(b"same", key)

    def test_empty_payload(self):
        """Test that an empty keepalive payload round-trips."""
        key = os.urandom(32)

        assert decrypt(encrypt(b"", key), key) == b""

    def test_wrong_key(self):
        """Test that decryption with the wrong key fails."""
        sealed = encrypt(b"secret", os.urandom(32))

        with pytest.raises(CryptoError):
            decrypt(sealed, os.urandom(32))

    def test_tampered(self):
        """Test that a flipped bit is detected."""
        key = os.urandom(32)
        sealed = bytearray(encrypt(b"authentic", key))
        sealed[-1] ^= 1

        with pytest.raises(CryptoError):
            decrypt(bytes(sealed), key)

    def test_too_short(self):
        """Test that a datagram shorter than the nonce is rejected."""
        with pytest.raises(CryptoError):
            decrypt(b"short", os.urandom(32))

    @pytest.mark.parametrize("size", [16, 31, 33])
    def test_invalid_key_size(self, size):
        """Test that only 32-byte keys are accepted."""
        with pytest.raises(CryptoError):
            encrypt(b"data", os.urandom(size))


if __name__ == '__main__':
    pytest.main([__file__])

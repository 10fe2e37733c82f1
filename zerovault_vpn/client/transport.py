# STATUS: done
"""
Outbound paths for packets leaving the TUN interface.

SecureTransport is the encrypted path to the peer; DirectPath is the
split-tunnel bypass. Both report per-packet failures as TransportError so the
packet loop can drop the packet and carry on.
"""

import abc
import errno
import socket
import logging
import threading
from typing import Optional, Tuple

from ..common.config import TunnelConfig
from ..common.constants import KEEPALIVE_THREAD_NAME, MAX_PACKET_SIZE, SO_MARK, TUNNEL_FWMARK
from ..common.crypto import encrypt, decrypt, derive_session_key, CryptoError
from ..common.packet import ParsedPacketHeader
from ..common.utils import parse_endpoint

logger = logging.getLogger(__name__)

# errno values meaning the socket itself is unusable, not just this packet
PERSISTENT_ERRNOS = {errno.EBADF, errno.ENOTSOCK, errno.EPERM, errno.EACCES}


class TransportError(Exception):
    """
    Raised when a packet cannot be moved over a transport.

    transient errors (peer unreachable, buffers full, a corrupt datagram)
    affect one packet; persistent ones mean the path is broken until the
    tunnel is restarted.
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


def _error_from_oserror(action: str, e: OSError) -> TransportError:
    return TransportError(f"{action} failed: {e}", transient=e.errno not in PERSISTENT_ERRNOS)


def mark_socket(sock: socket.socket, fwmark: int):
    """
    Tag a socket so its traffic skips the tunnel routing table.

    Must happen before connect(), which caches the route. Needs CAP_NET_ADMIN.

    Raises:
        TransportError: If the mark cannot be set (persistent)
    """
    try:
        sock.setsockopt(socket.SOL_SOCKET, SO_MARK, fwmark)
    except OSError as e:
        raise TransportError(f"Cannot set fwmark {fwmark} on socket: {e}", transient=False)


class SecureTransport(abc.ABC):
    """Encrypted datagram path to the tunnel peer."""

    @abc.abstractmethod
    def encrypt_and_send(self, packet: bytes, endpoint: str) -> int:
        """Encrypt a raw IP packet and send it to the peer. Returns plaintext bytes sent."""

    @abc.abstractmethod
    def receive_decrypted(self) -> Optional[bytes]:
        """Return one decrypted packet from the peer, or None if nothing is pending."""

    @abc.abstractmethod
    def fileno(self) -> int:
        """Descriptor that becomes readable when receive_decrypted() has data."""

    def close(self):
        pass


class DirectPath(abc.ABC):
    """Unencrypted path for packets that bypass the tunnel."""

    @abc.abstractmethod
    def send(self, packet: bytes, header: ParsedPacketHeader) -> int:
        """Send a raw IP packet towards its destination. Returns bytes sent."""

    def close(self):
        pass


class AeadTransport(SecureTransport):
    """
    UDP transport sealing each packet with AES-GCM.

    The key is derived from the local private key and the peer public key
    (X25519 + HKDF), so no handshake round trip is needed. Datagrams are
    nonce + ciphertext; an empty plaintext is a keepalive.

    A non-zero fwmark tags the socket so the sealed datagrams leave through
    the host routes instead of looping back into the tunnel.
    """

    def __init__(self, key: bytes, endpoint: str, keepalive_interval: float = 0,
                 sock: Optional[socket.socket] = None, fwmark: int = 0):
        self.key = key
        self.endpoint = endpoint
        self.keepalive_interval = keepalive_interval
        self.sock = sock or self._connect(endpoint, fwmark)
        self.sock.setblocking(False)

        self._stop = threading.Event()
        self._keepalive_thread = None
        if keepalive_interval > 0:
            self._keepalive_thread = threading.Thread(
                target=self._keepalive_loop,
                name=KEEPALIVE_THREAD_NAME,
                daemon=True,
            )
            self._keepalive_thread.start()

    @classmethod
    def from_config(cls, config: TunnelConfig, fwmark: int = TUNNEL_FWMARK) -> "AeadTransport":
        """
        Build a transport for a parsed tunnel config.

        Raises:
            TransportError: If the keys or the endpoint are unusable (persistent)
        """
        try:
            key = derive_session_key(config.private_key, config.public_key)
        except CryptoError as e:
            raise TransportError(f"Cannot derive tunnel key: {e}", transient=False)
        return cls(key, config.endpoint, config.persistent_keepalive, fwmark=fwmark)

    @staticmethod
    def _resolve(endpoint: str) -> Tuple[int, tuple]:
        try:
            host, port = parse_endpoint(endpoint)
            family, _, _, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
        except (ValueError, socket.gaierror) as e:
            raise TransportError(f"Cannot resolve endpoint {endpoint}: {e}", transient=False)
        return family, address

    def _connect(self, endpoint: str, fwmark: int) -> socket.socket:
        family, address = self._resolve(endpoint)
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if fwmark:
                mark_socket(sock, fwmark)
            sock.connect(address)
        except OSError as e:
            sock.close()
            raise TransportError(f"Cannot reach endpoint {endpoint}: {e}", transient=False)
        except TransportError:
            sock.close()
            raise
        logger.info(f"Transport bound to peer {endpoint} ({address[0]}:{address[1]})")
        return sock

    def _send_sealed(self, plaintext: bytes):
        try:
            datagram = encrypt(plaintext, self.key)
        except CryptoError as e:
            raise TransportError(str(e), transient=False)
        try:
            self.sock.send(datagram)
        except BlockingIOError:
            raise TransportError("Send buffer full")
        except OSError as e:
            raise _error_from_oserror("Send", e)

    def encrypt_and_send(self, packet: bytes, endpoint: str) -> int:
        if endpoint != self.endpoint:
            raise TransportError(f"Transport is bound to {self.endpoint}, not {endpoint}",
                                 transient=False)
        self._send_sealed(packet)
        return len(packet)

    def receive_decrypted(self) -> Optional[bytes]:
        try:
            datagram = self.sock.recv(MAX_PACKET_SIZE + 64)
        except BlockingIOError:
            return None
        except OSError as e:
            # ICMP port unreachable surfaces here on a connected UDP socket
            raise _error_from_oserror("Receive", e)

        try:
            packet = decrypt(datagram, self.key)
        except CryptoError as e:
            raise TransportError(f"Dropping undecryptable datagram: {e}")

        if not packet:
            logger.debug("Keepalive received from peer")
            return None
        return packet

    def fileno(self) -> int:
        return self.sock.fileno()

    def _keepalive_loop(self):
        logger.debug(f"Keepalive every {self.keepalive_interval}s")
        while not self._stop.wait(self.keepalive_interval):
            try:
                self._send_sealed(b"")
            except TransportError as e:
                logger.warning(f"Keepalive failed: {e}")
                if not e.transient:
                    break

    def close(self):
        self._stop.set()
        if self._keepalive_thread and self._keepalive_thread.is_alive():
            self._keepalive_thread.join(timeout=5)
        self.sock.close()


class RawSocketDirectPath(DirectPath):
    """
    Re-emits bypassing packets on a raw IPv4 socket (needs CAP_NET_RAW).

    The socket carries the tunnel fwmark, so the kernel routes the packet by
    the host tables instead of handing it straight back to the TUN.
    """

    def __init__(self, fwmark: int = TUNNEL_FWMARK):
        self.fwmark = fwmark
        self.sock = None

    def _socket(self) -> socket.socket:
        if self.sock is None:
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_RAW)
            except OSError as e:
                raise TransportError(f"Cannot open raw socket: {e}", transient=False)
            try:
                if self.fwmark:
                    mark_socket(sock, self.fwmark)
            except TransportError:
                sock.close()
                raise
            sock.setblocking(False)
            self.sock = sock
        return self.sock

    def send(self, packet: bytes, header: ParsedPacketHeader) -> int:
        sock = self._socket()
        try:
            return sock.sendto(packet, (header.destination, 0))
        except BlockingIOError:
            raise TransportError("Raw socket send buffer full")
        except OSError as e:
            raise _error_from_oserror("Direct send", e)

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

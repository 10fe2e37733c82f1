"""
Shared fixtures: a socketpair standing in for /dev/net/tun and fake
transports, so the data plane can be exercised without root.
"""

import queue
import socket
import time

import pytest

from zerovault_vpn.client.controller import TunnelController
from zerovault_vpn.client.transport import SecureTransport, DirectPath
from zerovault_vpn.common.tunnel import TunnelInterface


SPLIT_CONFIG = """[Interface]
PrivateKey = A
[Peer]
PublicKey = B
Endpoint = 1.2.3.4:51820
AllowedIPs = 10.0.0.0/8"""


class FakeTunDevice:
    """Kernel side of a datagram socketpair; the other end plays the TUN fd."""

    def __init__(self):
        self.kernel_side = None
        self.opened = 0
        self.commands = []

    def opener(self, name):
        ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
        if self.kernel_side is not None:
            self.kernel_side.close()
        ours.settimeout(2)
        self.kernel_side = ours
        self.opened += 1
        return theirs.detach(), name

    def runner(self, argv):
        self.commands.append(list(argv))

    def inject(self, packet: bytes):
        """Simulate the kernel routing an outbound packet into the TUN."""
        self.kernel_side.send(packet)

    def receive(self) -> bytes:
        """Read a packet the client wrote back to the TUN."""
        return self.kernel_side.recv(65535)

    def close(self):
        if self.kernel_side is not None:
            self.kernel_side.close()


class FakeTransport(SecureTransport):
    """Records sends; deliver() queues packets as if decrypted from the peer."""

    def __init__(self, config=None):
        self.config = config
        self._reader, self._writer = socket.socketpair()
        self._inbound = queue.Queue()
        self.sent = []
        self.failure = None
        self.closed = False

    def encrypt_and_send(self, packet, endpoint):
        if self.failure is not None:
            raise self.failure
        self.sent.append((packet, endpoint))
        return len(packet)

    def deliver(self, item):
        self._inbound.put(item)
        self._writer.send(b"\0")

    def receive_decrypted(self):
        self._reader.recv(1)
        item = self._inbound.get_nowait()
        if isinstance(item, Exception):
            raise item
        return item

    def fileno(self):
        return self._reader.fileno()

    def close(self):
        self.closed = True
        self._reader.close()
        self._writer.close()


class FakeDirectPath(DirectPath):

    def __init__(self):
        self.sent = []
        self.failure = None
        self.closed = False

    def send(self, packet, header):
        if self.failure is not None:
            raise self.failure
        self.sent.append((packet, header.destination))
        return len(packet)

    def close(self):
        self.closed = True


class TransportFactory:
    """Hands out a fresh FakeTransport per start, like AeadTransport.from_config."""

    def __init__(self):
        self.created = []
        self.error = None

    def __call__(self, config):
        if self.error is not None:
            raise self.error
        transport = FakeTransport(config)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def split_config_text():
    return SPLIT_CONFIG


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
    return _wait


@pytest.fixture
def tun_device():
    device = FakeTunDevice()
    yield device
    device.close()


@pytest.fixture
def tunnel_interface(tun_device):
    interface = TunnelInterface("tun-test", opener=tun_device.opener, runner=tun_device.runner)
    yield interface
    interface.close()


@pytest.fixture
def transport_factory():
    factory = TransportFactory()
    yield factory
    for transport in factory.created:
        transport.close()


@pytest.fixture
def direct_path():
    return FakeDirectPath()


@pytest.fixture
def controller(tunnel_interface, transport_factory, direct_path):
    ctrl = TunnelController(
        interface=tunnel_interface,
        transport_factory=transport_factory,
        direct_path_factory=lambda: direct_path,
    )
    yield ctrl
    ctrl.stop()

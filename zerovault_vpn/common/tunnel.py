# STATUS: done
"""
TUN interface management for ZeroVault VPN.
Handles creation, configuration, I/O and teardown of the TUN device.
"""

import os
import fcntl
import struct
import logging
import subprocess
import threading
from typing import Callable, List, Optional, Sequence, Tuple

from .config import TunnelConfig, parse_cidr
from .constants import (
    CATCH_ALL_ROUTE,
    MAX_PACKET_SIZE,
    TUN_DEVICE_NAME,
    TUN_FLAGS,
    TUNNEL_FWMARK,
    TUNNEL_ROUTE_TABLE,
    TUNSETIFF,
    VPN_ADDRESS,
    VPN_PREFIX,
)

logger = logging.getLogger(__name__)

Opener = Callable[[str], Tuple[int, str]]
Runner = Callable[[Sequence[str]], None]


class InterfaceError(Exception):
    """Raised when TUN interface operations fail."""
    pass


class AlreadyActive(InterfaceError):
    """Raised when establishing while a previous handle is still open."""
    pass


class EstablishFailed(InterfaceError):
    """Raised when the TUN device cannot be created or configured."""
    pass


def open_tun_device(name: str = TUN_DEVICE_NAME) -> Tuple[int, str]:
    """
    Create and open a TUN interface.

    Returns:
        Tuple[int, str]: (file_descriptor, interface_name)

    Raises:
        EstablishFailed: If TUN creation fails
    """
    fd = None
    try:
        fd = os.open("/dev/net/tun", os.O_RDWR)

        ifr = struct.pack('16sH', name.encode('utf-8'), TUN_FLAGS)
        ifr = fcntl.ioctl(fd, TUNSETIFF, ifr)

        # The kernel may have picked a different name (e.g. "tun%d")
        ifname = ifr[:16].decode('utf-8').rstrip('\x00')

        flags = fcntl.fcntl(fd, fcntl.F_GETFL)
        fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        return fd, ifname

    except OSError as e:
        if fd is not None:
            os.close(fd)
        raise EstablishFailed(f"Failed to create TUN interface: {e}")


def run_command(argv: Sequence[str]) -> None:
    """Run a network configuration command, raising on failure."""
    logger.debug(f"Running: {' '.join(argv)}")
    subprocess.run(list(argv), check=True, capture_output=True)


def log_command(argv: Sequence[str]) -> None:
    """Runner that only logs, for setups where the operator configures the link."""
    logger.info(f"Not running (configuration disabled): {' '.join(argv)}")


def plan_routes(config: TunnelConfig) -> List[str]:
    """
    Derive the routes to install for a config.

    A single catch-all route when 0.0.0.0/0 is allowed, otherwise one route
    per well-formed CIDR entry. Malformed entries are skipped with a warning.
    """
    if config.routes_everything:
        return [CATCH_ALL_ROUTE]

    routes = []
    for entry in config.allowed_ips:
        network = parse_cidr(entry)
        if network is None:
            logger.warning(f"Skipping malformed AllowedIPs entry {entry!r}")
            continue
        route = str(network)
        if route not in routes:
            routes.append(route)
    return routes


def plan_commands(ifname: str, config: TunnelConfig) -> List[List[str]]:
    """
    Build the ip/resolvectl commands that configure an interface.

    Routes go into TUNNEL_ROUTE_TABLE, selected by a rule for every socket not
    carrying TUNNEL_FWMARK. The main table, and with it the host's default
    route, is never modified. The address is added without its prefix route
    so the tunnel subnet is only routed into the device when allowed.
    """
    table = str(TUNNEL_ROUTE_TABLE)
    commands = [
        ["ip", "link", "set", "dev", ifname, "mtu", str(config.mtu)],
        ["ip", "addr", "add", f"{VPN_ADDRESS}/{VPN_PREFIX}", "dev", ifname, "noprefixroute"],
        ["ip", "link", "set", "dev", ifname, "up"],
    ]
    for route in plan_routes(config):
        commands.append(["ip", "route", "replace", route, "dev", ifname, "table", table])
    commands.append(["ip", "rule", "add", "not", "fwmark", str(TUNNEL_FWMARK), "table", table])
    if config.dns:
        commands.append(["resolvectl", "dns", ifname, *config.dns])
    return commands


def plan_teardown() -> List[List[str]]:
    """
    Commands undoing what the device's removal does not.

    Routes and DNS settings disappear with the link; the policy rule does not.
    """
    table = str(TUNNEL_ROUTE_TABLE)
    return [["ip", "rule", "del", "not", "fwmark", str(TUNNEL_FWMARK), "table", table]]


class InterfaceHandle:
    """
    An open TUN device. Owned by exactly one TunnelInterface.

    close() is idempotent and never raises.
    """

    def __init__(self, fd: int, name: str, mtu: int):
        self.name = name
        self.mtu = mtu
        self._fd = fd
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._fd is None

    def fileno(self) -> int:
        fd = self._fd
        if fd is None:
            raise InterfaceError(f"Interface {self.name} is closed")
        return fd

    def open_stream(self) -> "PacketStream":
        """
        Acquire the read/write stream used by the packet loop.

        Raises:
            InterfaceError: If the handle has already been closed
        """
        return PacketStream(self, self.fileno())

    def close(self):
        with self._lock:
            fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError as e:
            logger.warning(f"Error closing {self.name}: {e}")

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"fd={self._fd}"
        return f"<InterfaceHandle {self.name} {state}>"


class PacketStream:
    """Packet-at-a-time view of an InterfaceHandle for the processing loop."""

    def __init__(self, handle: InterfaceHandle, fd: int):
        self.handle = handle
        self._fd = fd
        self.closed = False

    def fileno(self) -> int:
        return self._fd

    def _check(self):
        if self.closed or self.handle.closed:
            raise InterfaceError(f"Stream for {self.handle.name} is closed")

    def read_packet(self, max_size: int = MAX_PACKET_SIZE) -> Optional[bytes]:
        """
        Read one packet.

        Returns:
            bytes: The packet data, or None if nothing was available

        Raises:
            InterfaceError: If the device can no longer be read
        """
        self._check()
        try:
            data = os.read(self._fd, max_size)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            raise InterfaceError(f"Failed to read from TUN: {e}")
        return data or None

    def write_packet(self, packet: bytes) -> int:
        """
        Write one packet.

        Returns:
            int: Bytes written

        Raises:
            InterfaceError: If the write fails
        """
        self._check()
        try:
            return os.write(self._fd, packet)
        except OSError as e:
            raise InterfaceError(f"Failed to write to TUN: {e}")

    def close(self):
        self.closed = True


class TunnelInterface:
    """Owns the lifecycle of one TUN device: establish, hand out, tear down."""

    def __init__(self, name: str = TUN_DEVICE_NAME,
                 opener: Opener = open_tun_device,
                 runner: Runner = run_command):
        self.name = name
        self._opener = opener
        self._runner = runner
        self._handle: Optional[InterfaceHandle] = None
        self._rule_installed = False
        self._lock = threading.Lock()

    @property
    def handle(self) -> Optional[InterfaceHandle]:
        return self._handle

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._handle.closed

    def establish(self, config: TunnelConfig) -> InterfaceHandle:
        """
        Create the device and apply address, MTU, routes and DNS.

        Either everything is applied or the device is closed again.

        Raises:
            AlreadyActive: If a handle from this interface is still open
            EstablishFailed: If any step fails
        """
        with self._lock:
            if self.active:
                raise AlreadyActive(f"Interface {self._handle.name} is already active")
            if self._handle is not None:
                # closed underneath us; its rule is still installed
                remove_rule, self._rule_installed = self._rule_installed, False
                self._release(self._handle, remove_rule)
                self._handle = None

            try:
                fd, ifname = self._opener(self.name)
            except OSError as e:
                raise EstablishFailed(f"Failed to create TUN interface: {e}")
            handle = InterfaceHandle(fd, ifname, config.mtu)

            rule_added = False
            try:
                for argv in plan_commands(ifname, config):
                    self._runner(argv)
                    rule_added = rule_added or argv[:3] == ["ip", "rule", "add"]
            except (subprocess.CalledProcessError, OSError) as e:
                self._release(handle, rule_added)
                detail = e.stderr.decode(errors="ignore").strip() if getattr(e, "stderr", None) else e
                raise EstablishFailed(f"Failed to configure {ifname}: {detail}")
            except Exception:
                self._release(handle, rule_added)
                raise

            self._handle = handle
            self._rule_installed = rule_added

        logger.info(f"TUN interface {ifname} up with {VPN_ADDRESS}/{VPN_PREFIX}, mtu {config.mtu}")
        return handle

    def _release(self, handle: InterfaceHandle, remove_rule: bool):
        handle.close()
        if not remove_rule:
            return
        for argv in plan_teardown():
            try:
                self._runner(argv)
            except (subprocess.CalledProcessError, OSError) as e:
                logger.warning(f"Failed to remove routing rule for {handle.name}: {e}")

    def close(self, handle: Optional[InterfaceHandle] = None):
        """
        Release the device and remove its routing rule.

        Safe to call on an already closed handle. Cleanup failures are logged,
        never raised.
        """
        with self._lock:
            handle = handle or self._handle
            if handle is None:
                return
            was_open = not handle.closed
            remove_rule = False
            if handle is self._handle:
                self._handle = None
                remove_rule, self._rule_installed = self._rule_installed, False
            self._release(handle, remove_rule)
        if was_open:
            logger.info(f"TUN interface {handle.name} closed")

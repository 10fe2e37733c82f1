# STATUS: done
"""
The packet processing loop: TUN -> classify -> tunnel or direct, and
tunnel -> TUN for decrypted responses.
"""

import os
import select
import logging
import threading
from typing import Optional

from ..common.config import TunnelConfig
from ..common.constants import LOOP_THREAD_NAME
from ..common.packet import parse_header, PacketError, ParsedPacketHeader
from ..common.routing import classify, Route
from ..common.stats import TunnelSession
from ..common.tunnel import InterfaceHandle, InterfaceError, PacketStream
from .transport import SecureTransport, DirectPath, TransportError

logger = logging.getLogger(__name__)


class PacketProcessingLoop:
    """
    Long-running worker bound to one InterfaceHandle.

    The worker blocks in select() on the TUN descriptor, the transport socket
    and a wake pipe. cancel() writes to the wake pipe, so a blocked worker
    returns immediately instead of waiting for the next packet.
    """

    def __init__(self, handle: InterfaceHandle, config: TunnelConfig,
                 transport: SecureTransport, direct_path: DirectPath,
                 session: TunnelSession):
        self.handle = handle
        self.config = config
        self.transport = transport
        self.direct_path = direct_path
        self.session = session
        self.error: Optional[Exception] = None

        self._cancelled = threading.Event()
        self._wake_lock = threading.Lock()
        self._wake_r, self._wake_w = os.pipe()
        self._wake_closed = False
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Run the loop on a dedicated thread."""
        self._thread = threading.Thread(target=self.run, name=LOOP_THREAD_NAME, daemon=True)
        try:
            self._thread.start()
        except RuntimeError:
            self._thread = None
            self._close_wake_pipe()
            raise

    def cancel(self):
        """Ask the loop to stop; returns without waiting."""
        self._cancelled.set()
        with self._wake_lock:
            if not self._wake_closed:
                os.write(self._wake_w, b"\0")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker to exit. Returns True once it has."""
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.running

    def _close_wake_pipe(self):
        with self._wake_lock:
            if self._wake_closed:
                return
            self._wake_closed = True
            os.close(self._wake_r)
            os.close(self._wake_w)

    def run(self):
        """Loop body. Always releases its stream and wake pipe on exit."""
        logger.info("Starting packet processing loop")
        stream = None
        try:
            stream = self.handle.open_stream()
            self._serve(stream)
        except InterfaceError as e:
            if not self._cancelled.is_set():
                logger.error(f"Packet loop terminated: {e}")
                self.error = e
        finally:
            if stream is not None:
                stream.close()
            self._close_wake_pipe()
            logger.info("Packet processing loop stopped")

    def _serve(self, stream: PacketStream):
        tun_fd = stream.fileno()
        transport_fd = self.transport.fileno()
        watched = [tun_fd, transport_fd, self._wake_r]

        while not self._cancelled.is_set():
            try:
                readable, _, _ = select.select(watched, [], [])
            except (OSError, ValueError) as e:
                raise InterfaceError(f"Wait on tunnel descriptors failed: {e}")

            if self._wake_r in readable or self._cancelled.is_set():
                break
            if self.handle.closed:
                raise InterfaceError(f"Interface {self.handle.name} was closed under the packet loop")
            if tun_fd in readable:
                self._handle_outbound(stream)
            if transport_fd in readable:
                self._handle_inbound(stream)

    def _handle_outbound(self, stream: PacketStream):
        packet = stream.read_packet()
        if packet is None:
            return

        try:
            header = parse_header(packet)
        except PacketError as e:
            self.session.record_drop(e.reason)
            logger.debug(f"Dropping {len(packet)} byte packet: {e}")
            return

        if classify(header, self.config) is Route.TUNNEL:
            self._send_tunnel(packet, header)
        else:
            self._send_direct(packet, header)

    def _send_tunnel(self, packet: bytes, header: ParsedPacketHeader):
        try:
            self.transport.encrypt_and_send(packet, self.config.endpoint)
        except TransportError as e:
            self.session.record_drop("transport")
            self.session.record_transport_error(str(e), persistent=not e.transient)
            logger.warning(f"Tunnel send to {header.destination} failed, packet dropped: {e}")
            return

        self.session.record_packet_out(len(packet))
        logger.debug(f"Tunnelled {len(packet)} bytes {header.source} -> {header.destination}")

    def _send_direct(self, packet: bytes, header: ParsedPacketHeader):
        try:
            sent = self.direct_path.send(packet, header)
        except TransportError as e:
            self.session.record_drop("direct")
            self.session.record_transport_error(str(e), persistent=not e.transient)
            logger.warning(f"Direct send to {header.destination} failed, packet dropped: {e}")
            return

        self.session.record_direct(sent)
        logger.debug(f"Sent {sent} bytes direct {header.source} -> {header.destination}")

    def _handle_inbound(self, stream: PacketStream):
        try:
            packet = self.transport.receive_decrypted()
        except TransportError as e:
            self.session.record_transport_error(str(e), persistent=not e.transient)
            logger.warning(f"Tunnel receive failed: {e}")
            return

        if packet is None:
            return

        try:
            written = stream.write_packet(packet)
        except InterfaceError as e:
            self.session.record_drop("write_failure")
            logger.warning(f"Dropping {len(packet)} byte response: {e}")
            return

        if written != len(packet):
            self.session.record_drop("short_write")
            logger.warning(f"Short write to TUN: {written} of {len(packet)} bytes")
            return

        self.session.record_packet_in(written)
        logger.debug(f"Wrote {written} decrypted bytes to TUN")

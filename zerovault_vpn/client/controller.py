# STATUS: done
"""
Top-level tunnel orchestration: parse config, bring the interface up, run the
packet loop, and tear everything down again.
"""

import time
import logging
import threading
import dataclasses
from typing import Callable, NamedTuple, Optional

from ..common.config import parse_config, ConfigError, TunnelConfig
from ..common.stats import TunnelSession, TunnelStatus
from ..common.tunnel import TunnelInterface, InterfaceError, InterfaceHandle
from .loop import PacketProcessingLoop
from .transport import (
    AeadTransport,
    DirectPath,
    RawSocketDirectPath,
    SecureTransport,
    TransportError,
)

logger = logging.getLogger(__name__)

START_ERRORS = (ConfigError, InterfaceError, TransportError)


class StartResult(NamedTuple):
    ok: bool
    reason: str


class TunnelController:
    """
    Owns one tunnel: its config, interface, transport, packet loop and session.

    start/stop/status may be called from any thread while the loop runs.
    """

    def __init__(self, interface: Optional[TunnelInterface] = None,
                 transport_factory: Callable[[TunnelConfig], SecureTransport] = AeadTransport.from_config,
                 direct_path_factory: Callable[[], DirectPath] = RawSocketDirectPath,
                 clock=time.time):
        self.interface = interface or TunnelInterface()
        self.session = TunnelSession(clock)
        self.config: Optional[TunnelConfig] = None

        self._transport_factory = transport_factory
        self._direct_path_factory = direct_path_factory
        self._handle: Optional[InterfaceHandle] = None
        self._transport: Optional[SecureTransport] = None
        self._direct_path: Optional[DirectPath] = None
        self._loop: Optional[PacketProcessingLoop] = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self.session.connected and self._loop_alive()

    def _loop_alive(self) -> bool:
        loop = self._loop
        return loop is not None and loop.running

    def start(self, config_text: str) -> bool:
        """
        Bring the tunnel up.

        Returns:
            bool: True if a session was started, False if one was already running

        Raises:
            ConfigError: If the configuration is unusable
            InterfaceError: If the TUN interface cannot be established
            TransportError: If the secure transport cannot be created
        """
        with self._lock:
            if self.session.connected:
                if self._loop_alive():
                    logger.warning("VPN already connected, ignoring start")
                    return False
                error = self._loop.error if self._loop is not None else None
                logger.warning(f"Packet loop has died ({error}), restarting the tunnel")
                self._teardown()

            logger.info("Starting VPN with config")
            try:
                config = parse_config(config_text)
                logger.debug(f"Parsed config: {config.safe_dict()}")

                self._handle = self.interface.establish(config)
                self.session.begin()

                self._transport = self._transport_factory(config)
                self._direct_path = self._direct_path_factory()

                self._loop = PacketProcessingLoop(
                    self._handle, config, self._transport, self._direct_path, self.session
                )
                self._loop.start()
            except Exception as e:
                logger.error(f"Failed to start VPN: {e}")
                self._teardown()
                raise

            self.config = config
            self.session.mark_connected()

        logger.info(f"VPN connected to {config.endpoint}")
        return True

    def stop(self):
        """Tear the tunnel down. Safe to call when not connected."""
        with self._lock:
            if self._handle is None and not self.session.connected:
                logger.debug("VPN not connected, nothing to stop")
                return

            logger.info("Stopping VPN")
            logger.info(f"Final stats: {self.session}")
            self._teardown()

        logger.info("VPN stopped")

    def _teardown(self):
        # The loop must be gone before its handle is closed underneath it.
        if self._loop is not None:
            self._loop.cancel()
            self._loop.join()
            self._loop = None

        if self._transport is not None:
            self._transport.close()
            self._transport = None

        if self._direct_path is not None:
            self._direct_path.close()
            self._direct_path = None

        if self._handle is not None:
            self.interface.close(self._handle)
            self._handle = None

        self.config = None
        self.session.reset()

    def status(self) -> TunnelStatus:
        """Best-known state of the session, safe to call at any time."""
        status = self.session.snapshot()
        loop = self._loop
        if loop is None:
            return status
        if loop.error is not None and status.last_error is None:
            status = dataclasses.replace(status, last_error=str(loop.error))
        if status.connected and not loop.running:
            # the data plane is gone even though stop() was never called
            status = dataclasses.replace(status, connected=False, session_duration=0)
        return status

    # Entry points for the hosting shell

    def connect(self, config_text: str) -> StartResult:
        try:
            started = self.start(config_text)
        except START_ERRORS as e:
            return StartResult(False, f"{type(e).__name__}: {e}")
        return StartResult(True, "connected" if started else "already connected")

    def disconnect(self):
        self.stop()

    def get_status(self) -> dict:
        return self.status().as_dict()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

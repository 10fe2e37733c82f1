# STATUS: done
"""
ZeroVault VPN Client
Command line shell around TunnelController: reads a tunnel config file,
keeps the tunnel up until interrupted and logs statistics periodically.
"""

import sys
import signal
import argparse
import logging
import threading

from ..common.config import read_config_file
from ..common.constants import TUN_DEVICE_NAME
from ..common.tunnel import TunnelInterface, log_command, run_command
from ..common.utils import setup_logging
from .controller import TunnelController, START_ERRORS

logger = logging.getLogger(__name__)


class VPNClient:
    """Runs one tunnel in the foreground."""

    def __init__(self, config_path: str, interface_name: str = TUN_DEVICE_NAME,
                 configure_link: bool = True, stats_interval: float = 10):
        self.config_path = config_path
        self.stats_interval = stats_interval
        self.controller = TunnelController(
            interface=TunnelInterface(
                interface_name,
                runner=run_command if configure_link else log_command,
            )
        )
        self._shutdown = threading.Event()

    def start(self):
        """Start the tunnel and block until a shutdown signal arrives."""
        logger.info("Starting ZeroVault VPN Client")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            self.controller.start(read_config_file(self.config_path))

            # Main loop - periodically print stats
            while not self._shutdown.wait(self.stats_interval):
                status = self.controller.status()
                if not status.connected:
                    logger.error(f"Tunnel lost: {status.last_error}")
                    break
                logger.info(str(self.controller.session))
                if status.last_error:
                    logger.warning(f"Tunnel degraded: {status.last_error}")
        finally:
            self.stop()

    def stop(self):
        """Stop the tunnel."""
        self._shutdown.set()
        self.controller.stop()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown.set()


def main(argv=None):
    """Main entry point for the VPN client."""
    parser = argparse.ArgumentParser(description='ZeroVault VPN Client')
    parser.add_argument('--config', '-c', required=True,
                        help='Path to WireGuard-style tunnel configuration file')
    parser.add_argument('--log-level', '-l', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    parser.add_argument('--interface', '-i', default=TUN_DEVICE_NAME,
                        help='TUN interface name')
    parser.add_argument('--no-configure', action='store_true',
                        help='Create the TUN device but only log the address/route/DNS commands')
    parser.add_argument('--stats-interval', type=float, default=10,
                        help='Seconds between statistics log lines')

    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    client = VPNClient(
        args.config,
        interface_name=args.interface,
        configure_link=not args.no_configure,
        stats_interval=args.stats_interval,
    )
    try:
        client.start()
    except START_ERRORS as e:
        logger.error(f"Client failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

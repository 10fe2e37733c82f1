# STATUS: done
"""
Utility functions for ZeroVault VPN.
"""

import logging
from typing import Tuple


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Set up logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        logging.Logger: Configured package logger
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    return logging.getLogger('zerovault_vpn')


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    """
    Split a peer endpoint into host and port.

    Args:
        endpoint: "host:port", or "[v6addr]:port" for IPv6 literals

    Returns:
        tuple[str, int]: (host, port)

    Raises:
        ValueError: If the endpoint has no usable port
    """
    endpoint = endpoint.strip()
    if endpoint.startswith('['):
        host, sep, port = endpoint[1:].partition(']:')
    else:
        host, sep, port = endpoint.rpartition(':')

    if not sep or not host:
        raise ValueError(f"Endpoint must be host:port, got {endpoint!r}")

    port_number = int(port)
    if not 0 < port_number < 65536:
        raise ValueError(f"Endpoint port out of range: {port_number}")

    return host, port_number


def format_bytes(num_bytes: int) -> str:
    """
    Format bytes in human readable format.

    Args:
        num_bytes: Number of bytes

    Returns:
        str: Formatted string (e.g., "1.23 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB']:
        if num_bytes < 1024.0:
            return f"{num_bytes:.2f} {unit}"
        num_bytes /= 1024.0
    return f"{num_bytes:.2f} TB"

# STATUS: done
"""
Split-tunnel routing decisions.
"""

import enum
import ipaddress

from .config import TunnelConfig
from .packet import ParsedPacketHeader


class Route(enum.Enum):
    TUNNEL = "tunnel"
    DIRECT = "direct"


def classify(header: ParsedPacketHeader, config: TunnelConfig) -> Route:
    """
    Decide whether a packet goes through the tunnel or bypasses it.

    With the 0.0.0.0/0 catch-all every packet is tunnelled. Otherwise a
    packet is tunnelled iff its destination lies in one of the allowed
    ranges; malformed ranges never match.
    """
    if config.routes_everything:
        return Route.TUNNEL

    destination = ipaddress.IPv4Address(header.destination)
    for network in config.networks():
        if destination in network:
            return Route.TUNNEL
    return Route.DIRECT

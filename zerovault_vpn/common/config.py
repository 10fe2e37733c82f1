# STATUS: done
"""
Tunnel configuration parsing for ZeroVault VPN.

Reads the WireGuard-style INI text::

    [Interface]
    PrivateKey = ...
    Address = 10.8.0.2/24
    DNS = 1.1.1.1, 1.0.0.1
    MTU = 1420

    [Peer]
    PublicKey = ...
    Endpoint = vpn.example.com:51820
    AllowedIPs = 10.0.0.0/8, 192.168.0.0/16
    PersistentKeepalive = 25

Individual malformed values never abort parsing; they fall back to the
documented defaults. Only missing identity fields (PrivateKey, PublicKey,
Endpoint) are an error.
"""

import re
import ipaddress
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from .constants import (
    CATCH_ALL_ROUTE,
    DEFAULT_ALLOWED_IPS,
    DEFAULT_DNS_SERVERS,
    DEFAULT_MTU,
    DEFAULT_PERSISTENT_KEEPALIVE,
)

logger = logging.getLogger(__name__)

INTERFACE_SECTION = "interface"
PEER_SECTION = "peer"

REQUIRED_FIELDS = (
    (INTERFACE_SECTION, "privatekey", "PrivateKey"),
    (PEER_SECTION, "publickey", "PublicKey"),
    (PEER_SECTION, "endpoint", "Endpoint"),
)


class ConfigError(Exception):
    """Raised when a tunnel configuration cannot be used."""
    pass


class MissingRequiredField(ConfigError):
    """Raised when PrivateKey, PublicKey or Endpoint is absent or empty."""

    def __init__(self, field_name: str):
        super().__init__(f"Missing required config field: {field_name}")
        self.field_name = field_name


@dataclass(frozen=True)
class TunnelConfig:
    """Validated tunnel descriptor. Immutable once parsed."""

    private_key: str
    public_key: str
    endpoint: str
    allowed_ips: Tuple[str, ...] = DEFAULT_ALLOWED_IPS
    dns: Tuple[str, ...] = DEFAULT_DNS_SERVERS
    mtu: int = DEFAULT_MTU
    persistent_keepalive: int = DEFAULT_PERSISTENT_KEEPALIVE
    address: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def routes_everything(self) -> bool:
        """True when AllowedIPs holds the 0.0.0.0/0 catch-all."""
        return CATCH_ALL_ROUTE in self.allowed_ips

    def networks(self) -> Tuple[ipaddress.IPv4Network, ...]:
        """Well-formed IPv4 allowed ranges, in configured order."""
        return _parse_networks(self.allowed_ips)

    def safe_dict(self) -> Dict[str, object]:
        """Config as a dict with key material elided, for logging."""
        return {
            "private_key": "<redacted>" if self.private_key else "",
            "public_key": self.public_key,
            "endpoint": self.endpoint,
            "allowed_ips": list(self.allowed_ips),
            "dns": list(self.dns),
            "mtu": self.mtu,
            "persistent_keepalive": self.persistent_keepalive,
            "address": list(self.address),
        }


@lru_cache(maxsize=64)
def _parse_networks(allowed_ips: Tuple[str, ...]) -> Tuple[ipaddress.IPv4Network, ...]:
    networks = []
    for entry in allowed_ips:
        network = parse_cidr(entry)
        if network is not None:
            networks.append(network)
    return tuple(networks)


def parse_cidr(entry: str) -> Optional[ipaddress.IPv4Network]:
    """
    Parse an IPv4 CIDR entry.

    Args:
        entry: e.g. "10.0.0.0/8"; host bits are tolerated ("10.1.2.3/8")

    Returns:
        IPv4Network, or None if the entry is not a well-formed IPv4 range
    """
    if "/" not in entry:
        return None
    try:
        network = ipaddress.ip_network(entry.strip(), strict=False)
    except ValueError:
        return None
    if network.version != 4:
        return None
    return network


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(value: str, default: int, minimum: int, key: str) -> int:
    try:
        number = int(value)
    except ValueError:
        logger.warning(f"Invalid {key} value {value!r}, using default {default}")
        return default
    if number < minimum:
        logger.warning(f"{key} must be >= {minimum}, got {number}; using default {default}")
        return default
    return number


def _parse_dns(value: str) -> Tuple[str, ...]:
    servers = []
    for entry in _split_list(value):
        try:
            ipaddress.ip_address(entry)
        except ValueError:
            logger.warning(f"Ignoring malformed DNS server {entry!r}")
            continue
        servers.append(entry)
    if not servers:
        logger.warning(f"No usable DNS servers in {value!r}, using defaults")
        return DEFAULT_DNS_SERVERS
    return tuple(servers)


def _parse_address(value: str) -> Tuple[str, ...]:
    addresses = []
    for entry in _split_list(value):
        try:
            ipaddress.ip_interface(entry)
        except ValueError:
            logger.warning(f"Ignoring malformed Address {entry!r}")
            continue
        addresses.append(entry)
    return tuple(addresses)


INLINE_COMMENT = re.compile(r"(?:^|\s)#")


def _read_sections(text: str) -> Dict[str, Dict[str, str]]:
    """
    Split config text into {section: {lowercased key: raw value}}.

    A repeated section header starts a fresh block which replaces the
    earlier block of the same name. An inline comment starts at a "#"
    preceded by whitespace, so values containing "#" are kept intact.
    """
    sections: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("[") and line.endswith("]"):
            name = line[1:-1].strip().lower()
            if name in (INTERFACE_SECTION, PEER_SECTION):
                if name in sections:
                    logger.warning(f"Duplicate [{line[1:-1].strip()}] section on line {lineno}, "
                                   f"replacing the earlier one")
                current = sections[name] = {}
            else:
                logger.debug(f"Ignoring unknown section {line} on line {lineno}")
                current = None
            continue

        if current is None:
            logger.debug(f"Ignoring line {lineno} outside any section")
            continue

        if "=" not in line:
            logger.debug(f"Ignoring malformed line {lineno}: {line!r}")
            continue

        key, value = line.split("=", 1)
        value = INLINE_COMMENT.split(value.strip(), 1)[0].strip()
        current[key.strip().lower()] = value

    return sections


def parse_config(text: str) -> TunnelConfig:
    """
    Parse tunnel configuration text.

    Args:
        text: INI-like configuration with [Interface] and [Peer] sections

    Returns:
        TunnelConfig: Parsed config with defaults for omitted fields

    Raises:
        MissingRequiredField: If PrivateKey, PublicKey or Endpoint is empty
    """
    sections = _read_sections(text)
    interface = sections.get(INTERFACE_SECTION, {})
    peer = sections.get(PEER_SECTION, {})

    for section, key, display_name in REQUIRED_FIELDS:
        if not sections.get(section, {}).get(key):
            raise MissingRequiredField(display_name)

    allowed_ips = DEFAULT_ALLOWED_IPS
    if "allowedips" in peer:
        allowed_ips = tuple(_split_list(peer["allowedips"])) or DEFAULT_ALLOWED_IPS

    dns = DEFAULT_DNS_SERVERS
    if "dns" in interface:
        dns = _parse_dns(interface["dns"])

    mtu = DEFAULT_MTU
    if "mtu" in interface:
        mtu = _parse_int(interface["mtu"], DEFAULT_MTU, 1, "MTU")

    keepalive = DEFAULT_PERSISTENT_KEEPALIVE
    if "persistentkeepalive" in peer:
        keepalive = _parse_int(peer["persistentkeepalive"], DEFAULT_PERSISTENT_KEEPALIVE,
                               0, "PersistentKeepalive")

    return TunnelConfig(
        private_key=interface["privatekey"],
        public_key=peer["publickey"],
        endpoint=peer["endpoint"],
        allowed_ips=allowed_ips,
        dns=dns,
        mtu=mtu,
        persistent_keepalive=keepalive,
        address=_parse_address(interface.get("address", "")),
    )


def read_config_file(config_path: str) -> str:
    """
    Read tunnel configuration text from a file.

    Raises:
        ConfigError: If the file cannot be read
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            return f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}")


def load_config_file(config_path: str) -> TunnelConfig:
    """
    Load and parse a tunnel configuration file.

    Raises:
        ConfigError: If the file cannot be read or required fields are missing
    """
    return parse_config(read_config_file(config_path))

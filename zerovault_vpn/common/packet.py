# STATUS: done
"""
IPv4 header parsing for packets read from the TUN interface.
"""

import socket
import struct
from dataclasses import dataclass

from .constants import MIN_IPV4_HEADER_SIZE


class PacketError(Exception):
    """Raised when a packet cannot be handled by the data plane."""

    reason = "invalid"


class ParseFailure(PacketError):
    """Packet is too short or its header is inconsistent."""

    reason = "parse_failure"


class UnsupportedVersion(PacketError):
    """Packet is not IPv4."""

    reason = "unsupported_version"


@dataclass(frozen=True)
class ParsedPacketHeader:
    version: int
    header_length: int
    total_length: int
    protocol: int
    source: str
    destination: str


def parse_header(packet: bytes) -> ParsedPacketHeader:
    """
    Parse the IPv4 header of a raw packet.

    Args:
        packet: Raw IP packet as read from the TUN device

    Returns:
        ParsedPacketHeader: The decoded header fields

    Raises:
        ParseFailure: If fewer than 20 bytes or the IHL is out of range
        UnsupportedVersion: If the version nibble is not 4
    """
    if len(packet) < MIN_IPV4_HEADER_SIZE:
        raise ParseFailure(f"Packet too short: {len(packet)} bytes")

    version_ihl, _tos, total_length = struct.unpack('!BBH', packet[:4])
    version = version_ihl >> 4
    if version != 4:
        raise UnsupportedVersion(f"IP version {version} not supported")

    header_length = (version_ihl & 0x0F) * 4
    if header_length < MIN_IPV4_HEADER_SIZE or header_length > len(packet):
        raise ParseFailure(f"Bad header length {header_length} for {len(packet)} byte packet")

    return ParsedPacketHeader(
        version=version,
        header_length=header_length,
        total_length=total_length,
        protocol=packet[9],
        source=socket.inet_ntoa(packet[12:16]),
        destination=socket.inet_ntoa(packet[16:20]),
    )


def build_ipv4_packet(source: str, destination: str, payload: bytes = b"",
                      protocol: int = socket.IPPROTO_UDP, ttl: int = 64) -> bytes:
    """
    Build a minimal IPv4 packet (no options, checksum filled in).
    """
    total_length = MIN_IPV4_HEADER_SIZE + len(payload)
    header = struct.pack(
        '!BBHHHBBH4s4s',
        (4 << 4) | 5, 0, total_length, 0, 0, ttl, protocol, 0,
        socket.inet_aton(source), socket.inet_aton(destination),
    )
    checksum = ipv4_checksum(header)
    return header[:10] + struct.pack('!H', checksum) + header[12:] + payload


def ipv4_checksum(header: bytes) -> int:
    """Internet checksum (RFC 1071) over an IPv4 header."""
    if len(header) % 2:
        header += b"\x00"
    total = sum(struct.unpack(f'!{len(header) // 2}H', header))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF

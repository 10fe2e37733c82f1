# STATUS: done
"""
Constants used throughout the ZeroVault VPN client.
"""

# Network configuration
DEFAULT_MTU = 1500
TUN_DEVICE_NAME = "tun0"
VPN_ADDRESS = "10.8.0.2"
VPN_PREFIX = 24
CATCH_ALL_ROUTE = "0.0.0.0/0"

# Policy routing: tunnel routes live in their own table, and sockets carrying
# the mark (the transport and the direct path) bypass it via the main table
TUNNEL_ROUTE_TABLE = 51820
TUNNEL_FWMARK = 51820
SO_MARK = 36  # from <asm-generic/socket.h>

# Tunnel configuration defaults
DEFAULT_ALLOWED_IPS = (CATCH_ALL_ROUTE,)
DEFAULT_DNS_SERVERS = ("1.1.1.1", "1.0.0.1")
DEFAULT_PERSISTENT_KEEPALIVE = 25  # seconds, 0 disables

# Packet handling
MAX_PACKET_SIZE = 32767
MIN_IPV4_HEADER_SIZE = 20

# Crypto configuration
X25519_KEY_SIZE = 32
AES_KEY_SIZE = 32  # 256 bits
AES_NONCE_SIZE = 12  # 96 bits for GCM
HKDF_INFO = b"zerovault-vpn transport v1"

# Thread names
LOOP_THREAD_NAME = "TUN<->Tunnel"
KEEPALIVE_THREAD_NAME = "Keepalive"

# TUN interface flags
TUNSETIFF = 0x400454ca
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000
TUN_FLAGS = IFF_TUN | IFF_NO_PI

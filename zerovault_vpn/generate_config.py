#!/usr/bin/env python3
# STATUS: done
"""
ZeroVault VPN - Configuration Generator
Generates a client tunnel configuration and the matching peer keypair.
"""

import os
import argparse
from typing import Dict, Sequence

from .common.constants import (
    DEFAULT_ALLOWED_IPS,
    DEFAULT_DNS_SERVERS,
    DEFAULT_MTU,
    DEFAULT_PERSISTENT_KEEPALIVE,
    VPN_ADDRESS,
    VPN_PREFIX,
)
from .common.crypto import generate_keypair


def render_config(private_key: str, peer_public_key: str, endpoint: str,
                  allowed_ips: Sequence[str] = DEFAULT_ALLOWED_IPS,
                  dns: Sequence[str] = DEFAULT_DNS_SERVERS,
                  mtu: int = DEFAULT_MTU,
                  keepalive: int = DEFAULT_PERSISTENT_KEEPALIVE) -> str:
    """Render a tunnel configuration in the [Interface]/[Peer] text format."""
    return "\n".join([
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {VPN_ADDRESS}/{VPN_PREFIX}",
        f"DNS = {', '.join(dns)}",
        f"MTU = {mtu}",
        "",
        "[Peer]",
        f"PublicKey = {peer_public_key}",
        f"Endpoint = {endpoint}",
        f"AllowedIPs = {', '.join(allowed_ips)}",
        f"PersistentKeepalive = {keepalive}",
        "",
    ])


def generate_client_config(endpoint: str, allowed_ips: Sequence[str] = DEFAULT_ALLOWED_IPS) -> Dict[str, str]:
    """
    Generate fresh keypairs for both ends and the client config text.

    Returns:
        Dict[str, str]: config text plus the keys the peer needs
    """
    client_private, client_public = generate_keypair()
    peer_private, peer_public = generate_keypair()

    return {
        "config": render_config(client_private, peer_public, endpoint, allowed_ips),
        "client_public_key": client_public,
        "peer_private_key": peer_private,
        "peer_public_key": peer_public,
    }


def main(argv=None):
    """Generate configuration files for ZeroVault VPN."""
    parser = argparse.ArgumentParser(description='Generate ZeroVault VPN configuration files')
    parser.add_argument('--output-dir', '-o', default='config',
                        help='Output directory for config files')
    parser.add_argument('--endpoint', default='192.168.100.1:51820',
                        help='Peer endpoint (host:port) for the client config')
    parser.add_argument('--allowed-ips', default=','.join(DEFAULT_ALLOWED_IPS),
                        help='Comma separated CIDR ranges routed through the tunnel')

    args = parser.parse_args(argv)

    os.makedirs(args.output_dir, exist_ok=True)

    allowed_ips = [ip.strip() for ip in args.allowed_ips.split(',') if ip.strip()]
    generated = generate_client_config(args.endpoint, allowed_ips)

    client_config_path = os.path.join(args.output_dir, 'client.conf')
    with open(client_config_path, 'w', encoding='utf-8') as f:
        f.write(generated["config"])
    os.chmod(client_config_path, 0o600)

    print("ZeroVault VPN configuration generated:")
    print(f"  Client config: {client_config_path}")
    print(f"  Client public key (add to peer): {generated['client_public_key']}")
    print(f"  Peer private key: {generated['peer_private_key']}")
    print("")
    print("Next steps:")
    print(f"1. Configure the peer at {args.endpoint} with the keys above")
    print(f"2. Start client: sudo zerovault-client --config {client_config_path}")


if __name__ == '__main__':
    main()

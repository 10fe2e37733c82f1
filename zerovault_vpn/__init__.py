"""ZeroVault VPN: split-tunnel VPN client data plane."""

__version__ = "1.0.0"

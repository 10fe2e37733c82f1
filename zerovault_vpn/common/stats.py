# STATUS: done
"""
Session state and traffic counters for a tunnel.

One TunnelSession belongs to one controller. The packet loop is the only
writer of the counters, the controller the only writer of `connected`;
readers may call snapshot() from any thread.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional

from .utils import format_bytes


@dataclass(frozen=True)
class TunnelStatus:
    """Point-in-time view of a tunnel session."""

    connected: bool = False
    bytes_in: int = 0
    bytes_out: int = 0
    session_duration: int = 0
    start_time: float = 0
    packets_in: int = 0
    packets_out: int = 0
    packets_direct: int = 0
    bytes_direct: int = 0
    packets_dropped: int = 0
    drops_by_reason: Dict[str, int] = field(default_factory=dict)
    transport_errors: int = 0
    last_error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        """Flat mapping in the shape the hosting shell expects."""
        return {
            "connected": self.connected,
            "bytesIn": self.bytes_in,
            "bytesOut": self.bytes_out,
            "sessionDuration": self.session_duration,
            "startTime": self.start_time,
            "packetsDropped": self.packets_dropped,
            "lastError": self.last_error,
        }


class TunnelSession:
    """Connection flag, session timing and traffic counters."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._reset_locked()

    def _reset_locked(self):
        self.start_time = 0.0
        self.bytes_in = 0
        self.bytes_out = 0
        self.packets_in = 0
        self.packets_out = 0
        self.packets_direct = 0
        self.bytes_direct = 0
        self.drops = Counter()
        self.transport_errors = 0
        self.last_error = None

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def begin(self):
        """Zero all counters for a freshly established interface."""
        with self._lock:
            self._reset_locked()

    def mark_connected(self):
        with self._lock:
            self.start_time = self._clock()
        self._connected.set()

    def reset(self):
        """End the session: disconnected, counters and timing cleared."""
        self._connected.clear()
        with self._lock:
            self._reset_locked()

    def record_packet_out(self, size: int):
        """Record a packet successfully handed to the tunnel."""
        with self._lock:
            self.packets_out += 1
            self.bytes_out += size

    def record_packet_in(self, size: int):
        """Record a decrypted packet successfully written to the interface."""
        with self._lock:
            self.packets_in += 1
            self.bytes_in += size

    def record_direct(self, size: int):
        with self._lock:
            self.packets_direct += 1
            self.bytes_direct += size

    def record_drop(self, reason: str):
        with self._lock:
            self.drops[reason] += 1

    def record_transport_error(self, message: str, persistent: bool = False):
        with self._lock:
            self.transport_errors += 1
            if persistent:
                self.last_error = message

    def session_duration(self) -> int:
        """Whole seconds since the session started, 0 if not connected."""
        with self._lock:
            start_time = self.start_time
        if not self.connected or not start_time:
            return 0
        return max(0, int(self._clock() - start_time))

    def snapshot(self) -> TunnelStatus:
        duration = self.session_duration()
        with self._lock:
            return TunnelStatus(
                connected=self.connected,
                bytes_in=self.bytes_in,
                bytes_out=self.bytes_out,
                session_duration=duration,
                start_time=self.start_time,
                packets_in=self.packets_in,
                packets_out=self.packets_out,
                packets_direct=self.packets_direct,
                bytes_direct=self.bytes_direct,
                packets_dropped=sum(self.drops.values()),
                drops_by_reason=dict(self.drops),
                transport_errors=self.transport_errors,
                last_error=self.last_error,
            )

    def __str__(self) -> str:
        status = self.snapshot()
        return (f"Stats: {status.packets_in} in ({format_bytes(status.bytes_in)}), "
                f"{status.packets_out} out ({format_bytes(status.bytes_out)}), "
                f"{status.packets_direct} direct ({format_bytes(status.bytes_direct)}), "
                f"{status.packets_dropped} dropped, "
                f"{status.transport_errors} transport errors")

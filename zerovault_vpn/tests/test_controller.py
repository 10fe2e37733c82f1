# STATUS: done
"""
Test cases for the tunnel controller lifecycle.
"""

import pytest

from zerovault_vpn.client.controller import TunnelController
from zerovault_vpn.client.transport import TransportError
from zerovault_vpn.common.config import MissingRequiredField
from zerovault_vpn.common.packet import build_ipv4_packet
from zerovault_vpn.common.tunnel import EstablishFailed, TunnelInterface


class TestStartStop:
    """Test cases for start/stop."""

    def test_start_connects(self, controller, split_config_text):
        """Test that a successful start reports a connected session."""
        assert controller.start(split_config_text) is True

        status = controller.status()
        assert status.connected
        assert status.start_time > 0
        assert controller.interface.active
        assert controller.config.allowed_ips == ("10.0.0.0/8",)

    def test_start_twice_is_noop(self, controller, tun_device, transport_factory, split_config_text, caplog):
        """Test that a second start leaves the running session untouched."""
        controller.start(split_config_text)
        handle = controller.interface.handle
        start_time = controller.status().start_time

        assert controller.start(split_config_text) is False

        assert controller.interface.handle is handle
        assert controller.status().start_time == start_time
        assert tun_device.opened == 1
        assert len(transport_factory.created) == 1
        assert any("already connected" in r.getMessage() for r in caplog.records)

    def test_stop_never_started(self, controller):
        """Test that stop on a fresh controller is a safe no-op."""
        controller.stop()
        controller.stop()

        assert controller.status().connected is False

    def test_stop_tears_down(self, controller, transport_factory, direct_path, split_config_text):
        """Test that stop closes loop, transport, direct path and interface."""
        controller.start(split_config_text)
        loop = controller._loop
        handle = controller.interface.handle

        controller.stop()

        assert not loop.running
        assert handle.closed
        assert transport_factory.last.closed
        assert direct_path.closed
        assert not controller.status().connected
        assert controller.status().session_duration == 0

    def test_stop_is_idempotent(self, controller, split_config_text):
        """Test that stop can be called repeatedly."""
        controller.start(split_config_text)
        controller.stop()
        controller.stop()

        assert not controller.connected

    def test_dead_loop_reported_and_restartable(self, controller, tun_device, transport_factory,
                                               split_config_text, wait_until):
        """Test that a loop killed by a closed device reports disconnected and can be restarted."""
        controller.start(split_config_text)
        first = transport_factory.last
        controller.interface.handle.close()

        first.deliver(build_ipv4_packet("10.1.1.1", "10.8.0.2"))

        assert wait_until(lambda: not controller.status().connected)
        assert not controller.connected
        assert "closed" in controller.get_status()["lastError"]
        assert controller.status().session_duration == 0

        assert controller.connect(split_config_text) == (True, "connected")
        assert controller.connected
        assert first.closed
        assert tun_device.opened == 2
        assert len(transport_factory.created) == 2


class TestStartFailures:
    """Test cases for unwinding a failed start."""

    def test_missing_field(self, controller, tun_device):
        """Test that a bad config fails before touching the interface."""
        with pytest.raises(MissingRequiredField):
            controller.start("[Interface]\nPrivateKey = A\n[Peer]\nPublicKey = B")

        assert tun_device.opened == 0
        assert not controller.connected

    def test_establish_failure(self, transport_factory, split_config_text):
        """Test that an interface failure propagates and leaves nothing behind."""
        def opener(name):
            raise EstablishFailed("no /dev/net/tun")

        ctrl = TunnelController(
            interface=TunnelInterface("tun-test", opener=opener, runner=lambda argv: None),
            transport_factory=transport_factory,
        )

        with pytest.raises(EstablishFailed):
            ctrl.start(split_config_text)

        assert not ctrl.connected
        assert transport_factory.created == []

    def test_transport_failure_closes_interface(self, controller, transport_factory, split_config_text):
        """Test that a transport failure closes the already-open interface."""
        transport_factory.error = TransportError("cannot resolve endpoint", transient=False)

        with pytest.raises(TransportError):
            controller.start(split_config_text)

        assert not controller.interface.active
        assert not controller.connected
        assert controller.status().start_time == 0

    def test_retry_after_failure(self, controller, transport_factory, split_config_text):
        """Test that the controller can start after a failed attempt."""
        transport_factory.error = TransportError("boom", transient=False)
        with pytest.raises(TransportError):
            controller.start(split_config_text)

        transport_factory.error = None

        assert controller.start(split_config_text) is True
        assert controller.connected


class TestTraffic:
    """Test cases for counters across sessions."""

    def test_bytes_out_and_reset_on_restart(self, controller, tun_device, split_config_text, wait_until):
        """Test that 1000 tunnelled bytes show up and reset on the next start."""
        controller.start(split_config_text)
        for _ in range(10):
            tun_device.inject(build_ipv4_packet("10.8.0.2", "10.1.1.1", b"p" * 80))

        assert wait_until(lambda: controller.status().bytes_out == 1000)

        controller.stop()
        controller.start(split_config_text)

        assert controller.status().bytes_out == 0
        assert controller.status().connected

    def test_malformed_packets_never_counted(self, controller, tun_device, transport_factory,
                                             split_config_text, wait_until):
        """Test that short and IPv6 packets never touch byte counters."""
        controller.start(split_config_text)

        tun_device.inject(b"\x45" * 10)
        tun_device.inject(b"\x60" + b"\x00" * 39)

        assert wait_until(lambda: controller.status().packets_dropped == 2)
        status = controller.status()
        assert (status.bytes_in, status.bytes_out) == (0, 0)
        assert transport_factory.last.sent == []

    def test_response_counted_in(self, controller, tun_device, transport_factory,
                                 split_config_text, wait_until):
        """Test that a decrypted response increments bytes in."""
        controller.start(split_config_text)
        response = build_ipv4_packet("10.1.1.1", "10.8.0.2", b"hello")

        transport_factory.last.deliver(response)

        assert tun_device.receive() == response
        assert wait_until(lambda: controller.status().bytes_in == len(response))


class TestShellEntryPoints:
    """Test cases for connect/disconnect/get_status."""

    def test_connect_success(self, controller, split_config_text):
        """Test that connect reports success."""
        result = controller.connect(split_config_text)

        assert result.ok
        assert result.reason == "connected"
        assert controller.connect(split_config_text) == (True, "already connected")

    def test_connect_failure_reason(self, controller):
        """Test that connect reports the failure reason instead of raising."""
        result = controller.connect("[Peer]\nPublicKey = B\nEndpoint = h:1")

        assert not result.ok
        assert "PrivateKey" in result.reason

    def test_get_status_shape(self, controller, split_config_text):
        """Test the flat status mapping."""
        assert controller.get_status() == {
            "connected": False,
            "bytesIn": 0,
            "bytesOut": 0,
            "sessionDuration": 0,
            "startTime": 0,
            "packetsDropped": 0,
            "lastError": None,
        }

        controller.connect(split_config_text)
        status = controller.get_status()

        assert status["connected"] is True
        assert status["startTime"] > 0

        controller.disconnect()
        assert controller.get_status()["connected"] is False

    def test_context_manager_stops(self, tunnel_interface, transport_factory, direct_path, split_config_text):
        """Test that leaving the with-block tears the tunnel down."""
        with TunnelController(tunnel_interface, transport_factory, lambda: direct_path) as ctrl:
            ctrl.start(split_config_text)
            handle = ctrl.interface.handle

        assert handle.closed
        assert not ctrl.connected


if __name__ == '__main__':
    pytest.main([__file__])

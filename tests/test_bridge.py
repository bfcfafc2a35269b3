import asyncio

import pytest

from arcbridge.bridge import (
    ApplicationParameterChanged,
    ArcBridge,
    BridgeConfig,
    ConnectRequested,
    DisconnectRequested,
    EventBus,
    HardwareConnected,
    HardwareConnectionError,
    HardwareDisconnected,
    ParameterChanged,
)
from arcbridge.transports.base import ConnectionState
from arcbridge.transports.mock import MockTransport
from arcbridge.transports.ports import StaticPorts
from arcbridge.transports.supervisor import AttemptOrigin

HANDLE = "mock://arc"


class Harness:
    """A bridge wired to a mock device, recording every published event."""

    def __init__(self, scheduler, ports=(HANDLE,), **config):
        self.scheduler = scheduler
        self.transport = MockTransport(handles=(HANDLE,))
        self.bus = EventBus()
        self.events = []
        for event_type in (HardwareConnected, HardwareDisconnected, HardwareConnectionError, ParameterChanged):
            self.bus.subscribe(event_type, self.events.append)
        self.bridge = ArcBridge(
            self.transport,
            self.bus,
            config=BridgeConfig(ports=list(ports), **config),
            scheduler=scheduler,
            ports=StaticPorts(ports),
            clock=lambda: 1000.0,
        )

    def of(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def led_commands(self):
        return [c for c in self.transport.commands if c.startswith("params[")]


async def _connected(scheduler, settle, **config):
    h = Harness(scheduler, **config)
    await h.bridge.start()
    assert await h.bridge.connect(HANDLE) is True
    await settle()
    h.transport.written.clear()
    h.events.clear()
    return h


def test_startup_auto_connect_sends_init_sequence(scheduler, settle):
    async def run():
        h = Harness(scheduler)
        await h.bridge.start()
        pending = h.bridge.supervisor.pending
        assert pending.origin is AttemptOrigin.STARTUP
        assert pending.due_at == pytest.approx(1.0)

        await scheduler.advance(1.0)
        await settle()

        assert h.bridge.connected
        assert h.bridge.device_ready
        (connected,) = h.of(HardwareConnected)
        assert connected.auto_connect is True
        assert connected.parameter_values == (0.5, 0.5, 0.0, 0.0)
        assert h.transport.commands[0] == "metro.allstop()"
        assert h.transport.commands[5] == "params = {0.5, 0.5, 0, 0}"
        assert h.transport.commands[-1] == 'print("Arc controlled")'
        assert len(h.transport.commands) == 8
        assert all(chunk.endswith(b"\r\n") for chunk in h.transport.written)
        assert scheduler.sleeps == [0.5] + [0.1] * 7
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_no_startup_attempt_without_auto_connect(scheduler):
    async def run():
        h = Harness(scheduler, auto_connect=False)
        await h.bridge.start()
        assert h.bridge.supervisor.pending is None
        await scheduler.advance(5.0)
        assert h.transport.open_count == 0
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_user_connect_is_not_auto(scheduler, settle):
    async def run():
        h = Harness(scheduler)
        await h.bridge.start()
        assert await h.bridge.connect() is True
        assert h.of(HardwareConnected)[0].auto_connect is False
        assert h.bridge.supervisor.pending is None
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_encoder_report_updates_parameter(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.feed(b"ENC:1:5:0.550\n")
        await settle()

        (event,) = h.of(ParameterChanged)
        assert event.parameter_name == "volume"
        assert event.value == 0.55
        assert event.channel_index == 0
        assert event.delta == pytest.approx(0.05)
        assert h.bridge.parameter_values()["volume"] == 0.55
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_encoder_report_split_across_reads(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.feed(b"ENC:2:-3:0.")
        await settle()
        assert h.of(ParameterChanged) == []

        h.transport.feed(b"120\n")
        await settle()
        (event,) = h.of(ParameterChanged)
        assert event.parameter_name == "brightness"
        assert event.value == 0.12
        assert event.delta == pytest.approx(-0.03)
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_noise_and_acknowledgement_are_ignored(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.feed(b"Arc controlled\r\n> \r\nENC:9:1:0.5\nlua: error\n")
        await settle()
        assert h.of(ParameterChanged) == []
        stats = h.bridge.get_stats()
        assert stats["lines_received"] == 4
        assert stats["lines_ignored"] == 3
        assert h.bridge.connected
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_application_value_is_clamped_and_shown(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.bus.publish(ApplicationParameterChanged("reverb", 1.4))
        await settle()
        assert h.bridge.parameter_values()["reverb"] == 1.0
        assert h.led_commands() == ["params[4] = 1; update_ring(4)"]
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_rapid_application_updates_are_coalesced(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.bus.publish(ApplicationParameterChanged("detune", 0.8))
        await settle()
        assert h.led_commands() == ["params[3] = 0.8; update_ring(3)"]

        await scheduler.advance(0.01)
        h.bus.publish(ApplicationParameterChanged("detune", 0.3))
        await settle()
        assert len(h.led_commands()) == 1
        assert h.bridge.throttler.pending(2) == 0.3

        await scheduler.advance(0.05)
        await settle()
        assert h.led_commands() == [
            "params[3] = 0.8; update_ring(3)",
            "params[3] = 0.3; update_ring(3)",
        ]
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_application_echo_of_encoder_value_sends_nothing(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.feed(b"ENC:1:5:0.550\n")
        await settle()
        h.bus.publish(ApplicationParameterChanged("volume", 0.55))
        h.bus.publish(ApplicationParameterChanged("volume", 0.56))
        await settle()
        assert h.led_commands() == []
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_unknown_parameter_is_ignored(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.bus.publish(ApplicationParameterChanged("cutoff", 0.3))
        h.bus.publish(ApplicationParameterChanged("volume", float("nan")))
        h.bus.publish(ApplicationParameterChanged("volume", 0.9))
        await settle()
        assert h.bridge.parameter_values()["volume"] == 0.9
        assert h.led_commands() == ["params[1] = 0.9; update_ring(1)"]
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_values_set_while_disconnected_seed_the_device(scheduler, settle):
    async def run():
        h = Harness(scheduler, auto_connect=False)
        await h.bridge.start()
        h.bus.publish(ApplicationParameterChanged("volume", 0.7))
        await settle()
        assert h.transport.written == []

        h.bus.publish(ConnectRequested())
        await settle()
        assert "params = {0.7, 0.5, 0, 0}" in h.transport.commands
        assert h.led_commands() == []
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_write_failure_disconnects_and_schedules_one_reconnect(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        start = scheduler.now()
        h.transport.fail_next_write()
        h.bus.publish(ApplicationParameterChanged("volume", 0.9))
        await settle()

        assert len(h.of(HardwareDisconnected)) == 1
        assert h.bridge.state is ConnectionState.DISCONNECTED
        assert not h.bridge.device_ready
        pending = h.bridge.supervisor.pending
        assert pending.origin is AttemptOrigin.AUTOMATIC
        assert pending.due_at == pytest.approx(start + 3.0)
        assert len(scheduler.active_timers) == 1

        # a second loss while the attempt is pending adds no timer
        await scheduler.advance(1.0)
        await h.bridge._handle_connection_lost(OSError("port vanished"))
        assert len(scheduler.active_timers) == 1
        assert h.bridge.supervisor.pending.due_at == pytest.approx(start + 3.0)

        await scheduler.advance(2.0)
        await settle()
        assert h.transport.open_count == 2
        assert h.bridge.connected
        assert h.bridge.supervisor.attempts == 1
        (reconnected,) = h.of(HardwareConnected)
        assert reconnected.auto_connect is True
        assert reconnected.parameter_values[0] == 0.9
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_device_hang_up_disconnects(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.hang_up()
        await settle()
        assert len(h.of(HardwareDisconnected)) == 1
        assert h.bridge.supervisor.pending is not None
        await h.bridge.stop()
        assert h.bridge.supervisor.pending is None

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_hang_up_during_stop_does_not_reconnect(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.hang_up()
        await h.bridge.stop()
        await settle()
        assert h.bridge.supervisor.pending is None
        await scheduler.advance(3.0)
        await settle()
        assert h.transport.open_count == 1
        assert h.bridge.state is ConnectionState.DISCONNECTED
        assert len(h.of(HardwareDisconnected)) == 1

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_automatic_connect_after_stop_is_skipped(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        await h.bridge.stop()
        assert await h.bridge._open(HANDLE, AttemptOrigin.AUTOMATIC) is False
        assert h.transport.open_count == 1
        assert h.bridge.state is ConnectionState.DISCONNECTED

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_encoder_turn_replaces_deferred_led_value(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.bus.publish(ApplicationParameterChanged("volume", 0.9))
        await settle()
        await scheduler.advance(0.01)
        h.bus.publish(ApplicationParameterChanged("volume", 0.3))
        await settle()
        assert h.bridge.throttler.pending(0) == 0.3

        await scheduler.advance(0.01)
        h.transport.feed(b"ENC:1:5:0.800\n")
        await settle()
        assert h.bridge.throttler.pending(0) is None

        await scheduler.advance(0.05)
        await settle()
        assert h.bridge.parameter_values()["volume"] == 0.8
        assert h.led_commands() == ["params[1] = 0.9; update_ring(1)"]
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_user_disconnect_suppresses_reconnect(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.bus.publish(DisconnectRequested())
        await settle()
        assert len(h.of(HardwareDisconnected)) == 1
        assert h.bridge.supervisor.suppressed
        assert h.bridge.supervisor.pending is None
        await scheduler.advance(10.0)
        assert h.transport.open_count == 1

        assert await h.bridge.connect() is True
        assert not h.bridge.supervisor.suppressed
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_connect_failures_are_published(scheduler, settle):
    async def run():
        h = Harness(scheduler, ports=(), auto_connect=False)
        await h.bridge.start()
        assert await h.bridge.connect() is False
        assert await h.bridge.connect("mock://other") is False
        errors = h.of(HardwareConnectionError)
        assert len(errors) == 2
        assert "authorized" in errors[0].message
        assert "mock://other" in errors[1].message
        assert h.bridge.state is ConnectionState.DISCONNECTED
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_stop_closes_link(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        await h.bridge.stop()
        assert h.bridge.state is ConnectionState.DISCONNECTED
        assert len(h.of(HardwareDisconnected)) == 1
        assert not h.bridge.store.running
        assert not h.bridge.is_running
        assert h.bus.publish(ApplicationParameterChanged("volume", 0.1)) is False

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_commands_from_another_thread(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        await asyncio.to_thread(h.bridge.submit_threadsafe, ApplicationParameterChanged("brightness", 0.1))
        await settle()
        assert h.bridge.parameter_values()["brightness"] == 0.1
        assert h.led_commands() == ["params[2] = 0.1; update_ring(2)"]
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))


def test_stats(scheduler, settle):
    async def run():
        h = await _connected(scheduler, settle)
        h.transport.feed(b"ENC:3:2:0.020\n")
        await settle()
        stats = h.bridge.get_stats()
        assert stats["state"] == "open"
        assert stats["handle"] == HANDLE
        assert stats["encoder_events"] == 1
        assert stats["connects"] == 1
        assert stats["parameters"]["detune"] == 0.02
        assert stats["reconnect_pending"] is None
        await h.bridge.stop()

    asyncio.run(asyncio.wait_for(run(), timeout=10))

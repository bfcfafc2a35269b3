"""Bridge orchestrator - wires the device link, parameter state and event bus.

The ArcBridge owns one transport to a Monome Arc. Encoder reports flow from
the transport's read loop through the framer and codec into the parameter
store and out as :class:`ParameterChanged` events. Application commands
arrive on the bus, are queued on the bridge inbox, and end up as throttled LED
commands on the same transport.

Example:
    bus = EventBus()
    bridge = ArcBridge(SerialTransport(), bus, config=BridgeConfig(ports=["/dev/ttyACM0"]))
    await bridge.start()
    bus.publish(ApplicationParameterChanged("reverb", 0.4))
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from arcbridge.core.parameters import ParameterStore, SetResult
from arcbridge.core.scheduler import AsyncioScheduler, Scheduler
from arcbridge.core.throttle import LedThrottler
from arcbridge.errors import ConnectionError, UnknownParameterError, WriteError
from arcbridge.protocols.codec import ProtocolCodec
from arcbridge.protocols.framers import LineFramer
from arcbridge.transports.base import ConnectionState, TransportInterface
from arcbridge.transports.ports import AuthorizedSerialPorts, PortProvider
from arcbridge.transports.supervisor import AttemptOrigin, ReconnectSupervisor

from .config import BridgeConfig
from .events import (
    ApplicationParameterChanged,
    ConnectRequested,
    DisconnectRequested,
    Event,
    EventBus,
    HardwareConnected,
    HardwareConnectionError,
    HardwareDisconnected,
    ParameterChanged,
)

logger = logging.getLogger("arcbridge.bridge")


class ArcBridge:
    """Service object for one Arc: connection lifecycle, state and feedback."""

    def __init__(
        self,
        transport: TransportInterface,
        bus: Optional[EventBus] = None,
        *,
        config: Optional[BridgeConfig] = None,
        scheduler: Optional[Scheduler] = None,
        ports: Optional[PortProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or BridgeConfig()
        self.config.validate()
        self.bus = bus or EventBus()
        self._transport = transport
        self._scheduler = scheduler or AsyncioScheduler()
        self._ports = ports or AuthorizedSerialPorts(self.config.ports)
        self._clock = clock

        self._framer = LineFramer()
        self._codec = ProtocolCodec()
        self._store = ParameterStore(
            self.config.channel_names,
            self.config.initial_values,
            clock=clock,
        )
        self._throttler = LedThrottler(
            self._send_led,
            self._scheduler,
            window=self.config.led_window,
            threshold=self.config.led_threshold,
        )
        self._supervisor = ReconnectSupervisor(
            self._scheduler,
            self._ports,
            self._open,
            delay=self.config.reconnect_delay,
        )

        self._transport.set_receiver(self._on_data)
        self._transport.set_lost_handler(self._handle_connection_lost)

        self._lifecycle_lock = asyncio.Lock()
        self._device_ready = False
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._inbox_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []

        self._stats = {
            "lines_received": 0,
            "lines_ignored": 0,
            "encoder_events": 0,
            "connects": 0,
            "disconnects": 0,
            "connection_errors": 0,
            "led_commands": 0,
        }

    # --- Service lifecycle ---

    async def start(self) -> None:
        """Start the store and inbox workers and subscribe to inbound commands."""
        if self._running:
            return
        logger.info("Starting Arc bridge (channels: %s)", ", ".join(self._store.names))
        self._running = True
        self._loop = asyncio.get_running_loop()
        await self._store.start()
        self._inbox = asyncio.Queue()
        self._inbox_task = asyncio.create_task(self._inbox_worker(), name="arcbridge-inbox")
        self._unsubscribers = [
            self.bus.subscribe(ApplicationParameterChanged, self._enqueue),
            self.bus.subscribe(ConnectRequested, self._enqueue),
            self.bus.subscribe(DisconnectRequested, self._enqueue),
        ]
        if self.config.auto_connect:
            self._supervisor.schedule(delay=self.config.startup_delay, origin=AttemptOrigin.STARTUP)

    async def stop(self) -> None:
        """Unsubscribe, close the device link and stop the workers."""
        if not self._running:
            return
        logger.info("Stopping Arc bridge...")
        self._running = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._supervisor.cancel()

        if self._inbox is not None and self._inbox_task is not None:
            self._inbox.put_nowait(None)
            await self._inbox_task
        self._inbox = None
        self._inbox_task = None

        async with self._lifecycle_lock:
            was_connected = await self._teardown()
        if was_connected:
            self.bus.publish(HardwareDisconnected(timestamp=self._clock()))
        await self._store.stop()
        logger.info("Arc bridge stopped")

    # --- Inbound commands ---

    def _enqueue(self, event: Event) -> None:
        if self._inbox is None:
            logger.warning("Bridge not running; dropping %s", event.topic)
            return
        self._inbox.put_nowait(event)

    def submit_threadsafe(self, event: Event) -> None:
        """Queue an inbound command from a thread other than the bridge's loop."""
        if self._loop is None:
            raise RuntimeError("ArcBridge is not running; call start() first")
        self._loop.call_soon_threadsafe(self._enqueue, event)

    async def _inbox_worker(self) -> None:
        assert self._inbox is not None
        while True:
            event = await self._inbox.get()
            if event is None:
                break
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Failed to handle %s", event.topic)

    async def _dispatch(self, event: Event) -> None:
        if isinstance(event, ApplicationParameterChanged):
            try:
                await self.set_parameter(event.parameter_name, event.value)
            except UnknownParameterError:
                logger.warning("Ignoring unknown parameter %r", event.parameter_name)
            except ValueError as exc:
                logger.warning("Ignoring %s=%r: %s", event.parameter_name, event.value, exc)
        elif isinstance(event, ConnectRequested):
            await self.connect(event.handle)
        elif isinstance(event, DisconnectRequested):
            await self.disconnect()

    async def set_parameter(self, name: str, value: float) -> SetResult:
        """Store an application value and, if it changed, show it on the rings."""
        channel = self._store.index_of(name)
        result = await self._store.set(channel, value)
        if result.changed and self._device_ready:
            await self._throttler.request(channel, result.value)
        return result

    # --- Connection management ---

    async def connect(self, handle: Optional[str] = None) -> bool:
        """User-requested connect to *handle* or the first authorized port."""
        self._supervisor.resume()
        self._supervisor.cancel()
        if handle is None:
            ports = await self._ports.authorized_ports()
            if not ports:
                message = "No previously authorized Arc found; choose a port to connect"
                logger.warning(message)
                self._stats["connection_errors"] += 1
                self.bus.publish(HardwareConnectionError(message=message))
                return False
            handle = ports[0]
        return await self._open(handle, AttemptOrigin.USER)

    async def disconnect(self) -> None:
        """User-requested disconnect; suppresses the next automatic reconnect."""
        self._supervisor.suppress()
        async with self._lifecycle_lock:
            was_connected = await self._teardown()
        if was_connected:
            logger.info("Arc disconnected")
            self.bus.publish(HardwareDisconnected(timestamp=self._clock()))

    async def _open(self, handle: str, origin: AttemptOrigin) -> bool:
        async with self._lifecycle_lock:
            if not self._running and origin is not AttemptOrigin.USER:
                logger.debug("Bridge stopped; skipping %s connect", origin.value)
                return False
            if self._transport.state is not ConnectionState.DISCONNECTED:
                logger.info("Arc already connected (%s)", self._transport.handle)
                return self._transport.is_open
            try:
                await self._transport.open(handle, self.config.baudrate)
            except ConnectionError as exc:
                logger.error("Failed to connect to Arc: %s", exc)
                self._stats["connection_errors"] += 1
                self.bus.publish(HardwareConnectionError(message=str(exc)))
                return False

            self._framer.reset()
            self._stats["connects"] += 1
            self.bus.publish(
                HardwareConnected(
                    timestamp=self._clock(),
                    parameter_values=self._store.snapshot(),
                    auto_connect=origin is not AttemptOrigin.USER,
                )
            )
            try:
                await self._initialize_device()
            except WriteError as exc:
                logger.error("Taking control of the Arc failed: %s", exc)
                return False
            return True

    async def _initialize_device(self) -> None:
        """Send the takeover sequence, then reconcile values changed meanwhile."""
        await self._scheduler.sleep(self.config.settle_delay)
        seeded = self._store.snapshot()
        self._throttler.reset(seeded)
        commands = self._codec.encode_init(seeded)
        for i, command in enumerate(commands):
            if i:
                await self._scheduler.sleep(self.config.init_pacing)
            await self._write_command(command)
        self._device_ready = True
        logger.info("Arc control active")
        for channel, value in enumerate(self._store.snapshot()):
            if value != seeded[channel]:
                await self._throttler.request(channel, value)

    async def _teardown(self) -> bool:
        """Close the link and drop per-connection state. Returns True if it was up."""
        was_connected = self._transport.state is not ConnectionState.DISCONNECTED
        self._device_ready = False
        self._throttler.cancel()
        await self._transport.close()
        self._framer.reset()
        if was_connected:
            self._stats["disconnects"] += 1
        return was_connected

    async def _handle_connection_lost(self, error: Optional[BaseException]) -> None:
        logger.warning("Arc connection lost: %s", error or "stream closed")
        await self._teardown()
        self.bus.publish(HardwareDisconnected(timestamp=self._clock()))
        if self.config.auto_connect and self._running:
            self._supervisor.schedule()

    # --- Device I/O ---

    async def _write_command(self, command: str) -> None:
        await self._transport.write(self._codec.frame(command))

    async def _send_led(self, channel: int, value: float) -> None:
        if not self._device_ready:
            return
        try:
            await self._write_command(self._codec.encode_led_update(channel, value))
        except WriteError as exc:
            logger.warning("LED update for ring %d dropped: %s", channel + 1, exc)
            return
        self._stats["led_commands"] += 1

    async def _on_data(self, chunk: bytes) -> None:
        for line in self._framer.feed(chunk):
            self._stats["lines_received"] += 1
            delta = self._codec.decode(line)
            if delta is None:
                if self._codec.is_acknowledgement(line):
                    logger.info("Arc acknowledged control")
                else:
                    self._stats["lines_ignored"] += 1
                continue
            update = await self._store.apply_hardware_delta(delta.channel, delta.delta, delta.value)
            self._throttler.observe(update.channel, update.value)
            self._stats["encoder_events"] += 1
            logger.debug("Arc %s: %.2f", update.name, update.value)
            self.bus.publish(
                ParameterChanged(
                    parameter_name=update.name,
                    value=update.value,
                    channel_index=update.channel,
                    delta=delta.scaled_delta,
                )
            )

    # --- Accessors ---

    def add_raw_hook(self, cb: Callable[[bytes], None]) -> None:
        """Receive every raw chunk read from the device (traffic tracing)."""
        self._framer.add_raw_hook(cb)

    def parameter_values(self) -> Dict[str, float]:
        return self._store.as_dict()

    @property
    def store(self) -> ParameterStore:
        return self._store

    @property
    def throttler(self) -> LedThrottler:
        return self._throttler

    @property
    def supervisor(self) -> ReconnectSupervisor:
        return self._supervisor

    @property
    def state(self) -> ConnectionState:
        return self._transport.state

    @property
    def connected(self) -> bool:
        return self._transport.is_open

    @property
    def device_ready(self) -> bool:
        return self._device_ready

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        """Get bridge statistics."""
        pending = self._supervisor.pending
        return {
            "running": self._running,
            "state": self._transport.state.value,
            "handle": self._transport.handle,
            "parameters": self.parameter_values(),
            **self._stats,
            "led_sent": self._throttler.sent,
            "led_coalesced": self._throttler.coalesced,
            "led_suppressed": self._throttler.suppressed,
            "reconnect_attempts": self._supervisor.attempts,
            "reconnect_pending": pending.due_at if pending else None,
            "framer_discarded_bytes": self._framer.discarded_bytes,
        }

"""
Simulated device telemetry stream.

``StreamController`` plays the role of a websocket feed: it ticks on the
asyncio loop at a jittered interval, runs one simulation cycle per tick and
occasionally drops the connection to exercise the reconnect path.

States::

    idle -> connecting -> connected -> reconnecting -> connecting
                                   \\-> closed (connect() again to restart)

The cycle itself (``run_cycle``) is synchronous and can be called directly.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Set

from .models import Alert, Telemetry, utcnow
from .rules import evaluate_sample, evaluate_silence
from .settings import Settings, settings as default_settings
from .stores import AlertStore, DeviceStore, SettingsStore, TelemetryStore
from .telemetry_engine import TelemetryEngine

log = logging.getLogger("stream")

class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"

TelemetryHandler = Callable[[Telemetry], None]
StateHandler = Callable[[ConnectionState], None]

@dataclass
class CycleResult:
    telemetry: List[Telemetry] = field(default_factory=list)
    offline_devices: Set[str] = field(default_factory=set)
    alerts: List[Alert] = field(default_factory=list)


class StreamController:
    def __init__(
        self,
        devices: DeviceStore,
        telemetry: TelemetryStore,
        alerts: AlertStore,
        config: SettingsStore,
        engine: TelemetryEngine | None = None,
        *,
        settings: Settings = default_settings,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.devices = devices
        self.telemetry = telemetry
        self.alerts = alerts
        self.config = config
        self.settings = settings
        self.rng = rng or random.Random(settings.simulation_seed)
        self.clock = clock
        self.engine = engine or TelemetryEngine(
            rng=self.rng,
            clock=clock,
            outage_probability=settings.outage_probability,
            offline_emit_probability=settings.offline_emit_probability,
            outage_min_ms=settings.outage_min_ms,
            outage_max_ms=settings.outage_max_ms,
        )
        self._loop = loop
        self._timer: asyncio.TimerHandle | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._state = ConnectionState.IDLE
        self._subscribers: Dict[int, TelemetryHandler] = {}
        self._state_subscribers: Dict[int, StateHandler] = {}
        self._ids = itertools.count()
        self.last_heartbeat: Dict[str, datetime] = {}
        self.cycles = 0

    # ---------------- connection state ----------------
    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        log.info("stream %s -> %s", self._state.value, state.value)
        self._state = state
        for handler in list(self._state_subscribers.values()):
            try:
                handler(state)
            except Exception:
                log.exception("state subscriber failed")

    def connect(self) -> None:
        """Start streaming. Must be called from the event loop thread."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        self._set_state(ConnectionState.CONNECTING)
        self._schedule_tick()

    def disconnect(self) -> None:
        self._set_state(ConnectionState.CLOSED)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def simulate_disconnect(self) -> None:
        self.disconnect()
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        delay = self.settings.reconnect_ms / 1000
        self._reconnect_timer = self._loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        self.connect()

    def _schedule_tick(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        interval_ms = self.rng.randint(self.settings.stream_min_ms, self.settings.stream_max_ms)
        self._timer = self._loop.call_later(interval_ms / 1000, self._tick)

    def _tick(self) -> None:
        self._timer = None
        if self._state != ConnectionState.CONNECTED:
            return
        try:
            self.run_cycle()
        except Exception:
            log.exception("stream cycle failed; reconnecting in %d ms", self.settings.reconnect_ms)
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return

        if self.rng.random() < self.settings.disconnect_probability:
            log.info("simulated stream drop")
            self.simulate_disconnect()
            return

        self._schedule_tick()

    # ---------------- subscriptions ----------------
    def subscribe(self, handler: TelemetryHandler) -> Callable[[], None]:
        token = next(self._ids)
        self._subscribers[token] = handler
        return lambda: self._subscribers.pop(token, None)

    def subscribe_state(self, handler: StateHandler) -> Callable[[], None]:
        token = next(self._ids)
        self._state_subscribers[token] = handler
        return lambda: self._state_subscribers.pop(token, None)

    def _publish(self, sample: Telemetry) -> None:
        for handler in list(self._subscribers.values()):
            try:
                handler(sample)
            except Exception:
                log.exception("telemetry subscriber failed for %s", sample.id)

    # ---------------- cycle ----------------
    def run_cycle(self) -> CycleResult:
        thresholds = self.config.thresholds
        geofence = self.config.geofence
        batch = self.engine.generate_batch(self.devices.all(), self.telemetry.latest)
        result = CycleResult(offline_devices=batch.offline_devices)

        for device in batch.devices:
            self.last_heartbeat.setdefault(device.id, device.last_seen)

        for sample in batch.telemetry:
            self.telemetry.ingest(sample)
            self.last_heartbeat[sample.device_id] = self.clock()

            candidates = evaluate_sample(sample, thresholds, geofence, now=self.clock())
            critical = any(a.severity == "critical" for a in candidates)
            self.devices.update_runtime(
                sample.device_id,
                status="critical" if critical else "online",
                last_seen=sample.timestamp,
                battery_level=sample.battery,
            )
            for alert in candidates:
                if self.alerts.push(alert):
                    result.alerts.append(alert)
            result.telemetry.append(sample)
            self._publish(sample)

        for alert in evaluate_silence(thresholds, self.last_heartbeat, now=self.clock()):
            if self.alerts.push(alert):
                result.alerts.append(alert)
            self.devices.update_runtime(alert.device_id, status="offline")

        self.cycles += 1
        log.debug("cycle %d: %d samples, %d offline, %d alerts",
                  self.cycles, len(result.telemetry), len(result.offline_devices), len(result.alerts))
        return result

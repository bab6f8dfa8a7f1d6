"""
Tests for the stream controller: simulation cycle and connection state machine
"""
import asyncio
import random
from datetime import timedelta

import pytest

from conftest import FixedRandom, T0, make_device, make_sample
from wearwatch.db import init_db
from wearwatch.models import Alert
from wearwatch.stream import ConnectionState, StreamController
from wearwatch.telemetry_engine import TelemetryEngine


def _controller(db, settings, clock=None, engine=None, rng=None):
    kwargs = {"settings": settings, "rng": rng or random.Random(3)}
    if clock is not None:
        kwargs["clock"] = clock
    return StreamController(db.devices, db.telemetry, db.alerts, db.config, engine=engine, **kwargs)


def _quiet_engine(clock, pick="min"):
    return TelemetryEngine(rng=FixedRandom(r=0.5, pick=pick), clock=clock)


class TestRunCycle:

    def test_samples_are_stored_and_published(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-002"))
        db.devices.upsert(make_device("dev-001"))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))
        received = []
        stream.subscribe(received.append)

        result = stream.run_cycle()

        assert [s.device_id for s in result.telemetry] == ["dev-001", "dev-002"]
        assert received == result.telemetry
        assert db.telemetry.latest("dev-001") is result.telemetry[0]
        for d in db.devices.all():
            assert d.status == "online"
            assert d.last_seen == T0
        assert stream.last_heartbeat == {"dev-001": T0, "dev-002": T0}
        assert stream.cycles == 1

    def test_battery_and_status_written_back(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001", battery=90))
        db.telemetry.ingest(make_sample("dev-001", heart_rate=185, battery=60))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))

        result = stream.run_cycle()

        device = db.devices.get("dev-001")
        assert device.status == "critical"
        assert device.battery_level == result.telemetry[0].battery == 60
        assert [(a.type, a.severity) for a in result.alerts] == [("heartRate", "critical")]

    def test_duplicate_open_alerts_are_suppressed(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001"))
        db.telemetry.ingest(make_sample("dev-001", heart_rate=185))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock, pick="max"))

        first = stream.run_cycle()
        second = stream.run_cycle()
        assert len(first.alerts) == 1
        assert second.alerts == []
        assert len(db.alerts) == 1

        db.alerts.acknowledge(first.alerts[0].id)
        third = stream.run_cycle()
        assert [(a.type, a.severity) for a in third.alerts] == [("heartRate", "critical")]
        assert len(db.alerts) == 2

    def test_subscriber_notified_without_alerts(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001"))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))
        received = []
        stream.subscribe(received.append)
        result = stream.run_cycle()
        assert result.alerts == []
        assert len(received) == 1

    def test_silent_device_goes_offline(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-002", last_seen=T0 - timedelta(minutes=3), status="online"))
        db.devices.upsert(make_device("dev-001"))
        engine = _quiet_engine(clock)
        engine.outage_until["dev-002"] = T0 + timedelta(seconds=80)
        stream = _controller(db, quiet_settings, clock, engine)

        result = stream.run_cycle()

        assert result.offline_devices == {"dev-002"}
        assert [(a.device_id, a.type, a.severity) for a in result.alerts] == [("dev-002", "heartbeat", "critical")]
        assert db.devices.get("dev-002").status == "offline"
        assert db.devices.get("dev-001").status == "online"

    def test_heartbeat_seeded_from_last_seen_only_once(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001", last_seen=T0 - timedelta(seconds=30)))
        engine = _quiet_engine(clock)
        engine.outage_until["dev-001"] = T0 + timedelta(minutes=5)
        stream = _controller(db, quiet_settings, clock, engine)

        assert stream.run_cycle().alerts == []
        assert stream.last_heartbeat["dev-001"] == T0 - timedelta(seconds=30)

        clock.advance(seconds=31)
        result = stream.run_cycle()
        assert [a.type for a in result.alerts] == ["heartbeat"]

    def test_reporting_device_is_never_silent(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001", last_seen=T0 - timedelta(hours=1)))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))
        result = stream.run_cycle()
        assert [a for a in result.alerts if a.type == "heartbeat"] == []
        assert db.devices.get("dev-001").status == "online"

    def test_silence_has_the_last_word(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001"))
        db.telemetry.ingest(make_sample("dev-001", heart_rate=185))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))
        stream.run_cycle()
        assert db.devices.get("dev-001").status == "critical"

        stream.engine.outage_until["dev-001"] = clock() + timedelta(minutes=5)
        clock.advance(seconds=61)
        stream.run_cycle()
        assert db.devices.get("dev-001").status == "offline"

    def test_threshold_changes_apply_next_cycle(self, db, clock, quiet_settings):
        from wearwatch.models import ThresholdConfig

        db.devices.upsert(make_device("dev-001"))
        db.telemetry.ingest(make_sample("dev-001", heart_rate=100))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock, pick="max"))
        assert stream.run_cycle().alerts == []

        db.config.update_thresholds(ThresholdConfig(warning_heart_rate=90, critical_heart_rate=200))
        assert [a.severity for a in stream.run_cycle().alerts] == ["medium"]

    def test_unsubscribe_and_failing_subscriber(self, db, clock, quiet_settings):
        db.devices.upsert(make_device("dev-001"))
        stream = _controller(db, quiet_settings, clock, _quiet_engine(clock))
        a, b = [], []

        def boom(_sample):
            raise RuntimeError("subscriber bug")

        unsubscribe_a = stream.subscribe(a.append)
        stream.subscribe(boom)
        stream.subscribe(b.append)

        stream.run_cycle()
        unsubscribe_a()
        unsubscribe_a()
        stream.run_cycle()

        assert len(a) == 1
        assert len(b) == 2


class TestConnectionState:

    def test_initial_state_is_idle(self, db, quiet_settings):
        assert _controller(db, quiet_settings).connection_state == ConnectionState.IDLE

    def test_disconnect_is_immediate_and_idempotent(self, db, quiet_settings):
        stream = _controller(db, quiet_settings)
        stream.disconnect()
        assert stream.connection_state == ConnectionState.CLOSED
        stream.disconnect()
        assert stream.connection_state == ConnectionState.CLOSED

    def test_connect_requires_event_loop(self, db, quiet_settings):
        with pytest.raises(RuntimeError):
            _controller(db, quiet_settings).connect()

    @pytest.mark.asyncio
    async def test_connect_ticks_until_disconnect(self, quiet_settings):
        db = init_db(quiet_settings)
        stream = _controller(db, quiet_settings)
        stream.connect()
        assert stream.connection_state == ConnectionState.CONNECTED
        timer = stream._timer
        stream.connect()
        assert stream._timer is timer

        await asyncio.sleep(0.1)
        assert stream.cycles > 0
        stream.disconnect()
        assert stream.connection_state == ConnectionState.CLOSED
        cycles = stream.cycles
        await asyncio.sleep(0.05)
        assert stream.cycles == cycles

        stream.connect()
        assert stream.connection_state == ConnectionState.CONNECTED
        await asyncio.sleep(0.05)
        assert stream.cycles > cycles
        stream.disconnect()

    @pytest.mark.asyncio
    async def test_simulated_drop_reconnects(self, quiet_settings):
        settings = quiet_settings.model_copy(update={"disconnect_probability": 1.0})
        stream = _controller(init_db(settings), settings)
        states = []
        stream.subscribe_state(states.append)
        stream.connect()
        await asyncio.sleep(0.1)
        stream.disconnect()

        assert stream.cycles >= 2
        drop = states.index(ConnectionState.RECONNECTING)
        assert states[drop - 1] == ConnectionState.CLOSED
        assert states[drop + 1: drop + 3] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_cycle_failure_recovers(self, quiet_settings):
        class FlakyEngine(TelemetryEngine):
            failures = 1

            def generate_batch(self, devices, latest):
                if self.failures:
                    self.failures -= 1
                    raise RuntimeError("generator exploded")
                return super().generate_batch(devices, latest)

        stream = _controller(init_db(quiet_settings), quiet_settings, engine=FlakyEngine(rng=random.Random(1)))
        states = []
        stream.subscribe_state(states.append)
        stream.connect()
        await asyncio.sleep(0.15)
        stream.disconnect()

        assert ConnectionState.RECONNECTING in states
        assert states[-2] == ConnectionState.CONNECTED
        assert stream.cycles > 0

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, quiet_settings):
        settings = quiet_settings.model_copy(update={"disconnect_probability": 1.0, "reconnect_ms": 50})
        stream = _controller(init_db(settings), settings)
        stream.connect()
        await asyncio.sleep(0.02)
        assert stream.connection_state == ConnectionState.RECONNECTING
        stream.disconnect()
        await asyncio.sleep(0.08)

        assert stream.connection_state == ConnectionState.CLOSED
        assert stream.cycles == 1

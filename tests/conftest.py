from datetime import datetime, timedelta, timezone

import pytest

from wearwatch.db import init_db
from wearwatch.models import Device, Telemetry
from wearwatch.settings import Settings


class FixedRandom:
    """Stand-in for random.Random: constant random(), randint() pinned to one end."""

    def __init__(self, r: float = 0.5, pick: str = "max") -> None:
        self.r = r
        self.pick = pick
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return self.r

    def randint(self, a: int, b: int) -> int:
        self.calls += 1
        return b if self.pick == "max" else a


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def quiet_settings():
    """No outages, no drops, no simulated disconnects, fast timers."""
    return Settings(
        outage_probability=0.0,
        offline_emit_probability=0.0,
        disconnect_probability=0.0,
        stream_min_ms=1,
        stream_max_ms=2,
        reconnect_ms=5,
        simulation_seed=7,
    )


@pytest.fixture
def db():
    return init_db(seed=False)


def make_device(device_id="dev-001", last_seen=T0, battery=80, status="online", name=None):
    return Device(
        id=device_id,
        name=name or f"Worker {device_id}",
        status=status,
        firmware_version="1.0.0",
        last_seen=last_seen,
        battery_level=battery,
    )


def make_sample(device_id="dev-001", timestamp=T0, sample_id=None, **overrides):
    values = dict(
        heart_rate=80,
        body_temperature=36.6,
        activity_level=40,
        battery=50,
        signal_strength=50,
        latitude=35.6892,
        longitude=51.389,
    )
    values.update(overrides)
    return Telemetry(
        id=sample_id or f"tel-{device_id}-{timestamp:%H%M%S}",
        device_id=device_id,
        timestamp=timestamp,
        **values,
    )

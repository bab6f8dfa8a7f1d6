"""
Synthetic wearable telemetry.

Each call to ``generate_batch`` walks every device's vitals one step from its
latest known sample. Devices randomly drop out, either for a single tick or
for a longer outage window during which they stay silent.
"""
from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set

from .models import Device, Telemetry, utcnow

log = logging.getLogger(__name__)

OUTAGE_TRIGGER_PROBABILITY = 0.04
OFFLINE_EMIT_PROBABILITY = 0.1

# fallbacks for devices that never reported
SEED_HEART_RATE = 85
SEED_BODY_TEMPERATURE = 36.8
SEED_ACTIVITY_LEVEL = 45
SEED_SIGNAL_STRENGTH = 78
SEED_LATITUDE = 35.6892
SEED_LONGITUDE = 51.389

LatestLookup = Callable[[str], Optional[Telemetry]]

def clamp(value, lo, hi):
    return max(lo, min(hi, value))

@dataclass
class GeneratedBatch:
    telemetry: List[Telemetry] = field(default_factory=list)
    offline_devices: Set[str] = field(default_factory=set)
    devices: List[Device] = field(default_factory=list)


class TelemetryEngine:
    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        outage_probability: float = OUTAGE_TRIGGER_PROBABILITY,
        offline_emit_probability: float = OFFLINE_EMIT_PROBABILITY,
        outage_min_ms: int = 65_000,
        outage_max_ms: int = 90_000,
    ) -> None:
        self.rng = rng or random.Random()
        self.clock = clock
        self.outage_probability = outage_probability
        self.offline_emit_probability = offline_emit_probability
        self.outage_min_ms = outage_min_ms
        self.outage_max_ms = outage_max_ms
        self.outage_until: Dict[str, datetime] = {}

    def in_outage(self, device_id: str, now: datetime | None = None) -> bool:
        until = self.outage_until.get(device_id)
        return until is not None and until > (now or self.clock())

    def generate_batch(self, devices: Sequence[Device], latest: LatestLookup) -> GeneratedBatch:
        batch = GeneratedBatch(devices=list(devices))
        now = self.clock()

        for device in devices:
            until = self.outage_until.get(device.id)
            if until is not None:
                if until > now:
                    batch.offline_devices.add(device.id)
                    continue
                del self.outage_until[device.id]
                log.debug("outage over for %s", device.id)

            if self.rng.random() < self.outage_probability:
                duration = self.rng.randint(self.outage_min_ms, self.outage_max_ms)
                self.outage_until[device.id] = now + timedelta(milliseconds=duration)
                batch.offline_devices.add(device.id)
                log.debug("outage started for %s (%d ms)", device.id, duration)
                continue

            # transient drop, no outage window
            if self.rng.random() < self.offline_emit_probability:
                batch.offline_devices.add(device.id)
                continue

            batch.telemetry.append(self.build_sample(device, latest(device.id), now))

        return batch

    def build_sample(self, device: Device, previous: Telemetry | None, now: datetime) -> Telemetry:
        r = self.rng
        heart_rate = previous.heart_rate if previous else SEED_HEART_RATE
        body_temperature = previous.body_temperature if previous else SEED_BODY_TEMPERATURE
        activity = previous.activity_level if previous else SEED_ACTIVITY_LEVEL
        battery = previous.battery if previous else device.battery_level
        signal = previous.signal_strength if previous else SEED_SIGNAL_STRENGTH
        lat = previous.latitude if previous else SEED_LATITUDE
        lng = previous.longitude if previous else SEED_LONGITUDE

        return Telemetry(
            id=f"tel-live-{uuid.uuid4().hex[:8]}",
            device_id=device.id,
            heart_rate=clamp(heart_rate + r.randint(-6, 7), 45, 190),
            body_temperature=clamp(round(body_temperature + r.randint(-3, 3) * 0.1, 1), 34.5, 41.5),
            activity_level=clamp(activity + r.randint(-10, 12), 0, 100),
            battery=clamp(battery - r.randint(0, 2), 0, 100),
            signal_strength=clamp(signal + r.randint(-6, 5), 8, 100),
            latitude=round(lat + r.randint(-2, 2) * 0.0006, 6),
            longitude=round(lng + r.randint(-2, 2) * 0.0006, 6),
            timestamp=now,
        )

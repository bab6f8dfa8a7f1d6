"""
In-memory state shared between the stream controller and the API.

Every collection is bounded: telemetry is kept in a fixed-size window per
device and the alert feed drops its oldest entries once full. All mutation
happens on the event loop thread, between or inside stream cycles.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceStatus,
    GeofenceConfig,
    Telemetry,
    ThresholdConfig,
    utcnow,
)

log = logging.getLogger(__name__)

class NotFoundError(LookupError):
    """Raised when an external action references an unknown id."""

class DeviceNotFound(NotFoundError):
    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id

class AlertNotFound(NotFoundError):
    def __init__(self, alert_id: str):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class DeviceStore:
    def __init__(self, devices: Iterable[Device] = ()) -> None:
        self._devices: List[Device] = list(devices)

    def all(self) -> List[Device]:
        return list(self._devices)

    def list(self, search: str | None = None, status: DeviceStatus | None = None) -> List[Device]:
        rows = self._devices
        if search:
            keyword = search.lower()
            rows = [d for d in rows if keyword in d.name.lower()]
        if status:
            rows = [d for d in rows if d.status == status]
        return list(rows)

    def get(self, device_id: str) -> Device:
        for d in self._devices:
            if d.id == device_id:
                return d
        raise DeviceNotFound(device_id)

    def _next_number(self) -> int:
        numbers = [0]
        for d in self._devices:
            prefix, _, suffix = d.id.partition("-")
            if prefix == "dev" and suffix.isdigit():
                numbers.append(int(suffix))
        return max(numbers) + 1

    def register(self, name: str, firmware_version: str, battery_level: int,
                 status: DeviceStatus = "online") -> Device:
        device = Device(
            id=f"dev-{self._next_number():03d}",
            name=name,
            status=status,
            firmware_version=firmware_version,
            last_seen=utcnow(),
            battery_level=battery_level,
        )
        self._devices.append(device)
        log.info("registered device %s (%s)", device.id, device.name)
        return device

    def upsert(self, device: Device) -> Device:
        for i, d in enumerate(self._devices):
            if d.id == device.id:
                self._devices[i] = device
                return device
        self._devices.insert(0, device)
        return device

    def update_runtime(self, device_id: str, status: DeviceStatus | None = None,
                       last_seen: datetime | None = None, battery_level: int | None = None) -> Device | None:
        # unknown ids are ignored: the registry may have dropped the device mid-stream
        for i, d in enumerate(self._devices):
            if d.id != device_id:
                continue
            changes = {}
            if status is not None:
                changes["status"] = status
            if last_seen is not None:
                changes["last_seen"] = last_seen
            if battery_level is not None:
                changes["battery_level"] = battery_level
            updated = d.model_copy(update=changes)
            self._devices[i] = updated
            return updated
        return None

    def __len__(self) -> int:
        return len(self._devices)


class TelemetryStore:
    """Per-device telemetry windows, newest first."""

    def __init__(self, max_points_per_device: int = 200) -> None:
        self.max_points_per_device = max_points_per_device
        self._by_device: Dict[str, Deque[Telemetry]] = {}
        self.last_updated_at: datetime | None = None

    def ingest(self, sample: Telemetry) -> None:
        window = self._by_device.get(sample.device_id)
        if window is None:
            window = self._by_device[sample.device_id] = deque(maxlen=self.max_points_per_device)
        window.appendleft(sample)
        self.last_updated_at = sample.timestamp

    def latest(self, device_id: str) -> Optional[Telemetry]:
        window = self._by_device.get(device_id)
        return window[0] if window else None

    def window(self, device_id: str, limit: int | None = None) -> List[Telemetry]:
        rows = list(self._by_device.get(device_id, ()))
        return rows[:limit] if limit is not None else rows

    def all(self) -> List[Telemetry]:
        out: List[Telemetry] = []
        for window in self._by_device.values():
            out.extend(window)
        return out

    def device_ids(self) -> List[str]:
        return list(self._by_device.keys())

    def query(self, device_id: str | None = None, since: datetime | None = None,
              until: datetime | None = None, limit: int | None = None) -> List[Telemetry]:
        rows = self.window(device_id) if device_id else self.all()
        if since is not None:
            rows = [r for r in rows if r.timestamp >= since]
        if until is not None:
            rows = [r for r in rows if r.timestamp <= until]
        if limit is not None:
            rows = rows[:limit]
        return rows

    def clear(self, device_id: str | None = None) -> None:
        if device_id is None:
            self._by_device.clear()
            self.last_updated_at = None
        else:
            self._by_device.pop(device_id, None)


class AlertStore:
    """Alert feed, newest first, deduplicated on (device, type, severity)."""

    def __init__(self, alerts: Iterable[Alert] = (), max_alerts: int = 1000) -> None:
        self._alerts: Deque[Alert] = deque(alerts, maxlen=max_alerts)

    def list(self, severity: AlertSeverity | None = None) -> List[Alert]:
        if severity:
            return [a for a in self._alerts if a.severity == severity]
        return list(self._alerts)

    def has_open(self, device_id: str, type_: AlertType, severity: AlertSeverity) -> bool:
        key = (device_id, type_, severity)
        return any(a.dedup_key == key and not a.acknowledged for a in self._alerts)

    def push(self, alert: Alert) -> bool:
        """Commit an alert unless an open one with the same key exists. Returns True when stored."""
        if self.has_open(*alert.dedup_key):
            return False
        self._alerts.appendleft(alert)
        log.info("alert %s %s/%s for %s: %s", alert.id, alert.type, alert.severity, alert.device_id, alert.message)
        return True

    def get(self, alert_id: str) -> Alert:
        for a in self._alerts:
            if a.id == alert_id:
                return a
        raise AlertNotFound(alert_id)

    def acknowledge(self, alert_id: str) -> Alert:
        alert = self.get(alert_id)
        if not alert.acknowledged:
            alert.acknowledged = True
            log.info("alert %s acknowledged", alert_id)
        return alert

    @property
    def unread_count(self) -> int:
        return sum(1 for a in self._alerts if not a.acknowledged)

    def __len__(self) -> int:
        return len(self._alerts)


class SettingsStore:
    """Runtime thresholds and geofence, read by the stream at the start of every cycle."""

    def __init__(self, thresholds: ThresholdConfig | None = None, geofence: GeofenceConfig | None = None) -> None:
        self.thresholds = thresholds or ThresholdConfig()
        self.geofence = geofence or GeofenceConfig()

    def update_thresholds(self, thresholds: ThresholdConfig) -> ThresholdConfig:
        self.thresholds = thresholds
        log.info("thresholds updated: %s", thresholds.model_dump())
        return thresholds

    def update_geofence(self, geofence: GeofenceConfig) -> GeofenceConfig:
        self.geofence = geofence
        log.info("geofence updated: %s", geofence.model_dump())
        return geofence

    def runtime_config(self) -> dict:
        return {"thresholds": self.thresholds, "geofence": self.geofence}

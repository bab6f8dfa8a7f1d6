from dataclasses import dataclass, field
from datetime import timedelta

from .models import Alert, Device, Telemetry, utcnow
from .settings import Settings, settings as default_settings
from .stores import AlertStore, DeviceStore, SettingsStore, TelemetryStore

@dataclass
class Database:
    devices: DeviceStore = field(default_factory=DeviceStore)
    telemetry: TelemetryStore = field(default_factory=TelemetryStore)
    alerts: AlertStore = field(default_factory=AlertStore)
    config: SettingsStore = field(default_factory=SettingsStore)

def _demo_rows():
    now = utcnow()
    devices = [
        Device(id="dev-001", name="Worker A - Wearable", status="online",
               firmware_version="1.4.2", last_seen=now, battery_level=88),
        Device(id="dev-002", name="Worker B - Wearable", status="offline",
               firmware_version="1.3.9", last_seen=now - timedelta(minutes=3), battery_level=42),
        Device(id="dev-003", name="Worker C - Wearable", status="critical",
               firmware_version="2.0.0", last_seen=now, battery_level=14),
    ]
    telemetry = [
        Telemetry(id="tel-001", device_id="dev-001", heart_rate=84, body_temperature=36.7,
                  activity_level=51, battery=88, signal_strength=84,
                  latitude=35.6892, longitude=51.389, timestamp=now),
        Telemetry(id="tel-002", device_id="dev-003", heart_rate=138, body_temperature=38.2,
                  activity_level=75, battery=14, signal_strength=28,
                  latitude=35.698, longitude=51.408, timestamp=now),
    ]
    alerts = [
        Alert(id="alt-001", device_id="dev-003", type="battery", severity="critical",
              message="Battery dropped below configured threshold", timestamp=now),
    ]
    return devices, telemetry, alerts

def init_db(settings: Settings = default_settings, seed: bool = True) -> Database:
    devices, telemetry, alerts = _demo_rows() if seed else ([], [], [])
    db = Database(
        devices=DeviceStore(devices),
        telemetry=TelemetryStore(max_points_per_device=settings.telemetry_window),
        alerts=AlertStore(alerts, max_alerts=settings.max_alerts),
        config=SettingsStore(),
    )
    for t in telemetry:
        db.telemetry.ingest(t)
    return db

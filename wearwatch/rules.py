"""
Alert rules evaluated against live telemetry.

Both entry points are pure: they return alert candidates and never touch
the stores. Committing (dedup) is done by the stream controller.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Mapping

from .geo import Coordinate, distance_meters
from .models import Alert, AlertSeverity, AlertType, GeofenceConfig, Telemetry, ThresholdConfig, utcnow

def _create_alert(device_id: str, type_: AlertType, severity: AlertSeverity, message: str, now: datetime) -> Alert:
    return Alert(
        id=f"alt-{uuid.uuid4().hex[:8]}",
        device_id=device_id,
        type=type_,
        severity=severity,
        message=message,
        timestamp=now,
        acknowledged=False,
    )

def evaluate_sample(
    sample: Telemetry,
    thresholds: ThresholdConfig,
    geofence: GeofenceConfig,
    now: datetime | None = None,
) -> list[Alert]:
    now = now or utcnow()
    dev = sample.device_id
    alerts: list[Alert] = []

    if sample.heart_rate > thresholds.critical_heart_rate:
        alerts.append(_create_alert(dev, "heartRate", "critical",
                                    f"Critical heart rate detected ({sample.heart_rate} bpm)", now))
    elif sample.heart_rate > thresholds.warning_heart_rate:
        alerts.append(_create_alert(dev, "heartRate", "medium",
                                    f"Elevated heart rate detected ({sample.heart_rate} bpm)", now))

    if sample.body_temperature > thresholds.critical_body_temperature:
        alerts.append(_create_alert(dev, "bodyTemperature", "critical",
                                    f"Critical body temperature detected ({sample.body_temperature} C)", now))

    if sample.battery < thresholds.low_battery_threshold:
        alerts.append(_create_alert(dev, "battery", "medium",
                                    f"Battery dropped below threshold ({sample.battery}%)", now))

    if sample.signal_strength < thresholds.weak_signal_threshold:
        alerts.append(_create_alert(dev, "signal", "low",
                                    f"Weak signal detected ({sample.signal_strength}%)", now))

    center = Coordinate(geofence.center_latitude, geofence.center_longitude)
    distance = distance_meters(sample, center)
    if distance > geofence.radius_meters:
        alerts.append(_create_alert(dev, "geofence", "critical",
                                    f"Geofence breach detected ({round(distance)}m outside boundary)", now))

    return alerts

def evaluate_silence(
    thresholds: ThresholdConfig,
    last_seen_by_device: Mapping[str, datetime],
    now: datetime | None = None,
) -> list[Alert]:
    """One critical heartbeat alert per device silent for longer than no_telemetry_seconds."""
    now = now or utcnow()
    limit = thresholds.no_telemetry_seconds
    alerts: list[Alert] = []
    for device_id, last_seen in last_seen_by_device.items():
        if (now - last_seen).total_seconds() > limit:
            alerts.append(_create_alert(device_id, "heartbeat", "critical",
                                        f"No telemetry received for more than {limit:g} seconds", now))
    return alerts

"""
Read-only views over the stores for the dashboard and analytics pages.

Nothing here mutates state; every function takes plain sequences so it can be
fed from the stores or from a filtered slice of them.
"""
from __future__ import annotations

import csv
import io
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .models import Alert, Device, Telemetry

CSV_HEADERS = [
    "id", "deviceId", "heartRate", "bodyTemperature",
    "activityLevel", "battery", "signalStrength", "timestamp",
]

VITALS = ("heart_rate", "body_temperature", "activity_level", "battery", "signal_strength")

def _mean(vals: Sequence[float]) -> float:
    return sum(vals) / max(len(vals), 1)

def _numeric_stats(vals: List[float]) -> Dict[str, Any]:
    n = len(vals)
    if n == 0: return {"count": 0}
    mean = sum(vals)/n
    std = (sum((v-mean)**2 for v in vals)/n) ** 0.5
    slope = 0.0
    if n >= 2:
        num = sum((i-(n-1)/2)*(v-mean) for i, v in enumerate(vals))
        den = sum((i-(n-1)/2)**2 for i in range(n)) or 1.0
        slope = num/den
    return {"count": n, "min": min(vals), "max": max(vals), "mean": mean, "std": std, "slope": slope}

def vital_stats(samples: Iterable[Telemetry]) -> Dict[str, Dict[str, Any]]:
    """Per-vital summary; slope is per sample in chronological order."""
    rows = sorted(samples, key=lambda s: s.timestamp)
    return {k: _numeric_stats([float(getattr(r, k)) for r in rows]) for k in VITALS}

def daily_averages(samples: Iterable[Telemetry]) -> List[Dict[str, Any]]:
    by_day: Dict[str, List[Telemetry]] = defaultdict(list)
    for s in samples:
        by_day[s.timestamp.strftime("%Y-%m-%d")].append(s)
    out = []
    for day in sorted(by_day):
        rows = by_day[day]
        out.append({
            "date": day,
            "avg_heart_rate": round(_mean([r.heart_rate for r in rows]), 2),
            "avg_body_temperature": round(_mean([r.body_temperature for r in rows]), 2),
            "avg_battery": round(_mean([r.battery for r in rows]), 2),
        })
    return out

def uptime_percent(window: Sequence[Telemetry], interval_seconds: float = 4) -> float:
    """Share of expected samples actually received over the window's span (newest-first input)."""
    if len(window) < 2:
        return 0.0
    newest, oldest = window[0].timestamp, window[-1].timestamp
    observed = max((newest - oldest).total_seconds(), 1)
    expected = observed / interval_seconds
    return max(0.0, min(100.0, round(len(window) / expected * 100, 1)))

def alert_breakdown(alerts: Iterable[Alert]) -> Dict[str, int]:
    counts = {"critical": 0, "medium": 0, "low": 0}
    for a in alerts:
        counts[a.severity] += 1
    return counts

def dashboard_kpis(
    devices: Sequence[Device],
    alerts: Sequence[Alert],
    latest: Callable[[str], Optional[Telemetry]],
) -> Dict[str, Any]:
    heart_rates = [t.heart_rate for t in (latest(d.id) for d in devices) if t is not None]
    open_critical = [a for a in alerts if a.severity == "critical" and not a.acknowledged]
    return {
        "total_devices": len(devices),
        "online_devices": sum(1 for d in devices if d.status == "online"),
        "offline_devices": sum(1 for d in devices if d.status == "offline"),
        "critical_devices": sum(1 for d in devices if d.status == "critical"),
        "open_critical_alerts": len(open_critical),
        "latest_critical_alert": open_critical[0] if open_critical else None,
        "avg_heart_rate": round(_mean(heart_rates), 1) if heart_rates else 0.0,
    }

def export_csv(samples: Iterable[Telemetry]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for s in samples:
        writer.writerow([
            s.id, s.device_id, s.heart_rate, s.body_temperature,
            s.activity_level, s.battery, s.signal_strength, s.timestamp.isoformat().replace("+00:00", "Z"),
        ])
    return buf.getvalue().rstrip("\n")

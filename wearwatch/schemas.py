from datetime import datetime
from pydantic import BaseModel, Field

from .models import Alert, DeviceStatus, GeofenceConfig, ThresholdConfig

class DeviceRegister(BaseModel):
    name: str = Field(min_length=1)
    firmware_version: str
    battery_level: int = Field(default=100, ge=0, le=100)
    status: DeviceStatus = "online"

class RuntimeConfig(BaseModel):
    thresholds: ThresholdConfig
    geofence: GeofenceConfig

class StreamStatus(BaseModel):
    state: str
    cycles: int
    subscribers: int
    outages: list[str] = []

class DailyAverage(BaseModel):
    date: str
    avg_heart_rate: float
    avg_body_temperature: float
    avg_battery: float

class DeviceUptime(BaseModel):
    device_id: str
    name: str
    uptime: float

class Overview(BaseModel):
    total_devices: int
    online_devices: int
    offline_devices: int
    critical_devices: int
    open_critical_alerts: int
    latest_critical_alert: Alert | None = None
    avg_heart_rate: float
    unread_alerts: int
    alerts_by_severity: dict[str, int]
    last_updated_at: datetime | None = None


from datetime import datetime, timezone
from typing import Literal

from dateutil import parser as dtparser
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DeviceStatus = Literal["online", "offline", "critical"]
AlertType = Literal["heartRate", "bodyTemperature", "battery", "heartbeat", "geofence", "signal"]
AlertSeverity = Literal["low", "medium", "critical"]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt: datetime) -> datetime:
    # naive timestamps are taken as UTC so they compare with utcnow()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def parse_ts(ts: str | None) -> datetime | None:
    if not ts:
        return None
    return as_utc(dtparser.isoparse(ts))

class Device(BaseModel):
    id: str
    name: str
    status: DeviceStatus = "online"
    firmware_version: str
    last_seen: datetime = Field(default_factory=utcnow)
    battery_level: int = Field(ge=0, le=100)

    @field_validator("last_seen")
    @classmethod
    def utc_last_seen(cls, v: datetime) -> datetime:
        return as_utc(v)

class Telemetry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    device_id: str
    heart_rate: int
    body_temperature: float
    activity_level: int
    battery: int
    signal_strength: int
    latitude: float
    longitude: float
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

class Alert(BaseModel):
    id: str
    device_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.device_id, self.type, self.severity)

class ThresholdConfig(BaseModel):
    warning_heart_rate: float = Field(default=130, gt=0)
    critical_heart_rate: float = Field(default=150, gt=0)
    critical_body_temperature: float = Field(default=39, gt=0)
    low_battery_threshold: float = Field(default=20, gt=0)
    weak_signal_threshold: float = Field(default=30, gt=0)
    no_telemetry_seconds: float = Field(default=60, gt=0)

    @model_validator(mode="after")
    def critical_above_warning(self) -> "ThresholdConfig":
        if self.critical_heart_rate <= self.warning_heart_rate:
            raise ValueError("critical_heart_rate must exceed warning_heart_rate")
        return self

class GeofenceConfig(BaseModel):
    center_latitude: float = Field(default=35.6892, ge=-90, le=90)
    center_longitude: float = Field(default=51.389, ge=-180, le=180)
    radius_meters: float = Field(default=800, gt=0)

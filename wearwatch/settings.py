from pydantic import BaseModel, model_validator
import os

def _optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else None

class Settings(BaseModel):
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # stream loop timing (milliseconds)
    stream_min_ms: int = int(os.getenv("STREAM_MIN_MS", "3000"))
    stream_max_ms: int = int(os.getenv("STREAM_MAX_MS", "5000"))
    reconnect_ms: int = int(os.getenv("RECONNECT_MS", "2000"))
    disconnect_probability: float = float(os.getenv("DISCONNECT_PROBABILITY", "0.02"))
    stream_autostart: bool = os.getenv("STREAM_AUTOSTART", "1") == "1"
    simulation_seed: int | None = _optional_int("SIMULATION_SEED")

    # generator
    outage_probability: float = float(os.getenv("OUTAGE_PROBABILITY", "0.04"))
    offline_emit_probability: float = float(os.getenv("OFFLINE_EMIT_PROBABILITY", "0.10"))
    outage_min_ms: int = int(os.getenv("OUTAGE_MIN_MS", "65000"))
    outage_max_ms: int = int(os.getenv("OUTAGE_MAX_MS", "90000"))

    # memory bounds
    telemetry_window: int = int(os.getenv("TELEMETRY_WINDOW", "200"))
    max_alerts: int = int(os.getenv("MAX_ALERTS", "1000"))
    ws_queue_size: int = int(os.getenv("WS_QUEUE_SIZE", "1000"))

    uptime_interval_seconds: float = float(os.getenv("UPTIME_INTERVAL_SECONDS", "4"))

    @model_validator(mode="after")
    def ranges_ordered(self):
        if self.stream_min_ms > self.stream_max_ms:
            raise ValueError("STREAM_MIN_MS must not exceed STREAM_MAX_MS")
        if self.outage_min_ms > self.outage_max_ms:
            raise ValueError("OUTAGE_MIN_MS must not exceed OUTAGE_MAX_MS")
        return self

settings = Settings()

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from . import analytics
from .db import Database, init_db
from .models import Alert, AlertSeverity, Device, DeviceStatus, GeofenceConfig, Telemetry, ThresholdConfig, parse_ts
from .schemas import DailyAverage, DeviceRegister, DeviceUptime, Overview, RuntimeConfig, StreamStatus
from .settings import settings
from .stores import NotFoundError
from .stream import StreamController
from .ws_manager import ConnectionManager, TelemetryFeed

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO),
                    format="%(asctime)s %(name)s %(levelname)s %(message)s")
log = logging.getLogger("api")

manager = ConnectionManager()
db: Database | None = None
stream: StreamController | None = None
feed: TelemetryFeed | None = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    global db, stream, feed
    db = init_db(settings)
    stream = StreamController(db.devices, db.telemetry, db.alerts, db.config,
                              settings=settings, loop=asyncio.get_running_loop())
    feed = TelemetryFeed(manager, maxsize=settings.ws_queue_size)
    stream.subscribe(feed.on_telemetry)
    stream.subscribe_state(feed.on_state)
    forwarder = asyncio.create_task(feed.forward())
    if settings.stream_autostart:
        stream.connect()
    log.info("started with %d device(s), stream %s", len(db.devices), stream.connection_state.value)
    try:
        yield
    finally:
        stream.disconnect()
        forwarder.cancel()

app = FastAPI(title="Wearwatch API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# every handler below is async so store reads/writes happen on the loop thread,
# never interleaved with a running stream cycle

def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))

def _ts_param(value: str | None, name: str):
    try:
        return parse_ts(value)
    except (ValueError, OverflowError):
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")

# ---------------- devices ----------------
@app.get("/api/devices", response_model=List[Device])
async def list_devices(search: str | None = None, status: DeviceStatus | None = None):
    return db.devices.list(search=search, status=status)

@app.get("/api/devices/{device_id}", response_model=Device)
async def get_device(device_id: str):
    try:
        return db.devices.get(device_id)
    except NotFoundError as e:
        raise _not_found(e)

@app.post("/api/devices", response_model=Device, status_code=201)
async def register_device(body: DeviceRegister):
    return db.devices.register(body.name, body.firmware_version, body.battery_level, body.status)

# ---------------- telemetry ----------------
@app.get("/api/telemetry", response_model=List[Telemetry])
async def get_telemetry(device_id: str | None = None, since: str | None = None,
                        until: str | None = None, limit: int = Query(200, ge=1)):
    return db.telemetry.query(
        device_id=device_id,
        since=_ts_param(since, "since"),
        until=_ts_param(until, "until"),
        limit=limit,
    )

# ---------------- alerts ----------------
@app.get("/api/alerts", response_model=List[Alert])
async def list_alerts(severity: AlertSeverity | None = None):
    return db.alerts.list(severity)

@app.post("/api/alerts/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(alert_id: str):
    try:
        return db.alerts.acknowledge(alert_id)
    except NotFoundError as e:
        raise _not_found(e)

# ---------------- settings ----------------
@app.get("/api/settings", response_model=RuntimeConfig)
async def get_settings():
    return RuntimeConfig(**db.config.runtime_config())

@app.put("/api/settings/thresholds", response_model=ThresholdConfig)
async def update_thresholds(body: ThresholdConfig):
    return db.config.update_thresholds(body)

@app.put("/api/settings/geofence", response_model=GeofenceConfig)
async def update_geofence(body: GeofenceConfig):
    return db.config.update_geofence(body)

# ---------------- analytics ----------------
@app.get("/api/analytics/daily", response_model=List[DailyAverage])
async def daily_averages():
    return analytics.daily_averages(db.telemetry.all())

@app.get("/api/analytics/uptime", response_model=List[DeviceUptime])
async def uptime():
    return [
        DeviceUptime(
            device_id=d.id,
            name=d.name,
            uptime=analytics.uptime_percent(db.telemetry.window(d.id), settings.uptime_interval_seconds),
        )
        for d in db.devices.all()
    ]

@app.get("/api/analytics/overview", response_model=Overview)
async def overview():
    alerts = db.alerts.list()
    kpis = analytics.dashboard_kpis(db.devices.all(), alerts, db.telemetry.latest)
    return Overview(
        **kpis,
        unread_alerts=db.alerts.unread_count,
        alerts_by_severity=analytics.alert_breakdown(alerts),
        last_updated_at=db.telemetry.last_updated_at,
    )

@app.get("/api/analytics/devices/{device_id}/stats")
async def device_stats(device_id: str):
    try:
        db.devices.get(device_id)
    except NotFoundError as e:
        raise _not_found(e)
    return analytics.vital_stats(db.telemetry.window(device_id))

@app.get("/api/analytics/export.csv")
async def export_csv():
    return PlainTextResponse(
        analytics.export_csv(db.telemetry.all()),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="telemetry.csv"'},
    )

# ---------------- stream ----------------
def _stream_status() -> StreamStatus:
    return StreamStatus(
        state=stream.connection_state.value,
        cycles=stream.cycles,
        subscribers=len(manager),
        outages=sorted(d.id for d in db.devices.all() if stream.engine.in_outage(d.id)),
    )

@app.get("/api/stream", response_model=StreamStatus)
async def stream_status():
    return _stream_status()

@app.post("/api/stream/connect", response_model=StreamStatus)
async def stream_connect():
    stream.connect()
    return _stream_status()

@app.post("/api/stream/disconnect", response_model=StreamStatus)
async def stream_disconnect():
    stream.disconnect()
    return _stream_status()

@app.websocket("/ws/telemetry")
async def telemetry_ws(websocket: WebSocket):
    await manager.connect(websocket)
    await websocket.send_text(json.dumps({"kind": "status", "state": stream.connection_state.value}))
    try:
        while True:
            # client messages are ignored; receiving is how we notice the close
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket)

import asyncio
import json
import logging
from typing import Set

from fastapi import WebSocket

from .models import Telemetry
from .stream import ConnectionState

log = logging.getLogger("ws")

class ConnectionManager:
    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.active_connections.discard(websocket)

    async def broadcast_text(self, message: str):
        async with self._lock:
            tasks = [self._safe_send(ws, message) for ws in list(self.active_connections)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception as e:
            log.info("dropping websocket client: %s", e)
            await self.disconnect(ws)

    def __len__(self) -> int:
        return len(self.active_connections)


class TelemetryFeed:
    """
    Bridges the synchronous stream subscribers to websocket clients.

    Samples and state changes are serialized into a bounded queue from inside
    the stream cycle; ``forward`` drains it and broadcasts on the event loop.
    """

    def __init__(self, manager: ConnectionManager, maxsize: int = 1000) -> None:
        self.manager = manager
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, message: str) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped % 100 == 1:
                log.warning("websocket queue full, %d message(s) dropped so far", self.dropped)

    def on_telemetry(self, sample: Telemetry) -> None:
        self._put(json.dumps({"kind": "telemetry", "data": sample.model_dump(mode="json")}))

    def on_state(self, state: ConnectionState) -> None:
        self._put(json.dumps({"kind": "status", "state": state.value}))

    async def forward(self) -> None:
        while True:
            msg = await self.queue.get()
            await self.manager.broadcast_text(msg)

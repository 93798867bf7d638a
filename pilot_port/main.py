from __future__ import annotations

import asyncio
import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect

import settings
from database import init_database
from replay.session import ReplayEngine
from replay.store import StoreUnavailable, TelemetryStore
from replay.types import FlightKey

logger = logging.getLogger(__name__)


class RoomHub:
    """
    Websocket fan-out keyed by flight room ("<flight_number>:<date>").
    Sockets whose send fails are dropped from every room.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = {}

    def join(self, room: str, websocket: WebSocket) -> None:
        self._rooms.setdefault(room, set()).add(websocket)

    def leave_all(self, websocket: WebSocket) -> None:
        for room in list(self._rooms):
            members = self._rooms[room]
            members.discard(websocket)
            if not members:
                del self._rooms[room]

    def members(self, room: str) -> Set[WebSocket]:
        return set(self._rooms.get(room, ()))

    async def send(self, websocket: WebSocket, event: str, data: Any) -> bool:
        try:
            await websocket.send_text(json.dumps({"event": event, "data": data}))
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("dropping websocket after failed send (%s): %r", event, e)
            self.leave_all(websocket)
            return False

    async def broadcast(self, room: str, event: str, data: Any) -> None:
        for ws in self.members(room):
            await self.send(ws, event, data)


engine = ReplayEngine(TelemetryStore())
hub = RoomHub()


async def _evict_loop() -> None:
    while True:
        await asyncio.sleep(settings.EVICT_INTERVAL_SEC)
        engine.evict_idle(settings.SESSION_IDLE_SEC)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Standalone runs (uvicorn pilot_port.main:app) need the schema too.
    init_database()
    sweeper: Optional[asyncio.Task] = None
    if settings.SESSION_IDLE_SEC > 0:
        sweeper = asyncio.create_task(_evict_loop())
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
        engine.close()


app = FastAPI(title="FDR Replay Server", lifespan=lifespan)

pilot_router = APIRouter(prefix="/pilot", tags=["pilot"])


def _number(data: Dict[str, Any], name: str) -> float:
    raw = data.get(name)
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ValueError(f"{name} must be a number")
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number") from None
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite")
    return value


# -----------------------
# Event handlers
# -----------------------


async def on_join(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    hub.join(key.room, websocket)
    joined = await engine.join(key)
    # Static path once, then the current position.
    await hub.send(websocket, "telemetry:path", {"path": joined["path"], "total": joined["total"]})
    await hub.send(websocket, "telemetry:snapshot", joined["snapshot"])


async def on_resume(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    room = key.room
    await engine.resume(key, lambda tick: hub.broadcast(room, "telemetry:tick", tick))
    await hub.broadcast(room, "telemetry:snapshot", await engine.snapshot(key))


async def on_pause(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    await engine.pause(key)
    await hub.broadcast(key.room, "telemetry:snapshot", await engine.snapshot(key))


async def on_seek_seconds(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    snap = await engine.seek_seconds(key, _number(data, "seconds"))
    await hub.broadcast(key.room, "telemetry:snapshot", snap)


async def on_seek_points(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    snap = await engine.seek_points(key, int(_number(data, "points")))
    await hub.broadcast(key.room, "telemetry:snapshot", snap)


async def on_set_rate(websocket: WebSocket, key: FlightKey, data: Dict[str, Any]) -> None:
    res = await engine.set_rate(key, data.get("rate"))
    await hub.broadcast(key.room, "player:rate", res)


HANDLERS: Dict[str, Callable[[WebSocket, FlightKey, Dict[str, Any]], Awaitable[None]]] = {
    "join": on_join,
    "player:resume": on_resume,
    "player:pause": on_pause,
    "player:seekSeconds": on_seek_seconds,
    "player:seekPoints": on_seek_points,
    "player:setRate": on_set_rate,
}


async def _error(websocket: WebSocket, code: str, message: str, event: Optional[str] = None) -> None:
    await hub.send(websocket, "error", {"code": code, "message": message, "event": event})


async def handle_message(websocket: WebSocket, raw: str) -> None:
    try:
        msg = json.loads(raw)
    except ValueError:
        await _error(websocket, "bad_request", "message must be JSON")
        return
    if not isinstance(msg, dict):
        await _error(websocket, "bad_request", "message must be an object")
        return
    event = msg.get("event")
    data = msg.get("data") or {}
    handler = HANDLERS.get(event) if isinstance(event, str) else None
    if handler is None:
        await _error(websocket, "unknown_event", f"unknown event {event!r}", event=event)
        return
    try:
        key = FlightKey.from_payload(data)
        await handler(websocket, key, data)
    except ValueError as e:
        await _error(websocket, "bad_request", str(e), event=event)
        return
    except StoreUnavailable as e:
        logger.warning("%s failed: %s", event, e)
        await _error(websocket, "store_unavailable", "telemetry store unavailable", event=event)
        return
    await hub.send(websocket, "ack", {"ok": True, "event": event})


@pilot_router.websocket("/ws")
async def pilot_websocket(websocket: WebSocket) -> None:
    """
    Player channel. Clients join a flight room, then drive the shared session;
    ticks and snapshots are broadcast to every socket in the room.
    """
    await websocket.accept()
    logger.info("[PILOT] viewer connected")
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_message(websocket, raw)
    except WebSocketDisconnect:
        logger.info("[PILOT] viewer disconnected")
    finally:
        hub.leave_all(websocket)


app.include_router(pilot_router)

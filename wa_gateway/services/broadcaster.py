from typing import Dict, Set
from fastapi import WebSocket
import structlog

log = structlog.get_logger(__name__)

def agent_room(agent_id: int) -> str:
    return f"agent:{agent_id}"

class Broadcaster:
    """Pushes new conversation messages to the tenant's open dashboard sockets."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def join(self, room: str, ws: WebSocket):
        await ws.accept()
        self.rooms.setdefault(room, set()).add(ws)

    def leave(self, room: str, ws: WebSocket):
        if room in self.rooms:
            self.rooms[room].discard(ws)
            if not self.rooms[room]:
                self.rooms.pop(room, None)

    async def broadcast(self, room: str, payload: dict):
        conns = list(self.rooms.get(room, []))
        for ws in conns:
            try:
                await ws.send_json(payload)
            except Exception as exc:
                log.info("websocket_dropped", room=room, error=str(exc))
                self.leave(room, ws)

    async def emit_new_message(self, agent_id: int, message: dict):
        await self.broadcast(agent_room(agent_id), {"event": "new_message", "data": message})

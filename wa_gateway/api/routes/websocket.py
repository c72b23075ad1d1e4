from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status
import structlog

from wa_gateway.core.deps_api import user_id_from_token
from wa_gateway.core.errors import NotFound
from wa_gateway.services.broadcaster import agent_room
from wa_gateway.services.tenants import tenant_by_user_id

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/ws")


@router.websocket("")
async def ws_endpoint(ws: WebSocket, token: str = Query(...)):
    try:
        user_id = user_id_from_token(token)
        async with ws.app.state.session_factory() as db:
            ctx = await tenant_by_user_id(db, user_id)
    except (HTTPException, NotFound) as exc:
        log.info("websocket_rejected", reason=getattr(exc, "detail", None) or str(exc))
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = ws.app.state.broadcaster
    room = agent_room(ctx.agent.id)
    await broadcaster.join(room, ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        broadcaster.leave(room, ws)

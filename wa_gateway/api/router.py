from fastapi import APIRouter
from wa_gateway.api.routes import conversations, media, messages, webhooks_whatsapp, websocket

api = APIRouter(prefix="/api")
api.include_router(webhooks_whatsapp.router, tags=["webhooks"])
api.include_router(messages.router, tags=["messages"])
api.include_router(media.router, tags=["media"])
api.include_router(conversations.router, tags=["conversations"])
api.include_router(websocket.router, tags=["ws"])

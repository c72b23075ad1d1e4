from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from wa_gateway.core.security import decode_token
from wa_gateway.services.agent_callback import AgentNotifier
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.inbound import WebhookProcessor
from wa_gateway.services.media_relay import MediaRelay
from wa_gateway.services.outbound import MessageDispatcher

bearer_scheme = HTTPBearer(auto_error=False)


def user_id_from_token(token: str) -> int:
    try:
        payload = decode_token(token)
        return int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id_from_token(credentials.credentials)


# Services are built once at startup and hung off app.state.

def get_processor(request: Request) -> WebhookProcessor:
    return request.app.state.processor


def get_dispatcher(request: Request) -> MessageDispatcher:
    return request.app.state.dispatcher


def get_notifier(request: Request) -> AgentNotifier:
    return request.app.state.notifier


def get_relay(request: Request) -> MediaRelay:
    return request.app.state.relay


def get_cache(request: Request) -> ChatCache:
    return request.app.state.cache


async def get_db(request: Request):
    async with request.app.state.session_factory() as db:
        yield db

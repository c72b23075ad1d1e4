import asyncio

from fastapi import APIRouter, Depends, HTTPException

from wa_gateway.core.deps_api import get_current_user_id, get_dispatcher
from wa_gateway.services.outbound import MessageDispatcher
from wa_gateway.services.send_request import validate_send_request

router = APIRouter(prefix="/messages")


@router.post("/send")
async def send_message(
    payload: dict,
    user_id: int = Depends(get_current_user_id),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
):
    req = validate_send_request(payload)
    if req.user_id != user_id:
        raise HTTPException(403, "Not allowed to send for this user")
    # A client hanging up must not cancel a send the provider may already have accepted.
    result = await asyncio.shield(dispatcher.send(req))
    return result.to_dict()

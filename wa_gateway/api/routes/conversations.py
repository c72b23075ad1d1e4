from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.core.deps_api import get_cache, get_current_user_id, get_db
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.side_effects import run_side_effect
from wa_gateway.services.tenants import mark_conversation_read, tenant_by_user_id

router = APIRouter(prefix="/conversations")


@router.post("/{customer_id}/mark-read")
async def mark_read(
    customer_id: int,
    user_id: int = Depends(get_current_user_id),
    cache: ChatCache = Depends(get_cache),
    db: AsyncSession = Depends(get_db),
):
    ctx = await tenant_by_user_id(db, user_id)
    agent_id = ctx.agent.id
    updated = await mark_conversation_read(db, ctx.tables, customer_id)
    await run_side_effect(
        "invalidate_chat_list", lambda: cache.invalidate_chat_list(agent_id), attempts=2, agent_id=agent_id
    )
    await run_side_effect(
        "invalidate_recent_messages",
        lambda: cache.invalidate_recent_messages(agent_id, customer_id),
        attempts=2,
        agent_id=agent_id,
    )
    return {"success": True, "updated": updated}

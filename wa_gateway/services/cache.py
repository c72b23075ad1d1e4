import redis.asyncio as redis
from wa_gateway.core.config import settings

def chat_list_key(agent_id: int) -> str:
    return f"chat_list:{agent_id}"

def recent_messages_key(agent_id: int, customer_id: int) -> str:
    return f"recent_messages:{agent_id}:{customer_id}"

class ChatCache:
    """Invalidates the dashboard's cached chat list and per-customer history."""

    def __init__(self, r: redis.Redis):
        self.r = r

    @classmethod
    def from_url(cls, url: str = settings.REDIS_URL) -> "ChatCache":
        return cls(redis.from_url(url, decode_responses=True))

    async def invalidate_chat_list(self, agent_id: int) -> None:
        await self.r.delete(chat_list_key(agent_id))

    async def invalidate_recent_messages(self, agent_id: int, customer_id: int) -> None:
        await self.r.delete(recent_messages_key(agent_id, customer_id))

    async def close(self) -> None:
        await self.r.aclose()

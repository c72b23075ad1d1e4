from dataclasses import dataclass

import httpx
import structlog
from fastapi.encoders import jsonable_encoder

from wa_gateway.core.config import settings
from wa_gateway.core.security import create_access_token
from wa_gateway.services.side_effects import SideEffectOutcome, run_side_effect

log = structlog.get_logger(__name__)

SEND_PATH = "/api/messages/send"


@dataclass
class AgentCallback:
    url: str
    user_id: int
    data: dict


class AgentNotifier:
    """Notifies a tenant's AI agent that one of its AI-enabled customers wrote in.

    The agent gets a short-lived token for the tenant user so it can answer
    through the send endpoint.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        timeout: float = settings.AGENT_CALLBACK_TIMEOUT_SECONDS,
        public_base_url: str = settings.PUBLIC_BASE_URL,
    ):
        self.http = http
        self.timeout = timeout
        self.reply_url = f"{public_base_url.rstrip('/')}{SEND_PATH}" if public_base_url else None

    def build(self, *, url: str, user_id: int, message: dict, customer: dict, agent_prefix: str,
              phone_number_id: str) -> AgentCallback:
        data = {
            **jsonable_encoder(message),
            "customer_phone": customer["phone"],
            "customer_name": customer["name"],
            "customer_language": customer.get("language") or "english",
            "agent_prefix": agent_prefix,
            "agent_user_id": user_id,
            "phone_number_id": phone_number_id,
            "reply_url": self.reply_url,
        }
        return AgentCallback(url=url, user_id=user_id, data=data)

    async def _post(self, cb: AgentCallback) -> int:
        token = create_access_token(sub=str(cb.user_id))
        r = await self.http.post(
            cb.url,
            headers={"Authorization": f"Bearer {token}"},
            json={"event": "message_received", "jwt_token": token, "data": cb.data},
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.status_code

    async def deliver(self, cb: AgentCallback) -> SideEffectOutcome:
        # A retried callback could make the agent answer twice, so one attempt only.
        outcome = await run_side_effect(
            "agent_callback", lambda: self._post(cb), user_id=cb.user_id, message_id=cb.data.get("id")
        )
        if outcome.ok:
            log.info("agent_callback_delivered", user_id=cb.user_id, message_id=cb.data.get("id"))
        return outcome

"""
Outbound message dispatch.

A send request is validated, resolved to a tenant and customer, run through
the session/credit policy and turned into one or more Cloud API calls. Every
unit the provider accepted is persisted as an outbound message, even when a
later unit of the same batch fails.
"""
import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wa_gateway.core.errors import InvalidRequest, NotFound, ProviderError
from wa_gateway.db.models import DeliveryLog, DeliveryStatus
from wa_gateway.services.broadcaster import Broadcaster
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.media_relay import MediaMetadata, MediaRelay
from wa_gateway.services.policy import PolicyDecision, SendMode, SessionPolicy
from wa_gateway.services.send_request import SendRequest, validate_send_request
from wa_gateway.services.side_effects import SideEffectOutcome, run_side_effect
from wa_gateway.services.tenants import TenantContext, find_customer, insert_message, tenant_by_user_id
from wa_gateway.services.whatsapp_cloud import WhatsAppCloudClient

log = structlog.get_logger(__name__)

E164_RE = re.compile(r"^\+\d{10,15}$")


def normalize_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        digits = "1" + digits
    normalized = "+" + digits
    if not E164_RE.match(normalized):
        raise InvalidRequest("Invalid phone number format", details={"field": "customer_phone"})
    return normalized


def template_parameter(param: dict) -> dict:
    kind = param["type"]
    if kind == "text":
        return {"type": "text", "text": param["text"]}
    if kind == "currency":
        cur = param["currency"]
        return {
            "type": "currency",
            "currency": {
                "fallback_value": cur["fallback_value"],
                "code": cur["code"],
                "amount_1000": cur["amount_1000"],
            },
        }
    return {"type": "date_time", "date_time": {"fallback_value": param["date_time"]["fallback_value"]}}


_BUTTON_PARAMS = {
    "quick_reply": ("payload", "payload"),
    "cta_phone": ("phone_number", "phone_number"),
    "cta_url": ("url", "url"),
}


def template_components(req: SendRequest) -> list[dict]:
    components = []
    if req.template_params:
        components.append({"type": "body", "parameters": [template_parameter(p) for p in req.template_params]})

    header = None
    if req.header_params:
        header = {"type": "header", "parameters": [template_parameter(p) for p in req.header_params]}
    if req.media_header:
        mh = req.media_header
        header = header or {"type": "header", "parameters": []}
        media = {k: mh[k] for k in ("id", "link") if mh.get(k)}
        header["parameters"].append({"type": mh["type"], mh["type"]: media})
    if header:
        components.append(header)

    for button in req.template_buttons:
        param_type, key = _BUTTON_PARAMS[button["sub_type"]]
        components.append({
            "type": "button",
            "sub_type": button["sub_type"],
            "index": button["index"],
            "parameters": [{"type": param_type, key: button[key]}],
        })
    return components


def template_payload(to: str, name: str, language: str, components: list[dict]) -> dict:
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "template",
        "template": {"name": name, "language": {"code": language}, "components": components},
    }


@dataclass
class SendUnit:
    """One provider call and the message row it turns into."""
    payload: dict
    text: str
    media_type: str = "none"
    media_url: str | None = None
    caption: str | None = None


@dataclass
class SentUnit:
    unit: SendUnit
    provider_message_id: str | None
    response: dict


@dataclass
class DispatchResult:
    message_ids: list[str | None]
    stored_messages: int
    details: list[dict]
    mode: SendMode
    side_effects: list[SideEffectOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message_ids": self.message_ids,
            "stored_messages": self.stored_messages,
            "details": self.details,
        }


class MessageDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        cloud: WhatsAppCloudClient,
        relay: MediaRelay,
        policy: SessionPolicy,
        cache: ChatCache,
        broadcaster: Broadcaster,
    ):
        self.session_factory = session_factory
        self.cloud = cloud
        self.relay = relay
        self.policy = policy
        self.cache = cache
        self.broadcaster = broadcaster

    async def send(self, payload: dict | SendRequest) -> DispatchResult:
        req = payload if isinstance(payload, SendRequest) else validate_send_request(payload)

        async with self.session_factory() as db:
            ctx = await tenant_by_user_id(db, req.user_id)
            customer = await find_customer(db, ctx.tables, req.customer_phone)
            if customer is None:
                raise NotFound("Customer not found")
            to = normalize_phone(customer["phone"])

            decision = await self.policy.decide(
                db,
                ctx.tables,
                ctx.agent.id,
                message_type=req.type,
                is_promotional=req.is_promotional,
                category=req.category,
                last_inbound_at=customer["last_user_message_time"],
                has_media=bool(req.media_ids),
            )

            if decision.uses_template:
                await self.policy.reserve_credits(db, ctx.agent.id)
                units = [self._template_unit(req, decision, to)]
            else:
                units = await self._free_form_units(req, ctx, to)

            sent, failure = await self._dispatch(ctx, units)
            if decision.uses_template and not sent:
                await self.policy.refund_credits(db, ctx.agent.id)

            stored = await self._persist(db, ctx, customer["id"], to, sent) if sent else []

        outcomes = await self._after_persist(ctx.agent.id, customer, stored) if stored else []
        if failure is not None:
            raise failure

        log.info(
            "outbound_sent",
            agent_id=ctx.agent.id,
            customer_id=customer["id"],
            mode=decision.mode.value,
            units=len(sent),
        )
        return DispatchResult(
            message_ids=[s.provider_message_id for s in sent],
            stored_messages=len(stored),
            details=[s.response for s in sent],
            mode=decision.mode,
            side_effects=outcomes,
        )

    def _template_unit(self, req: SendRequest, decision: PolicyDecision, to: str) -> SendUnit:
        if decision.mode is SendMode.template_required:
            name = req.template_name
            payload = template_payload(to, name, req.language, template_components(req))
        else:
            # Forced fallback: the tenant's template goes out as-is, without caller parameters.
            template = decision.template
            name = template["name"]
            language = (template.get("body") or {}).get("language") or "en"
            payload = template_payload(to, name, language, [])
        return SendUnit(payload=payload, text=name)

    async def _resolve_media(self, req: SendRequest, ctx: TenantContext) -> list[MediaMetadata]:
        if len(req.media_ids) > 1 and req.type != "image":
            raise InvalidRequest("Multiple media sending is only supported for images.", details={"field": "media_ids"})
        token = ctx.config.access_token
        resolved = await asyncio.gather(*(self.relay.resolve(mid, token) for mid in req.media_ids))
        formats = {m.format for m in resolved}
        if len(formats) > 1:
            raise InvalidRequest("Mixed media formats not supported in a single request", details={"field": "media_ids"})
        actual = formats.pop()
        if actual != req.type:
            raise InvalidRequest(f"Media format mismatch: expected {req.type}, got {actual}", details={"field": "type"})
        return list(resolved)

    async def _free_form_units(self, req: SendRequest, ctx: TenantContext, to: str) -> list[SendUnit]:
        base = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to}
        if req.type == "text":
            return [SendUnit(payload={**base, "type": "text", "text": {"body": req.message}}, text=req.message)]

        media = await self._resolve_media(req, ctx)
        caption = (req.caption or req.message or "").strip() or None

        units = []
        for item in media:
            mirrored = await run_side_effect(
                "media_mirror",
                lambda item=item: self.relay.mirror_outgoing(ctx.agent.prefix, item, ctx.config.access_token),
                agent_id=ctx.agent.id,
                media_id=item.media_id,
            )
            body = {"id": item.media_id}
            if req.type in ("image", "video") and caption:
                body["caption"] = caption
            if req.type == "document" and req.filename:
                body["filename"] = req.filename
            units.append(SendUnit(
                payload={**base, "type": req.type, req.type: body},
                text=caption or "",
                media_type=req.type,
                media_url=mirrored.result if mirrored.ok else None,
                caption=caption,
            ))
        return units

    async def _dispatch(self, ctx: TenantContext, units: list[SendUnit]) -> tuple[list[SentUnit], ProviderError | None]:
        sent = []
        for unit in units:
            try:
                response = await self.cloud.send_message(ctx.config.phone_number_id, ctx.config.access_token, unit.payload)
            except ProviderError as exc:
                log.error(
                    "outbound_unit_failed",
                    agent_id=ctx.agent.id,
                    sent=len(sent),
                    remaining=len(units) - len(sent),
                    status=exc.status,
                )
                return sent, exc
            ids = response.get("messages") or [{}]
            sent.append(SentUnit(unit=unit, provider_message_id=ids[0].get("id"), response=response))
        return sent, None

    async def _persist(
        self, db: AsyncSession, ctx: TenantContext, customer_id: int, to: str, sent: list[SentUnit]
    ) -> list[dict]:
        now = datetime.now(timezone.utc)
        rows = []
        for s in sent:
            rows.append(await insert_message(db, ctx.tables, {
                "customer_id": customer_id,
                "message": s.unit.text,
                "direction": "outbound",
                "timestamp": now,
                "is_read": True,
                "media_type": s.unit.media_type,
                "media_url": s.unit.media_url,
                "caption": s.unit.caption,
                "provider_message_id": s.provider_message_id,
            }))
            if s.provider_message_id:
                db.add(DeliveryLog(
                    agent_id=ctx.agent.id,
                    provider_message_id=s.provider_message_id,
                    recipient=to,
                    status=DeliveryStatus.accepted,
                ))
        await db.commit()
        return rows

    async def _after_persist(self, agent_id: int, customer: dict, rows: list[dict]) -> list[SideEffectOutcome]:
        outcomes = [
            await run_side_effect(
                "invalidate_recent_messages",
                lambda: self.cache.invalidate_recent_messages(agent_id, customer["id"]),
                attempts=2,
                agent_id=agent_id,
            ),
            await run_side_effect(
                "invalidate_chat_list", lambda: self.cache.invalidate_chat_list(agent_id), attempts=2, agent_id=agent_id
            ),
        ]
        for row in rows:
            outcomes.append(await run_side_effect(
                "broadcast_new_message",
                lambda row=row: self.broadcaster.emit_new_message(agent_id, {
                    **row,
                    "customer_name": customer["name"],
                    "customer_phone": customer["phone"],
                    "sender_type": "agent",
                    "timestamp": row["timestamp"].isoformat(),
                }),
                agent_id=agent_id,
            ))
        return outcomes

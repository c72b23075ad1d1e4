"""
Inbound webhook processing.

Turns WhatsApp Cloud API webhook deliveries into tenant conversation state:
customers are upserted, messages (with their media mirrored into durable
storage) are appended, delivery statuses are recorded. Once a payload is
structurally valid the provider is always acknowledged; a delivery for a phone
number no tenant owns is logged and dropped instead of failing, otherwise the
provider keeps retrying it.
"""
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from wa_gateway.core.config import settings
from wa_gateway.core.errors import InvalidPayload, VerificationFailed
from wa_gateway.db.models import DeliveryLog, DeliveryStatus, WhatsAppConfiguration
from wa_gateway.services.agent_callback import AgentCallback, AgentNotifier
from wa_gateway.services.broadcaster import Broadcaster
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.media_relay import MediaRelay, extension_for
from wa_gateway.services.side_effects import SideEffectOutcome, run_side_effect
from wa_gateway.services.tenants import (
    TenantContext,
    insert_message,
    message_exists,
    tenant_by_phone_number_id,
    touch_customer,
    upsert_customer,
)
from wa_gateway.services.webhook_verify import verify_meta_signature

log = structlog.get_logger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"
MEDIA_MESSAGE_TYPES = ("image", "video", "audio", "document")
ENDPOINT_BANNER = "WhatsApp Webhook Endpoint"


@dataclass
class MessageContent:
    message: str
    media_type: str = "none"
    media_url: str | None = None
    caption: str | None = None


@dataclass
class IngestResult:
    stored: list[dict] = field(default_factory=list)
    skipped: int = 0
    statuses_updated: int = 0
    callbacks: list[AgentCallback] = field(default_factory=list)
    side_effects: list[SideEffectOutcome] = field(default_factory=list)


def parse_payload(raw: bytes) -> tuple[dict, list[dict]]:
    """Decode a delivery and return it with every ``entry[].changes[].value`` it carries."""
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise InvalidPayload("Invalid payload") from None
    if not isinstance(payload, dict) or payload.get("object") != WHATSAPP_OBJECT:
        raise InvalidPayload("Invalid payload")

    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        raise InvalidPayload("No entry in payload")
    changes = entries[0].get("changes")
    if not isinstance(changes, list) or not changes or not isinstance(changes[0], dict):
        raise InvalidPayload("No changes in entry")
    if not isinstance(changes[0].get("value"), dict):
        raise InvalidPayload("No value in changes")

    values = []
    for entry in entries:
        for change in (entry.get("changes") or []) if isinstance(entry, dict) else []:
            if isinstance(change, dict) and isinstance(change.get("value"), dict):
                values.append(change["value"])
    return payload, values


def list_of(value) -> list:
    return value if isinstance(value, list) else []


def phone_number_id_of(value: dict) -> str | None:
    metadata = value.get("metadata")
    return metadata.get("phone_number_id") if isinstance(metadata, dict) else None


def message_time(ts) -> datetime:
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


def contact_name_for(value: dict, wa_id: str) -> str | None:
    contacts = value.get("contacts") or []
    for contact in contacts:
        if contact.get("wa_id") == wa_id:
            return (contact.get("profile") or {}).get("name")
    if contacts:
        return (contacts[0].get("profile") or {}).get("name")
    return None


class WebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        relay: MediaRelay,
        cache: ChatCache,
        broadcaster: Broadcaster,
        notifier: AgentNotifier,
        *,
        strict_verification: bool = settings.WEBHOOK_STRICT_VERIFICATION,
        dedupe_messages: bool = settings.WEBHOOK_DEDUPE_MESSAGES,
        verify_token: str = settings.WHATSAPP_VERIFY_TOKEN,
        app_secret: str = settings.META_APP_SECRET,
    ):
        self.session_factory = session_factory
        self.relay = relay
        self.cache = cache
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.strict = strict_verification
        self.dedupe = dedupe_messages
        self.verify_token = verify_token
        self.app_secret = app_secret

    # --- subscription verification (GET) ---

    async def _expected_verify_token(self, phone_number_id: str | None) -> str | None:
        async with self.session_factory() as db:
            if phone_number_id:
                ctx = await tenant_by_phone_number_id(db, phone_number_id)
                if ctx and ctx.config.verify_token:
                    return ctx.config.verify_token
            if self.verify_token:
                return self.verify_token
            return (await db.execute(
                select(WhatsAppConfiguration.verify_token)
                .where(WhatsAppConfiguration.is_active == True, WhatsAppConfiguration.verify_token.is_not(None))
                .limit(1)
            )).scalar_one_or_none()

    async def verify_subscription(
        self,
        mode: str | None,
        token: str | None,
        challenge: str | None,
        phone_number_id: str | None = None,
    ) -> str:
        """Return the text to answer a verification GET with, or raise VerificationFailed."""
        if mode == "subscribe" and token and challenge:
            expected = await self._expected_verify_token(phone_number_id)
            if expected:
                if hmac.compare_digest(token.encode(), expected.encode()):
                    return challenge
                log.warning("webhook_verify_token_mismatch", phone_number_id=phone_number_id)
                raise VerificationFailed("Verification failed")
            if self.strict:
                log.warning("webhook_verify_token_unconfigured", phone_number_id=phone_number_id, strict=True)
                raise VerificationFailed("Verification failed")
            log.warning("webhook_verify_fail_open", phone_number_id=phone_number_id)
            return challenge
        if mode and challenge:
            raise VerificationFailed("Forbidden")
        return ENDPOINT_BANNER

    # --- deliveries (POST) ---

    def check_signature(self, raw: bytes, header: str | None, ctx: TenantContext | None) -> bool:
        secret = (ctx.config.app_secret if ctx else None) or self.app_secret
        phone_number_id = ctx.config.phone_number_id if ctx else None
        if header is None and not self.strict:
            return False
        if verify_meta_signature(secret, raw, header):
            return True
        reason = "missing" if header is None else ("no_secret" if not secret else "mismatch")
        if self.strict:
            log.warning("webhook_signature_rejected", reason=reason, phone_number_id=phone_number_id)
            raise VerificationFailed("Invalid signature")
        # Permissive mode: keep processing, but leave a trace.
        log.warning("webhook_signature_unverified", reason=reason, phone_number_id=phone_number_id)
        return False

    async def handle_delivery(self, raw: bytes, signature: str | None = None) -> IngestResult:
        _, values = parse_payload(raw)
        result = IngestResult()

        contexts: dict[str, TenantContext | None] = {}
        async with self.session_factory() as db:
            for value in values:
                pnid = phone_number_id_of(value)
                if pnid and pnid not in contexts:
                    contexts[pnid] = await tenant_by_phone_number_id(db, pnid)

        # Every tenant named in the delivery has to accept the signature.
        resolved = {c.config.id: c for c in contexts.values() if c is not None}
        for ctx in list(resolved.values()) or [None]:
            self.check_signature(raw, signature, ctx)

        for value in values:
            pnid = phone_number_id_of(value)
            ctx = contexts.get(pnid) if pnid else None
            messages = list_of(value.get("messages"))
            if messages and ctx is None:
                log.warning("webhook_tenant_unresolved", phone_number_id=pnid, messages=len(messages))
                result.skipped += len(messages)
                messages = []
            for message in messages:
                try:
                    await self.ingest_message(ctx, value, message, result)
                except SQLAlchemyError:
                    raise
                except Exception as exc:
                    self._element_failed("webhook_message_failed", message, exc, result)
            for status in list_of(value.get("statuses")):
                try:
                    await self.apply_status(status, result)
                except Exception as exc:
                    self._element_failed("webhook_status_failed", status, exc, result)
        return result

    @staticmethod
    def _element_failed(event: str, element, exc: Exception, result: IngestResult) -> None:
        # One malformed element must not cost the provider's acknowledgement for the rest.
        provider_message_id = element.get("id") if isinstance(element, dict) else None
        log.error(event, provider_message_id=provider_message_id, error=f"{exc.__class__.__name__}: {exc}")
        result.skipped += 1

    async def classify(self, message: dict, ctx: TenantContext) -> MessageContent:
        mtype = message.get("type") or "unknown"
        token = ctx.config.access_token

        if mtype == "text":
            return MessageContent((message.get("text") or {}).get("body") or "")

        if mtype in MEDIA_MESSAGE_TYPES:
            media = message.get(mtype) or {}
            caption = media.get("caption") or None
            content = MessageContent(caption or f"[{mtype.upper()}] Media file", media_type=mtype, caption=caption)
            if media.get("id") and token:
                content_type = media.get("mime_type") or "application/octet-stream"
                filename = f"media_{int(time.time() * 1000)}.{extension_for(media.get('mime_type'), mtype)}"
                content.media_url = await self.relay.relay_incoming(
                    ctx.agent.prefix, media["id"], token, filename, content_type
                )
                if content.media_url is None:
                    log.warning("inbound_media_not_stored", media_id=media["id"], agent_id=ctx.agent.id)
            return content

        if mtype == "sticker":
            content = MessageContent("[STICKER] Sticker message", media_type="sticker")
            sticker = message.get("sticker") or {}
            if sticker.get("id") and token:
                content.media_url = await self.relay.relay_incoming(
                    ctx.agent.prefix, sticker["id"], token, f"sticker_{int(time.time() * 1000)}.webp", "image/webp"
                )
            return content

        if mtype == "button":
            button = message.get("button") or {}
            reply = button.get("reply") or {}
            return MessageContent(
                reply.get("title") or button.get("text") or reply.get("id") or button.get("payload") or "Button clicked"
            )

        if mtype == "interactive":
            interactive = message.get("interactive") or {}
            itype = interactive.get("type")
            if itype == "button_reply":
                return MessageContent((interactive.get("button_reply") or {}).get("title") or "Button clicked")
            if itype == "list_reply":
                return MessageContent((interactive.get("list_reply") or {}).get("title") or "List item selected")
            return MessageContent(f"[INTERACTIVE_{(itype or 'unknown').upper()}] Interactive message")

        return MessageContent(f"[{mtype.upper()}] Unsupported message type")

    async def ingest_message(self, ctx: TenantContext, value: dict, message: dict, result: IngestResult) -> None:
        agent, tables = ctx.agent, ctx.tables
        from_phone = message.get("from")
        provider_message_id = message.get("id")
        if not from_phone:
            log.warning("webhook_message_without_sender", provider_message_id=provider_message_id)
            result.skipped += 1
            return

        if self.dedupe and provider_message_id:
            async with self.session_factory() as db:
                if await message_exists(db, tables, provider_message_id):
                    log.info("webhook_duplicate_skipped", provider_message_id=provider_message_id, agent_id=agent.id)
                    result.skipped += 1
                    return

        content = await self.classify(message, ctx)
        contact_name = contact_name_for(value, from_phone)

        async with self.session_factory() as db:
            customer = await upsert_customer(db, tables, agent.id, from_phone, contact_name or from_phone)
            await touch_customer(db, tables, customer["id"], datetime.now(timezone.utc))
            row = await insert_message(db, tables, {
                "customer_id": customer["id"],
                "message": content.message,
                "direction": "inbound",
                "timestamp": message_time(message.get("timestamp")),
                "is_read": False,
                "media_type": content.media_type,
                "media_url": content.media_url,
                "caption": content.caption,
                "provider_message_id": provider_message_id,
            })
            await db.commit()

        log.info(
            "inbound_message_stored",
            agent_id=agent.id,
            customer_id=customer["id"],
            message_id=row["id"],
            media_type=content.media_type,
        )
        result.stored.append(row)

        result.side_effects.extend([
            await run_side_effect(
                "invalidate_chat_list", lambda: self.cache.invalidate_chat_list(agent.id), attempts=2, agent_id=agent.id
            ),
            await run_side_effect(
                "invalidate_recent_messages",
                lambda: self.cache.invalidate_recent_messages(agent.id, customer["id"]),
                attempts=2,
                agent_id=agent.id,
            ),
            await run_side_effect(
                "broadcast_new_message",
                lambda: self.broadcaster.emit_new_message(agent.id, {
                    **row,
                    "customer_name": customer["name"],
                    "customer_phone": from_phone,
                    "sender_type": "customer",
                    "timestamp": row["timestamp"].isoformat(),
                }),
                agent_id=agent.id,
            ),
        ])

        if customer["ai_enabled"] and ctx.config.webhook_url:
            result.callbacks.append(self.notifier.build(
                url=ctx.config.webhook_url,
                user_id=ctx.config.user_id,
                message=row,
                customer=customer,
                agent_prefix=agent.prefix,
                phone_number_id=ctx.config.phone_number_id,
            ))

    async def apply_status(self, status: dict, result: IngestResult) -> None:
        provider_message_id = status.get("id")
        try:
            new_status = DeliveryStatus(status.get("status"))
        except ValueError:
            log.info("webhook_status_ignored", provider_message_id=provider_message_id, status=status.get("status"))
            return
        if not provider_message_id:
            return

        errors = status.get("errors") or []
        error = (errors[0].get("title") or errors[0].get("message")) if errors else None
        try:
            async with self.session_factory() as db:
                res = await db.execute(
                    update(DeliveryLog)
                    .where(DeliveryLog.provider_message_id == provider_message_id)
                    .values(status=new_status, error=error, updated_at=message_time(status.get("timestamp")))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            log.error("delivery_status_update_failed", provider_message_id=provider_message_id, error=str(exc))
            return

        if res.rowcount == 0:
            log.info("delivery_log_missing", provider_message_id=provider_message_id, status=new_status.value)
            return
        result.statuses_updated += 1

"""
Session-window and credit policy for outbound sends.

WhatsApp only accepts free-form messages within 24 hours of the customer's
last message; outside that window a pre-approved template has to be used, and
every template send costs the tenant a fixed amount of prepaid credit.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.core.config import settings
from wa_gateway.core.errors import InsufficientCredits, MediaRequiresSession, TemplateRequired
from wa_gateway.db.models import Agent
from wa_gateway.db.tenant_tables import TenantTables

log = structlog.get_logger(__name__)


class SendMode(str, enum.Enum):
    free_form = "free_form"
    # caller supplied the template
    template_required = "template_required"
    # window closed, fall back to the tenant's template for the category
    template_forced = "template_forced"


@dataclass(frozen=True)
class PolicyDecision:
    mode: SendMode
    template: dict | None = None

    @property
    def uses_template(self) -> bool:
        return self.mode is not SendMode.free_form


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def within_session_window(last_inbound_at: datetime | None, now: datetime, window: timedelta) -> bool:
    if last_inbound_at is None:
        return False
    return now - as_utc(last_inbound_at) <= window


class SessionPolicy:
    def __init__(
        self,
        window: timedelta = timedelta(hours=settings.SESSION_WINDOW_HOURS),
        template_cost: Decimal = settings.TEMPLATE_MESSAGE_COST,
    ):
        self.window = window
        self.template_cost = Decimal(template_cost)

    async def decide(
        self,
        db: AsyncSession,
        tables: TenantTables,
        agent_id: int,
        *,
        message_type: str,
        is_promotional: bool,
        category: str,
        last_inbound_at: datetime | None,
        has_media: bool,
        now: datetime | None = None,
    ) -> PolicyDecision:
        now = now or datetime.now(timezone.utc)

        if message_type == "template":
            decision = PolicyDecision(SendMode.template_required)
        elif not is_promotional and within_session_window(last_inbound_at, now, self.window):
            return PolicyDecision(SendMode.free_form)
        else:
            decision = None

        if has_media:
            raise MediaRequiresSession(
                "Media messages cannot be sent using templates. "
                "Ensure you're within the 24-hour messaging window."
            )
        if decision is not None:
            return decision

        template = await self.find_template(db, tables, agent_id, category)
        if template is None:
            raise TemplateRequired("Template required after 24h window, none available")
        log.info("template_forced", agent_id=agent_id, template=template["name"], category=category)
        return PolicyDecision(SendMode.template_forced, template=template)

    async def find_template(self, db: AsyncSession, tables: TenantTables, agent_id: int, category: str) -> dict | None:
        t = tables.templates
        row = (await db.execute(
            select(t).where(t.c.agent_id == agent_id, t.c.category == category, t.c.is_active.is_(True)).limit(1)
        )).mappings().first()
        return dict(row) if row else None

    async def reserve_credits(self, db: AsyncSession, agent_id: int) -> None:
        """Conditionally take one template's cost off the balance, atomically in the database."""
        res = await db.execute(
            update(Agent)
            .where(Agent.id == agent_id, Agent.credits >= self.template_cost)
            .values(credits=Agent.credits - self.template_cost)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            await db.rollback()
            raise InsufficientCredits("Insufficient credits for template message")
        await db.commit()

    async def refund_credits(self, db: AsyncSession, agent_id: int) -> None:
        await db.execute(
            update(Agent)
            .where(Agent.id == agent_id)
            .values(credits=Agent.credits + self.template_cost)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        log.info("credits_refunded", agent_id=agent_id, amount=str(self.template_cost))

"""Tenant provisioning: the agent row, its tables and its single active WhatsApp configuration."""
from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.db.models import Agent, WhatsAppConfiguration
from wa_gateway.db.tenant_tables import TenantPrefix, create_tenant_tables

log = structlog.get_logger(__name__)


async def provision_tenant(
    db: AsyncSession,
    *,
    user_id: int,
    prefix: str,
    credits: Decimal = Decimal("0"),
    phone_number_id: str | None = None,
    access_token: str | None = None,
    webhook_url: str | None = None,
) -> Agent:
    """Create the tenant, or top up an existing one.

    An existing agent keeps its prefix; the one passed in is ignored.
    """
    agent = (await db.execute(select(Agent).where(Agent.user_id == user_id))).scalar_one_or_none()
    if agent:
        agent.credits = agent.credits + credits
    else:
        agent = Agent(user_id=user_id, prefix=str(TenantPrefix(prefix)), credits=credits)
        db.add(agent)

    await create_tenant_tables(await db.connection(), agent.prefix)

    if phone_number_id and access_token:
        await db.execute(
            update(WhatsAppConfiguration)
            .where(WhatsAppConfiguration.user_id == user_id, WhatsAppConfiguration.is_active == True)
            .values(is_active=False)
        )
        db.add(WhatsAppConfiguration(
            user_id=user_id,
            phone_number_id=phone_number_id,
            access_token=access_token,
            webhook_url=webhook_url,
            is_active=True,
        ))

    await db.commit()
    log.info("tenant_provisioned", user_id=user_id, prefix=agent.prefix, phone_number_id=phone_number_id)
    return agent

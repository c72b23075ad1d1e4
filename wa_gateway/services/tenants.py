"""Per-request tenant resolution and the tenant-table queries both pipelines share."""
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.core.errors import NotFound
from wa_gateway.db.models import Agent, WhatsAppConfiguration
from wa_gateway.db.tenant_tables import TenantTables, tenant_tables


@dataclass
class TenantContext:
    config: WhatsAppConfiguration
    agent: Agent
    tables: TenantTables


async def tenant_by_phone_number_id(db: AsyncSession, phone_number_id: str) -> TenantContext | None:
    config = (await db.execute(
        select(WhatsAppConfiguration).where(
            WhatsAppConfiguration.phone_number_id == phone_number_id,
            WhatsAppConfiguration.is_active == True,
        )
    )).scalars().first()
    if not config:
        return None
    agent = (await db.execute(select(Agent).where(Agent.user_id == config.user_id))).scalar_one_or_none()
    if not agent:
        return None
    return TenantContext(config=config, agent=agent, tables=tenant_tables(agent.prefix))


async def tenant_by_user_id(db: AsyncSession, user_id: int) -> TenantContext:
    config = (await db.execute(
        select(WhatsAppConfiguration).where(
            WhatsAppConfiguration.user_id == user_id,
            WhatsAppConfiguration.is_active == True,
        )
    )).scalars().first()
    if not config:
        raise NotFound("WhatsApp configuration not found")
    agent = (await db.execute(select(Agent).where(Agent.user_id == user_id))).scalar_one_or_none()
    if not agent:
        raise NotFound("Agent not found")
    return TenantContext(config=config, agent=agent, tables=tenant_tables(agent.prefix))


async def find_customer(db: AsyncSession, tables: TenantTables, phone: str) -> dict | None:
    c = tables.customers
    row = (await db.execute(select(c).where(c.c.phone == phone))).mappings().first()
    return dict(row) if row else None


async def upsert_customer(db: AsyncSession, tables: TenantTables, agent_id: int, phone: str, name: str) -> dict:
    """Insert the customer unless the phone is already known, then read the row back.

    Relies on the unique constraint on phone, so two concurrent first messages
    from the same number end up on one row.
    """
    c = tables.customers
    values = {"agent_id": agent_id, "phone": phone, "name": name}
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        await db.execute(postgresql.insert(c).values(**values).on_conflict_do_nothing(index_elements=[c.c.phone]))
    elif dialect == "sqlite":
        await db.execute(sqlite.insert(c).values(**values).on_conflict_do_nothing(index_elements=[c.c.phone]))
    else:
        try:
            async with db.begin_nested():
                await db.execute(insert(c).values(**values))
        except IntegrityError:
            pass

    row = (await db.execute(select(c).where(c.c.phone == phone))).mappings().one()
    return dict(row)


async def touch_customer(db: AsyncSession, tables: TenantTables, customer_id: int, at: datetime) -> None:
    c = tables.customers
    await db.execute(update(c).where(c.c.id == customer_id).values(last_user_message_time=at))


async def insert_message(db: AsyncSession, tables: TenantTables, values: dict) -> dict:
    res = await db.execute(insert(tables.messages).values(**values))
    return {"id": res.inserted_primary_key[0], **values}


async def message_exists(db: AsyncSession, tables: TenantTables, provider_message_id: str) -> bool:
    m = tables.messages
    row = (await db.execute(
        select(m.c.id).where(m.c.provider_message_id == provider_message_id).limit(1)
    )).first()
    return row is not None


async def mark_conversation_read(db: AsyncSession, tables: TenantTables, customer_id: int) -> int:
    m = tables.messages
    res = await db.execute(
        update(m)
        .where(m.c.customer_id == customer_id, m.c.direction == "inbound", m.c.is_read.is_(False))
        .values(is_read=True)
    )
    await db.commit()
    return res.rowcount

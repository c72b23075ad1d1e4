from decimal import Decimal

import pytest
from sqlalchemy import inspect, select

from wa_gateway.core.errors import InvalidTenantPrefix
from wa_gateway.db.models import Agent, WhatsAppConfiguration
from wa_gateway.services.provisioning import provision_tenant


async def active_configs(session_factory, user_id):
    async with session_factory() as db:
        return (await db.execute(
            select(WhatsAppConfiguration.phone_number_id).where(
                WhatsAppConfiguration.user_id == user_id, WhatsAppConfiguration.is_active == True
            )
        )).scalars().all()


async def test_new_tenant(session_factory, engine):
    async with session_factory() as db:
        agent = await provision_tenant(db, user_id=20, prefix="delta", credits=Decimal("5"),
                                       phone_number_id="PN20", access_token="tok")
    assert agent.prefix == "delta"
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda c: inspect(c).get_table_names())
    assert {"delta_customers", "delta_messages", "delta_templates"} <= set(names)
    assert await active_configs(session_factory, 20) == ["PN20"]


async def test_rerun_keeps_prefix_and_one_active_config(session_factory, engine, tenant):
    async with session_factory() as db:
        agent = await provision_tenant(db, user_id=tenant.user_id, prefix="other", credits=Decimal("2"),
                                       phone_number_id="PNID9", access_token="tok-new")
    assert agent.prefix == "acme"
    assert await active_configs(session_factory, tenant.user_id) == ["PNID9"]

    async with session_factory() as db:
        assert (await db.execute(select(Agent.credits).where(Agent.id == tenant.agent_id))).scalar_one() == Decimal("3")
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda c: inspect(c).get_table_names())
    assert "other_customers" not in names


async def test_rerun_without_config_keeps_current(session_factory, tenant):
    async with session_factory() as db:
        await provision_tenant(db, user_id=tenant.user_id, prefix="acme", credits=Decimal("1"))
    assert await active_configs(session_factory, tenant.user_id) == ["PNID1"]


async def test_new_tenant_needs_valid_prefix(session_factory):
    async with session_factory() as db:
        with pytest.raises(InvalidTenantPrefix):
            await provision_tenant(db, user_id=21, prefix="Bad Prefix")

"""Create (or top up) a tenant: the agent row, its WhatsApp configuration and its three tables."""
import asyncio
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.core.errors import InvalidTenantPrefix
from wa_gateway.db.base import Base
from wa_gateway.db.session import AsyncSessionLocal, engine
from wa_gateway.db.tenant_tables import TenantPrefix
from wa_gateway.services.provisioning import provision_tenant


async def main():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    user_id = int(input("Tenant user id: ").strip())
    try:
        prefix = TenantPrefix(input("Table prefix (lowercase, e.g. acme; ignored for existing tenants): ").strip())
    except InvalidTenantPrefix as exc:
        print(exc.message)
        return
    try:
        credits = Decimal(input("Credits to add [0]: ").strip() or "0")
    except InvalidOperation:
        print("Credits must be a number.")
        return
    phone_number_id = input("WhatsApp phone_number_id (blank keeps the current one): ").strip() or None
    access_token = input("WhatsApp access token: ").strip() or None
    webhook_url = input("AI agent webhook URL (optional): ").strip() or None

    async with AsyncSessionLocal() as db:  # type: AsyncSession
        agent = await provision_tenant(
            db,
            user_id=user_id,
            prefix=prefix,
            credits=credits,
            phone_number_id=phone_number_id,
            access_token=access_token,
            webhook_url=webhook_url,
        )
        print(f"Tenant {agent.prefix}: credits {agent.credits}")
        if phone_number_id and access_token:
            print("Active WhatsApp configuration:", phone_number_id)

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())

"""
Tenant-scoped tables.

Every tenant owns three tables named ``{prefix}_customers``,
``{prefix}_messages`` and ``{prefix}_templates``. Table names cannot be bound
as query parameters, so the prefix is only accepted as a ``TenantPrefix``,
which refuses anything outside a narrow lowercase grammar. The tables are
plain SQLAlchemy Core ``Table`` objects built on demand; SQLAlchemy quotes the
identifiers when it renders them.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncConnection

from wa_gateway.core.errors import InvalidTenantPrefix

_PREFIX_RE = re.compile(r"[a-z][a-z0-9_]{0,39}")

CUSTOMERS_SUFFIX = "customers"
MESSAGES_SUFFIX = "messages"
TEMPLATES_SUFFIX = "templates"

MEDIA_TYPES = ("none", "image", "video", "audio", "document", "sticker")


class TenantPrefix(str):
    """A tenant prefix that is safe to splice into a table identifier."""

    def __new__(cls, value: str):
        if isinstance(value, TenantPrefix):
            return value
        if not isinstance(value, str) or not _PREFIX_RE.fullmatch(value):
            raise InvalidTenantPrefix(f"Invalid tenant prefix: {value!r}")
        return super().__new__(cls, value)

    def table_name(self, suffix: str) -> str:
        return f"{self}_{suffix}"


@dataclass(frozen=True)
class TenantTables:
    prefix: TenantPrefix
    customers: Table
    messages: Table
    templates: Table


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tenant_tables(prefix: str) -> TenantTables:
    p = TenantPrefix(prefix)
    metadata = MetaData()

    customers = Table(
        p.table_name(CUSTOMERS_SUFFIX),
        metadata,
        Column("id", Integer, primary_key=True),
        Column("agent_id", Integer, nullable=False, index=True),
        Column("phone", String(32), nullable=False),
        Column("name", String(200)),
        Column("last_user_message_time", DateTime(timezone=True), nullable=True),
        Column("ai_enabled", Boolean, nullable=False, default=False),
        Column("language", String(40), nullable=False, default="english"),
        Column("created_at", DateTime(timezone=True), default=_utcnow),
        UniqueConstraint("phone", name=f"uq_{p}_customers_phone"),
    )

    messages = Table(
        p.table_name(MESSAGES_SUFFIX),
        metadata,
        Column("id", Integer, primary_key=True),
        Column("customer_id", Integer, ForeignKey(customers.c.id, ondelete="CASCADE"), nullable=False, index=True),
        Column("message", Text),
        Column("direction", String(16), nullable=False),
        Column("timestamp", DateTime(timezone=True), nullable=False, default=_utcnow),
        Column("is_read", Boolean, nullable=False, default=False),
        Column("media_type", String(16), nullable=False, default="none"),
        Column("media_url", Text, nullable=True),
        Column("caption", Text, nullable=True),
        Column("provider_message_id", String(128), nullable=True, index=True),
    )

    templates = Table(
        p.table_name(TEMPLATES_SUFFIX),
        metadata,
        Column("id", Integer, primary_key=True),
        Column("agent_id", Integer, nullable=False, index=True),
        Column("name", String(200), nullable=False),
        Column("category", String(40), nullable=False),
        Column("is_active", Boolean, nullable=False, default=True),
        Column("body", JSON, nullable=True),
    )

    return TenantTables(prefix=p, customers=customers, messages=messages, templates=templates)


async def create_tenant_tables(conn: AsyncConnection, prefix: str) -> TenantTables:
    tables = tenant_tables(prefix)
    await conn.run_sync(tables.customers.metadata.create_all)
    return tables

from decimal import Decimal
from sqlalchemy import String, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from wa_gateway.db.base import Base

class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    # Namespaces the tenant tables: {prefix}_customers, {prefix}_messages, {prefix}_templates
    prefix: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    credits: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    business_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

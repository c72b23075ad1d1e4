import enum
from datetime import datetime, timezone
from sqlalchemy import ForeignKey, String, Text, Enum, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from wa_gateway.db.base import Base

class DeliveryStatus(str, enum.Enum):
    accepted = "accepted"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class DeliveryLog(Base):
    __tablename__ = "message_deliveries"

    id: Mapped[int] = mapped_column(primary_key=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"), index=True)
    provider_message_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    recipient: Mapped[str] = mapped_column(String(32))
    status: Mapped[DeliveryStatus] = mapped_column(Enum(DeliveryStatus), default=DeliveryStatus.accepted)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

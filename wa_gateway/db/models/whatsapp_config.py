from sqlalchemy import String, Boolean, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column
from wa_gateway.db.base import Base

class WhatsAppConfiguration(Base):
    __tablename__ = "whatsapp_configuration"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    access_token: Mapped[str] = mapped_column(Text)
    phone_number_id: Mapped[str] = mapped_column(String(64), index=True)
    verify_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    app_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # AI agent endpoint notified on inbound messages from ai_enabled customers
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

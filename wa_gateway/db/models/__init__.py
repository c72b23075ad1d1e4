from wa_gateway.db.models.agent import Agent
from wa_gateway.db.models.whatsapp_config import WhatsAppConfiguration
from wa_gateway.db.models.delivery import DeliveryLog, DeliveryStatus

__all__ = ["Agent", "WhatsAppConfiguration", "DeliveryLog", "DeliveryStatus"]

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "wa_gateway"
    ENV: str = "dev"
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Meta / WhatsApp Cloud API
    META_APP_SECRET: str = ""
    WHATSAPP_VERIFY_TOKEN: str = ""
    GRAPH_API_BASE: str = "https://graph.facebook.com"
    GRAPH_API_VERSION: str = "v23.0"
    PROVIDER_TIMEOUT_SECONDS: float = 20.0
    MEDIA_UPLOAD_TIMEOUT_SECONDS: float = 30.0

    # Unset means signature / verify-token failures are logged and tolerated.
    WEBHOOK_STRICT_VERIFICATION: bool = False
    WEBHOOK_DEDUPE_MESSAGES: bool = False

    TEMPLATE_MESSAGE_COST: Decimal = Decimal("0.01")
    SESSION_WINDOW_HOURS: int = 24

    AGENT_CALLBACK_TIMEOUT_SECONDS: float = 10.0
    PUBLIC_BASE_URL: str = ""

    # Cloudflare R2 (S3 compatible)
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = ""
    R2_PUBLIC_URL: str = ""

settings = Settings()

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wa_gateway.api.router import api
from wa_gateway.core.config import settings
from wa_gateway.core.errors import GatewayError
from wa_gateway.core.logging import configure_logging
from wa_gateway.db.base import Base
from wa_gateway.db.session import AsyncSessionLocal, engine
from wa_gateway.services.agent_callback import AgentNotifier
from wa_gateway.services.broadcaster import Broadcaster
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.inbound import WebhookProcessor
from wa_gateway.services.media_relay import MediaRelay
from wa_gateway.services.outbound import MessageDispatcher
from wa_gateway.services.policy import SessionPolicy
from wa_gateway.services.storage import R2Storage
from wa_gateway.services.whatsapp_cloud import WhatsAppCloudClient

# Import models so Base knows them
from wa_gateway.db import models  # noqa: F401

log = structlog.get_logger(__name__)


def wire_services(app: FastAPI, *, session_factory, http: httpx.AsyncClient, storage, cache, broadcaster) -> None:
    cloud = WhatsAppCloudClient(http)
    relay = MediaRelay(cloud, storage)
    notifier = AgentNotifier(http)
    app.state.session_factory = session_factory
    app.state.http = http
    app.state.cache = cache
    app.state.broadcaster = broadcaster
    app.state.relay = relay
    app.state.notifier = notifier
    app.state.processor = WebhookProcessor(session_factory, relay, cache, broadcaster, notifier)
    app.state.dispatcher = MessageDispatcher(session_factory, cloud, relay, SessionPolicy(), cache, broadcaster)


def create_app(wire: bool = True) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME)
    app.include_router(api)

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"ok": True}

    if wire:
        @app.on_event("startup")
        async def startup():
            configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
            # Shared tables only; tenant tables come from scripts/provision_tenant.py.
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            wire_services(
                app,
                session_factory=AsyncSessionLocal,
                http=httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS),
                storage=R2Storage.from_settings(),
                cache=ChatCache.from_url(),
                broadcaster=Broadcaster(),
            )
            log.info("startup_complete", env=settings.ENV)

        @app.on_event("shutdown")
        async def shutdown():
            await app.state.http.aclose()
            await app.state.cache.close()
            await engine.dispose()

    return app


app = create_app()

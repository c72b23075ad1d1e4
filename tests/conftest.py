import io
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wa_gateway.db import models  # noqa: F401
from wa_gateway.db.base import Base
from wa_gateway.db.models import Agent, WhatsAppConfiguration
from wa_gateway.db.tenant_tables import create_tenant_tables, tenant_tables
from wa_gateway.services.agent_callback import AgentNotifier
from wa_gateway.services.broadcaster import Broadcaster
from wa_gateway.services.cache import ChatCache
from wa_gateway.services.inbound import WebhookProcessor
from wa_gateway.services.media_relay import MediaRelay
from wa_gateway.services.outbound import MessageDispatcher
from wa_gateway.services.policy import SessionPolicy
from wa_gateway.services.storage import R2Storage
from wa_gateway.services.whatsapp_cloud import WhatsAppCloudClient

USER_ID = 7
PREFIX = "acme"
PHONE_NUMBER_ID = "PNID1"
CUSTOMER_PHONE = "15551234567"


class FakeGraph:
    """Stands in for graph.facebook.com, the media CDN and the tenant's AI agent."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.media: dict[str, tuple[str, bytes]] = {}
        self.broken_downloads: set[str] = set()
        self.sent: list[dict] = []
        self.send_attempts = 0
        self.fail_send_after: int | None = None
        self.uploads: list[httpx.Request] = []
        self.upload_status = 200
        self.callbacks: list[httpx.Request] = []
        self.callback_status = 200

    def add_media(self, media_id: str, mime_type: str, data: bytes = b"\x89PNG-bytes"):
        self.media[media_id] = (mime_type, data)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "cdn.test":
            return self._download(request)
        if host == "agent.test":
            self.callbacks.append(request)
            return httpx.Response(self.callback_status, json={"ok": True})
        return self._graph(request)

    def _graph(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if request.method == "POST" and parts[-1] == "messages":
            self.send_attempts += 1
            if self.fail_send_after is not None and len(self.sent) >= self.fail_send_after:
                return httpx.Response(400, json={"error": {"message": "Recipient not available", "code": 131026}})
            self.sent.append(json.loads(request.content))
            return httpx.Response(200, json={
                "messaging_product": "whatsapp",
                "messages": [{"id": f"wamid.OUT{len(self.sent)}"}],
            })
        if request.method == "POST" and parts[-1] == "media":
            self.uploads.append(request)
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, json={"error": {"message": "upload rejected"}})
            return httpx.Response(200, json={"id": f"UPLOADED{len(self.uploads)}"})
        if request.method == "GET" and len(parts) == 2:
            media_id = parts[1]
            if media_id not in self.media:
                return httpx.Response(404, json={"error": {"message": "Unknown media"}})
            mime_type, _ = self.media[media_id]
            return httpx.Response(200, json={
                "id": media_id,
                "url": f"https://cdn.test/{media_id}",
                "mime_type": mime_type,
            })
        return httpx.Response(404, json={"error": {"message": "Unknown route"}})

    def _download(self, request: httpx.Request) -> httpx.Response:
        media_id = request.url.path.strip("/")
        if media_id in self.broken_downloads or media_id not in self.media:
            return httpx.Response(500, text="cdn error")
        mime_type, data = self.media[media_id]
        return httpx.Response(200, content=data, headers={"content-type": mime_type})


class FakeS3Client:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail = False

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.objects[Key] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[Key][0])}


class FakeRedis:
    def __init__(self):
        self.deleted: list[str] = []
        self.fail = False
        self.closed = False

    async def delete(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        self.deleted.append(key)
        return 1

    async def aclose(self):
        self.closed = True


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.received: list[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.received.append(payload)


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_tenant_tables(conn, PREFIX)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def tenant(session_factory):
    async with session_factory() as db:
        agent = Agent(user_id=USER_ID, prefix=PREFIX, credits=Decimal("1.00"), business_type="salon")
        db.add(agent)
        db.add(WhatsAppConfiguration(
            user_id=USER_ID,
            access_token="tok-acme",
            phone_number_id=PHONE_NUMBER_ID,
            verify_token="vt-acme",
            app_secret="acme-app-secret",
            webhook_url="https://agent.test/hook",
            is_active=True,
        ))
        await db.commit()
        return SimpleNamespace(
            agent_id=agent.id,
            user_id=USER_ID,
            prefix=PREFIX,
            phone_number_id=PHONE_NUMBER_ID,
            tables=tenant_tables(PREFIX),
        )


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
async def http(graph):
    async with httpx.AsyncClient(transport=httpx.MockTransport(graph.handler)) as client:
        yield client


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def storage(s3):
    return R2Storage(s3, "media", "https://media.test")


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def cache(redis_client):
    return ChatCache(redis_client)


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def cloud(http):
    return WhatsAppCloudClient(http, base_url="https://graph.test", api_version="v23.0")


@pytest.fixture
def relay(cloud, storage):
    return MediaRelay(cloud, storage)


@pytest.fixture
def notifier(http):
    return AgentNotifier(http, timeout=5.0, public_base_url="https://gw.test")


@pytest.fixture
def policy():
    return SessionPolicy(window=timedelta(hours=24), template_cost=Decimal("0.01"))


@pytest.fixture
def make_processor(session_factory, relay, cache, broadcaster, notifier):
    def make(**overrides):
        options = dict(strict_verification=False, dedupe_messages=False, verify_token="", app_secret="")
        options.update(overrides)
        return WebhookProcessor(session_factory, relay, cache, broadcaster, notifier, **options)
    return make


@pytest.fixture
def processor(make_processor):
    return make_processor()


@pytest.fixture
def dispatcher(session_factory, cloud, relay, policy, cache, broadcaster):
    return MessageDispatcher(session_factory, cloud, relay, policy, cache, broadcaster)


# --- data helpers ---

def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


async def add_customer(session_factory, tables, phone=CUSTOMER_PHONE, *, last_inbound=None, ai_enabled=False,
                       name="Jane Doe", agent_id=1) -> int:
    async with session_factory() as db:
        res = await db.execute(insert(tables.customers).values(
            agent_id=agent_id,
            phone=phone,
            name=name,
            last_user_message_time=last_inbound,
            ai_enabled=ai_enabled,
        ))
        await db.commit()
        return res.inserted_primary_key[0]


async def add_template(session_factory, tables, name="order_update", category="utility", language="en",
                       is_active=True, agent_id=1) -> None:
    async with session_factory() as db:
        await db.execute(insert(tables.templates).values(
            agent_id=agent_id,
            name=name,
            category=category,
            is_active=is_active,
            body={"name": name, "language": language, "components": []},
        ))
        await db.commit()


async def set_credits(session_factory, agent_id: int, amount: str) -> None:
    async with session_factory() as db:
        agent = await db.get(Agent, agent_id)
        agent.credits = Decimal(amount)
        await db.commit()


async def get_credits(session_factory, agent_id: int) -> Decimal:
    async with session_factory() as db:
        return (await db.execute(select(Agent.credits).where(Agent.id == agent_id))).scalar_one()


async def all_rows(session_factory, table) -> list[dict]:
    async with session_factory() as db:
        return [dict(r) for r in (await db.execute(select(table).order_by(table.c.id))).mappings().all()]

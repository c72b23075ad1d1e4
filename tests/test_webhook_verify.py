import hashlib
import hmac

import pytest
from sqlalchemy import update

from wa_gateway.core.errors import VerificationFailed
from wa_gateway.db.models import WhatsAppConfiguration
from wa_gateway.services.inbound import ENDPOINT_BANNER
from wa_gateway.services.webhook_verify import expected_signature, verify_meta_signature

BODY = b'{"object":"whatsapp_business_account"}'


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_valid_signature():
    assert verify_meta_signature("s3cr3t", BODY, sign("s3cr3t", BODY)) is True
    assert expected_signature("s3cr3t", BODY) == sign("s3cr3t", BODY)


def test_invalid_signature():
    assert verify_meta_signature("s3cr3t", BODY, "sha256=deadbeef") is False
    assert verify_meta_signature("s3cr3t", BODY, sign("other", BODY)) is False
    assert verify_meta_signature("s3cr3t", BODY + b" ", sign("s3cr3t", BODY)) is False


def test_signature_needs_secret_and_header():
    assert verify_meta_signature("", BODY, sign("", BODY)) is False
    assert verify_meta_signature("s3cr3t", BODY, None) is False
    assert verify_meta_signature("s3cr3t", BODY, sign("s3cr3t", BODY).removeprefix("sha256=")) is False


async def test_subscribe_with_tenant_token(processor, tenant):
    assert await processor.verify_subscription("subscribe", "vt-acme", "1158201444", "PNID1") == "1158201444"


async def test_subscribe_falls_back_to_any_active_token(processor, tenant):
    assert await processor.verify_subscription("subscribe", "vt-acme", "42") == "42"


async def test_subscribe_prefers_global_token(make_processor, tenant):
    processor = make_processor(verify_token="global-token")
    assert await processor.verify_subscription("subscribe", "global-token", "42") == "42"
    with pytest.raises(VerificationFailed):
        await processor.verify_subscription("subscribe", "vt-acme", "42")


async def test_subscribe_token_mismatch(processor, tenant):
    with pytest.raises(VerificationFailed) as exc:
        await processor.verify_subscription("subscribe", "wrong", "42", "PNID1")
    assert exc.value.status_code == 403


async def unset_verify_tokens(session_factory):
    async with session_factory() as db:
        await db.execute(update(WhatsAppConfiguration).values(verify_token=None))
        await db.commit()


async def test_nothing_configured_fails_open(processor, session_factory, tenant):
    await unset_verify_tokens(session_factory)
    assert await processor.verify_subscription("subscribe", "anything", "42") == "42"


async def test_nothing_configured_strict(make_processor, session_factory, tenant):
    await unset_verify_tokens(session_factory)
    with pytest.raises(VerificationFailed):
        await make_processor(strict_verification=True).verify_subscription("subscribe", "anything", "42")


async def test_bad_mode_with_challenge_is_forbidden(processor, tenant):
    with pytest.raises(VerificationFailed):
        await processor.verify_subscription("unsubscribe", "vt-acme", "42")


async def test_bare_request_gets_banner(processor):
    assert await processor.verify_subscription(None, None, None) == ENDPOINT_BANNER
    assert await processor.verify_subscription("subscribe", None, None) == ENDPOINT_BANNER

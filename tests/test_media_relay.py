import re

import pytest

from wa_gateway.core.errors import InvalidRequest, InvalidTenantPrefix, ProviderError
from wa_gateway.services.media_relay import MediaMetadata, extension_for, media_format, storage_key

KEY_RE = r"^acme/{folder}/\d{{13}}_[0-9a-f]{{8}}-[0-9a-f]{{4}}-[0-9a-f]{{4}}-[0-9a-f]{{4}}-[0-9a-f]{{12}}\.{ext}$"


@pytest.mark.parametrize("mime,fmt", [
    ("image/jpeg", "image"),
    ("image/png", "image"),
    ("video/mp4", "video"),
    ("audio/ogg; codecs=opus", "audio"),
    ("application/pdf", "document"),
    ("text/plain", "document"),
    ("font/woff", None),
    ("", None),
    (None, None),
])
def test_media_format(mime, fmt):
    assert media_format(mime) == fmt


def test_extension_for():
    assert extension_for("image/jpeg") == "jpeg"
    assert extension_for("audio/ogg; codecs=opus") == "ogg"
    assert extension_for(None) == "bin"
    assert extension_for("garbage", "image") == "image"


def test_storage_key_layout():
    assert re.match(KEY_RE.format(folder="incoming", ext="jpg"), storage_key("acme", "incoming", "photo.JPG"))
    assert re.match(KEY_RE.format(folder="outgoing", ext="bin"), storage_key("acme", "outgoing", "noext"))
    assert storage_key("acme", "incoming", "a.png") != storage_key("acme", "incoming", "a.png")


def test_storage_key_refuses_bad_prefix():
    with pytest.raises(InvalidTenantPrefix):
        storage_key("../acme", "incoming", "a.png")


async def test_fetch_provider_media(relay, graph):
    graph.add_media("M1", "image/jpeg", b"jpeg-bytes")
    assert await relay.fetch_provider_media("M1", "tok") == b"jpeg-bytes"

    metadata_call, download_call = graph.requests
    assert metadata_call.url.path == "/v23.0/M1"
    assert download_call.url.host == "cdn.test"
    assert download_call.headers["Authorization"] == "Bearer tok"


async def test_fetch_provider_media_failures(relay, graph):
    assert await relay.fetch_provider_media("missing", "tok") is None
    graph.add_media("M2", "image/jpeg")
    graph.broken_downloads.add("M2")
    assert await relay.fetch_provider_media("M2", "tok") is None


async def test_relay_incoming_stores_durable_copy(relay, graph, s3):
    graph.add_media("M1", "image/jpeg", b"jpeg-bytes")
    url = await relay.relay_incoming("acme", "M1", "tok", "media_1.jpeg", "image/jpeg")

    assert url.startswith("https://media.test/acme/incoming/")
    key = url.removeprefix("https://media.test/")
    assert s3.objects[key] == (b"jpeg-bytes", "image/jpeg")


async def test_persist_swallows_storage_errors(relay, s3):
    s3.fail = True
    assert await relay.persist("acme", b"x", "a.png", "image/png") is None
    assert await relay.persist("Not A Prefix", b"x", "a.png", "image/png") is None


async def test_resolve(relay, graph):
    graph.add_media("V1", "video/mp4")
    meta = await relay.resolve("V1", "tok")
    assert meta == MediaMetadata(media_id="V1", url="https://cdn.test/V1", mime_type="video/mp4", format="video")


async def test_resolve_errors(relay, graph):
    graph.add_media("F1", "font/woff")
    with pytest.raises(InvalidRequest):
        await relay.resolve("F1", "tok")
    with pytest.raises(ProviderError) as exc:
        await relay.resolve("missing", "tok")
    assert exc.value.status == 404


async def test_mirror_outgoing(relay, graph, s3):
    graph.add_media("I1", "image/png", b"png")
    meta = await relay.resolve("I1", "tok")
    url = await relay.mirror_outgoing("acme", meta, "tok")
    assert re.match(KEY_RE.format(folder="outgoing", ext="png"), url.removeprefix("https://media.test/"))

    graph.broken_downloads.add("I1")
    assert await relay.mirror_outgoing("acme", meta, "tok") is None


async def test_preview(relay, graph):
    graph.add_media("D1", "application/pdf", b"%PDF")
    assert await relay.preview("D1", "tok") == (b"%PDF", "application/pdf")


async def test_upload_sends_to_provider_and_storage(relay, graph, s3):
    result = await relay.upload("acme", "PNID1", "tok", b"img", "cat.png", "image/png")
    assert result["media_id"] == "UPLOADED1"
    assert result["stored_url"].startswith("https://media.test/acme/outgoing/")
    assert graph.uploads[0].url.path == "/v23.0/PNID1/media"
    assert len(s3.objects) == 1


async def test_storage_get_round_trip(storage):
    url = await storage.put("acme/incoming/x.bin", b"data", "application/octet-stream")
    assert url == "https://media.test/acme/incoming/x.bin"
    assert await storage.get("acme/incoming/x.bin") == b"data"

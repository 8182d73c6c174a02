import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from errors import DownstreamUnavailable, ValidationError
from storage import ObjectStorage, ensure_owned_key, guess_mime, new_upload_key


def make_storage(handler=None):
    return ObjectStorage(
        bucket="deal-files",
        endpoint_url="https://s3.storage.test",
        access_key="AKIATEST",
        secret_key="secret",
        region="us-east-1",
        transport=httpx.MockTransport(handler) if handler else None,
    )


def test_upload_key_layout():
    key = new_upload_key("user-1", "image/jpeg")
    assert key.startswith("uploads/user-1/")
    assert key.endswith(".jpg")
    assert new_upload_key("user-1", None).endswith(".pdf")
    with pytest.raises(ValidationError):
        new_upload_key("user-1", "text/html")


def test_owned_key_checks():
    assert ensure_owned_key("user-1", " uploads/user-1/a.pdf ") == "uploads/user-1/a.pdf"
    for bad in ("", "uploads/user-2/a.pdf", "uploads/user-1/../user-2/a.pdf"):
        with pytest.raises(ValidationError):
            ensure_owned_key("user-1", bad)


def test_guess_mime():
    assert guess_mime("uploads/u/a.PNG") == "image/png"
    assert guess_mime("uploads/u/a") == "application/pdf"


def test_presigned_upload_is_time_boxed():
    url = make_storage().presign_upload("uploads/user-1/a.pdf", "application/pdf")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert "deal-files" in url
    assert parsed.path.endswith("uploads/user-1/a.pdf")
    assert query["X-Amz-Expires"] == ["3600"]


def test_presigned_read_uses_short_ttl():
    url = make_storage().presign_read("uploads/user-1/a.pdf")
    assert parse_qs(urlparse(url).query)["X-Amz-Expires"] == ["600"]


def test_fetch_returns_bytes_and_type():
    def handler(request):
        assert request.method == "GET"
        assert "X-Amz-Signature" in str(request.url)
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    content, mime = asyncio.run(make_storage(handler).fetch("uploads/user-1/a.png"))
    assert content == b"\x89PNG"
    assert mime == "image/png"


def test_fetch_guesses_type_from_key():
    def handler(request):
        return httpx.Response(200, content=b"data", headers={"content-type": "binary/octet-stream"})

    _, mime = asyncio.run(make_storage(handler).fetch("uploads/user-1/a.jpg"))
    assert mime == "image/jpeg"


def test_fetch_missing_object():
    with pytest.raises(ValidationError):
        asyncio.run(make_storage(lambda request: httpx.Response(404)).fetch("uploads/user-1/a.pdf"))


def test_fetch_storage_down():
    with pytest.raises(DownstreamUnavailable):
        asyncio.run(make_storage(lambda request: httpx.Response(500)).fetch("uploads/user-1/a.pdf"))

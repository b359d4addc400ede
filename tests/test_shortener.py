import json

import aiohttp
import pytest

from conftest import FakeResponse, FakeSession
from shortener import CLEANURI_API_ENDPOINT, ShortenedUrlStore, ShortenerError, short_code, shorten_url


@pytest.mark.asyncio
async def test_shorten_url_returns_result_url():
    session = FakeSession(FakeResponse(200, {"result_url": "https://cleanuri.com/Ab12x"}))

    assert await shorten_url(session, "https://example.org/very/long") == "https://cleanuri.com/Ab12x"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", CLEANURI_API_ENDPOINT)
    assert kwargs["data"] == {"url": "https://example.org/very/long"}


@pytest.mark.asyncio
async def test_shorten_url_surfaces_api_error():
    session = FakeSession(FakeResponse(400, {"error": "API Error: URL is invalid"}))

    with pytest.raises(ShortenerError) as excinfo:
        await shorten_url(session, "nope")
    assert excinfo.value.message == "API Error: URL is invalid"
    assert excinfo.value.status == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [
    aiohttp.ClientConnectionError("refused"),
    FakeResponse(200, {}),
    FakeResponse(502, ValueError("html page")),
])
async def test_shorten_url_failures(outcome):
    with pytest.raises(ShortenerError):
        await shorten_url(FakeSession(outcome), "https://example.org")


def test_short_code():
    assert short_code("https://cleanuri.com/Ab12x") == "Ab12x"
    assert short_code("https://cleanuri.com/Ab12x/") == "Ab12x"


def test_store_save_appends_per_user(tmp_path):
    store = ShortenedUrlStore(str(tmp_path / "shortened_urls.json"))
    store.save(42, "https://example.org/a", "Ab12x", "https://cleanuri.com/Ab12x")
    store.save(7, "https://example.org/b", "Zz9", "https://cleanuri.com/Zz9")

    entries = store.list_for_user(42)
    assert [e["short_code"] for e in entries] == ["Ab12x"]
    assert entries[0]["original_url"] == "https://example.org/a"
    assert store.list_for_user(1) == []


def test_store_lists_newest_first(tmp_path):
    path = tmp_path / "shortened_urls.json"
    path.write_text(json.dumps({"42": [
        {"original_url": "a", "short_code": "a", "short_url": "s/a", "created_at": "2026-01-01T00:00:00+00:00"},
        {"original_url": "c", "short_code": "c", "short_url": "s/c", "created_at": "2026-03-01T00:00:00+00:00"},
        {"original_url": "b", "short_code": "b", "short_url": "s/b", "created_at": "2026-02-01T00:00:00+00:00"},
    ]}))
    store = ShortenedUrlStore(str(path))

    assert [e["short_code"] for e in store.list_for_user(42)] == ["c", "b", "a"]
    assert [e["short_code"] for e in store.list_for_user(42, limit=1, offset=1)] == ["b"]

"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from scan_cache import ScanCache

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeResponse:
    def __init__(self, status=200, json_data=None, text=""):
        self.status = status
        self._json = json_data
        self._text = text

    async def json(self, content_type="application/json"):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json

    async def text(self):
        return self._text


class _RequestContext:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays queued responses in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return _RequestContext(self.outcomes.pop(0))

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)


class RecordingCache(ScanCache):
    """ScanCache that remembers which write path was taken."""

    def __init__(self, path, clock):
        super().__init__(path, clock=clock)
        self.writes = []

    async def insert(self, url, status, scan_identifier, raw_response):
        self.writes.append(("insert", url, status, scan_identifier))
        return await super().insert(url, status, scan_identifier, raw_response)

    async def update(self, url, status, scan_identifier, raw_response):
        self.writes.append(("update", url, status, scan_identifier))
        return await super().update(url, status, scan_identifier, raw_response)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return RecordingCache(str(tmp_path / "scanned_urls.json"), clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep

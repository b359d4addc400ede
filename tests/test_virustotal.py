import asyncio

import pytest

from conftest import FakeResponse, FakeSession
from verdicts import Verdict
from virustotal import (VIRUSTOTAL_API_URL_REPORT, VIRUSTOTAL_API_URL_SCAN, VirusTotalClient, is_completed,
                        virustotal_verdict)


def analysis(status="completed", **stats):
    return {"id": "v1", "attributes": {"status": status, "stats": stats}}


@pytest.mark.parametrize("stats, expected", [
    ({"malicious": 1, "suspicious": 0, "harmless": 60}, Verdict.MALICIOUS),
    ({"malicious": 0, "suspicious": 2, "harmless": 60}, Verdict.MALICIOUS),
    ({"malicious": 0, "suspicious": 0, "harmless": 5}, Verdict.SAFE),
    ({"malicious": 0, "suspicious": 0, "harmless": 0, "undetected": 70}, Verdict.UNKNOWN),
    ({}, Verdict.UNKNOWN),
])
def test_virustotal_verdict(stats, expected):
    assert virustotal_verdict(analysis(**stats)) == expected


def test_only_completed_is_terminal():
    assert is_completed(analysis("completed"))
    assert not is_completed(analysis("queued"))
    assert not is_completed(analysis("in-progress"))
    assert not is_completed(None)


@pytest.mark.asyncio
async def test_submit_sends_form_and_key():
    session = FakeSession(FakeResponse(200, {"data": {"type": "analysis", "id": "v1"}}))
    client = VirusTotalClient(session, "vt-key")

    assert await client.submit("https://example.org") == "v1"

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", VIRUSTOTAL_API_URL_SCAN)
    assert kwargs["headers"] == {"x-apikey": "vt-key"}
    assert kwargs["data"] == {"url": "https://example.org"}


@pytest.mark.asyncio
async def test_submit_without_key_fails_fast():
    session = FakeSession()
    assert await VirusTotalClient(session, None).submit("https://example.org") is None
    assert session.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [
    FakeResponse(401, {"error": {"code": "WrongCredentialsError"}}, text="wrong credentials"),
    FakeResponse(200, {"data": {}}),
    asyncio.TimeoutError(),
])
async def test_submit_failures_return_none(outcome):
    assert await VirusTotalClient(FakeSession(outcome), "vt-key").submit("https://example.org") is None


@pytest.mark.asyncio
async def test_poll_returns_analysis_data():
    data = analysis("queued")
    session = FakeSession(FakeResponse(200, {"data": data}))

    assert await VirusTotalClient(session, "vt-key").poll("v1") == data
    assert session.calls[0][1] == f"{VIRUSTOTAL_API_URL_REPORT}v1"


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [
    FakeResponse(404, {"error": {"code": "NotFoundError"}}),
    FakeResponse(429, {"error": {"code": "QuotaExceededError"}}),
    FakeResponse(200, {"unexpected": True}),
])
async def test_poll_not_ready_or_bad_returns_none(outcome):
    assert await VirusTotalClient(FakeSession(outcome), "vt-key").poll("v1") is None

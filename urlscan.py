import asyncio
from typing import Any, Dict, Optional

import aiohttp

from logs import log_debug, log_error, log_info, log_warning
from verdicts import Verdict

URLSCAN_API_URL_SUBMIT = "https://urlscan.io/api/v1/scan/"
URLSCAN_API_URL_RESULT = "https://urlscan.io/api/v1/result/"


def urlscan_verdict(report: Dict[str, Any]) -> Verdict:
    """Map a urlscan.io result to a verdict.

    Any malicious flag wins. A zero score with no block-list hits is safe.
    Everything else (a positive score, list hits, no score at all) is left
    unknown so the fallback provider gets a say.
    """
    verdicts = report.get("verdicts") or {}
    overall = verdicts.get("overall") or {}
    engines = verdicts.get("urlscan") or {}
    community = verdicts.get("community") or {}

    if overall.get("malicious") or engines.get("malicious") or community.get("malicious"):
        return Verdict.MALICIOUS

    lists = report.get("lists") or []
    if overall.get("score") == 0 and not lists:
        return Verdict.SAFE

    return Verdict.UNKNOWN


class UrlscanClient:
    name = "urlscan.io"

    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str],
                 visibility: str = "public", poll_interval: float = 10, max_polls: int = 12):
        self.session = session
        self.api_key = api_key
        self.visibility = visibility
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def submit(self, url: str) -> Optional[str]:
        if not self.api_key:
            log_error("urlscan.io API key is not configured.")
            return None

        headers = {"API-Key": self.api_key, "Content-Type": "application/json"}
        payload = {"url": url, "visibility": self.visibility}
        try:
            async with self.session.post(URLSCAN_API_URL_SUBMIT, headers=headers, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    log_error(f"urlscan.io submission failed for {url}: HTTP {resp.status} {body[:200]}")
                    return None
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log_error(f"Error submitting {url} to urlscan.io: {e!r}")
            return None

        scan_id = data.get("uuid") if isinstance(data, dict) else None
        if not scan_id:
            log_error(f"urlscan.io did not return a scan ID for {url}: {data}")
            return None

        log_info(f"URL submitted to urlscan.io. Scan ID: {scan_id}")
        return scan_id

    async def poll(self, scan_id: str) -> Optional[Dict[str, Any]]:
        #results endpoint is public, no key needed
        try:
            async with self.session.get(f"{URLSCAN_API_URL_RESULT}{scan_id}/") as resp:
                if resp.status == 404:
                    log_debug(f"urlscan.io report for {scan_id} not found (still processing or invalid ID).")
                    return None
                if resp.status != 200:
                    body = await resp.text()
                    log_error(f"Error fetching urlscan.io report {scan_id}: HTTP {resp.status} {body[:200]}")
                    return None
                report = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log_error(f"Error fetching urlscan.io report {scan_id}: {e!r}")
            return None

        task = report.get("task") if isinstance(report, dict) else None
        if not isinstance(task, dict) or task.get("uuid") != scan_id:
            log_warning(f"urlscan.io report for {scan_id} received, but task.uuid does not match or task is missing.")
            return None
        return report

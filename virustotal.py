import asyncio
from typing import Any, Dict, Optional

import aiohttp

from logs import log_debug, log_error, log_info, log_warning
from verdicts import Verdict

VIRUSTOTAL_API_URL_SCAN = "https://www.virustotal.com/api/v3/urls"
VIRUSTOTAL_API_URL_REPORT = "https://www.virustotal.com/api/v3/analyses/"


def analysis_status(analysis: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(analysis, dict):
        return None
    return (analysis.get("attributes") or {}).get("status")


def is_completed(analysis: Optional[Dict[str, Any]]) -> bool:
    return analysis_status(analysis) == "completed"


def virustotal_verdict(analysis: Dict[str, Any]) -> Verdict:
    stats = (analysis.get("attributes") or {}).get("stats") or {}
    malicious = stats.get("malicious", 0)
    suspicious = stats.get("suspicious", 0)
    harmless = stats.get("harmless", 0)

    if malicious > 0 or suspicious > 0:
        return Verdict.MALICIOUS
    if harmless > 0:
        return Verdict.SAFE
    return Verdict.UNKNOWN


class VirusTotalClient:
    name = "VirusTotal"

    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str],
                 poll_interval: float = 15, max_polls: int = 6):
        self.session = session
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def submit(self, url: str) -> Optional[str]:
        if not self.api_key:
            log_error("VirusTotal API key is not configured.")
            return None

        headers = {"x-apikey": self.api_key}
        try:
            #submit url for scanning
            async with self.session.post(VIRUSTOTAL_API_URL_SCAN, headers=headers, data={"url": url}) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    log_error(f"VirusTotal submission failed for {url}: HTTP {resp.status} {body[:200]}")
                    return None
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log_error(f"Error submitting {url} to VirusTotal: {e!r}")
            return None

        analysis_id = (data.get("data") or {}).get("id") if isinstance(data, dict) else None
        if not analysis_id:
            log_error(f"VirusTotal did not return an analysis ID for {url}: {data}")
            return None

        log_info(f"URL submitted to VirusTotal. Analysis ID: {analysis_id}")
        return analysis_id

    async def poll(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            log_error("VirusTotal API key is not configured.")
            return None

        headers = {"x-apikey": self.api_key}
        try:
            async with self.session.get(f"{VIRUSTOTAL_API_URL_REPORT}{analysis_id}", headers=headers) as resp:
                if resp.status == 404:
                    log_debug(f"VirusTotal analysis {analysis_id} not found yet.")
                    return None
                if resp.status == 429:
                    log_warning(f"VirusTotal rate limit hit while fetching analysis {analysis_id}.")
                    return None
                if resp.status != 200:
                    body = await resp.text()
                    log_error(f"Error fetching VirusTotal analysis {analysis_id}: HTTP {resp.status} {body[:200]}")
                    return None
                report = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log_error(f"Error fetching VirusTotal analysis {analysis_id}: {e!r}")
            return None

        if not isinstance(report, dict) or "data" not in report:
            log_error(f"Malformed VirusTotal analysis {analysis_id}: {report}")
            return None
        return report["data"]

"""URL safety verdicts from urlscan.io with VirusTotal as the fallback.

A scan moves through an explicit set of states::

    CACHE_CHECK -> PRIMARY_SUBMIT -> PRIMARY_POLL -> DONE
                                                 \\-> FALLBACK_SUBMIT -> FALLBACK_POLL -> DONE

urlscan.io answers first. A clear safe/malicious result from it is final.
An ambiguous result, or no result at all, hands the URL to VirusTotal,
whose completed analysis always overrides. The outcome is cached for
`max_age` so repeat links are answered without touching either API.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from logs import log_error, log_info, log_warning
from polling import Sleep, poll_until
from scan_cache import DuplicateRecordError, ScanCache, ScanCacheError, ScannedURLRecord, utcnow
from urlscan import UrlscanClient, urlscan_verdict
from verdicts import Verdict
from virustotal import VirusTotalClient, analysis_status, is_completed, virustotal_verdict

CACHE_DURATION = timedelta(hours=24)


class ScanState(Enum):
    CACHE_CHECK = auto()
    PRIMARY_SUBMIT = auto()
    PRIMARY_POLL = auto()
    FALLBACK_SUBMIT = auto()
    FALLBACK_POLL = auto()
    DONE = auto()


@dataclass
class ScanAttempt:
    """Everything known about one in-flight scan of one URL."""

    url: str
    state: ScanState = ScanState.CACHE_CHECK
    status: Verdict = Verdict.UNKNOWN
    provider: Optional[str] = None
    handle: Optional[str] = None
    poll_count: int = 0
    verdict_source: str = ""
    primary_scan_failed: bool = False
    primary_handle: Optional[str] = None
    fallback_submitted: Optional[bool] = None
    fallback_handle: Optional[str] = None
    urlscan_check: Any = None
    virustotal_check: Any = None
    cached: Optional[ScannedURLRecord] = None
    from_cache: bool = False

    @property
    def scan_identifier(self) -> Optional[str]:
        return self.fallback_handle or self.primary_handle

    def source_order(self) -> List[str]:
        order = ["urlscan.io (failed)" if self.primary_scan_failed else "urlscan.io"]
        if self.fallback_submitted is not None:
            order.append("VirusTotal" if self.fallback_submitted else "VirusTotal (failed)")
        return order

    def raw_response(self) -> Dict[str, Any]:
        return {
            "source_order": self.source_order(),
            "urlscan_check": self.urlscan_check,
            "virustotal_check": self.virustotal_check,
            "final_verdict_source": self.verdict_source or "unknown_source",
            "final_status": self.status.value,
        }


class VirusScanner:
    def __init__(
        self,
        cache: ScanCache,
        primary: UrlscanClient,
        fallback: VirusTotalClient,
        max_age: timedelta = CACHE_DURATION,
        clock: Callable[[], datetime] = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        self.cache = cache
        self.primary = primary
        self.fallback = fallback
        self.max_age = max_age
        self._clock = clock
        self._sleep = sleep
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._handlers = {
            ScanState.CACHE_CHECK: self._check_cache,
            ScanState.PRIMARY_SUBMIT: self._submit_primary,
            ScanState.PRIMARY_POLL: self._poll_primary,
            ScanState.FALLBACK_SUBMIT: self._submit_fallback,
            ScanState.FALLBACK_POLL: self._poll_fallback,
        }

    async def check_url_malware(self, url: str) -> Verdict:
        """Return the verdict for `url`. Never raises, except on cancellation.

        Concurrent calls for the same URL share a single scan.
        """
        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._reconcile(url))
            self._in_flight[url] = task
            task.add_done_callback(lambda done: self._forget(url, done))
        else:
            log_info(f"Scan for {url} already in progress, waiting for its result.")

        #a cancelled caller must not cancel the scan others are waiting on
        return await asyncio.shield(task)

    def _forget(self, url: str, task: asyncio.Task):
        if self._in_flight.get(url) is task:
            del self._in_flight[url]

    async def _reconcile(self, url: str) -> Verdict:
        attempt = ScanAttempt(url=url)
        try:
            while attempt.state is not ScanState.DONE:
                attempt.state = await self._handlers[attempt.state](attempt)
        except Exception as e:
            log_error(f"Unexpected error while scanning {url} in state {attempt.state.name}: {e!r}")
            attempt.status = Verdict.ERROR
            attempt.state = ScanState.DONE

        if attempt.from_cache:
            return attempt.status

        await self._persist(attempt)
        log_info(f"Final status for {url}: {attempt.status.value} (Source: {attempt.verdict_source or 'unknown_source'})")
        return attempt.status

    async def _check_cache(self, attempt: ScanAttempt) -> ScanState:
        try:
            record = await self.cache.get(attempt.url)
        except ScanCacheError as e:
            log_error(f"Cache lookup failed for {attempt.url}, scanning anyway: {e}")
            return ScanState.PRIMARY_SUBMIT

        if record is None:
            return ScanState.PRIMARY_SUBMIT

        attempt.cached = record
        if record.is_fresh(self._clock(), self.max_age):
            try:
                attempt.status = Verdict(record.status)
            except ValueError:
                log_warning(f"Cached status '{record.status}' for {attempt.url} is not a verdict. Re-scanning.")
                return ScanState.PRIMARY_SUBMIT
            log_info(f"Cache hit for {attempt.url}. Status: {attempt.status.value}")
            attempt.from_cache = True
            return ScanState.DONE

        log_info(f"Cache expired for {attempt.url}. Re-scanning.")
        return ScanState.PRIMARY_SUBMIT

    async def _submit_primary(self, attempt: ScanAttempt) -> ScanState:
        attempt.provider = self.primary.name
        log_info(f"Primary check for {attempt.url} with {self.primary.name}...")

        handle = await self.primary.submit(attempt.url)
        if not handle:
            log_error(f"{self.primary.name} submission failed for {attempt.url}.")
            attempt.primary_scan_failed = True
            attempt.urlscan_check = {"error": f"{self.primary.name} submission failed"}
            attempt.status = Verdict.UNKNOWN
            return ScanState.FALLBACK_SUBMIT

        attempt.handle = attempt.primary_handle = handle
        return ScanState.PRIMARY_POLL

    async def _poll_primary(self, attempt: ScanAttempt) -> ScanState:
        handle = attempt.handle

        def pending(n, _report):
            log_info(f"{self.primary.name} report for {attempt.url} (ID: {handle}) not ready. Attempt {n}.")

        outcome = await poll_until(
            lambda: self.primary.poll(handle),
            lambda report: report is not None,
            max_attempts=self.primary.max_polls,
            interval=self.primary.poll_interval,
            sleep=self._sleep,
            on_pending=pending,
        )
        attempt.poll_count = outcome.attempts

        if not outcome.ready:
            log_error(f"Failed to get a conclusive report from {self.primary.name} for {handle} after {outcome.attempts} attempts.")
            attempt.primary_scan_failed = True
            attempt.urlscan_check = {"error": f"{self.primary.name} polling timed out"}
            attempt.status = Verdict.UNKNOWN
            return ScanState.FALLBACK_SUBMIT

        log_info(f"{self.primary.name} report received for {handle}.")
        attempt.urlscan_check = outcome.result
        attempt.status = urlscan_verdict(outcome.result)
        attempt.verdict_source = self.primary.name

        if attempt.status in (Verdict.SAFE, Verdict.MALICIOUS):
            return ScanState.DONE

        log_info(f"{self.primary.name} status is '{attempt.status.value}' for {attempt.url}. Proceeding to {self.fallback.name}.")
        return ScanState.FALLBACK_SUBMIT

    async def _submit_fallback(self, attempt: ScanAttempt) -> ScanState:
        attempt.provider = self.fallback.name
        attempt.handle = None
        attempt.poll_count = 0

        handle = await self.fallback.submit(attempt.url)
        attempt.fallback_submitted = bool(handle)
        if not handle:
            log_error(f"{self.fallback.name} submission failed for {attempt.url}.")
            attempt.virustotal_check = {"error": f"{self.fallback.name} submission failed"}
            #ambiguous primary report stays unknown, no report at all is an error
            if attempt.primary_scan_failed:
                attempt.status = Verdict.ERROR
            return ScanState.DONE

        attempt.handle = attempt.fallback_handle = handle
        return ScanState.FALLBACK_POLL

    async def _poll_fallback(self, attempt: ScanAttempt) -> ScanState:
        handle = attempt.handle

        def pending(n, analysis):
            log_info(f"{self.fallback.name} analysis for {attempt.url} is '{analysis_status(analysis)}'. Attempt {n}.")

        outcome = await poll_until(
            lambda: self.fallback.poll(handle),
            is_completed,
            max_attempts=self.fallback.max_polls,
            interval=self.fallback.poll_interval,
            sleep=self._sleep,
            on_pending=pending,
        )
        attempt.poll_count = outcome.attempts
        attempt.virustotal_check = outcome.result

        if outcome.ready:
            attempt.status = virustotal_verdict(outcome.result)
            attempt.verdict_source = self.fallback.name
            return ScanState.DONE

        log_warning(f"Could not get completed {self.fallback.name} report for {attempt.url}. Status: {analysis_status(outcome.result)}.")
        if attempt.virustotal_check is None:
            attempt.virustotal_check = {"error": f"{self.fallback.name} polling timed out"}
        if attempt.primary_scan_failed:
            attempt.status = Verdict.ERROR
        if not attempt.verdict_source:
            attempt.verdict_source = f"{self.fallback.name} (timeout/error)"
        return ScanState.DONE

    async def _persist(self, attempt: ScanAttempt):
        args = (attempt.url, attempt.status.value, attempt.scan_identifier, attempt.raw_response())
        try:
            if attempt.cached is not None:
                await self.cache.update(*args)
                return
            try:
                await self.cache.insert(*args)
            except DuplicateRecordError:
                log_warning(f"{attempt.url} was cached by another scan meanwhile, updating instead.")
                await self.cache.update(*args)
        except ScanCacheError as e:
            log_error(f"Failed to cache scan result for {attempt.url}: {e}")

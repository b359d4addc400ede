"""Persistent store of URL scan verdicts.

Records live in a single JSON document keyed by the exact URL string. The
document is rewritten through a temporary file and swapped into place, so a
crash mid-write never leaves a half-written cache behind.
"""

import asyncio
import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from logs import log_error, log_info


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanCacheError(Exception):
    """Raised when the scan cache cannot be read or written."""


class DuplicateRecordError(ScanCacheError):
    """Raised by insert() when the URL already has a record."""


class RecordNotFoundError(ScanCacheError):
    """Raised by update() when the URL has no record yet."""


@dataclass
class ScannedURLRecord:
    url: str
    status: str
    scan_identifier: Optional[str]
    raw_response: Optional[Dict[str, Any]]
    last_scanned_at: datetime

    def is_fresh(self, now: datetime, max_age: timedelta) -> bool:
        return now - self.last_scanned_at < max_age

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "scan_identifier": self.scan_identifier,
            "raw_response": self.raw_response,
            "last_scanned_at": self.last_scanned_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, url: str, data: Dict[str, Any]) -> "ScannedURLRecord":
        last_scanned_at = datetime.fromisoformat(data["last_scanned_at"])
        if last_scanned_at.tzinfo is None:
            last_scanned_at = last_scanned_at.replace(tzinfo=timezone.utc)
        return cls(
            url=url,
            status=data["status"],
            scan_identifier=data.get("scan_identifier"),
            raw_response=data.get("raw_response"),
            last_scanned_at=last_scanned_at,
        )


class ScanCache:
    def __init__(self, path: str, clock: Callable[[], datetime] = utcnow):
        self.path = path
        self._clock = clock
        self._lock = asyncio.Lock()
        self._records: Optional[Dict[str, Dict[str, Any]]] = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._records is not None:
            return self._records

        if not os.path.exists(self.path):
            self._records = {}
            return self._records

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                content = f.read()
            data = json.loads(content) if content.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            raise ScanCacheError(f"Failed to load scan cache {self.path}: {e}") from e

        records = data.get("urls", {}) if isinstance(data, dict) else None
        if not isinstance(records, dict):
            raise ScanCacheError(f"Failed to load scan cache {self.path}: expected an object with a 'urls' mapping")

        self._records = records
        log_info(f"Loaded {len(self._records)} cached scan results from {self.path}")
        return self._records

    def _save(self):
        tmp = self.path + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump({"urls": self._records}, f, indent=2, default=str)
            os.replace(tmp, self.path)
        except OSError as e:
            log_error(f"Failed to save scan cache {self.path}: {e}")
            raise ScanCacheError(f"Failed to save scan cache {self.path}: {e}") from e

    async def get(self, url: str) -> Optional[ScannedURLRecord]:
        async with self._lock:
            data = self._load().get(url)
        if data is None:
            return None
        try:
            return ScannedURLRecord.from_dict(url, data)
        except (KeyError, TypeError, ValueError) as e:
            raise ScanCacheError(f"Malformed cached record for {url}: {e!r}") from e

    async def _write(self, url: str, status: str, scan_identifier: Optional[str],
                     raw_response: Optional[Dict[str, Any]], exists: bool) -> ScannedURLRecord:
        async with self._lock:
            records = self._load()
            if exists and url not in records:
                raise RecordNotFoundError(f"No cached scan for {url}")
            if not exists and url in records:
                raise DuplicateRecordError(f"Scan for {url} is already cached")

            record = ScannedURLRecord(
                url=url,
                status=status,
                scan_identifier=scan_identifier,
                raw_response=raw_response,
                last_scanned_at=self._clock(),
            )
            records[url] = record.to_dict()
            self._save()
        return record

    async def insert(self, url: str, status: str, scan_identifier: Optional[str],
                     raw_response: Optional[Dict[str, Any]]) -> ScannedURLRecord:
        return await self._write(url, status, scan_identifier, raw_response, exists=False)

    async def update(self, url: str, status: str, scan_identifier: Optional[str],
                     raw_response: Optional[Dict[str, Any]]) -> ScannedURLRecord:
        return await self._write(url, status, scan_identifier, raw_response, exists=True)

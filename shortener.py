import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from logs import log_error, log_info

CLEANURI_API_ENDPOINT = "https://cleanuri.com/api/v1/shorten"


class ShortenerError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


async def shorten_url(session: aiohttp.ClientSession, long_url: str) -> str:
    try:
        async with session.post(CLEANURI_API_ENDPOINT, data={"url": long_url}) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {}
            if resp.status != 200:
                message = data.get("error") if isinstance(data, dict) else None
                log_error(f"CleanURI rejected {long_url}: HTTP {resp.status} {message}")
                raise ShortenerError(message or "API request failed.", status=resp.status)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log_error(f"Error calling CleanURI API for {long_url}: {e!r}")
        raise ShortenerError("API request failed.") from e

    short_url = data.get("result_url") if isinstance(data, dict) else None
    if not short_url:
        raise ShortenerError("Unexpected response from the URL shortening service.")
    return short_url


def short_code(short_url: str) -> str:
    return short_url.rstrip("/").rsplit("/", 1)[-1]


class ShortenedUrlStore:
    """Per-user history of shortened URLs, kept in one JSON file."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read()
        return json.loads(content) if content.strip() else {}

    def _write(self, data: Dict[str, List[Dict[str, Any]]]):
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def save(self, discord_id: int, original_url: str, code: str, short_url: str) -> Dict[str, Any]:
        data = self._read()
        entry = {
            "original_url": original_url,
            "short_code": code,
            "short_url": short_url,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        data.setdefault(str(discord_id), []).append(entry)
        self._write(data)
        log_info(f"Saved shortened URL {short_url} for user {discord_id}")
        return entry

    def list_for_user(self, discord_id: int, limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
        entries = self._read().get(str(discord_id), [])
        entries = sorted(entries, key=lambda e: e["created_at"], reverse=True)
        return entries[offset:offset + limit]

import json
import os
import re
import time
from collections import OrderedDict
from typing import Any, Iterable, Set
from urllib.parse import urlparse, urlunparse

import tldextract

DEFAULT_ALLOWLIST = {
    "domains": [
        "discord.com",
        "discordapp.com",
        "discord.gg",
        "youtube.com",
        "youtu.be",
        "google.com",
        "tenor.com",
        "giphy.com",
        "wikipedia.org",
        "github.com"
    ]
}

#link regex
URL_REGEX = re.compile(r'https?://[^\s<>"]+|www\.[^\s<>"]+')

#bundled suffix list only, no network fetch at startup
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


class TTLCache:
    """Set-like cache whose keys expire after a per-key TTL.

    Holds at most max_entries keys; the oldest insertions are dropped first.
    """

    def __init__(self, max_entries: int = 1024, clock=time.monotonic):
        self._data: "OrderedDict[Any, float]" = OrderedDict()
        self.max_entries = max_entries
        self._clock = clock

    def add(self, key: Any, ttl_seconds: int = 300):
        self._data.pop(key, None)
        self._data[key] = self._clock() + ttl_seconds
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def remaining(self, key: Any) -> float:
        if key not in self:
            return 0.0
        return self._data[key] - self._clock()

    def __contains__(self, key: Any) -> bool:
        expiry = self._data.get(key)

        if expiry is None:
            return False

        if self._clock() > expiry:
            self._data.pop(key, None)
            return False

        return True

    def __len__(self) -> int:
        return len(self._data)


def load_json_list(path, key="domains", default=None) -> Set[str]:
    if not os.path.exists(path):
        if default is None:
            default = {key: []}
        with open(path, "w") as f:
            json.dump(default, f, indent=4)
        return set(map(str.lower, default[key]))
    with open(path, "r") as f:
        data = json.load(f)
        return set(map(str.lower, data.get(key, [])))


def strip_unbalanced_parenthesis(url: str) -> str:
    while url.endswith(")") and url.count("(") < url.count(")"):
        url = url[:-1]
    return url


def normalize_url(raw_url: str) -> str:
    raw_url = raw_url.strip()
    if raw_url.lower().startswith("www."):
        raw_url = "https://" + raw_url

    try:
        parsed = urlparse(raw_url)
        #hostnames are case-insensitive, paths are not
        netloc = (parsed.hostname or "").lower()
        if parsed.port:
            netloc += f":{parsed.port}"
    except ValueError:
        return strip_unbalanced_parenthesis(raw_url)

    path = parsed.path
    if path == "/":
        path = ""

    normalized = urlunparse((
        parsed.scheme.lower(),
        netloc,
        path,
        parsed.params,
        parsed.query,
        parsed.fragment
    ))
    return strip_unbalanced_parenthesis(normalized)


def extract_urls(text: str) -> Set[str]:
    return {normalize_url(u) for u in URL_REGEX.findall(text or "")}


def extract_domain(url: str) -> str:
    ext = _tld_extract(url)
    if ext.suffix:
        return f"{ext.domain}.{ext.suffix}".lower()
    return ext.domain.lower()


def filter_allowlisted(urls: Iterable[str], allowlist: Set[str]) -> Set[str]:
    return {url for url in urls if extract_domain(url) not in allowlist}

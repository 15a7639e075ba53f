"""
Evidence fetching over HTTPS with httpx.

One GET per source, bounded timeout, no retries and no redirects. A failed
source is returned as an Evidence with success=False and logged; callers
decide whether the set as a whole is usable.
"""

import asyncio
import hashlib
import html
import logging
import re
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx

from predmarket.models import Evidence, EvidenceSource

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 30.0
MAX_CONTENT_CHARS = 200_000

_SCRIPT_RE = re.compile(r"<(script|style)\b.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"</?(p|div|br|li|h[1-6]|tr|section|article)\b[^>]*>",
                       re.IGNORECASE)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


def is_https(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme == "https" and bool(parsed.hostname)


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def is_allowed_source(url: str, allowed: list[EvidenceSource]) -> bool:
    """HTTPS and the host equals, or is a subdomain of, an allowed host."""
    if not is_https(url):
        return False
    host = host_of(url)
    for source in allowed:
        allowed_host = host_of(source.url)
        if allowed_host and (host == allowed_host
                             or host.endswith("." + allowed_host)):
            return True
    return False


def extract_text(body: str) -> str:
    """Visible text of an HTML page; plain text passes through."""
    if "<" not in body:
        return body
    text = _SCRIPT_RE.sub(" ", body)
    text = _BLOCK_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    return html.unescape(text)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EvidenceFetcher:

    def __init__(self, timeout: float = DEFAULT_TIMEOUT,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    def _failed(self, url: str, name: str, error: str,
                status: int = 0) -> Evidence:
        logger.warning("evidence fetch failed: %s (%s): %s", name, url, error)
        return Evidence(source_url=url, source_name=name, content="",
                        fetched_at=_now(), content_hash="", http_status=status,
                        success=False, error=error)

    async def fetch(self, url: str, name: str = "") -> Evidence:
        name = name or host_of(url)
        if not is_https(url):
            return self._failed(url, name, "only https sources are allowed")
        try:
            async with httpx.AsyncClient(transport=self.transport,
                                         timeout=self.timeout) as client:
                resp = await client.get(
                    url, headers={"Accept": "text/html, text/plain"})
        except httpx.TimeoutException:
            return self._failed(url, name, "timed out")
        except httpx.HTTPError as e:
            return self._failed(url, name, f"request error: {e}")
        if resp.status_code != 200:
            return self._failed(url, name, f"http {resp.status_code}",
                                resp.status_code)
        text = extract_text(resp.text)[:MAX_CONTENT_CHARS]
        return Evidence(source_url=url, source_name=name, content=text,
                        fetched_at=_now(), content_hash=content_hash(text),
                        http_status=resp.status_code, success=True)

    async def fetch_sources(self,
                            sources: list[EvidenceSource]) -> list[Evidence]:
        return list(await asyncio.gather(
            *(self.fetch(s.url, s.name) for s in sources)))

    async def fetch_urls(self, urls: list[str]) -> list[Evidence]:
        return list(await asyncio.gather(*(self.fetch(u) for u in urls)))

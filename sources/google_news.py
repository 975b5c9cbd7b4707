"""Google News RSS search provider.

Fetches the RSS search feed for a stream's topic and converts entries into
Source objects for the discovery stage.

Error Handling Strategy:
    - Network errors, timeouts and non-200 responses raise StageFailure so the
      pipeline's in-execution retry budget applies
    - SSL certificate errors trigger one retry without verification
    - Entries without titles or links are skipped
"""

import asyncio
import logging
import ssl
from datetime import datetime, timezone
from urllib.parse import quote_plus

import aiohttp
import certifi
import feedparser

from errors import StageFailure
from models.artifacts import Source

logger = logging.getLogger(__name__)

SEARCH_URL = "https://news.google.com/rss/search?q={query}&hl={hl}&gl={gl}&ceid={gl}:{lang}"

# Browser-like User-Agent to avoid being blocked by some servers
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

_REGIONS = {
    "en": ("en-US", "US"),
    "zh": ("zh-CN", "CN"),
}


def _ssl_context(verify: bool = True) -> ssl.SSLContext:
    """SSL context using the certifi bundle, or with verification disabled."""
    if verify:
        return ssl.create_default_context(cafile=certifi.where())
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _parse_date(entry: dict) -> datetime | None:
    """Publication date from published/updated/created, in UTC."""
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        time_tuple = entry.get(field)
        if time_tuple:
            try:
                return datetime(*time_tuple[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None


def parse_feed(content: str, since: datetime | None = None, limit: int | None = None) -> list[Source]:
    """Convert RSS/Atom content into Sources.

    Google News titles carry a " - Publisher" suffix; it is moved into the
    publisher field when the entry names its source.
    """
    feed = feedparser.parse(content)
    sources: list[Source] = []

    for entry in feed.entries:
        title = entry.get("title", "").strip()
        link = entry.get("link", "").strip()
        if not title or not link:
            continue

        published = _parse_date(entry)
        if since is not None and published is not None and published <= since:
            continue

        publisher = ""
        source_info = entry.get("source")
        if source_info:
            publisher = (source_info.get("title") or "").strip()
        if publisher and title.endswith(f" - {publisher}"):
            title = title[: -len(publisher) - 3].strip()

        sources.append(Source(
            title=title,
            url=link,
            snippet=entry.get("summary", "") or entry.get("description", ""),
            publisher=publisher,
            published_at=published,
        ))
        if limit is not None and len(sources) >= limit:
            break

    return sources


class GoogleNewsSource:
    """SourceProvider backed by the Google News RSS search endpoint."""

    source_type = "rss"

    def __init__(self, language: str = "en", timeout: int = 30, search_url: str = SEARCH_URL):
        self.language = language
        self.timeout = timeout
        self.search_url = search_url

    def build_url(self, query: str) -> str:
        hl, gl = _REGIONS.get(self.language, _REGIONS["en"])
        return self.search_url.format(query=quote_plus(query), hl=hl, gl=gl, lang=self.language)

    async def _fetch(self, session: aiohttp.ClientSession, url: str, verify_ssl: bool = True) -> str:
        try:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
                ssl=_ssl_context(verify_ssl),
            ) as resp:
                if resp.status != 200:
                    raise StageFailure("discovery", f"HTTP {resp.status} from news search")
                return await resp.text()
        except aiohttp.ClientSSLError as e:
            if verify_ssl:
                logger.debug("News search SSL error, retrying without verification | url=%s", url)
                return await self._fetch(session, url, verify_ssl=False)
            raise StageFailure("discovery", f"SSL verification failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise StageFailure("discovery", f"news search timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise StageFailure("discovery", f"{type(e).__name__}: {e}") from e

    async def discover(self, query: str, since: datetime | None, limit: int) -> list[Source]:
        url = self.build_url(query)
        async with aiohttp.ClientSession() as session:
            content = await self._fetch(session, url)
        sources = parse_feed(content, since=since, limit=limit)
        logger.info("News search complete | query='%s' sources=%d", query[:40], len(sources))
        return sources

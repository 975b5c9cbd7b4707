"""Discovery collaborators.

SourceProvider:
    Contract the pipeline's discovery stage depends on.

GoogleNewsSource:
    RSS search against Google News (aiohttp + feedparser).

Example:
    >>> from sources import GoogleNewsSource
    >>> provider = GoogleNewsSource(language="en")
    >>> sources = await provider.discover("quantum computing", since=None, limit=20)
"""

from datetime import datetime
from typing import Protocol

from models.artifacts import Source
from sources.google_news import GoogleNewsSource


class SourceProvider(Protocol):
    """Anything that can return candidate documents for a topic.

    `source_type` names the family the provider belongs to (news_api, rss or
    social); news streams only use providers whose type they list.
    """

    source_type: str

    async def discover(self, query: str, since: datetime | None, limit: int) -> list[Source]:
        """Documents about `query` published after `since` (if given), at most `limit`."""
        ...


__all__ = [
    "GoogleNewsSource",
    "SourceProvider",
]

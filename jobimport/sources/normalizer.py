from __future__ import annotations

import logging

import httpx

from jobimport.core.errors import FetchError
from jobimport.core.models import CanonicalJob
from jobimport.sources.json_feed import JSONFeedParser
from jobimport.sources.rss import RSSFeedParser

logger = logging.getLogger(__name__)


class FeedNormalizer:
    """Fetches one feed and turns its body into canonical jobs.

    XML is recognised by a leading ``<``; anything else must be JSON. Entries
    are returned in feed order and are never deduplicated.
    """

    def __init__(
        self,
        timeout_seconds: float = 30,
        user_agent: str = "JobImportSystem/1.0",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client = httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )
        self.rss = RSSFeedParser()
        self.json = JSONFeedParser()

    def fetch(self, url: str) -> list[CanonicalJob]:
        try:
            response = self.client.get(url)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.warning("feed_fetch_failed", extra={"extra_fields": {"url": url, "error": str(exc)}})
            raise FetchError(f"{type(exc).__name__}: {exc}") from exc

        jobs = self.parse(response.text)
        logger.info("feed_fetched", extra={"extra_fields": {"url": url, "jobs": len(jobs)}})
        return jobs

    def parse(self, body: str) -> list[CanonicalJob]:
        if body.strip().startswith("<"):
            return self.rss.parse(body)
        return self.json.parse(body)

    def close(self) -> None:
        self.client.close()

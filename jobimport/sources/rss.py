from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from jobimport.core.errors import FormatError
from jobimport.core.models import CanonicalJob, utc_now
from jobimport.sources.base import FeedParser
from jobimport.utils.text import fallback_external_id, normalize_whitespace

logger = logging.getLogger(__name__)


def parse_feed_date(value: str) -> str:
    """Return an ISO-8601 timestamp for an RSS or ISO date, or now when absent or unreadable."""
    if not value:
        return utc_now()
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("unparseable_pub_date", extra={"extra_fields": {"value": value}})
            return utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class RSSFeedParser(FeedParser):
    def parse(self, body: str) -> list[CanonicalJob]:
        try:
            root = ET.fromstring(body.strip())
        except ET.ParseError as exc:
            raise FormatError(f"invalid XML: {exc}") from exc

        if _local_name(root.tag) != "rss":
            return []
        channel = root.find("channel")
        if channel is None:
            return []
        return [self._normalize_item(node) for node in channel.findall("item")]

    @staticmethod
    def _normalize_item(node: ET.Element) -> CanonicalJob:
        raw: dict[str, str] = {}
        for child in node:
            raw.setdefault(_local_name(child.tag), (child.text or "").strip())

        title = normalize_whitespace(raw.get("title", ""))
        link = raw.get("link", "")
        guid = raw.get("guid", "") or link
        return CanonicalJob(
            external_id=guid or link or fallback_external_id(title),
            title=title,
            description=raw.get("description", "") or raw.get("content", ""),
            url=link,
            published_at=parse_feed_date(raw.get("pubDate", "")),
            category=raw.get("category", ""),
            raw=raw,
        )

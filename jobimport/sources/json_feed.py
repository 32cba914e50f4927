from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from jobimport.core.errors import FormatError
from jobimport.core.models import CanonicalJob
from jobimport.sources.base import FeedParser
from jobimport.sources.rss import parse_feed_date
from jobimport.utils.text import as_text, fallback_external_id

# Candidate keys per canonical attribute, first non-empty wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "external_id": ("id", "externalId", "guid"),
    "title": ("title", "jobTitle"),
    "description": ("description", "summary"),
    "url": ("url", "link"),
    "published_at": ("publishedDate", "pubDate", "createdAt"),
    "company": ("company", "companyName"),
    "location": ("location",),
    "category": ("category",),
    "job_type": ("jobType",),
    "salary": ("salary",),
}


def first_present(entry: Mapping[str, Any], names: tuple[str, ...]) -> str:
    for name in names:
        value = as_text(entry.get(name))
        if value:
            return value
    return ""


class JSONFeedParser(FeedParser):
    def parse(self, body: str) -> list[CanonicalJob]:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise FormatError("unrecognized body") from exc
        return self.extract(payload)

    def extract(self, payload: Any) -> list[CanonicalJob]:
        if isinstance(payload, list):
            entries = payload
        elif isinstance(payload, Mapping) and isinstance(payload.get("jobs"), list):
            entries = payload["jobs"]
        else:
            return []
        return [self.normalize_entry(entry) for entry in entries]

    @staticmethod
    def normalize_entry(entry: Any) -> CanonicalJob:
        # non-object entries still count, so they surface as validation failures downstream
        view: Mapping[str, Any] = entry if isinstance(entry, Mapping) else {}
        values = {attr: first_present(view, names) for attr, names in FIELD_ALIASES.items()}
        values["external_id"] = values["external_id"] or fallback_external_id(values["title"])
        values["published_at"] = parse_feed_date(values["published_at"])
        return CanonicalJob(**values, raw=entry)

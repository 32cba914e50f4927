from __future__ import annotations

import base64
import re
from urllib.parse import urlparse


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def fallback_external_id(title: str) -> str:
    return base64.b64encode(title.encode("utf-8")).decode("ascii")


def source_name_from_url(url: str) -> str:
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    if not host:
        return url[:50]
    return host[4:] if host.startswith("www.") else host


def as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return ""

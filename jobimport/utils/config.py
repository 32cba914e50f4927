from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml


class ConfigError(RuntimeError):
    pass


DEFAULT_SOURCES = [
    "https://jobicy.com/?feed=job_feed",
    "https://jobicy.com/?feed=job_feed&job_categories=smm&job_types=full-time",
    "https://jobicy.com/?feed=job_feed&job_categories=seller&job_types=full-time&search_region=france",
    "https://jobicy.com/?feed=job_feed&job_categories=design-multimedia",
    "https://jobicy.com/?feed=job_feed&job_categories=data-science",
    "https://jobicy.com/?feed=job_feed&job_categories=copywriting",
    "https://jobicy.com/?feed=job_feed&job_categories=business",
    "https://jobicy.com/?feed=job_feed&job_categories=management",
    "https://www.higheredjobs.com/rss/articleFeed.cfm",
]

DEFAULT_CONFIG: dict[str, Any] = {
    "database_path": "data/jobimport.db",
    "log_dir": "data/logs",
    "log_level": "INFO",
    "history_export_path": "data/import_history.xlsx",
    "import": {
        "batch_size": 100,
        "worker_concurrency": 5,
        "source_fan_out": 3,
        "fetch_timeout_seconds": 30,
        "user_agent": "JobImportSystem/1.0",
    },
    "queue": {
        "path": "data/queue.db",
        "max_attempts": 3,
        "backoff_seconds": 2,
        "poll_interval_seconds": 1,
        "stale_after_seconds": 600,
    },
    "schedule": {
        "cron": "0 * * * *",
        "sweep_on_start": True,
    },
    "sources": [{"url": url} for url in DEFAULT_SOURCES],
}

ENV_OVERRIDES = {
    "BATCH_SIZE": ("import", "batch_size"),
    "MAX_CONCURRENCY": ("import", "worker_concurrency"),
}

POSITIVE_INTS = [
    ("import", "batch_size"),
    ("import", "worker_concurrency"),
    ("import", "source_fan_out"),
    ("queue", "max_attempts"),
]


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(config: dict[str, Any], environ: dict[str, str]) -> None:
    for name, (section, key) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if not raw:
            continue
        try:
            config[section][key] = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _validate(config: dict[str, Any]) -> None:
    for section, key in POSITIVE_INTS:
        value = config[section][key]
        if not isinstance(value, int) or value < 1:
            raise ConfigError(f"{section}.{key} must be a positive integer, got {value!r}")
    if not isinstance(config["sources"], list):
        raise ConfigError("sources must be a list")
    for entry in config["sources"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("url"), str) or not entry["url"]:
            raise ConfigError(f"Every source needs a url: {entry!r}")
        _validate_url(entry["url"])


def _validate_url(url: str) -> None:
    try:
        parsed = urlparse(url)
        parsed.port
    except ValueError as exc:
        raise ConfigError(f"Invalid source url {url!r}: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"Source url must be an absolute http(s) url: {url!r}")


def build_config(overrides: dict[str, Any] | None = None, environ: dict[str, str] | None = None) -> dict[str, Any]:
    config = _merge(DEFAULT_CONFIG, overrides or {})
    _apply_env(config, dict(os.environ) if environ is None else environ)
    _validate(config)
    return config


def load_config(path: str | Path, environ: dict[str, str] | None = None) -> dict[str, Any]:
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(f"Config not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ConfigError("Config root must be a mapping")
    return build_config(loaded, environ)

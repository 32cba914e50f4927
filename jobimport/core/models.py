from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ApplyResult(str, Enum):
    """What the ledger did with one batch outcome."""

    APPLIED = "applied"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    DUPLICATE = "duplicate"
    OVERFLOW = "overflow"


@dataclass(slots=True)
class Source:
    id: int
    url: str
    display_name: str
    active: bool = True
    last_fetched_at: str | None = None
    fetch_interval_seconds: int = 3600


@dataclass(slots=True)
class CanonicalJob:
    external_id: str
    title: str
    description: str = ""
    company: str = ""
    location: str = ""
    category: str = ""
    job_type: str = ""
    salary: str = ""
    url: str = ""
    published_at: str = field(default_factory=utc_now)
    raw: Any = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CanonicalJob:
        return cls(
            external_id=payload.get("external_id") or "",
            title=payload.get("title") or "",
            description=payload.get("description") or "",
            company=payload.get("company") or "",
            location=payload.get("location") or "",
            category=payload.get("category") or "",
            job_type=payload.get("job_type") or "",
            salary=payload.get("salary") or "",
            url=payload.get("url") or "",
            published_at=payload.get("published_at") or utc_now(),
            raw=payload.get("raw", {}),
        )


@dataclass(slots=True)
class JobRecord:
    id: int
    external_id: str
    source: str
    title: str
    description: str
    company: str
    location: str
    category: str
    job_type: str
    salary: str
    url: str
    published_at: str
    raw: Any
    created_at: str
    updated_at: str


@dataclass(slots=True)
class FailureReason:
    job_ref: str
    reason: str
    detail: str = ""


@dataclass(slots=True)
class ImportRun:
    id: int
    source_url: str
    source_name: str
    started_at: str
    status: RunStatus = RunStatus.PENDING
    total_fetched: int | None = None
    total_imported: int = 0
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    failure_reasons: list[FailureReason] = field(default_factory=list)
    finished_at: str | None = None
    processing_time_ms: int | None = None

    @property
    def processed(self) -> int:
        return self.new_count + self.updated_count + self.failed_count


@dataclass(slots=True)
class BatchWorkItem:
    jobs: list[CanonicalJob]
    source_key: str
    run_id: int
    batch_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in self.jobs],
            "source_key": self.source_key,
            "run_id": self.run_id,
            "batch_index": self.batch_index,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BatchWorkItem:
        return cls(
            jobs=[CanonicalJob.from_dict(job) for job in payload.get("jobs", [])],
            source_key=payload["source_key"],
            run_id=int(payload["run_id"]),
            batch_index=payload.get("batch_index"),
        )


@dataclass(slots=True)
class BatchOutcome:
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    failure_reasons: list[FailureReason] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.new_count + self.updated_count + self.failed_count

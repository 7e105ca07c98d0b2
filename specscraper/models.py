"""Pydantic models shared across the scraper components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class JobStep(str, Enum):
    """Lifecycle steps of a scrape job."""

    SEARCHING = "searching"
    SELECTING = "selecting"
    SCRAPING = "scraping"
    DONE = "done"
    ERROR = "error"
    SLUG_CONFLICT = "slug_conflict"
    INTERRUPTED = "interrupted"


class QueueItemKind(str, Enum):
    SEARCH = "search"
    SCRAPE = "scrape"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class BulkStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    ERROR = "error"


class CandidateOption(WireModel):
    name: str
    target_id: str
    source_url: Optional[str] = None


class SlugConflictInfo(WireModel):
    target_id: str
    existing_device_id: str
    existing_device_name: str


class ScrapeRequest(WireModel):
    """What the caller asked for when the job was admitted."""

    query: str = ""
    brand: Optional[str] = None
    target_id: Optional[str] = None


class ScrapeJob(WireModel):
    id: str
    device_id: str
    requesting_user_id: str
    step: JobStep = JobStep.SEARCHING
    request: ScrapeRequest = Field(default_factory=ScrapeRequest)
    target_id: Optional[str] = None
    autocomplete_options: Optional[List[CandidateOption]] = None
    slug_conflict: Optional[SlugConflictInfo] = None
    error: Optional[str] = None
    attempts: int = 0
    requeue_count: int = 0
    progress_stage: Optional[str] = None
    progress_percent: Optional[int] = None
    last_log: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    bulk_id: Optional[str] = None


class QueueItem(WireModel):
    id: Optional[int] = None
    job_id: str
    device_id: str
    kind: QueueItemKind
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempt: int = 0
    max_attempts: int = 3
    next_run_at: datetime = Field(default_factory=utcnow)
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    bulk_id: Optional[str] = None


class BulkJob(WireModel):
    """A batch of scrape jobs started together, one per target."""

    id: str
    user_id: str
    status: BulkStatus = BulkStatus.PENDING
    total: int = 0
    skipped: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class RawEntity(WireModel):
    device_id: str
    source: str
    data_kind: str
    data: Dict[str, Any]
    fetched_at: datetime = Field(default_factory=utcnow)
    superseded_at: Optional[datetime] = None


class DerivedEntity(WireModel):
    device_id: str
    data_kind: str
    data: Dict[str, Any]
    sources: List[str] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=utcnow)


class PriceQuote(WireModel):
    device_id: str
    source: str
    offer_id: str
    price: float
    currency: Optional[str] = None
    seller: Optional[str] = None
    url: Optional[str] = None
    redirect_type: Optional[str] = None
    observed_at: datetime = Field(default_factory=utcnow)


class CatalogDevice(WireModel):
    id: str
    name: str
    brand: Optional[str] = None
    target_id: Optional[str] = None


class Event(WireModel):
    """Progress notification pushed to gateway subscribers."""

    type: str
    stage: Optional[str] = None
    percent: Optional[int] = None
    message: Optional[str] = None
    level: Optional[str] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    delay: Optional[float] = None
    reason: Optional[str] = None
    step: Optional[str] = None
    job_id: Optional[str] = None
    device_id: Optional[str] = None
    duration_ms: Optional[int] = None
    bulk_id: Optional[str] = None
    status: Optional[str] = None
    stats: Optional[Dict[str, int]] = None
    worker_count: Optional[int] = None


def log_event(message: str, level: str = "info", **fields: Any) -> Event:
    return Event(type="log", message=message, level=level, **fields)


def retry_event(attempt: int, max_attempts: int, delay: float, reason: str, **fields: Any) -> Event:
    return Event(
        type="retry",
        attempt=attempt,
        max_attempts=max_attempts,
        delay=delay,
        reason=reason,
        **fields,
    )

"""Wire frames and method parameter models of the real-time gateway."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from specscraper.config import MAX_WORKERS
from specscraper.errors import ScraperError
from specscraper.models import Event, WireModel


class RpcRequest(BaseModel):
    id: str
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


def result_frame(request_id: Optional[str], result: Any) -> Dict[str, Any]:
    return {"id": request_id, "result": result}


def error_frame(request_id: Optional[str], error: ScraperError) -> Dict[str, Any]:
    return {"id": request_id, "error": error.to_dict()}


def event_frame(event: Event) -> Dict[str, Any]:
    return {"event": event.to_wire()}


class Params(WireModel):
    """Method parameters arrive camelCase; unknown keys are ignored."""


class SearchParams(Params):
    query: str
    brand: Optional[str] = None


class StartParams(Params):
    device_id: str
    user_id: str
    query: str
    brand: Optional[str] = None


class TargetParams(Params):
    device_id: str
    user_id: str
    target_id: str


class PreviewParams(Params):
    target_id: str


class CreateFromPreviewParams(Params):
    target_id: str
    user_id: str


class DeviceParams(Params):
    device_id: str


class OwnerParams(Params):
    device_id: str
    user_id: str


class ListParams(Params):
    user_id: Optional[str] = None
    active_only: bool = False
    limit: int = Field(default=100, ge=1, le=1000)


class QueueItemsParams(Params):
    job_id: str


class BulkStartParams(Params):
    user_id: str
    target_ids: List[str] = Field(min_length=1)


class BulkParams(Params):
    bulk_id: str


class BulkListParams(Params):
    limit: int = Field(default=100, ge=1, le=1000)


class WorkerCountParams(Params):
    worker_count: int = Field(ge=1, le=MAX_WORKERS)

"""Error taxonomy shared by the scraper, the job queue and the gateway."""
from __future__ import annotations

from typing import Any, Dict, Optional


class ScraperError(Exception):
    """Base class for all errors raised by the scraper core."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class TransportError(ScraperError):
    """Network, proxy or upstream HTTP failure."""

    code = "transport_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.retryable = retryable
        self.status_code = status_code


class ValidationError(ScraperError):
    """Fetched page was rejected by the content validator (or timed out)."""

    code = "validation_error"
    retryable = True

    def __init__(self, reason: str, *, kind: str = "rejected", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(reason, details)
        self.reason = reason
        self.kind = kind


class ParseError(ScraperError):
    """Upstream answered with a payload we cannot interpret. Never retried."""

    code = "parse_error"


class SearchExhausted(ScraperError):
    """Search finished without a single candidate."""

    code = "not_found"


class ConflictError(ScraperError):
    """Requires caller action; never retried."""

    code = "conflict"


class DuplicateActiveJob(ConflictError):
    code = "duplicate_active_job"

    def __init__(self, device_id: str, job_id: Optional[str] = None) -> None:
        super().__init__(
            f"Device {device_id} already has an active scrape job",
            {"deviceId": device_id, "jobId": job_id} if job_id else {"deviceId": device_id},
        )
        self.device_id = device_id
        self.job_id = job_id


class SlugConflict(ConflictError):
    code = "slug_conflict"

    def __init__(self, target_id: str, existing_device_id: str, existing_device_name: str) -> None:
        super().__init__(
            f"Target {target_id} already belongs to device {existing_device_name} ({existing_device_id})",
            {
                "targetId": target_id,
                "existingDeviceId": existing_device_id,
                "existingDeviceName": existing_device_name,
            },
        )
        self.target_id = target_id
        self.existing_device_id = existing_device_id
        self.existing_device_name = existing_device_name


class ConfigurationError(ScraperError):
    """Missing credentials or environment. Fatal at startup."""

    code = "configuration_error"


class JobNotFound(ScraperError):
    code = "not_found"


class InvalidTransition(ScraperError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move job from {current} to {target}", {"from": current, "to": target})
        self.current = current
        self.target = target


class PermissionDenied(ScraperError):
    code = "forbidden"


class InvalidParams(ScraperError):
    code = "invalid_params"


class UnknownMethod(ScraperError):
    code = "unknown_method"

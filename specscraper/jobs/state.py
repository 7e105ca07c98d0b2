"""Scrape job state machine."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from ..errors import InvalidTransition
from ..models import JobStep, ScrapeJob, utcnow

ACTIVE_STEPS: FrozenSet[JobStep] = frozenset({JobStep.SEARCHING, JobStep.SELECTING, JobStep.SCRAPING})
TERMINAL_STEPS: FrozenSet[JobStep] = frozenset(
    {JobStep.DONE, JobStep.ERROR, JobStep.SLUG_CONFLICT, JobStep.INTERRUPTED}
)

TRANSITIONS: Dict[JobStep, FrozenSet[JobStep]] = {
    JobStep.SEARCHING: frozenset(
        {
            JobStep.SEARCHING,
            JobStep.SELECTING,
            JobStep.SCRAPING,
            JobStep.ERROR,
            JobStep.SLUG_CONFLICT,
            JobStep.INTERRUPTED,
        }
    ),
    JobStep.SELECTING: frozenset(
        {JobStep.SCRAPING, JobStep.SLUG_CONFLICT, JobStep.INTERRUPTED}
    ),
    JobStep.SCRAPING: frozenset(
        {JobStep.SCRAPING, JobStep.DONE, JobStep.ERROR, JobStep.INTERRUPTED}
    ),
    JobStep.DONE: frozenset(),
    JobStep.ERROR: frozenset(),
    JobStep.SLUG_CONFLICT: frozenset(),
    JobStep.INTERRUPTED: frozenset(),
}


def is_active(step: JobStep) -> bool:
    return JobStep(step) in ACTIVE_STEPS


def is_terminal(step: JobStep) -> bool:
    return JobStep(step) in TERMINAL_STEPS


def can_transition(current: JobStep, target: JobStep) -> bool:
    return JobStep(target) in TRANSITIONS[JobStep(current)]


def ensure_transition(current: JobStep, target: JobStep) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(JobStep(current).value, JobStep(target).value)


def transition(
    job: ScrapeJob,
    target: JobStep,
    *,
    now: Optional[datetime] = None,
    **fields: Any,
) -> ScrapeJob:
    """Return a copy of ``job`` moved to ``target``.

    A step change clears progress and, when leaving ``selecting``, the
    candidate list. Repeating a step or failing counts as an attempt.
    Terminal steps stamp ``finished_at`` and ``archived_at``.
    """
    target = JobStep(target)
    ensure_transition(job.step, target)
    now = now or utcnow()

    update: Dict[str, Any] = {"step": target, "updated_at": now}
    if target != job.step:
        update["progress_stage"] = None
        update["progress_percent"] = None
        if job.step == JobStep.SELECTING:
            update["autocomplete_options"] = None
    if target == job.step or target == JobStep.ERROR:
        update["attempts"] = job.attempts + 1
    if target in TERMINAL_STEPS:
        update["finished_at"] = now
        update["archived_at"] = now

    update.update(fields)
    return job.model_copy(update=update)

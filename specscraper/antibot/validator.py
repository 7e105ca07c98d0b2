"""Classify fetched HTML before anything is extracted from it."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from ..errors import ValidationError


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    BOT_CHALLENGE = "bot_challenge"
    INCOMPLETE = "incomplete"
    WRONG_TEMPLATE = "wrong_template"


BOT_CHALLENGE_MARKERS: Sequence[Tuple[str, str]] = (
    ("Enable JavaScript and cookies to continue", "Bot protection: JavaScript/cookies required"),
    ("Please verify you are a human", "Bot protection: Human verification required"),
    ("Access denied", "Bot protection: Access denied"),
)
CONTENT_CONTAINER = "<main"
STRUCTURE_MARKERS = ("k-dltable", "container-sheet")


@dataclass(frozen=True)
class ValidationResult:
    verdict: Verdict
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.verdict is Verdict.ACCEPTED

    def raise_for_verdict(self) -> None:
        if not self.ok:
            raise ValidationError(self.reason or self.verdict.value, kind=self.verdict.value)


def validate_html(html: str) -> ValidationResult:
    """Bot walls win over everything, then the content container, then the template."""
    for marker, reason in BOT_CHALLENGE_MARKERS:
        if marker in html:
            return ValidationResult(Verdict.BOT_CHALLENGE, reason)

    if CONTENT_CONTAINER not in html:
        return ValidationResult(Verdict.INCOMPLETE, "Missing main content element")

    if not any(marker in html for marker in STRUCTURE_MARKERS):
        return ValidationResult(Verdict.WRONG_TEMPLATE, "Missing expected content structure")

    return ValidationResult(Verdict.ACCEPTED)

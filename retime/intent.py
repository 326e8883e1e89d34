# retime/intent.py
"""
Commit intents.

A CommitIntent is the fully resolved description of one commit to create.
It is produced either directly from a raw record or by rendering a template,
checked structurally, then handed to the executor exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from retime.validation import (
    DEFAULT_MESSAGE_MAX_LENGTH,
    DEFAULT_MESSAGE_MIN_LENGTH,
    sanitize_message,
    validate_commit_message,
    validate_date,
    validate_email,
    validate_time,
)


@dataclass(frozen=True)
class CommitIntent:
    message: str
    author: Optional[str] = None
    email: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IntentLimits:
    message_min_length: int = DEFAULT_MESSAGE_MIN_LENGTH
    message_max_length: int = DEFAULT_MESSAGE_MAX_LENGTH


def intent_from_fields(fields: Mapping[str, Any]) -> CommitIntent:
    """
    Build an intent from a raw record. Unknown keys are ignored.
    """
    return CommitIntent(
        message=sanitize_message(_text(fields.get("message"))),
        author=_text(fields.get("author")),
        email=_text(fields.get("email")),
        date=_text(fields.get("date")),
        time=_text(fields.get("time")),
    )


def check_intent(
    intent: CommitIntent,
    limits: IntentLimits = IntentLimits(),
    *,
    today: Optional[date] = None,
) -> List[Tuple[str, str]]:
    """
    Return (field, problem) pairs; an empty list means the intent is valid.
    """
    problems: List[Tuple[str, str]] = []

    msg = validate_commit_message(
        intent.message,
        min_length=limits.message_min_length,
        max_length=limits.message_max_length,
    )
    if not msg.valid:
        problems.append(("message", msg.error or "invalid message"))

    if intent.date:
        d = validate_date(intent.date, today=today)
        if not d.valid:
            problems.append(("date", d.error or "invalid date"))

    if intent.time:
        t = validate_time(intent.time)
        if not t.valid:
            problems.append(("time", t.error or "invalid time"))

    if intent.email and not validate_email(intent.email):
        problems.append(("email", f"Invalid email format: {intent.email}"))

    return problems


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None

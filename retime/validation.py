# retime/validation.py
"""
Validation and sanitisation of commit intent fields.

Responsibilities:
- Normalise commit messages before they reach git
- Parse dates, times and email addresses into typed values
- Produce actionable errors with field context

All functions are pure. Checks that a caller wants aggregated return a
result object instead of raising; ValidationError is raised only by code
that cannot continue without a valid value (template and record loading).

This module does NOT:
- interact with git
- render templates
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
import re


_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
# Control characters except tab and newline
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

_MIN_DATE = date(1970, 1, 1)
_FUTURE_YEARS = 10

DEFAULT_MESSAGE_MIN_LENGTH = 10
DEFAULT_MESSAGE_MAX_LENGTH = 72


class ValidationError(RuntimeError):
    """
    Raised when an input value is structurally or semantically invalid.

    Attributes:
        path: field the error refers to, for example variables[0].type
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.reason = message
        super().__init__(f"{path}: {message}")


@dataclass(frozen=True)
class DateCheck:
    valid: bool
    date: Optional[date] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TimeCheck:
    valid: bool
    hours: Optional[int] = None
    minutes: Optional[int] = None
    error: Optional[str] = None

    @property
    def formatted(self) -> Optional[str]:
        if not self.valid:
            return None
        return f"{self.hours:02d}:{self.minutes:02d}"


@dataclass(frozen=True)
class MessageCheck:
    valid: bool
    message: str = ""
    subject: str = ""
    error: Optional[str] = None


def sanitize_message(text: Optional[str]) -> str:
    """
    Normalise line endings, drop control characters and trim surrounding whitespace.
    """
    if not text:
        return ""

    cleaned = str(text).replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _CONTROL_RE.sub("", cleaned)
    return cleaned.strip()


def validate_date(text: Optional[str], *, today: Optional[date] = None) -> DateCheck:
    """
    Accept YYYY-MM-DD or a full ISO datetime between 1970-01-01 and ten years from today.
    """
    if not text or not isinstance(text, str):
        return DateCheck(False, error="Date is required and must be a string")

    value = text.strip()
    if not value:
        return DateCheck(False, error="Date cannot be empty")

    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value).date()
        except ValueError:
            return DateCheck(False, error=f"Invalid date format: {value} (expected YYYY-MM-DD)")

    today = today or date.today()
    max_date = date(today.year + _FUTURE_YEARS, 12, 31)

    if parsed < _MIN_DATE:
        return DateCheck(False, error="Date is too far in the past")

    if parsed > max_date:
        return DateCheck(False, error="Date is too far in the future")

    return DateCheck(True, date=parsed)


def validate_time(text: Optional[str]) -> TimeCheck:
    if not text or not isinstance(text, str):
        return TimeCheck(False, error="Time is required and must be a string")

    m = _TIME_RE.match(text.strip())
    if not m:
        return TimeCheck(False, error=f"Invalid time format: {text} (expected HH:MM)")

    return TimeCheck(True, hours=int(m.group(1)), minutes=int(m.group(2)))


def validate_email(text: Optional[str]) -> bool:
    if not text or not isinstance(text, str):
        return False

    if len(text) > 254:
        return False

    if not _EMAIL_RE.match(text):
        return False

    local_part = text.split("@", 1)[0]
    return len(local_part) <= 64


def validate_commit_message(
    message: Optional[str],
    *,
    min_length: int = DEFAULT_MESSAGE_MIN_LENGTH,
    max_length: int = DEFAULT_MESSAGE_MAX_LENGTH,
) -> MessageCheck:
    if not message or not isinstance(message, str):
        return MessageCheck(False, error="Commit message is required")

    trimmed = message.strip()

    if not trimmed:
        return MessageCheck(False, error="Commit message cannot be empty")

    if len(trimmed) < min_length:
        return MessageCheck(False, error=f"Commit message too short (minimum {min_length} characters)")

    if len(trimmed) > max_length:
        return MessageCheck(False, error=f"Commit message too long (maximum {max_length} characters)")

    if "\x00" in trimmed:
        return MessageCheck(False, error="Commit message contains a null byte")

    subject = trimmed.split("\n", 1)[0]
    if not subject.strip():
        return MessageCheck(False, error="Commit message must have a subject line")

    return MessageCheck(True, message=trimmed, subject=subject)

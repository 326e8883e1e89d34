"""Tests for field validation and intent checks."""

from datetime import date

import pytest

from retime.intent import CommitIntent, IntentLimits, check_intent, intent_from_fields
from retime.validation import (
    sanitize_message,
    validate_commit_message,
    validate_date,
    validate_email,
    validate_time,
)


TODAY = date(2024, 6, 1)


class TestSanitize:
    def test_strips_control_characters(self):
        assert sanitize_message("Fix\x00 bug\x07 in parser") == "Fix bug in parser"

    def test_normalises_line_endings(self):
        assert sanitize_message("  subject\r\n\r\nbody\r  ") == "subject\n\nbody"

    def test_keeps_markup(self):
        assert sanitize_message("Handle <tag> & quotes") == "Handle <tag> & quotes"

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty(self, value):
        assert sanitize_message(value) == ""


class TestDate:
    @pytest.mark.parametrize("text", ["2024-02-29", "1970-01-01", "2024-05-01T10:00:00", "2034-12-31"])
    def test_valid(self, text):
        assert validate_date(text, today=TODAY).valid

    def test_parsed_value(self):
        assert validate_date("2024-02-29", today=TODAY).date == date(2024, 2, 29)

    @pytest.mark.parametrize(
        "text,error",
        [
            ("", "required"),
            ("   ", "empty"),
            ("29/02/2024", "Invalid date format"),
            ("2023-02-29", "Invalid date format"),
            ("1969-12-31", "past"),
            ("2035-01-01", "future"),
        ],
    )
    def test_invalid(self, text, error):
        check = validate_date(text, today=TODAY)
        assert not check.valid
        assert error in check.error


class TestTime:
    @pytest.mark.parametrize("text,formatted", [("9:05", "09:05"), ("00:00", "00:00"), ("23:59", "23:59")])
    def test_valid(self, text, formatted):
        check = validate_time(text)
        assert check.valid
        assert check.formatted == formatted

    @pytest.mark.parametrize("text", ["24:00", "12:60", "noon", "1230", ""])
    def test_invalid(self, text):
        check = validate_time(text)
        assert not check.valid
        assert check.formatted is None


class TestEmail:
    @pytest.mark.parametrize("text", ["a@example.com", "first.last+tag@sub.example.org"])
    def test_valid(self, text):
        assert validate_email(text)

    @pytest.mark.parametrize(
        "text",
        ["", "plain", "a@b", "a@b.c", "x" * 65 + "@example.com", "a@" + "b" * 250 + ".com"],
    )
    def test_invalid(self, text):
        assert not validate_email(text)


class TestCommitMessage:
    def test_bounds_apply_to_trimmed_message(self):
        assert validate_commit_message("   short   ").error.startswith("Commit message too short")
        assert validate_commit_message("x" * 73).error.startswith("Commit message too long")
        assert validate_commit_message("x" * 72).valid

    def test_custom_bounds(self):
        assert validate_commit_message("tiny", min_length=3, max_length=5).valid

    def test_subject(self):
        check = validate_commit_message("Add parser\n\nDetails here")
        assert check.valid
        assert check.subject == "Add parser"


class TestIntent:
    def test_from_fields(self):
        intent = intent_from_fields(
            {"message": " Add a changelog entry \x01", "author": "  ", "date": "2024-01-02", "extra": 1}
        )
        assert intent == CommitIntent(message="Add a changelog entry", date="2024-01-02")

    def test_valid_intent(self):
        intent = CommitIntent("Write the release notes", "Ada", "ada@example.com", "2024-01-02", "10:00")
        assert check_intent(intent, today=TODAY) == []

    def test_collects_every_problem(self):
        intent = CommitIntent("short", email="nope", date="2024-02-30", time="25:00")
        fields = [f for f, _ in check_intent(intent, today=TODAY)]
        assert fields == ["message", "date", "time", "email"]

    def test_limits(self):
        intent = CommitIntent("abc")
        assert check_intent(intent, IntentLimits(message_min_length=1, message_max_length=3)) == []

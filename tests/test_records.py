"""Tests for record import and export."""

import json

import pytest

from retime.records import (
    FileSystemError,
    detect_format,
    dump_records,
    export_records,
    load_records,
    parse_csv,
)
from retime.validation import ValidationError


RECORDS = [
    {"message": "Add the first feature", "date": "2024-01-01", "time": "09:00"},
    {"message": "Fix a bug, with a comma", "date": "2024-01-02", "time": "17:45"},
]


class TestLoad:
    def test_csv(self, tmp_path):
        path = tmp_path / "commits.csv"
        path.write_text(
            "message, date ,time\n"
            "Add the first feature,2024-01-01,09:00\n"
            ",,\n"
            '"Fix a bug, with a comma",2024-01-02, 17:45 \n',
            encoding="utf-8",
        )
        assert load_records(path) == RECORDS

    def test_json(self, tmp_path):
        path = tmp_path / "commits.json"
        path.write_text(json.dumps(RECORDS), encoding="utf-8")
        assert load_records(path) == RECORDS

    def test_yaml(self, tmp_path):
        path = tmp_path / "commits.yml"
        path.write_text(
            "- message: Add the first feature\n"
            "  date: '2024-01-01'\n"
            "  time: '09:00'\n",
            encoding="utf-8",
        )
        assert load_records(path) == RECORDS[:1]

    def test_top_level_must_be_a_list(self, tmp_path):
        path = tmp_path / "commits.json"
        path.write_text('{"message": "not a list"}', encoding="utf-8")
        with pytest.raises(ValidationError, match="list of commit records"):
            load_records(path)

    def test_items_must_be_objects(self, tmp_path):
        path = tmp_path / "commits.json"
        path.write_text('[{"message": "fine message"}, 3]', encoding="utf-8")
        with pytest.raises(ValidationError) as excinfo:
            load_records(path)
        assert excinfo.value.path == "records[1]"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "commits.json"
        path.write_text("[", encoding="utf-8")
        with pytest.raises(FileSystemError, match="invalid JSON"):
            load_records(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileSystemError) as excinfo:
            load_records(tmp_path / "absent.csv")
        assert excinfo.value.operation == "read"

    def test_unsupported_type(self, tmp_path):
        with pytest.raises(ValidationError, match="unsupported file type"):
            detect_format(tmp_path / "commits.txt")

    def test_empty_csv(self):
        assert parse_csv("") == []

    def test_yaml_unquoted_date_and_time(self, tmp_path):
        path = tmp_path / "commits.yaml"
        path.write_text(
            "- message: Fix a bug, with a comma\n"
            "  date: 2024-01-02\n"
            "  time: 17:45\n"
            "- message: Add the first feature\n"
            "  time: 09:00\n",
            encoding="utf-8",
        )

        records = load_records(path)

        assert records[0] == RECORDS[1]
        assert records[1]["time"] == "09:00"

    @pytest.mark.parametrize("name", ["commits.json", "commits.csv", "commits.yaml"])
    def test_invalid_utf8(self, tmp_path, name):
        path = tmp_path / name
        path.write_bytes(b'[{"message": "caf\xe9 opening commit"}]')

        with pytest.raises(FileSystemError, match="not valid UTF-8") as excinfo:
            load_records(path)
        assert excinfo.value.operation == "read"


class TestExport:
    @pytest.mark.parametrize("fmt,suffix", [("json", "json"), ("yaml", "yaml"), ("csv", "csv")])
    def test_export_then_load(self, tmp_path, fmt, suffix):
        path = tmp_path / f"out.{suffix}"

        written = export_records(RECORDS, fmt, path)

        assert written == path.stat().st_size
        assert load_records(path) == RECORDS

    def test_csv_union_of_headers(self):
        text = dump_records([{"message": "one"}, {"author": "Ada"}], "csv")
        assert text.splitlines() == ['"message","author"', '"one",""', '"","Ada"']

    def test_unknown_format(self):
        with pytest.raises(ValidationError, match="unsupported export format"):
            dump_records(RECORDS, "xml")

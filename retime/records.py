# retime/records.py
"""
Import and export of commit records.

Responsibilities:
- Read batch records from CSV, JSON or YAML files
- Check the top-level shape of the data
- Write commit data back out in the same formats

This module does NOT:
- render templates
- validate individual commit fields
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import csv
import io
import json

import yaml

from retime.validation import ValidationError


SUPPORTED_FORMATS = ("json", "csv", "yaml")


class FileSystemError(RuntimeError):
    """
    Reading or writing a template or data file failed.
    """

    def __init__(self, path: Path | str, operation: str, message: str) -> None:
        self.path = str(path)
        self.operation = operation
        super().__init__(f"Failed to {operation} {path}: {message}")


def detect_format(path: Path) -> str:
    suffix = path.suffix.lower().lstrip(".")
    if suffix == "yml":
        return "yaml"
    if suffix not in SUPPORTED_FORMATS:
        raise ValidationError("format", f"unsupported file type: {path.suffix or '<none>'} (use .csv, .json or .yaml)")
    return suffix


def load_records(path: Path | str) -> List[Dict[str, Any]]:
    """
    Load records from a file, dispatching on its suffix.
    """
    path = Path(path).expanduser()
    fmt = detect_format(path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FileSystemError(path, "read", str(e)) from e
    except UnicodeDecodeError as e:
        raise FileSystemError(path, "read", f"not valid UTF-8 text ({e.reason} at byte {e.start})") from e

    if fmt == "csv":
        return parse_csv(raw)

    if fmt == "json":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FileSystemError(path, "parse", f"invalid JSON: {e}") from e
    else:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise FileSystemError(path, "parse", f"invalid YAML: {e}") from e
        if isinstance(data, list):
            data = [normalise_yaml_scalars(item) for item in data]

    return _check_record_list(data)


def parse_csv(text: str) -> List[Dict[str, Any]]:
    """
    Parse CSV text with a header row. Cells are trimmed, blank rows skipped.
    """
    reader = csv.DictReader(io.StringIO(text))

    if reader.fieldnames is None:
        return []

    records: List[Dict[str, Any]] = []
    for row in reader:
        cleaned = {
            str(k).strip(): (v or "").strip()
            for k, v in row.items()
            if k is not None
        }
        if not any(cleaned.values()):
            continue
        records.append(cleaned)

    return records


def normalise_yaml_scalars(item: Any) -> Any:
    """
    Undo YAML 1.1 scalar typing on date and time fields.

    Unquoted 2024-01-02 loads as a date object and unquoted 10:30 as the
    base 60 integer 630.
    """
    if not isinstance(item, Mapping):
        return item

    record = dict(item)

    value = record.get("date")
    if isinstance(value, (date, datetime)):
        record["date"] = value.isoformat()[:10]

    value = record.get("time")
    if isinstance(value, int) and not isinstance(value, bool) and 60 <= value < 24 * 60:
        record["time"] = f"{value // 60:02d}:{value % 60:02d}"

    return record


def _check_record_list(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, list):
        raise ValidationError("records", "file must contain a list of commit records")

    records: List[Dict[str, Any]] = []
    for i, item in enumerate(data):
        if not isinstance(item, Mapping):
            raise ValidationError(f"records[{i}]", "each commit record must be an object")
        records.append({str(k): v for k, v in item.items()})

    return records


def dump_records(records: Sequence[Mapping[str, Any]], fmt: str) -> str:
    fmt = fmt.lower()

    if fmt == "json":
        return json.dumps([dict(r) for r in records], indent=2, default=str)

    if fmt == "yaml":
        return yaml.safe_dump([dict(r) for r in records], sort_keys=False, default_flow_style=False)

    if fmt == "csv":
        if not records:
            return ""
        headers: List[str] = []
        for r in records:
            for k in r:
                if k not in headers:
                    headers.append(k)
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=headers, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writeheader()
        for r in records:
            writer.writerow({h: "" if r.get(h) is None else r.get(h) for h in headers})
        return buf.getvalue()

    raise ValidationError("format", f"unsupported export format: {fmt} (use json, csv or yaml)")


def export_records(records: Sequence[Mapping[str, Any]], fmt: str, path: Path | str) -> int:
    """
    Write records to path and return the number of bytes written.
    """
    content = dump_records(records, fmt)
    path = Path(path).expanduser()

    try:
        path.write_text(content, encoding="utf-8", newline="\n")
    except OSError as e:
        raise FileSystemError(path, "write", str(e)) from e

    return len(content.encode("utf-8"))

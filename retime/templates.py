# retime/templates.py
"""
Commit message templates.

Responsibilities:
- Load templates from mappings, JSON or YAML files
- Validate template structure against the bundled JSON Schema
- Render a template against one data record into a CommitIntent

Rendering is forgiving: a placeholder with no matching variable, record
field or built-in is left in the message as written.

This module does NOT:
- read record files (see retime.records)
- check the rendered intent (see retime.intent)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
import json
import re

import yaml
from jsonschema import Draft202012Validator

from retime.intent import CommitIntent
from retime.records import FileSystemError, normalise_yaml_scalars
from retime.validation import ValidationError, sanitize_message, validate_date


VARIABLE_TYPES = ("string", "number", "date", "boolean")

BUILTIN_NAMES = ("date", "time", "timestamp", "index", "total")

# Always supplied by the batch, never by user data
_RESERVED_NAMES = ("timestamp", "index", "total")

DEFAULT_TIME = "12:00"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "template.schema.json"

_TRUE_WORDS = {"true", "yes", "y", "1", "on"}
_FALSE_WORDS = {"false", "no", "n", "0", "off"}


@dataclass(frozen=True)
class Variable:
    name: str
    type: str = "string"
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class Template:
    message: str
    variables: Tuple[Variable, ...] = field(default_factory=tuple)
    author: Optional[str] = None
    email: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None

    def placeholders(self) -> List[str]:
        return _PLACEHOLDER_RE.findall(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key in ("name", "description"):
            value = getattr(self, key)
            if value:
                out[key] = value
        out["message"] = self.message
        for key in ("author", "email", "date", "time"):
            value = getattr(self, key)
            if value:
                out[key] = value
        if self.variables:
            out["variables"] = []
            for v in self.variables:
                entry: Dict[str, Any] = {"name": v.name, "type": v.type}
                if v.default is not None:
                    entry["default"] = v.default
                if v.description:
                    entry["description"] = v.description
                out["variables"].append(entry)
        return out


def _load_schema() -> Dict[str, Any]:
    try:
        return json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FileSystemError(_SCHEMA_PATH, "read", str(e)) from e


def load_template(source: Mapping[str, Any] | Path | str) -> Template:
    """
    Load a template from a mapping or from a .json / .yaml / .yml file.

    Raises:
        ValidationError: the template structure is invalid
        FileSystemError: the file could not be read or parsed
    """
    if isinstance(source, Mapping):
        return template_from_mapping(source)

    path = Path(source).expanduser()
    suffix = path.suffix.lower()

    if suffix not in (".json", ".yaml", ".yml"):
        raise ValidationError("template", f"unsupported template format: {suffix or '<none>'} (use JSON or YAML)")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FileSystemError(path, "read", str(e)) from e
    except UnicodeDecodeError as e:
        raise FileSystemError(path, "read", f"not valid UTF-8 text ({e.reason} at byte {e.start})") from e

    try:
        data = json.loads(raw) if suffix == ".json" else yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FileSystemError(path, "parse", str(e)) from e

    if not isinstance(data, Mapping):
        raise ValidationError("template", f"template must be a mapping at top level: {path}")

    return template_from_mapping(data)


def template_from_mapping(data: Mapping[str, Any]) -> Template:
    normalised = normalise_yaml_scalars(data)

    validator = Draft202012Validator(_load_schema())
    errors = sorted(validator.iter_errors(normalised), key=lambda e: list(e.path))

    if errors:
        messages = []
        for err in errors:
            path = ".".join(str(p) for p in err.path)
            prefix = path if path else "<root>"
            messages.append(f"{prefix}: {err.message}")
        raise ValidationError("template", "invalid template:\n" + "\n".join(messages))

    variables: List[Variable] = []
    seen = set()
    for i, raw_var in enumerate(normalised.get("variables") or []):
        name = raw_var["name"]
        if name in _RESERVED_NAMES:
            raise ValidationError(f"variables[{i}].name", f"'{name}' is a built-in placeholder and cannot be redeclared")
        if name in seen:
            raise ValidationError(f"variables[{i}].name", f"duplicate variable: {name}")
        seen.add(name)
        variables.append(
            Variable(
                name=name,
                type=raw_var.get("type", "string"),
                default=raw_var.get("default"),
                description=raw_var.get("description", ""),
            )
        )

    return Template(
        message=normalised["message"],
        variables=tuple(variables),
        author=normalised.get("author"),
        email=normalised.get("email"),
        date=normalised.get("date"),
        time=normalised.get("time"),
        name=normalised.get("name"),
        description=normalised.get("description"),
    )


def save_template(template: Template, path: Path | str) -> Path:
    path = Path(path).expanduser()
    suffix = path.suffix.lower()
    data = template.to_dict()

    if suffix == ".json":
        content = json.dumps(data, indent=2)
    elif suffix in (".yaml", ".yml"):
        content = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    else:
        raise ValidationError("template", f"unsupported template format: {suffix or '<none>'} (use JSON or YAML)")

    try:
        path.write_text(content, encoding="utf-8", newline="\n")
    except OSError as e:
        raise FileSystemError(path, "write", str(e)) from e

    return path


def render(
    template: Template,
    record: Mapping[str, Any],
    *,
    index: int = 0,
    total: int = 1,
    now: Optional[datetime] = None,
) -> CommitIntent:
    """
    Render template against one record.

    Placeholder lookup order: declared variables, then record fields, then
    built-ins. index, total and timestamp always come from the batch.

    Raises:
        ValidationError: a declared variable's value does not match its type
    """
    now = now or datetime.now()

    values: Dict[str, str] = {}
    for var in template.variables:
        raw = record.get(var.name)
        if raw is None or raw == "":
            raw = var.default
        if raw is None:
            continue
        values[var.name] = coerce_value(var, raw)

    commit_date = _plain(record.get("date")) or template.date or now.date().isoformat()
    commit_time = _plain(record.get("time")) or template.time or DEFAULT_TIME

    builtins = {
        "date": commit_date,
        "time": commit_time,
        "timestamp": now.isoformat(timespec="seconds"),
        "index": str(index),
        "total": str(total),
    }

    def _substitute(m: re.Match) -> str:
        name = m.group(1)
        if name in _RESERVED_NAMES:
            return builtins[name]
        if name in values:
            return values[name]
        field_value = _plain(record.get(name))
        if field_value is not None:
            return field_value
        if name in builtins:
            return builtins[name]
        return m.group(0)

    message = _PLACEHOLDER_RE.sub(_substitute, template.message)

    return CommitIntent(
        message=sanitize_message(message),
        author=template.author or _plain(record.get("author")),
        email=template.email or _plain(record.get("email")),
        date=commit_date,
        time=commit_time,
    )


def coerce_value(var: Variable, raw: Any) -> str:
    """
    Convert a record value to the text substituted for var.
    """
    path = f"variables.{var.name}"

    if var.type == "number":
        if isinstance(raw, bool):
            raise ValidationError(path, f"expected a number, got {raw!r}")
        if isinstance(raw, (int, float)):
            return _fmt_number(raw)
        text = str(raw).strip()
        try:
            return str(int(text))
        except ValueError:
            pass
        try:
            return _fmt_number(float(text))
        except ValueError as e:
            raise ValidationError(path, f"expected a number, got {raw!r}") from e

    if var.type == "boolean":
        if isinstance(raw, bool):
            return "true" if raw else "false"
        text = str(raw).strip().lower()
        if text in _TRUE_WORDS:
            return "true"
        if text in _FALSE_WORDS:
            return "false"
        raise ValidationError(path, f"expected a boolean, got {raw!r}")

    if var.type == "date":
        if isinstance(raw, datetime):
            return raw.date().isoformat()
        if isinstance(raw, date):
            return raw.isoformat()
        check = validate_date(str(raw))
        if not check.valid or check.date is None:
            raise ValidationError(path, check.error or f"invalid date: {raw!r}")
        return check.date.isoformat()

    return str(raw)


def _fmt_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _plain(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None

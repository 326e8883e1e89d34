# retime/config.py
"""
Configuration loading and validation.

Responsibilities:
- Load YAML configuration
- Validate against the bundled JSON Schema
- Expose a normalised config object with defaults filled in

This module does NOT:
- interact with git
- build the objects the settings configure
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import json
import yaml
from jsonschema import Draft202012Validator


_DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "config.schema.json"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class TransactionConfig:
    timeout_seconds: Optional[float] = None
    backup_prefix: str = "retime-backup"


@dataclass(frozen=True)
class GitConfig:
    command_timeout_seconds: Optional[float] = 60.0


@dataclass(frozen=True)
class StreamingConfig:
    chunk_size: int = 100
    memory_threshold_mb: int = 500
    auto_configure: bool = False


@dataclass(frozen=True)
class MemoryConfig:
    sample_interval: float = 1.0
    warning_threshold: float = 0.8
    critical_threshold: float = 0.9
    max_samples: int = 1000
    enable_gc: bool = True


@dataclass(frozen=True)
class BatchConfig:
    commit_delay: float = 0.1
    preview_limit: int = 5
    allow_empty: bool = True
    message_min_length: int = 10
    message_max_length: int = 72
    large_batch_warning: int = 1000


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "WARNING"


@dataclass(frozen=True)
class Config:
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    git: GitConfig = field(default_factory=GitConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _load_schema(schema_path: Path) -> Dict[str, Any]:
    """
    Load JSON Schema from a schema.json file.
    """
    try:
        raw = schema_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read schema file: {schema_path}") from e

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Schema is not valid JSON: {schema_path}") from e

    if not isinstance(parsed, dict):
        raise ConfigError(f"Schema must be a JSON object: {schema_path}")

    return parsed


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config: {config_path}") from e

    if raw is None:
        return {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a mapping at top level: {config_path}")

    return raw


def load_config(config_path: Optional[Path] = None, schema_path: Path = _DEFAULT_SCHEMA_PATH) -> Config:
    """
    Load and validate configuration. Without a path, returns the defaults.

    Raises ConfigError on validation failure.
    """
    if config_path is None:
        return Config()

    return config_from_mapping(_load_yaml(Path(config_path)), schema_path)


def config_from_mapping(raw_config: Dict[str, Any], schema_path: Path = _DEFAULT_SCHEMA_PATH) -> Config:
    schema = _load_schema(schema_path)

    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(raw_config), key=lambda e: list(e.path))

    if errors:
        messages = []
        for err in errors:
            path = ".".join(str(p) for p in err.path)
            prefix = path if path else "<root>"
            messages.append(f"{prefix}: {err.message}")
        raise ConfigError("Invalid configuration:\n" + "\n".join(messages))

    memory_cfg = MemoryConfig(**raw_config.get("memory", {}))
    if memory_cfg.warning_threshold > memory_cfg.critical_threshold:
        raise ConfigError("memory.warning_threshold must not exceed memory.critical_threshold")

    batch_cfg = BatchConfig(**raw_config.get("batch", {}))
    if batch_cfg.message_min_length > batch_cfg.message_max_length:
        raise ConfigError("batch.message_min_length must not exceed batch.message_max_length")

    return Config(
        transaction=TransactionConfig(**raw_config.get("transaction", {})),
        git=GitConfig(**raw_config.get("git", {})),
        streaming=StreamingConfig(**raw_config.get("streaming", {})),
        memory=memory_cfg,
        batch=batch_cfg,
        logging=LoggingConfig(**raw_config.get("logging", {})),
    )

"""Run configuration loaded from a YAML vars file plus environment overrides."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .paths import default_scratch_root

ENV_PREFIX = "OFFLINE_BACKUP_"
DEFAULT_CONFIG_PATH = "vars.yaml"


class HealthPolicy(str, enum.Enum):
    WARN = "warn"
    BLOCK = "block"


class SamplingPolicy(str, enum.Enum):
    SAMPLE_THEN_FILTER = "sample-then-filter"
    FILTER_THEN_SAMPLE = "filter-then-sample"


@dataclass
class BackupConfig:
    serial_number: str
    restic_password_file: str = ""
    dir_to_backup: str = ""
    dataset_name: str = "backup"
    exclude_dirs: List[str] = field(default_factory=list)
    restic_repo: Optional[str] = None
    health_policy: HealthPolicy = HealthPolicy.WARN
    sampling: SamplingPolicy = SamplingPolicy.SAMPLE_THEN_FILTER
    sample_size: int = 20
    scratch_root: str = field(default_factory=default_scratch_root)
    scrub_poll_seconds: float = 60.0
    backup_poll_seconds: float = 10.0
    backup_max_wait_seconds: float = 360000.0


_FIELD_NAMES = {f.name for f in fields(BackupConfig)}
_POSITIVE = ("sample_size", "scrub_poll_seconds", "backup_poll_seconds", "backup_max_wait_seconds")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error parsing YAML file {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")
    return raw


def _env_overrides(environ) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name not in _FIELD_NAMES:
            continue
        if name == "exclude_dirs":
            overrides[name] = [part for part in value.split(":") if part]
        else:
            overrides[name] = value
    return overrides


def _coerce(raw: Dict[str, Any]) -> BackupConfig:
    unknown = sorted(set(raw) - _FIELD_NAMES)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    serial = str(raw.get("serial_number") or "").strip()
    if not serial:
        raise ConfigError(
            "serial_number is required. Set it in the vars file or pass --serial",
        )
    values: Dict[str, Any] = dict(raw)
    values["serial_number"] = serial

    excludes = values.get("exclude_dirs") or []
    if isinstance(excludes, str):
        excludes = [excludes]
    if not isinstance(excludes, list):
        raise ConfigError("exclude_dirs must be a list of paths")
    values["exclude_dirs"] = [str(e) for e in excludes if e is not None and str(e).strip()]

    try:
        values["health_policy"] = HealthPolicy(str(values.get("health_policy", "warn")).lower())
    except ValueError as exc:
        raise ConfigError(f"health_policy must be one of: {', '.join(p.value for p in HealthPolicy)}") from exc
    try:
        values["sampling"] = SamplingPolicy(str(values.get("sampling", "sample-then-filter")).lower())
    except ValueError as exc:
        raise ConfigError(f"sampling must be one of: {', '.join(p.value for p in SamplingPolicy)}") from exc

    for name in _POSITIVE:
        if name not in values or values[name] is None:
            values.pop(name, None)
            continue
        try:
            number = int(values[name]) if name == "sample_size" else float(values[name])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be a number, got {values[name]!r}") from exc
        if number <= 0:
            raise ConfigError(f"{name} must be positive, got {number}")
        values[name] = number

    for name in ("restic_password_file", "dir_to_backup", "dataset_name", "scratch_root"):
        if values.get(name) is None:
            values.pop(name, None)
        else:
            values[name] = str(values[name])
    if not values.get("restic_repo"):
        values["restic_repo"] = None
    if "dataset_name" in values and not values["dataset_name"].strip("/ "):
        raise ConfigError("dataset_name must not be empty")
    return BackupConfig(**values)


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ=None,
) -> BackupConfig:
    """Load the vars file at ``path`` (file < environment < ``overrides``)."""

    raw: Dict[str, Any] = {}
    if path:
        raw.update(_read_yaml(path))
    elif os.path.exists(DEFAULT_CONFIG_PATH):
        raw.update(_read_yaml(DEFAULT_CONFIG_PATH))
    raw.update(_env_overrides(os.environ if environ is None else environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value
    return _coerce(raw)

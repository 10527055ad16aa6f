"""
Load config from a YAML file with CLI flag overrides.
Single source of truth for DB path, backup dir, export format and health thresholds.
A Config is built once per invocation and passed to every component that needs it.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from projforge.core.errors import ConfigError

APP_DIR = Path.home() / ".projforge"

# Defaults if no YAML or flags
_DEFAULTS: Dict[str, Any] = {
    "db": {
        "path": str(APP_DIR / "projforge.db"),
        "backup_dir": str(APP_DIR / "backups"),
    },
    "export": {"format": "sql"},
    "health": {
        "slow_query_ms": 100,
        "free_pages_warn": 100,
    },
    "verbose": False,
}

EXPORT_FORMATS = ("sql", "json", "csv")


@dataclass(frozen=True)
class Config:
    """Resolved configuration for one CLI invocation."""

    db_path: Path
    backup_dir: Path
    export_format: str = "sql"
    verbose: bool = False
    slow_query_ms: float = 100.0
    free_pages_warn: int = 100


def default_config_path() -> Path:
    return APP_DIR / "config.yaml"


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _flag_overrides(
    db_path: Optional[Union[str, Path]],
    export_format: Optional[str],
    verbose: Optional[bool],
) -> dict:
    overrides: dict = {}
    if db_path:
        overrides.setdefault("db", {})["path"] = str(db_path)
    if export_format:
        overrides.setdefault("export", {})["format"] = export_format
    if verbose:
        overrides["verbose"] = True
    return overrides


def get_config(config_path: Optional[Union[str, Path]] = None, **flags: Any) -> dict:
    """Return merged config dict: defaults <- config.yaml <- CLI flags."""
    path = Path(config_path).expanduser() if config_path else default_config_path()
    merged = _deep_merge(_DEFAULTS, _load_yaml(path))
    return _deep_merge(
        merged,
        _flag_overrides(flags.get("db_path"), flags.get("export_format"), flags.get("verbose")),
    )


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    *,
    db_path: Optional[Union[str, Path]] = None,
    export_format: Optional[str] = None,
    verbose: Optional[bool] = None,
) -> Config:
    """Build the Config for one invocation. Raises ConfigError on bad values."""
    merged = get_config(config_path, db_path=db_path, export_format=export_format, verbose=verbose)
    fmt = str(merged["export"].get("format", "sql")).lower()
    if fmt not in EXPORT_FORMATS:
        raise ConfigError(f"unsupported export format in config: {fmt!r} (expected one of {', '.join(EXPORT_FORMATS)})")
    try:
        slow_ms = float(merged["health"]["slow_query_ms"])
        free_pages = int(merged["health"]["free_pages_warn"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid health thresholds in config: {e}") from e
    return Config(
        db_path=Path(str(merged["db"]["path"])).expanduser(),
        backup_dir=Path(str(merged["db"]["backup_dir"])).expanduser(),
        export_format=fmt,
        verbose=bool(merged.get("verbose", False)),
        slow_query_ms=slow_ms,
        free_pages_warn=free_pages,
    )

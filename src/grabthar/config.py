"""Watcher configuration from keyword arguments, environment or a YAML file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .constants import Constants, DistTag

logger = logging.getLogger(__name__)

ENV_PREFIX = "GRABTHAR_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class WatcherConfig:
    """Settings for one watched package."""

    name: str = ""
    tags: Tuple[str, ...] = (DistTag.LATEST,)
    period: float = Constants.NPM_POLL_INTERVAL
    dependencies: bool = False
    child_modules: Optional[List[str]] = None
    registry: str = Constants.NPM_REGISTRY
    cdn_registry: Optional[str] = None
    fallback: bool = True
    fallback_root: Optional[str] = None
    live_modules_dir: Optional[str] = None
    clean: bool = True
    timeout: float = Constants.REQUEST_TIMEOUT
    lock_stale_after: float = Constants.LOCK_STALE_AFTER
    max_interval: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WatcherConfig":
        """Create config from a mapping; unknown keys are kept in ``extra``.

        Keys may use ``snake_case`` or ``kebab-case``.
        """
        known = {f.name for f in fields(cls)} - {"extra"}
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            normalized = str(key).replace("-", "_")
            if normalized in known:
                values[normalized] = value
            else:
                extra[key] = value
        if "tags" in values:
            tags = values["tags"]
            values["tags"] = tuple(_parse_list(tags) if isinstance(tags, str) else tags)
        if isinstance(values.get("child_modules"), str):
            values["child_modules"] = _parse_list(values["child_modules"])
        return cls(extra=extra, **values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "WatcherConfig":
        """Create config from ``GRABTHAR_*`` environment variables.

        Keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        converters = {
            "period": float,
            "timeout": float,
            "lock_stale_after": float,
            "max_interval": float,
            "dependencies": _parse_bool,
            "fallback": _parse_bool,
            "clean": _parse_bool,
        }
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name == "extra":
                continue
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            try:
                values[f.name] = converters.get(f.name, lambda v: v)(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.from_mapping(values)

    @classmethod
    def from_file(cls, path: str, **overrides: Any) -> "WatcherConfig":
        """Create config from a YAML file.

        A top-level ``grabthar`` section is used when present, otherwise the
        whole document.

        Raises:
            FileNotFoundError: If ``path`` does not exist.
            ValueError: If the document is not a mapping.
        """
        with open(Path(path), "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        section = data.get("grabthar", data)
        if not isinstance(section, dict):
            raise ValueError(f"'grabthar' section in {path} must be a mapping")
        merged = dict(section)
        merged.update({key: value for key, value in overrides.items() if value is not None})
        return cls.from_mapping(merged)

    @classmethod
    def from_args(cls, args: Any) -> "WatcherConfig":
        """Create config from parsed CLI arguments, layered over file and environment."""
        overrides = {
            "name": getattr(args, "NAME", None),
            "tags": getattr(args, "TAGS", None) or None,
            "period": getattr(args, "PERIOD", None),
            "registry": getattr(args, "REGISTRY", None),
            "cdn_registry": getattr(args, "CDN_REGISTRY", None),
            "live_modules_dir": getattr(args, "LIVE_MODULES_DIR", None),
            "dependencies": True if getattr(args, "DEPENDENCIES", False) else None,
        }
        config_path = getattr(args, "CONFIG", None)
        if config_path:
            return cls.from_file(config_path, **overrides)
        return cls.from_env(**overrides)

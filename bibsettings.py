#!/usr/bin/env python3
"""User preferences: an explicit struct, loaded and saved on request."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

MAX_RECENT_FILES = 10
MODES = ("safe", "aggressive-doi-only")
MONTH_STYLES = ("keep", "abbrev", "full")
ENV_PREFIX = "UNIQUE_REFS_"


@dataclass
class Settings:
    sort_by_key: bool = False
    smart_dedup: bool = False
    mode: str = "safe"
    month_style: str = "keep"
    mailto: Optional[str] = None
    timeout: float = 10.0
    request_delay: float = 0.15
    workers: int = 1
    recent_files: List[str] = field(default_factory=list)


def add_recent_file(settings: Settings, path: str) -> None:
    path = os.path.abspath(path)
    files = [item for item in settings.recent_files if item != path]
    files.insert(0, path)
    settings.recent_files = files[:MAX_RECENT_FILES]


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _as_number(value: Any, default, cast, minimum):
    if isinstance(value, bool):
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        return default
    return number if number >= minimum else default


def _as_choice(value: Any, choices, default: str) -> str:
    return value if value in choices else default


def settings_from_dict(data: Mapping[str, Any]) -> Settings:
    defaults = Settings()
    recent = data.get("recent_files")
    if not isinstance(recent, list):
        recent = []
    mailto = data.get("mailto")
    return Settings(
        sort_by_key=_as_bool(data.get("sort_by_key"), defaults.sort_by_key),
        smart_dedup=_as_bool(data.get("smart_dedup"), defaults.smart_dedup),
        mode=_as_choice(data.get("mode"), MODES, defaults.mode),
        month_style=_as_choice(data.get("month_style"), MONTH_STYLES, defaults.month_style),
        mailto=mailto.strip() or None if isinstance(mailto, str) else None,
        timeout=_as_number(data.get("timeout"), defaults.timeout, float, 0.1),
        request_delay=_as_number(data.get("request_delay"), defaults.request_delay, float, 0.0),
        workers=_as_number(data.get("workers"), defaults.workers, int, 1),
        recent_files=[item for item in recent if isinstance(item, str)][:MAX_RECENT_FILES],
    )


def load_settings(path: Optional[str]) -> Settings:
    if not path or not os.path.isfile(path):
        return Settings()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return Settings()
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a JSON object", path)
        return Settings()
    return settings_from_dict(data)


def save_settings(settings: Settings, path: str) -> None:
    dir_path = os.path.dirname(path)
    if dir_path:
        os.makedirs(dir_path, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(asdict(settings), handle, indent=2)
        handle.write("\n")


def apply_env_overrides(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Overlay ``UNIQUE_REFS_*`` variables (a local ``.env`` is read first)."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    overrides: Dict[str, Any] = {}
    mailto = environ.get(f"{ENV_PREFIX}MAILTO")
    if mailto and mailto.strip():
        overrides["mailto"] = mailto.strip()
    for name, attr, cast, minimum in (
        ("TIMEOUT", "timeout", float, 0.1),
        ("DELAY", "request_delay", float, 0.0),
        ("WORKERS", "workers", int, 1),
    ):
        raw = environ.get(f"{ENV_PREFIX}{name}")
        if raw is None:
            continue
        value = _as_number(raw.strip(), None, cast, minimum)
        if value is None:
            logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
            continue
        overrides[attr] = value
    for attr, value in overrides.items():
        setattr(settings, attr, value)
    return settings

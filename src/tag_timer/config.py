"""Configuration management for tag-timer.

Settings are resolved in three layers: model defaults, an optional JSON
settings file, then ``TAG_TIMER_<FIELD>`` environment variables.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from tag_timer.log import get_logger

log = get_logger(__name__)

ENV_PREFIX = "TAG_TIMER_"
DEFAULT_DATA_DIR = Path.home() / ".tag-timer"
SETTINGS_FILENAME = "settings.json"


class InsertLocation(str, Enum):
    HEAD = "head"
    TAIL = "tail"
    CURSOR = "cursor"


class AutoStopPolicy(str, Enum):
    NEVER = "never"
    QUIT = "quit"
    CLOSE = "close"


class LedgerBackend(str, Enum):
    JSON = "json"
    SQLITE = "sqlite"


class TimerSettings(BaseModel):
    """Validated runtime settings."""

    tick_seconds: int = Field(default=1, gt=0, description="Scheduler period")
    sleep_gap_seconds: int = Field(default=60, gt=0, description="Gaps above this are treated as suspension")
    max_step_seconds: int = Field(default=5, gt=0, description="Largest credit a single step may add")
    retention_days: int = Field(default=30, gt=0, description="Ledger retention window")
    insert_location: InsertLocation = InsertLocation.HEAD
    auto_stop: AutoStopPolicy = AutoStopPolicy.QUIT
    flush_unresolved: bool = True
    ledger_backend: LedgerBackend = LedgerBackend.JSON
    data_dir: Path = DEFAULT_DATA_DIR

    @model_validator(mode="after")
    def _check_cadence(self) -> "TimerSettings":
        if self.sleep_gap_seconds <= self.tick_seconds:
            raise ValueError("sleep_gap_seconds must exceed tick_seconds")
        if self.max_step_seconds < self.tick_seconds:
            raise ValueError("max_step_seconds must be at least tick_seconds")
        return self

    # ---- Derived paths ----

    @property
    def ledger_path(self) -> Path:
        suffix = "db" if self.ledger_backend == LedgerBackend.SQLITE else "json"
        return self.data_dir / f"analytics.{suffix}"

    @property
    def flush_book_path(self) -> Path:
        return self.data_dir / "flushed.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    """Collect ``TAG_TIMER_*`` variables that name a settings field."""
    overrides = {}
    for name in TimerSettings.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> TimerSettings:
    """Build settings from defaults, a JSON file, and the environment.

    When ``path`` is omitted the file is looked up as ``settings.json`` in
    the data directory (itself overridable through ``TAG_TIMER_DATA_DIR``).
    A missing file is not an error.
    """
    environ = dict(os.environ) if environ is None else environ
    overrides = _env_overrides(environ)

    if path is None:
        data_dir = Path(overrides.get("data_dir", DEFAULT_DATA_DIR)).expanduser()
        path = data_dir / SETTINGS_FILENAME

    values: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            values = json.load(f)
        if not isinstance(values, dict):
            raise ValueError(f"Settings file '{path}' must contain a JSON object")
        log.debug(f"Loaded settings file '{path}'")

    values.update(overrides)
    settings = TimerSettings.model_validate(values)
    settings.data_dir = settings.data_dir.expanduser()
    return settings


def save_settings(settings: TimerSettings, path: Optional[Path] = None) -> Path:
    path = path or settings.data_dir / SETTINGS_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.model_dump(mode="json"), f, indent=2)
    log.info(f"Saved settings to '{path}'")
    return path

"""Inline timers for plain-text notes, with a tag-keyed analytics ledger."""

from .accrual import AccrualLimits, TimerAction, TimerState, TimerStatus, base62_encode, calculate, capped_elapsed
from .config import AutoStopPolicy, InsertLocation, LedgerBackend, TimerSettings, load_settings
from .document import EditorBuffer, FileDocument
from .errors import InvalidAdjustmentError, MarkerNotFoundError, StorageError, TagTimerError
from .ledger import AnalyticsLedger, LedgerEntry, Period, day_period, week_period
from .markers import DecodedMarker, parse, render
from .registry import TimerRegistry
from .service import ActionResult, TagTimer
from .sync import DocumentSync, Location

__version__ = "1.0.0"

__all__ = [
    "AccrualLimits",
    "ActionResult",
    "AnalyticsLedger",
    "AutoStopPolicy",
    "DecodedMarker",
    "DocumentSync",
    "EditorBuffer",
    "FileDocument",
    "InsertLocation",
    "InvalidAdjustmentError",
    "LedgerBackend",
    "LedgerEntry",
    "Location",
    "MarkerNotFoundError",
    "Period",
    "StorageError",
    "TagTimer",
    "TagTimerError",
    "TimerAction",
    "TimerRegistry",
    "TimerSettings",
    "TimerState",
    "TimerStatus",
    "base62_encode",
    "calculate",
    "capped_elapsed",
    "day_period",
    "load_settings",
    "parse",
    "render",
    "week_period",
]

"""Analytics ledger: an append-only log of tagged duration entries.

Consistency contract: one writer per process, no transactions. The JSON
store rewrites the whole file atomically on every change; the SQLite
store keeps one row per entry. Entries are never edited; totals are
corrected by appending signed ``adjust`` entries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tag_timer.clock import Clock, SystemClock
from tag_timer.document import atomic_write_json
from tag_timer.errors import InvalidAdjustmentError, StorageError
from tag_timer.log import get_logger

log = get_logger(__name__)

MANUAL_EDIT_SOURCE = "manual-edit"


class EntryKind(str, Enum):
    NORMAL = "normal"
    ADJUSTMENT = "adjust"


class LedgerEntry(BaseModel):
    """One immutable ledger row, stored as ``{timestamp, duration, file, tags, type?}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: datetime
    duration_seconds: int = Field(alias="duration")
    source: str = Field(alias="file")
    tags: tuple[str, ...] = ()
    kind: EntryKind = Field(default=EntryKind.NORMAL, alias="type")

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        # Older files carry naive timestamps; those were always UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "duration": self.duration_seconds,
            "file": self.source,
            "tags": list(self.tags),
        }
        if self.kind == EntryKind.ADJUSTMENT:
            record["type"] = EntryKind.ADJUSTMENT.value
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "LedgerEntry":
        record = dict(record)
        if not record.get("type"):
            record.pop("type", None)
        return cls.model_validate(record)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


# ---- Periods ----

def _local_tz() -> tzinfo:
    return datetime.now().astimezone().tzinfo


@dataclass(frozen=True)
class Period:
    """An inclusive aggregation window anchored on a reference day."""

    start: datetime
    end: datetime
    reference: date
    kind: str = "day"

    @property
    def anchor(self) -> datetime:
        """Midday of the reference day: where adjustments are timestamped."""
        return datetime.combine(self.reference, time(12, 0), tzinfo=self.start.tzinfo)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


def day_period(day: date, tz: Optional[tzinfo] = None) -> Period:
    tz = tz or _local_tz()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return Period(start, end, day, "day")


def week_period(day: date, tz: Optional[tzinfo] = None) -> Period:
    """The Monday-to-Sunday week containing ``day``; its reference is ``day``."""
    tz = tz or _local_tz()
    monday = day - timedelta(days=day.weekday())
    start = datetime.combine(monday, time.min, tzinfo=tz)
    end = datetime.combine(monday + timedelta(days=6), time.max, tzinfo=tz)
    return Period(start, end, day, "week")


def as_utc(value: datetime) -> datetime:
    """Treat a naive bound as UTC, like stored timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_tag(tag: str) -> str:
    tag = tag.strip()
    return tag if tag.startswith("#") else f"#{tag}"


def validate_total(value: Any) -> int:
    """Coerce a user-supplied total to whole non-negative seconds."""
    if isinstance(value, bool):
        raise InvalidAdjustmentError(f"Total must be a number of seconds, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidAdjustmentError(f"Total must be whole seconds, got {value!r}")
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise InvalidAdjustmentError(f"Total must be a number of seconds, got {value!r}") from None
    elif not isinstance(value, int):
        raise InvalidAdjustmentError(f"Total must be a number of seconds, got {value!r}")
    if value < 0:
        raise InvalidAdjustmentError(f"Total cannot be negative, got {value}")
    return value


# ---- Stores ----

class LedgerStore:
    """Durable storage behind the ledger."""

    async def load(self) -> list[LedgerEntry]:
        raise NotImplementedError

    async def append(self, entry: LedgerEntry) -> None:
        raise NotImplementedError

    async def replace_all(self, entries: list[LedgerEntry]) -> None:
        raise NotImplementedError


class MemoryLedgerStore(LedgerStore):
    def __init__(self, entries: Iterable[LedgerEntry] = ()):
        self.entries = list(entries)

    async def load(self) -> list[LedgerEntry]:
        return list(self.entries)

    async def append(self, entry: LedgerEntry) -> None:
        self.entries.append(entry)

    async def replace_all(self, entries: list[LedgerEntry]) -> None:
        self.entries = list(entries)


class JsonLedgerStore(LedgerStore):
    """JSON array file, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> list[LedgerEntry]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            records = json.loads(raw) if raw.strip() else []
            if not isinstance(records, list):
                raise StorageError(f"Ledger '{self.path}' is not a JSON array")
            return [LedgerEntry.from_record(record) for record in records]
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as e:
            raise StorageError(f"Could not read ledger '{self.path}': {e}") from e

    def _write(self, entries: list[LedgerEntry]) -> None:
        try:
            atomic_write_json(self.path, [entry.to_record() for entry in entries])
        except OSError as e:
            raise StorageError(f"Could not write ledger '{self.path}': {e}") from e

    async def load(self) -> list[LedgerEntry]:
        return self._read()

    async def append(self, entry: LedgerEntry) -> None:
        entries = self._read()
        entries.append(entry)
        self._write(entries)

    async def replace_all(self, entries: list[LedgerEntry]) -> None:
        self._write(entries)


class SqliteLedgerStore(LedgerStore):
    """One row per entry in an ``entries`` table, via aiosqlite."""

    def __init__(self, path: Path):
        self.path = path
        self._ready = False

    async def _ensure(self, db: aiosqlite.Connection) -> None:
        if self._ready:
            return
        await db.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                duration INTEGER NOT NULL,
                file TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                type TEXT
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_entries_timestamp ON entries(timestamp)")
        await db.commit()
        self._ready = True

    @staticmethod
    def _row(entry: LedgerEntry) -> tuple:
        record = entry.to_record()
        return (record["timestamp"], record["duration"], record["file"], json.dumps(record["tags"]), record.get("type"))

    async def load(self) -> list[LedgerEntry]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.path) as db:
                await self._ensure(db)
                db.row_factory = aiosqlite.Row
                async with db.execute("SELECT timestamp, duration, file, tags, type FROM entries ORDER BY id") as cursor:
                    rows = await cursor.fetchall()
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Could not read ledger '{self.path}': {e}") from e
        entries = []
        for row in rows:
            entries.append(LedgerEntry.from_record({
                "timestamp": row["timestamp"],
                "duration": row["duration"],
                "file": row["file"],
                "tags": json.loads(row["tags"]),
                "type": row["type"],
            }))
        return entries

    async def append(self, entry: LedgerEntry) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.path) as db:
                await self._ensure(db)
                await db.execute(
                    "INSERT INTO entries (timestamp, duration, file, tags, type) VALUES (?, ?, ?, ?, ?)",
                    self._row(entry),
                )
                await db.commit()
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Could not append to ledger '{self.path}': {e}") from e

    async def replace_all(self, entries: list[LedgerEntry]) -> None:
        try:
            async with aiosqlite.connect(self.path) as db:
                await self._ensure(db)
                await db.execute("DELETE FROM entries")
                await db.executemany(
                    "INSERT INTO entries (timestamp, duration, file, tags, type) VALUES (?, ?, ?, ?, ?)",
                    [self._row(entry) for entry in entries],
                )
                await db.commit()
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Could not rewrite ledger '{self.path}': {e}") from e


# ---- Ledger ----

class AnalyticsLedger:
    """Retention-aware queries and adjustments over a ``LedgerStore``."""

    def __init__(self, store: LedgerStore, retention_days: int = 30, clock: Optional[Clock] = None):
        self.store = store
        self.retention_days = retention_days
        self.clock = clock or SystemClock()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)

    def cutoff(self) -> datetime:
        return self.now() - timedelta(days=self.retention_days)

    async def append(self, entry: LedgerEntry) -> None:
        await self.store.append(entry)
        log.info(f"Ledger +{entry.duration_seconds}s {' '.join(entry.tags) or '(untagged)'} from {entry.source}")

    async def record(self, duration_seconds: int, source: str, tags: Iterable[str]) -> Optional[LedgerEntry]:
        """Append a normal entry stamped now. Non-positive durations are dropped."""
        if duration_seconds <= 0:
            return None
        entry = LedgerEntry(timestamp=self.now(), duration=duration_seconds, file=source, tags=tuple(tags))
        await self.append(entry)
        return entry

    async def read_all(self) -> list[LedgerEntry]:
        """Entries inside the retention window, whether or not pruned yet."""
        cutoff = self.cutoff()
        return [entry for entry in await self.store.load() if entry.timestamp >= cutoff]

    async def prune(self) -> int:
        """Physically drop entries older than the retention window."""
        entries = await self.store.load()
        cutoff = self.cutoff()
        kept = [entry for entry in entries if entry.timestamp >= cutoff]
        removed = len(entries) - len(kept)
        if removed:
            await self.store.replace_all(kept)
            log.info(f"Pruned {removed} ledger entries older than {self.retention_days} days")
        return removed

    async def sum_in_range(self, tag: str, start: datetime, end: datetime) -> int:
        tag = normalize_tag(tag)
        start, end = as_utc(start), as_utc(end)
        total = sum(
            entry.duration_seconds
            for entry in await self.read_all()
            if entry.has_tag(tag) and start <= entry.timestamp <= end
        )
        return max(0, total)

    async def totals_by_tag(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict[str, int]:
        """Per-tag totals inside ``[start, end]``, smallest first, zeros omitted."""
        start = as_utc(start) if start is not None else None
        end = as_utc(end) if end is not None else None
        totals: dict[str, int] = {}
        for entry in await self.read_all():
            if start is not None and entry.timestamp < start:
                continue
            if end is not None and entry.timestamp > end:
                continue
            for tag in entry.tags:
                totals[tag] = totals.get(tag, 0) + entry.duration_seconds
        return dict(sorted(((tag, total) for tag, total in totals.items() if total > 0), key=lambda item: item[1]))

    async def set_total_for_period(
            self,
            tag: str,
            new_total: Any,
            period: Period,
            anchor: Optional[datetime] = None,
    ) -> Optional[LedgerEntry]:
        """Make ``tag``'s total over ``period`` equal ``new_total``.

        Appends one signed adjustment entry carrying the difference, or
        nothing when the total already matches. History is never rewritten.
        """
        new_total = validate_total(new_total)
        tag = normalize_tag(tag)
        anchor = as_utc(anchor) if anchor is not None else period.anchor
        if not period.contains(anchor):
            raise InvalidAdjustmentError(f"Anchor {anchor.isoformat()} is outside the period")

        current = await self.sum_in_range(tag, period.start, period.end)
        delta = new_total - current
        if delta == 0:
            return None
        entry = LedgerEntry(
            timestamp=anchor,
            duration=delta,
            file=MANUAL_EDIT_SOURCE,
            tags=(tag,),
            type=EntryKind.ADJUSTMENT,
        )
        await self.append(entry)
        log.info(f"Adjusted {tag} for {period.kind} of {period.reference}: {current}s -> {new_total}s")
        return entry

    async def clear_tag(self, tag: str, period: Period) -> Optional[LedgerEntry]:
        """Zero a tag's displayed total for ``period`` without deleting history."""
        return await self.set_total_for_period(tag, 0, period)


class FlushBook:
    """Remembers how much of each timer's duration is already in the ledger."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._flushed: dict[str, int] = {}
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    self._flushed = {str(k): int(v) for k, v in json.load(f).items()}
            except (OSError, AttributeError, TypeError, ValueError) as e:
                raise StorageError(f"Could not read flush book '{path}': {e}") from e

    def get(self, timer_id: str) -> int:
        return self._flushed.get(timer_id, 0)

    def set(self, timer_id: str, duration: int) -> None:
        self._flushed[timer_id] = duration
        self._save()

    def forget(self, timer_id: str) -> None:
        if self._flushed.pop(timer_id, None) is not None:
            self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            atomic_write_json(self.path, self._flushed)
        except OSError as e:
            raise StorageError(f"Could not write flush book '{self.path}': {e}") from e

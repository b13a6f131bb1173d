"""TagTimer: action entry points, the tick hook, and ledger flushing.

Every entry point applies its state transition synchronously before the
first suspension point, so a tick can never observe a half-applied
action. Persistence follows and may fail independently; failures are
logged and reported on the returned ``ActionResult`` rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tag_timer.accrual import AccrualLimits, TimerAction, TimerState, calculate
from tag_timer.clock import Clock, SystemClock
from tag_timer.config import AutoStopPolicy, LedgerBackend, TimerSettings
from tag_timer.document import Document
from tag_timer.errors import MarkerNotFoundError, StorageError, TagTimerError
from tag_timer.ledger import (
    AnalyticsLedger,
    FlushBook,
    JsonLedgerStore,
    LedgerEntry,
    MemoryLedgerStore,
    SqliteLedgerStore,
)
from tag_timer.log import get_logger
from tag_timer.markers import DecodedMarker, extract_tags, parse
from tag_timer.registry import TimerRegistry
from tag_timer.sync import DocumentSync, Location

log = get_logger(__name__)


@dataclass
class ActionResult:
    action: TimerAction
    state: Optional[TimerState] = None
    location: Optional[Location] = None
    persisted: bool = True
    flushed: Optional[LedgerEntry] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is not None and self.persisted and self.error is None


def build_ledger(settings: TimerSettings, clock: Optional[Clock] = None) -> AnalyticsLedger:
    if settings.ledger_backend == LedgerBackend.SQLITE:
        store = SqliteLedgerStore(settings.ledger_path)
    else:
        store = JsonLedgerStore(settings.ledger_path)
    return AnalyticsLedger(store, retention_days=settings.retention_days, clock=clock)


class TagTimer:
    """One timer engine: owns its registry, location cache and ledger."""

    def __init__(
            self,
            settings: Optional[TimerSettings] = None,
            clock: Optional[Clock] = None,
            ledger: Optional[AnalyticsLedger] = None,
            flush_book: Optional[FlushBook] = None,
            registry: Optional[TimerRegistry] = None,
    ):
        self.settings = settings or TimerSettings()
        self.clock = clock or SystemClock()
        self.limits = AccrualLimits(self.settings.sleep_gap_seconds, self.settings.max_step_seconds)
        self.registry = registry or TimerRegistry(self.settings.tick_seconds)
        self.sync = DocumentSync(self.settings.insert_location)
        self.ledger = ledger or AnalyticsLedger(
            MemoryLedgerStore(), retention_days=self.settings.retention_days, clock=self.clock
        )
        self.flush_book = flush_book or FlushBook()

    @classmethod
    def from_settings(cls, settings: TimerSettings, clock: Optional[Clock] = None) -> "TagTimer":
        """Engine backed by the on-disk ledger and flush book in ``data_dir``."""
        return cls(
            settings,
            clock=clock,
            ledger=build_ledger(settings, clock),
            flush_book=FlushBook(settings.flush_book_path),
        )

    # ---- Helpers ----

    def _resolve(self, document: Document, line_index: int, marker: Optional[DecodedMarker]) -> Optional[DecodedMarker]:
        if marker is not None:
            return marker
        return parse(document.get_line(line_index))

    def _current(self, marker: DecodedMarker) -> TimerState:
        """In-memory state wins over what the document says."""
        return self.registry.get(marker.timer_id) or marker.state

    def _write(self, result: ActionResult, document: Document, line_index: int, marker: Optional[DecodedMarker]) -> None:
        try:
            result.location = self.sync.write_timer(result.state.id, result.state, document, line_index, marker)
        except TagTimerError as e:
            result.persisted = False
            result.error = str(e)
            log.warning(f"{result.action.value}: could not write timer {result.state.id} to {document.ref}: {e}")

    def _line_context(self, timer_id: str, document: Document, line_index: int) -> str:
        """Text of the marker's line now, for tag extraction."""
        try:
            line = document.get_line(line_index)
        except StorageError:
            line = ""
        if parse(line, timer_id) is None:
            location = self.sync.last_known(timer_id)
            if location is not None and location.line_text:
                return location.line_text
        return line

    async def _flush(self, state: TimerState, line_text: str, source: str) -> Optional[LedgerEntry]:
        """Append the increment since the last flush. Raises StorageError."""
        increment = state.accumulated_seconds - self.flush_book.get(state.id)
        if increment <= 0:
            return None
        entry = await self.ledger.record(increment, source, extract_tags(line_text))
        self.flush_book.set(state.id, state.accumulated_seconds)
        return entry

    async def _safe_flush(self, result: ActionResult, line_text: str, source: str) -> None:
        try:
            result.flushed = await self._flush(result.state, line_text, source)
        except StorageError as e:
            result.persisted = False
            result.error = str(e)
            log.warning(f"{result.action.value}: ledger flush failed for timer {result.state.id}: {e}")

    def _missing(self, action: TimerAction, document: Document, line_index: int) -> ActionResult:
        message = f"No timer marker on {document.ref}:{line_index}"
        log.debug(f"{action.value}: {message}")
        return ActionResult(action, error=message)

    # ---- Actions ----

    async def start(self, document: Document, line_index: int) -> ActionResult:
        now = self.clock.now()
        timer_id = self.registry.new_timer_id(self.clock.now_ms())
        state = calculate(TimerAction.START, None, now, self.limits, new_id=timer_id)
        self.registry.start_ticking(timer_id, state, self.on_tick)

        result = ActionResult(TimerAction.START, state)
        self._write(result, document, line_index, None)
        if not result.persisted:
            self.registry.stop_ticking(timer_id)
        else:
            log.info(f"Started timer {timer_id} at {document.ref}:{result.location.line_index}")
        return result

    async def continue_(self, document: Document, line_index: int, marker: Optional[DecodedMarker] = None) -> ActionResult:
        marker = self._resolve(document, line_index, marker)
        if marker is None:
            return self._missing(TimerAction.CONTINUE, document, line_index)
        state = calculate(TimerAction.CONTINUE, self._current(marker), self.clock.now(), self.limits)
        if not self.registry.start_ticking(state.id, state, self.on_tick):
            self.registry.update(state.id, state)

        result = ActionResult(TimerAction.CONTINUE, state)
        self._write(result, document, line_index, marker)
        if not result.persisted:
            self.registry.stop_ticking(state.id)
        log.info(f"Continued timer {state.id} at {state.accumulated_seconds}s")
        return result

    async def pause(self, document: Document, line_index: int, marker: Optional[DecodedMarker] = None) -> ActionResult:
        marker = self._resolve(document, line_index, marker)
        if marker is None:
            return self._missing(TimerAction.PAUSE, document, line_index)
        state = calculate(TimerAction.PAUSE, self._current(marker), self.clock.now(), self.limits)
        self.registry.stop_ticking(state.id)

        result = ActionResult(TimerAction.PAUSE, state)
        self._write(result, document, line_index, marker)
        await self._safe_flush(result, self._line_context(state.id, document, line_index), document.ref)
        if not result.persisted:
            log.warning(f"Timer {state.id} paused in memory but storage may still show it running")
        log.info(f"Paused timer {state.id} at {state.accumulated_seconds}s")
        return result

    async def delete(self, document: Document, line_index: int, marker: Optional[DecodedMarker] = None) -> ActionResult:
        marker = self._resolve(document, line_index, marker)
        if marker is None:
            return self._missing(TimerAction.DELETE, document, line_index)
        state = calculate(TimerAction.DELETE, self._current(marker), self.clock.now(), self.limits)
        self.registry.stop_ticking(state.id)

        result = ActionResult(TimerAction.DELETE, state)
        line_text = self._line_context(state.id, document, line_index)
        await self._safe_flush(result, line_text, document.ref)
        flushed_ok = result.persisted
        try:
            self.sync.remove_marker(state.id, document, line_index, marker)
        except StorageError as e:
            result.persisted = False
            result.error = str(e)
            log.warning(f"Timer {state.id} deleted in memory but its marker is still in {document.ref}: {e}")
        self.sync.forget(state.id)
        if flushed_ok:
            try:
                self.flush_book.forget(state.id)
            except StorageError as e:
                log.warning(f"Could not forget flush state for timer {state.id}: {e}")
        log.info(f"Deleted timer {state.id} ({state.accumulated_seconds}s)")
        return result

    async def restore(self, document: Document, line_index: int, marker: Optional[DecodedMarker] = None) -> ActionResult:
        marker = self._resolve(document, line_index, marker)
        if marker is None:
            return self._missing(TimerAction.RESTORE, document, line_index)
        state = calculate(TimerAction.RESTORE, self._current(marker), self.clock.now(), self.limits)
        if not self.registry.start_ticking(state.id, state, self.on_tick):
            self.registry.update(state.id, state)

        result = ActionResult(TimerAction.RESTORE, state)
        self._write(result, document, line_index, marker)
        if not result.persisted:
            self.registry.stop_ticking(state.id)
        log.info(f"Restored timer {state.id} at {state.accumulated_seconds}s")
        return result

    async def force_pause(self, document: Document, line_index: int, marker: Optional[DecodedMarker] = None) -> ActionResult:
        marker = self._resolve(document, line_index, marker)
        if marker is None:
            return self._missing(TimerAction.FORCE_PAUSE, document, line_index)
        state = calculate(TimerAction.FORCE_PAUSE, self._current(marker), self.clock.now(), self.limits)
        self.registry.stop_ticking(state.id)

        result = ActionResult(TimerAction.FORCE_PAUSE, state)
        self._write(result, document, line_index, marker)
        log.info(f"Force-paused timer {state.id} at {state.accumulated_seconds}s")
        return result

    async def toggle(self, document: Document, line_index: int) -> ActionResult:
        """Pause a running marker, continue a paused one, or start a new one."""
        marker = parse(document.get_line(line_index))
        if marker is None:
            return await self.start(document, line_index)
        if self._current(marker).running:
            return await self.pause(document, line_index, marker)
        return await self.continue_(document, line_index, marker)

    # ---- Tick hook ----

    async def on_tick(self, timer_id: str) -> None:
        """Scheduler callback. Never raises."""
        state = self.registry.get(timer_id)
        if state is None or not state.running:
            return
        state = calculate(TimerAction.TICK, state, self.clock.now(), self.limits)
        self.registry.update(timer_id, state)

        try:
            self.sync.update_timer(timer_id, state)
        except MarkerNotFoundError:
            await self._handle_lost(timer_id, state)
        except StorageError as e:
            log.warning(f"Tick for timer {timer_id} skipped: {e}")
        except Exception:
            log.error(f"Unexpected failure ticking timer {timer_id}, stopping it", exc_info=True)
            self.registry.stop_ticking(timer_id)

    async def _handle_lost(self, timer_id: str, state: TimerState) -> None:
        """A marker vanished from its document: treat it as an implicit delete."""
        location = self.sync.last_known(timer_id)
        self.registry.stop_ticking(timer_id)
        log.warning(f"Timer {timer_id} no longer found in its document, stopping it")
        if self.settings.flush_unresolved and location is not None:
            try:
                await self._flush(state, location.line_text, location.document_ref)
            except StorageError as e:
                log.warning(f"Final flush for lost timer {timer_id} failed: {e}")
        self.sync.forget(timer_id)

    # ---- Documents and lifecycle ----

    async def open_document(self, document: Document) -> list[ActionResult]:
        """Upgrade legacy markers, then restore or force-pause running ones.

        ``never`` restores every running marker, ``quit`` only those started
        by this process, ``close`` none of them.
        """
        try:
            self.sync.upgrade_legacy(document)
            found = self.sync.scan(document)
        except StorageError as e:
            log.warning(f"Could not open {document.ref}: {e}")
            return []

        results = []
        policy = self.settings.auto_stop
        for line_index, marker in found:
            self.sync.remember(marker.timer_id, document, line_index, marker)
            if not marker.state.running or self.registry.is_active(marker.timer_id):
                continue
            restore = policy == AutoStopPolicy.NEVER or (
                policy == AutoStopPolicy.QUIT and self.registry.started_this_session(marker.timer_id)
            )
            if restore:
                results.append(await self.restore(document, line_index, marker))
            else:
                results.append(await self.force_pause(document, line_index, marker))
        return results

    async def close_document(self, document_ref: str) -> list[TimerState]:
        """Under the ``close`` policy, stop and flush timers living in ``document_ref``."""
        if self.settings.auto_stop != AutoStopPolicy.CLOSE:
            return []
        stopped = []
        for timer_id in self.sync.ids_in(document_ref):
            state = self.registry.get(timer_id)
            if state is None:
                continue
            state = calculate(TimerAction.TICK, state, self.clock.now(), self.limits)
            self.registry.stop_ticking(timer_id)
            location = self.sync.last_known(timer_id)
            try:
                await self._flush(state, location.line_text if location else "", document_ref)
            except StorageError as e:
                log.warning(f"Flush on close failed for timer {timer_id}: {e}")
            stopped.append(state)
            log.info(f"Stopped timer {timer_id} on close of {document_ref}")
        return stopped

    async def flush_all(self) -> list[LedgerEntry]:
        """Flush every active timer's unlogged increment."""
        entries = []
        for timer_id, state in self.registry.snapshot_all().items():
            location = self.sync.last_known(timer_id)
            source = location.document_ref if location else ""
            try:
                entry = await self._flush(state, location.line_text if location else "", source)
            except StorageError as e:
                log.warning(f"Shutdown flush failed for timer {timer_id}: {e}")
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    async def shutdown(self) -> list[LedgerEntry]:
        entries = await self.flush_all()
        self.registry.clear()
        self.sync.clear()
        log.info(f"Timer engine shut down, flushed {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
        return entries

"""Keeps markers in documents in step with timer state.

Locations are a cache: every write re-validates the cached line and falls
back to a full scan of the document when the marker has moved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from tag_timer.accrual import TimerState
from tag_timer.config import InsertLocation
from tag_timer.document import AccessMode, Document, EditorBuffer, FileDocument
from tag_timer.errors import MarkerNotFoundError, StorageError
from tag_timer.log import get_logger
from tag_timer.markers import DecodedMarker, has_marker_shape, parse, parse_all, render, upgrade_legacy_line

log = get_logger(__name__)

# Leading prefixes a head-inserted marker goes after, checked in order
HEAD_PATTERNS = (
    re.compile(r"^\s*#*\d+\.\s"),      # ordered list
    re.compile(r"^\s*#*[-+*]\s"),      # unordered list
    re.compile(r"^\s*#+\s"),           # heading
)
_CHECKBOX = re.compile(r"\[[ xX]\]\s")


@dataclass(frozen=True)
class Location:
    document: Document
    line_index: int
    span_start: int
    span_end: int
    line_text: str = ""

    @property
    def document_ref(self) -> str:
        return self.document.ref


def head_position(line: str) -> int:
    """Column right after a list marker, checkbox or heading prefix."""
    for pattern in HEAD_PATTERNS:
        match = pattern.match(line)
        if match:
            end = match.end()
            checkbox = _CHECKBOX.match(line, end)
            return checkbox.end() if checkbox else end
    return 0


def _content_end(line: str) -> int:
    """Length of ``line`` without a trailing CR left by CRLF splitting."""
    return len(line) - 1 if line.endswith("\r") else len(line)


def insert_position(line: str, policy: InsertLocation, cursor_column: Optional[int] = None) -> int:
    if policy == InsertLocation.TAIL:
        return _content_end(line)
    if policy == InsertLocation.CURSOR and cursor_column is not None:
        return max(0, min(cursor_column, _content_end(line)))
    return head_position(line)


def pad_for_insert(line: str, position: int, span: str) -> str:
    """Surround ``span`` with a single space where it would touch text."""
    left = " " if position > 0 and not line[position - 1].isspace() else ""
    right = " " if position < len(line) and not line[position].isspace() else ""
    return f"{left}{span}{right}"


def remove_span(line: str, start: int, end: int) -> str:
    """Cut ``[start, end)`` and collapse the padding that surrounded it."""
    before, after = line[:start], line[end:]
    if before.endswith(" ") and (after.startswith(" ") or after in ("", "\r")):
        before = before[:-1]
    elif not before and after.startswith(" "):
        after = after[1:]
    return before + after


class DocumentSync:
    """Writes, relocates and removes markers inside documents."""

    def __init__(self, insert_location: InsertLocation = InsertLocation.HEAD):
        self.insert_location = insert_location
        self.locations: dict[str, Location] = {}

    # ---- Writing ----

    def write_timer(
            self,
            timer_id: str,
            state: TimerState,
            document: Document,
            line_index: int,
            known: Optional[DecodedMarker] = None,
    ) -> Location:
        """Render ``state`` into ``document`` and cache where it landed.

        An existing marker for ``timer_id`` is replaced in place; otherwise a
        new marker is inserted according to the insert-location policy.
        """
        span = render(state)
        if document.mode == AccessMode.EDITOR:
            location = self._write_editor(timer_id, span, document, line_index, known)
        else:
            location = self._write_persisted(timer_id, span, document, line_index, known)
        self.locations[timer_id] = location
        log.debug(f"Wrote timer {timer_id} to {document.ref}:{location.line_index}")
        return location

    def _write_editor(
            self,
            timer_id: str,
            span: str,
            buffer: EditorBuffer,
            line_index: int,
            known: Optional[DecodedMarker],
    ) -> Location:
        line = buffer.get_line(line_index)
        target = None
        if known is not None and known.timer_id == timer_id:
            current = parse(line[known.span_start:known.span_end], timer_id)
            if current is not None and current.span_start == 0 and current.span_end == known.span_end - known.span_start:
                target = known
        if target is None:
            target = parse(line, timer_id)
        if target is None and known is not None:
            # Marker existed before; it moved, so find it again
            line_index, target = _scan_lines(buffer.read_lines(), timer_id)
            if target is None:
                raise MarkerNotFoundError(timer_id, buffer.ref)

        if target is not None:
            buffer.replace_range(line_index, target.span_start, target.span_end, span)
            start = target.span_start
        else:
            cursor_line, cursor_column = buffer.cursor
            column = cursor_column if cursor_line == line_index else None
            position = insert_position(line, self.insert_location, column)
            padded = pad_for_insert(line, position, span)
            buffer.replace_range(line_index, position, position, padded)
            start = position + padded.index(span)
        return Location(buffer, line_index, start, start + len(span), buffer.get_line(line_index))

    def _write_persisted(
            self,
            timer_id: str,
            span: str,
            document: FileDocument,
            line_index: int,
            known: Optional[DecodedMarker],
    ) -> Location:
        landed: dict[str, int] = {}

        def _rewrite(content: str) -> str:
            lines = content.split("\n")
            index = line_index
            marker = parse(lines[index], timer_id) if 0 <= index < len(lines) else None
            if marker is None and known is not None:
                # Marker existed before; it moved, so find it again
                index, marker = _scan_lines(lines, timer_id)
                if marker is None:
                    raise MarkerNotFoundError(timer_id, document.ref)
            if marker is None:
                if not 0 <= index < len(lines):
                    raise StorageError(f"Line {index} out of range in {document.ref}")
                line = lines[index]
                position = insert_position(line, self.insert_location)
                padded = pad_for_insert(line, position, span)
                lines[index] = line[:position] + padded + line[position:]
                start = position + padded.index(span)
            else:
                line = lines[index]
                lines[index] = line[:marker.span_start] + span + line[marker.span_end:]
                start = marker.span_start
            landed.update(index=index, start=start)
            return "\n".join(lines)

        text = document.process(_rewrite)
        index = landed["index"]
        line_text = text.split("\n")[index]
        return Location(document, index, landed["start"], landed["start"] + len(span), line_text)

    # ---- Locating ----

    def locate(self, timer_id: str) -> Optional[Location]:
        """Return a verified location for ``timer_id`` or ``None``.

        Checks the cached line first, then scans the whole document in the
        same access mode the timer was written through.
        """
        cached = self.locations.get(timer_id)
        if cached is None:
            return None
        document = cached.document

        line = document.get_line(cached.line_index)
        marker = parse(line, timer_id)
        if marker is not None:
            location = Location(document, cached.line_index, marker.span_start, marker.span_end, line)
            self.locations[timer_id] = location
            return location

        index, marker = _scan_lines(document.read_lines(), timer_id)
        if marker is None:
            log.warning(f"Timer {timer_id} not found in {document.ref} after full scan")
            return None
        location = Location(document, index, marker.span_start, marker.span_end, document.get_line(index))
        self.locations[timer_id] = location
        log.debug(f"Relocated timer {timer_id} from line {cached.line_index} to {index}")
        return location

    def require(self, timer_id: str) -> Location:
        location = self.locate(timer_id)
        if location is None:
            cached = self.locations.get(timer_id)
            raise MarkerNotFoundError(timer_id, cached.document_ref if cached else None)
        return location

    def update_timer(self, timer_id: str, state: TimerState) -> Location:
        """Rewrite the marker for an already placed timer, wherever it is now."""
        location = self.require(timer_id)
        known = parse(location.line_text, timer_id)
        return self.write_timer(timer_id, state, location.document, location.line_index, known)

    def last_known(self, timer_id: str) -> Optional[Location]:
        return self.locations.get(timer_id)

    def ids_in(self, document_ref: str) -> list[str]:
        return [tid for tid, loc in self.locations.items() if loc.document_ref == document_ref]

    # ---- Removal and maintenance ----

    def remove_marker(self, timer_id: str, document: Document, line_index: int, known: Optional[DecodedMarker] = None) -> bool:
        """Delete the marker span for ``timer_id``. Returns whether one was removed."""
        removed = False
        if document.mode == AccessMode.EDITOR:
            line = document.get_line(line_index)
            marker = parse(line, timer_id)
            index = line_index
            if marker is None:
                index, marker = _scan_lines(document.read_lines(), timer_id)
            if marker is not None:
                line = document.get_line(index)
                document.replace_range(index, 0, len(line), remove_span(line, marker.span_start, marker.span_end))
                removed = True
        else:
            def _strip(content: str) -> str:
                nonlocal removed
                lines = content.split("\n")
                index, marker = line_index, None
                if 0 <= line_index < len(lines):
                    marker = parse(lines[line_index], timer_id)
                if marker is None:
                    index, marker = _scan_lines(lines, timer_id)
                if marker is None:
                    return content
                lines[index] = remove_span(lines[index], marker.span_start, marker.span_end)
                removed = True
                return "\n".join(lines)

            document.process(_strip)
        self.forget(timer_id)
        return removed

    def upgrade_legacy(self, document: Document) -> int:
        """Rewrite legacy ``timer-btn`` markers in the current format.

        Returns the number of lines changed. Persisted documents are
        rewritten in a single atomic cycle.
        """
        changed = 0
        if document.mode == AccessMode.EDITOR:
            for index, line in enumerate(document.read_lines()):
                if "timer-btn" not in line:
                    continue
                upgraded = upgrade_legacy_line(line)
                if upgraded != line:
                    document.replace_range(index, 0, len(line), upgraded)
                    changed += 1
        else:
            def _upgrade(content: str) -> str:
                nonlocal changed
                lines = content.split("\n")
                for index, line in enumerate(lines):
                    if "timer-btn" in line:
                        upgraded = upgrade_legacy_line(line)
                        if upgraded != line:
                            lines[index] = upgraded
                            changed += 1
                return "\n".join(lines)

            document.process(_upgrade)
        if changed:
            log.info(f"Upgraded {changed} legacy marker line(s) in {document.ref}")
        return changed

    def scan(self, document: Document) -> list[tuple[int, DecodedMarker]]:
        """All current-format markers in ``document`` as ``(line, marker)``."""
        found = []
        for index, line in enumerate(document.read_lines()):
            markers = parse_all(line)
            if not markers and has_marker_shape(line):
                log.warning(f"Ignoring malformed timer marker at {document.ref}:{index}")
            for marker in markers:
                found.append((index, marker))
        return found

    def remember(self, timer_id: str, document: Document, line_index: int, marker: DecodedMarker) -> Location:
        location = Location(document, line_index, marker.span_start, marker.span_end, document.get_line(line_index))
        self.locations[timer_id] = location
        return location

    def forget(self, timer_id: str) -> None:
        self.locations.pop(timer_id, None)

    def clear(self) -> None:
        self.locations.clear()


def _scan_lines(lines: list[str], timer_id: str) -> tuple[int, Optional[DecodedMarker]]:
    for index, line in enumerate(lines):
        marker = parse(line, timer_id)
        if marker is not None:
            return index, marker
    return -1, None

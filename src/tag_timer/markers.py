"""Marker codec: encode timer state into an inline span and decode it back.

Current format::

    <span class="timer-r" id="ID" data-dur="DUR" data-ts="TS">【⌛00:00:03 】</span>

The bracketed label is decorative; only the attributes are read back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from tag_timer.accrual import TimerState, TimerStatus, base62_encode

STATUS_TOKENS = {
    TimerStatus.RUNNING: "timer-r",
    TimerStatus.PAUSED: "timer-p",
}
_TOKEN_STATUS = {token: status for status, token in STATUS_TOKENS.items()}

GLYPH_EVEN = "⌛"
GLYPH_ODD = "⏳"

CURRENT_PATTERN = re.compile(
    r'<span class="(timer-r|timer-p)" id="([^"]+)" data-dur="(\d+)" data-ts="(\d+)">.*?</span>'
)
# Anything shaped like a current marker, well-formed or not
MARKER_SHAPE = re.compile(r'<span class="timer-[rp]"[^>]*>.*?</span>')
LEGACY_PATTERN = re.compile(r'<span class="timer-btn"([^>]*)>.*?</span>')
HASHTAG_PATTERN = re.compile(r"#\w+")


@dataclass(frozen=True)
class DecodedMarker:
    state: TimerState
    span_start: int
    span_end: int
    legacy: bool = False

    @property
    def timer_id(self) -> str:
        return self.state.id


# ---- Rendering ----

def format_clock(total_seconds: int) -> str:
    """Format seconds as ``HH:MM:SS``; hours may exceed two digits."""
    hours, rest = divmod(max(0, total_seconds), 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_duration(total_seconds: int) -> str:
    """Format seconds as ``1h 2m 3s``, omitting zero parts."""
    if total_seconds == 0:
        return "0s"
    sign = "-" if total_seconds < 0 else ""
    hours, rest = divmod(abs(total_seconds), 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    return sign + " ".join(parts)


def glyph_for(state: TimerState) -> str:
    if state.running:
        return GLYPH_EVEN if state.accumulated_seconds % 2 == 0 else GLYPH_ODD
    return GLYPH_ODD


def render(state: TimerState) -> str:
    return (
        f'<span class="{STATUS_TOKENS[state.status]}" id="{state.id}" '
        f'data-dur="{state.accumulated_seconds}" data-ts="{state.last_event}">'
        f"【{glyph_for(state)}{format_clock(state.accumulated_seconds)} 】</span>"
    )


# ---- Decoding ----

class MarkerDecoder:
    """One decoding strategy. Returns ``None`` when it does not apply."""

    name = "base"

    def decode(self, line: str, target_id: Optional[str] = None) -> Optional[DecodedMarker]:
        raise NotImplementedError


class CurrentFormatDecoder(MarkerDecoder):
    name = "current"

    def iter_markers(self, line: str) -> Iterator[DecodedMarker]:
        for match in CURRENT_PATTERN.finditer(line):
            state = TimerState(
                id=match.group(2),
                status=_TOKEN_STATUS[match.group(1)],
                accumulated_seconds=int(match.group(3)),
                last_event=int(match.group(4)),
            )
            yield DecodedMarker(state, match.start(), match.end())

    def decode(self, line: str, target_id: Optional[str] = None) -> Optional[DecodedMarker]:
        for marker in self.iter_markers(line):
            if target_id is None or marker.timer_id == target_id:
                return marker
        return None


class LegacyAttributeDecoder(MarkerDecoder):
    """Reads the old ``timer-btn`` span.

    ``prefix`` selects the attribute spelling: ``data-timerId`` versus a
    bare ``timerId``. ``None`` lets each attribute carry the ``data-``
    prefix or not independently. The numeric legacy id is re-encoded in
    base 62 so the same legacy marker always maps to the same current id.
    """

    FIELDS = ("timerId", "Status", "AccumulatedTime", "currentStartTimeStamp")
    NUMERIC = {"timerId", "AccumulatedTime", "currentStartTimeStamp"}

    def __init__(self, prefix: Optional[str]):
        self.prefix = prefix
        if prefix is None:
            self.name = "legacy:mixed"
            prefix_re = "(?:data-)?"
        else:
            self.name = f"legacy:{prefix or 'bare'}"
            prefix_re = re.escape(prefix)
        self._patterns = {
            field: re.compile(rf'(?<![\w-]){prefix_re}{field}="([^"]+)"')
            for field in self.FIELDS
        }

    def _attributes(self, attrs_text: str) -> Optional[dict[str, str]]:
        attrs = {}
        for field, pattern in self._patterns.items():
            match = pattern.search(attrs_text)
            if match is None:
                return None
            value = match.group(1)
            if field in self.NUMERIC and not value.isdigit():
                return None
            attrs[field] = value
        return attrs

    def decode(self, line: str, target_id: Optional[str] = None) -> Optional[DecodedMarker]:
        for match in LEGACY_PATTERN.finditer(line):
            attrs = self._attributes(match.group(1))
            if attrs is None:
                continue
            state = TimerState(
                id=base62_encode(int(attrs["timerId"])),
                status=TimerStatus.RUNNING if attrs["Status"] == "Running" else TimerStatus.PAUSED,
                accumulated_seconds=int(attrs["AccumulatedTime"]),
                last_event=int(attrs["currentStartTimeStamp"]),
            )
            if target_id is None or state.id == target_id:
                return DecodedMarker(state, match.start(), match.end(), legacy=True)
        return None


CURRENT_DECODER = CurrentFormatDecoder()
DEFAULT_DECODERS: tuple[MarkerDecoder, ...] = (
    CURRENT_DECODER,
    LegacyAttributeDecoder("data-"),
    LegacyAttributeDecoder(""),
    LegacyAttributeDecoder(None),
)


def parse(
        line: str,
        target_id: Optional[str] = None,
        decoders: Sequence[MarkerDecoder] = DEFAULT_DECODERS,
) -> Optional[DecodedMarker]:
    """Decode the first marker on ``line`` (or the one with ``target_id``).

    Decoders are tried in order; the first non-``None`` result wins.
    """
    for decoder in decoders:
        marker = decoder.decode(line, target_id)
        if marker is not None:
            return marker
    return None


def parse_all(line: str) -> list[DecodedMarker]:
    """Every current-format marker on ``line``, left to right."""
    return list(CURRENT_DECODER.iter_markers(line))


def has_marker_shape(line: str) -> bool:
    return MARKER_SHAPE.search(line) is not None


def extract_tags(line: str) -> list[str]:
    """Hashtags on ``line`` in order of first appearance."""
    return list(dict.fromkeys(HASHTAG_PATTERN.findall(line)))


def upgrade_legacy_line(line: str) -> str:
    """Rewrite every decodable legacy span on ``line`` in the current format."""
    legacy_decoders = [d for d in DEFAULT_DECODERS if d is not CURRENT_DECODER]

    def _replace(match: re.Match) -> str:
        span = match.group(0)
        for decoder in legacy_decoders:
            marker = decoder.decode(span)
            if marker is not None:
                return render(marker.state)
        return span

    return LEGACY_PATTERN.sub(_replace, line)

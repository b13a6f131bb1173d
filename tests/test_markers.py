"""Tests for the marker codec."""

import pytest

from tag_timer.accrual import TimerState, TimerStatus
from tag_timer.markers import (
    GLYPH_EVEN,
    GLYPH_ODD,
    LegacyAttributeDecoder,
    extract_tags,
    format_clock,
    format_duration,
    has_marker_shape,
    parse,
    parse_all,
    render,
    upgrade_legacy_line,
)

LEGACY_DATA = (
    '<span class="timer-btn" data-timerId="12345" data-Status="Running" '
    'data-AccumulatedTime="42" data-currentStartTimeStamp="1700000000">⏳ 00:00:42</span>'
)
LEGACY_BARE = (
    '<span class="timer-btn" timerId="12345" Status="Paused" '
    'AccumulatedTime="42" currentStartTimeStamp="1700000000">⏳ 00:00:42</span>'
)


class TestRender:
    def test_running_odd(self):
        state = TimerState("abc", TimerStatus.RUNNING, 3, 100)
        assert render(state) == (
            '<span class="timer-r" id="abc" data-dur="3" data-ts="100">【⏳00:00:03 】</span>'
        )

    def test_running_even_glyph(self):
        state = TimerState("abc", TimerStatus.RUNNING, 4, 100)
        assert GLYPH_EVEN in render(state)

    def test_paused_token(self):
        state = TimerState("abc", TimerStatus.PAUSED, 4, 100)
        span = render(state)
        assert span.startswith('<span class="timer-p"')
        assert GLYPH_ODD in span

    def test_long_durations(self):
        state = TimerState("abc", TimerStatus.PAUSED, 100 * 3600 + 61, 0)
        assert "100:01:01" in render(state)


class TestParse:
    def test_round_trip_in_context(self):
        state = TimerState("k9Z", TimerStatus.RUNNING, 75, 1_700_000_123)
        line = f"- [ ] {render(state)} write report #work"
        marker = parse(line)
        assert marker.state == state
        assert line[marker.span_start:marker.span_end] == render(state)
        assert not marker.legacy

    def test_no_marker(self):
        assert parse("just text #tag") is None

    def test_target_id_selects_marker(self):
        a = render(TimerState("a", TimerStatus.PAUSED, 1, 0))
        b = render(TimerState("b", TimerStatus.RUNNING, 2, 0))
        line = f"{a} and {b}"
        assert parse(line).timer_id == "a"
        assert parse(line, "b").state.accumulated_seconds == 2
        assert parse(line, "c") is None

    def test_parse_all_left_to_right(self):
        a = render(TimerState("a", TimerStatus.PAUSED, 1, 0))
        b = render(TimerState("b", TimerStatus.RUNNING, 2, 0))
        assert [m.timer_id for m in parse_all(f"{b} {a}")] == ["b", "a"]

    @pytest.mark.parametrize("line", [
        '<span class="timer-r" id="x" data-dur="abc" data-ts="1">【⏳00:00:00 】</span>',
        '<span class="timer-r" id="x" data-dur="1">【⏳00:00:01 】</span>',
        '<span class="timer-q" id="x" data-dur="1" data-ts="1">【⏳00:00:01 】</span>',
    ])
    def test_malformed_is_ignored(self, line):
        assert parse(line) is None

    def test_malformed_still_has_marker_shape(self):
        assert has_marker_shape('<span class="timer-r" id="x" data-dur="abc">x</span>')
        assert not has_marker_shape("plain line")


class TestLegacy:
    def test_data_prefixed(self):
        marker = parse(LEGACY_DATA)
        assert marker.legacy
        assert marker.state == TimerState("3d7", TimerStatus.RUNNING, 42, 1_700_000_000)

    def test_bare_attributes(self):
        marker = parse(LEGACY_BARE)
        assert marker.state.id == "3d7"
        assert marker.state.status == TimerStatus.PAUSED

    def test_prefixes_do_not_cross_match(self):
        assert LegacyAttributeDecoder("").decode(LEGACY_DATA) is None
        assert LegacyAttributeDecoder("data-").decode(LEGACY_BARE) is None

    def test_mixed_prefixes(self):
        line = (
            '<span class="timer-btn" data-timerId="12345" Status="Running" '
            'data-AccumulatedTime="7" currentStartTimeStamp="500">x</span>'
        )
        marker = parse(line)
        assert marker.legacy
        assert marker.state == TimerState("3d7", TimerStatus.RUNNING, 7, 500)
        assert parse(upgrade_legacy_line(line)).state == marker.state

    def test_non_numeric_id_is_malformed(self):
        assert parse(LEGACY_DATA.replace('"12345"', '"abc"')) is None

    def test_upgrade_line(self):
        line = f"- {LEGACY_DATA} task #work"
        upgraded = upgrade_legacy_line(line)
        assert "timer-btn" not in upgraded
        marker = parse(upgraded)
        assert not marker.legacy
        assert marker.state.id == "3d7"
        assert upgraded.startswith("- <span class=\"timer-r\"")
        assert upgraded.endswith(" task #work")

    def test_upgrade_leaves_undecodable_spans(self):
        line = '<span class="timer-btn" data-timerId="x">old</span>'
        assert upgrade_legacy_line(line) == line


class TestTags:
    def test_order_and_dedup(self):
        assert extract_tags("#b fix #a then #b again") == ["#b", "#a"]

    def test_no_tags(self):
        assert extract_tags("nothing here") == []

    def test_marker_attributes_are_not_tags(self):
        line = render(TimerState("abc", TimerStatus.RUNNING, 0, 0)) + " #deep"
        assert extract_tags(line) == ["#deep"]


class TestFormatting:
    def test_clock(self):
        assert format_clock(0) == "00:00:00"
        assert format_clock(3725) == "01:02:05"

    def test_duration(self):
        assert format_duration(0) == "0s"
        assert format_duration(3725) == "1h 2m 5s"
        assert format_duration(120) == "2m"
        assert format_duration(-90) == "-1m 30s"


def test_legacy_bare_decode_values():
    line = '<span class="timer-btn" timerId="12345" Status="Running" AccumulatedTime="99" currentStartTimeStamp="500">x</span>'
    assert parse(line).state == TimerState("3d7", TimerStatus.RUNNING, 99, 500)

"""Tests for DocumentSync in both access modes."""

import logging

import pytest

from tag_timer.accrual import TimerState, TimerStatus
from tag_timer.config import InsertLocation
from tag_timer.document import EditorBuffer, FileDocument
from tag_timer.errors import MarkerNotFoundError, StorageError
from tag_timer.markers import parse, render
from tag_timer.sync import DocumentSync, head_position, pad_for_insert, remove_span

from test_markers import LEGACY_DATA


def state(accumulated: int = 0, status: TimerStatus = TimerStatus.RUNNING, timer_id: str = "abc") -> TimerState:
    return TimerState(timer_id, status, accumulated, 1_700_000_000)


@pytest.fixture
def note(tmp_path):
    path = tmp_path / "note.md"
    path.write_text("# Today\n- [ ] write report #work\nplain line\n", encoding="utf-8")
    return FileDocument(path)


# ---- Helpers ----

class TestHeadPosition:
    @pytest.mark.parametrize("line, expected", [
        ("plain", 0),
        ("- item", 2),
        ("* item", 2),
        ("12. item", 4),
        ("## Title", 3),
        ("- [ ] todo", 6),
        ("- [x] done", 6),
        ("  - nested", 4),
    ])
    def test_positions(self, line, expected):
        assert head_position(line) == expected

    def test_padding(self):
        assert pad_for_insert("ab", 1, "X") == " X "
        assert pad_for_insert("a b", 1, "X") == " X"
        assert pad_for_insert("", 0, "X") == "X"

    def test_remove_span_collapses_space(self):
        assert remove_span("- X task", 2, 3) == "- task"
        assert remove_span("task X", 5, 6) == "task"
        assert remove_span("X task", 0, 1) == "task"


# ---- Editor mode ----

class TestEditorWrite:
    def test_head_insert_after_checkbox(self):
        buffer = EditorBuffer("- [ ] task #work")
        sync = DocumentSync()
        location = sync.write_timer("abc", state(), buffer, 0)
        span = render(state())
        assert buffer.get_line(0) == f"- [ ] {span} task #work"
        assert buffer.get_line(0)[location.span_start:location.span_end] == span

    def test_heading_insert(self):
        buffer = EditorBuffer("## Title")
        DocumentSync().write_timer("abc", state(), buffer, 0)
        assert buffer.get_line(0) == f"## {render(state())} Title"

    def test_tail_insert(self):
        buffer = EditorBuffer("task")
        DocumentSync(InsertLocation.TAIL).write_timer("abc", state(), buffer, 0)
        assert buffer.get_line(0) == f"task {render(state())}"

    def test_cursor_insert(self):
        buffer = EditorBuffer("abcd")
        buffer.set_cursor(0, 2)
        DocumentSync(InsertLocation.CURSOR).write_timer("abc", state(), buffer, 0)
        assert buffer.get_line(0) == f"ab {render(state())} cd"

    def test_cursor_on_other_line_falls_back_to_head(self):
        buffer = EditorBuffer("- abcd\nother")
        buffer.set_cursor(1, 3)
        DocumentSync(InsertLocation.CURSOR).write_timer("abc", state(), buffer, 0)
        assert buffer.get_line(0) == f"- {render(state())} abcd"

    def test_replace_in_place(self):
        buffer = EditorBuffer("- task #work")
        sync = DocumentSync()
        sync.write_timer("abc", state(0), buffer, 0)
        known = parse(buffer.get_line(0), "abc")
        sync.write_timer("abc", state(9), buffer, 0, known)
        line = buffer.get_line(0)
        assert line == f"- {render(state(9))} task #work"
        assert line.count("timer-r") == 1

    def test_stale_known_span_is_rescanned(self):
        buffer = EditorBuffer("- task")
        sync = DocumentSync()
        sync.write_timer("abc", state(0), buffer, 0)
        known = parse(buffer.get_line(0), "abc")
        buffer.replace_range(0, 0, 0, "prefix ")
        sync.write_timer("abc", state(1), buffer, 0, known)
        assert buffer.get_line(0) == f"prefix - {render(state(1))} task"

    def test_other_timers_untouched(self):
        other = render(state(5, TimerStatus.PAUSED, "zzz"))
        buffer = EditorBuffer(f"{other} task")
        DocumentSync().write_timer("abc", state(), buffer, 0)
        assert other in buffer.get_line(0)
        assert parse(buffer.get_line(0), "abc") is not None

    def test_line_out_of_range(self):
        with pytest.raises(StorageError):
            DocumentSync().write_timer("abc", state(), EditorBuffer("one"), 3)

    def test_known_marker_moved_to_another_line(self):
        buffer = EditorBuffer("- task #work")
        sync = DocumentSync()
        sync.write_timer("abc", state(0), buffer, 0)
        known = parse(buffer.get_line(0), "abc")
        buffer.lines.insert(0, "new heading")

        location = sync.write_timer("abc", state(3), buffer, 0, known)
        assert location.line_index == 1
        assert buffer.read_text().count('id="abc"') == 1
        assert buffer.get_line(0) == "new heading"
        assert parse(buffer.get_line(1), "abc").state.accumulated_seconds == 3

    def test_known_marker_gone_is_not_reinserted(self):
        buffer = EditorBuffer("- task #work")
        sync = DocumentSync()
        sync.write_timer("abc", state(0), buffer, 0)
        known = parse(buffer.get_line(0), "abc")
        buffer.lines[0] = "- task #work"

        with pytest.raises(MarkerNotFoundError):
            sync.write_timer("abc", state(3), buffer, 0, known)
        assert "timer-r" not in buffer.read_text()

    def test_open_and_save_keep_crlf(self, tmp_path):
        path = tmp_path / "crlf.md"
        path.write_bytes(b"a\r\nb\r\n")
        buffer = EditorBuffer.open(path)
        DocumentSync().write_timer("abc", state(), buffer, 0)
        buffer.save()
        raw = path.read_bytes()
        assert raw.count(b"\r\n") == 2
        assert raw.endswith(b" a\r\nb\r\n")


# ---- Persisted mode ----

class TestPersistedWrite:
    def test_insert_and_replace(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(0), note, 1)
        lines = note.read_lines()
        assert lines[1] == f"- [ ] {render(state(0))} write report #work"

        sync.update_timer("abc", state(4))
        assert note.read_lines()[1] == f"- [ ] {render(state(4))} write report #work"
        assert note.read_lines()[0] == "# Today"

    def test_follows_moved_marker(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(0), note, 1)
        note.path.write_text("new first line\n" + note.read_text(), encoding="utf-8")

        location = sync.update_timer("abc", state(2))
        assert location.line_index == 2
        assert parse(note.read_lines()[2], "abc").state.accumulated_seconds == 2

    def test_removed_marker_raises(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(0), note, 1)
        note.path.write_text("# Today\n- [ ] write report #work\n", encoding="utf-8")
        assert sync.locate("abc") is None
        with pytest.raises(MarkerNotFoundError):
            sync.update_timer("abc", state(1))

    def test_known_marker_gone_is_not_reinserted(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(0), note, 1)
        known = parse(note.read_lines()[1], "abc")
        note.path.write_text("# Today\n- [ ] write report #work\n", encoding="utf-8")
        with pytest.raises(MarkerNotFoundError):
            sync.write_timer("abc", state(1), note, 1, known)
        assert "timer-r" not in note.read_text()

    def test_unchanged_content_is_not_rewritten(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(0), note, 1)
        mtime = note.path.stat().st_mtime_ns
        sync.update_timer("abc", state(0))
        assert note.path.stat().st_mtime_ns == mtime

    def test_missing_file(self, tmp_path):
        with pytest.raises(StorageError):
            DocumentSync().write_timer("abc", state(), FileDocument(tmp_path / "gone.md"), 0)

    def test_line_out_of_range(self, note):
        with pytest.raises(StorageError):
            DocumentSync().write_timer("abc", state(), note, 40)

    def test_crlf_line_endings_preserved(self, tmp_path):
        path = tmp_path / "crlf.md"
        original = b"# T\r\n- task #work\r\nend\r\n"
        path.write_bytes(original)
        document = FileDocument(path)
        sync = DocumentSync(InsertLocation.TAIL)

        sync.write_timer("abc", state(0), document, 1)
        raw = path.read_bytes()
        assert raw.count(b"\r\n") == 3
        assert raw.split(b"\r\n")[1] == f"- task #work {render(state(0))}".encode("utf-8")

        assert sync.remove_marker("abc", document, 1)
        assert path.read_bytes() == original

    def test_invalid_utf8_is_a_storage_error(self, tmp_path):
        path = tmp_path / "bad.md"
        path.write_bytes(b"- task \xff\n")
        with pytest.raises(StorageError):
            FileDocument(path).read_text()
        with pytest.raises(StorageError):
            EditorBuffer.open(path)
        with pytest.raises(StorageError):
            DocumentSync().write_timer("abc", state(), FileDocument(path), 0)


# ---- Removal, upgrade, scan ----

class TestMaintenance:
    def test_remove_from_editor(self):
        buffer = EditorBuffer("- task")
        sync = DocumentSync()
        sync.write_timer("abc", state(), buffer, 0)
        assert sync.remove_marker("abc", buffer, 0)
        assert buffer.get_line(0) == "- task"
        assert sync.last_known("abc") is None

    def test_remove_from_file_after_move(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(), note, 1)
        note.path.write_text("top\n" + note.read_text(), encoding="utf-8")
        assert sync.remove_marker("abc", note, 1)
        assert note.read_lines()[2] == "- [ ] write report #work"

    def test_remove_missing_marker(self, note):
        assert not DocumentSync().remove_marker("nope", note, 1)

    def test_upgrade_legacy_file(self, tmp_path):
        path = tmp_path / "old.md"
        path.write_text(f"- {LEGACY_DATA} old task\nplain\n", encoding="utf-8")
        document = FileDocument(path)
        assert DocumentSync().upgrade_legacy(document) == 1
        assert "timer-btn" not in path.read_text(encoding="utf-8")
        assert parse(document.read_lines()[0]).state.id == "3d7"

    def test_upgrade_legacy_editor(self):
        buffer = EditorBuffer(f"{LEGACY_DATA}\nplain")
        assert DocumentSync().upgrade_legacy(buffer) == 1
        assert not parse(buffer.get_line(0)).legacy

    def test_scan_finds_all_markers(self):
        a = render(state(1, timer_id="a"))
        b = render(state(2, TimerStatus.PAUSED, "b"))
        buffer = EditorBuffer(f"{a}\nnothing\n{b} and more")
        found = DocumentSync().scan(buffer)
        assert [(index, m.timer_id) for index, m in found] == [(0, "a"), (2, "b")]

    def test_scan_warns_on_malformed(self, caplog):
        buffer = EditorBuffer('<span class="timer-r" id="x" data-dur="oops">bad</span>')
        with caplog.at_level(logging.WARNING, logger="tag_timer"):
            assert DocumentSync().scan(buffer) == []
        assert "malformed" in caplog.text

    def test_ids_in(self, note):
        sync = DocumentSync()
        sync.write_timer("abc", state(), note, 1)
        sync.write_timer("def", state(timer_id="def"), EditorBuffer("x", ref="other.md"), 0)
        assert sync.ids_in(note.ref) == ["abc"]

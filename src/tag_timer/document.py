"""Document access: a live editable buffer and a persisted whole-file mode.

``EditorBuffer`` supports precise sub-range replacement on one line.
``FileDocument`` only supports whole-document read-modify-write; the
read, transform and write happen without yielding to the event loop, so
no other coroutine in this process can interleave a write.
"""

from __future__ import annotations

import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from tag_timer.errors import StorageError
from tag_timer.log import get_logger

log = get_logger(__name__)


class AccessMode(str, Enum):
    EDITOR = "editor"
    PERSISTED = "persisted"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temp file beside ``path`` then swap it in."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, data) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def read_text_exact(path: Path) -> str:
    """Read ``path`` without newline translation, so CRLF survives a rewrite."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise StorageError(f"Could not read '{path}': {e}") from e


class Document:
    """Common read interface for both access modes."""

    mode: AccessMode

    def __init__(self, ref: str):
        self.ref = ref

    def read_text(self) -> str:
        raise NotImplementedError

    def read_lines(self) -> list[str]:
        return self.read_text().split("\n")

    def get_line(self, index: int) -> str:
        lines = self.read_lines()
        if 0 <= index < len(lines):
            return lines[index]
        return ""

    def line_count(self) -> int:
        return len(self.read_lines())

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.ref!r})"


class EditorBuffer(Document):
    """An open, line-addressable buffer with a cursor."""

    mode = AccessMode.EDITOR

    def __init__(self, text: str = "", ref: str = "untitled.md", path: Optional[Path] = None):
        super().__init__(ref)
        self.path = path
        self.lines = text.split("\n")
        self.cursor: tuple[int, int] = (0, 0)

    @classmethod
    def open(cls, path: Path, ref: Optional[str] = None) -> "EditorBuffer":
        text = read_text_exact(path)
        return cls(text, ref=ref or str(path), path=path)

    def read_text(self) -> str:
        return "\n".join(self.lines)

    def read_lines(self) -> list[str]:
        return list(self.lines)

    def get_line(self, index: int) -> str:
        if 0 <= index < len(self.lines):
            return self.lines[index]
        return ""

    def line_count(self) -> int:
        return len(self.lines)

    def set_cursor(self, line: int, column: int) -> None:
        self.cursor = (line, column)

    def replace_range(self, line: int, start: int, end: int, text: str) -> None:
        """Replace characters ``[start, end)`` of ``line`` with ``text``."""
        if not 0 <= line < len(self.lines):
            raise StorageError(f"Line {line} out of range in {self.ref}")
        current = self.lines[line]
        self.lines[line] = current[:start] + text + current[end:]

    def save(self) -> None:
        if self.path is None:
            return
        try:
            atomic_write_text(self.path, self.read_text())
        except OSError as e:
            raise StorageError(f"Could not write '{self.path}': {e}") from e
        log.debug(f"Saved buffer {self.ref} to '{self.path}'")


class FileDocument(Document):
    """A document only reachable through its persisted file."""

    mode = AccessMode.PERSISTED

    def __init__(self, path: Path, ref: Optional[str] = None):
        super().__init__(ref or str(path))
        self.path = path

    def read_text(self) -> str:
        return read_text_exact(self.path)

    def process(self, fn: Callable[[str], str]) -> str:
        """Atomically read, transform and write the whole document.

        The file is only rewritten when ``fn`` changed the content.
        Returns the resulting text.
        """
        original = self.read_text()
        updated = fn(original)
        if updated != original:
            try:
                atomic_write_text(self.path, updated)
            except OSError as e:
                raise StorageError(f"Could not write '{self.path}': {e}") from e
        return updated

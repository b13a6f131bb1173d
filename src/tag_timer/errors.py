"""Exception hierarchy for tag-timer.

Malformed markers are never raised; decoders return ``None`` instead.
"""

from __future__ import annotations


class TagTimerError(Exception):
    """Base class for every error raised by tag-timer."""


class MarkerNotFoundError(TagTimerError):
    """A timer id no longer resolves anywhere in its document."""

    def __init__(self, timer_id: str, document_ref: str | None = None):
        self.timer_id = timer_id
        self.document_ref = document_ref
        where = f" in {document_ref}" if document_ref else ""
        super().__init__(f"Timer {timer_id} not found{where}")


class StorageError(TagTimerError):
    """Reading or writing a document or the ledger failed."""


class InvalidAdjustmentError(TagTimerError, ValueError):
    """A user-supplied total is negative or not a whole number of seconds."""

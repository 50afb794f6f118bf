"""Runlist ingestion exception hierarchy."""

from __future__ import annotations


class RunlistError(Exception):
    """Base exception for all runlist ingestion errors."""


class InvalidFileFormat(RunlistError):
    """The uploaded file could not be read as a table."""


class EmptyFile(RunlistError):
    """The uploaded file has headers but no data rows (or nothing at all)."""


class AmbiguousMapping(RunlistError):
    """A caller-supplied column mapping does not fit the file it is applied to."""

    def __init__(self, message: str, *, missing_headers: list[str] | None = None,
                 unknown_fields: list[str] | None = None) -> None:
        self.missing_headers = missing_headers or []
        self.unknown_fields = unknown_fields or []
        super().__init__(message)


class RunlistNotFound(RunlistError):
    """No runlist exists with the given id."""

    def __init__(self, runlist_id: str) -> None:
        self.runlist_id = runlist_id
        super().__init__(f"Runlist {runlist_id} not found")


class RunlistStateError(RunlistError):
    """The runlist cannot accept the requested transition."""

"""Exception types raised by tablesync."""

from __future__ import annotations


class SchemaError(ValueError):
    """Invalid schema declaration (raised at schema registration time)."""


class RecordValidationError(ValueError):
    """A table validator rejected the content of a record file."""

"""
Exception taxonomy.

Per-town errors (``InputError``, ``NumericError``, ``GeometryError``) are
recorded by the batch runner and never stop a batch. ``ConfigError`` and
``DowntownValidationError`` are fatal.
"""

from __future__ import annotations

from typing import Optional


class DowntownError(Exception):
    """Base class for per-town failures."""

    kind = "DowntownError"

    def __init__(self, message: str, town_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.town_id = town_id

    @property
    def reason(self) -> str:
        return str(self)


class InputError(DowntownError):
    """Too few points to work with."""

    kind = "InputError"


class NumericError(DowntownError):
    """Degenerate bandwidth or standardization."""

    kind = "NumericError"


class GeometryError(DowntownError):
    """No qualifying cells, no blobs, or a geometry that collapsed."""

    kind = "GeometryError"


class ConfigError(Exception):
    """Invalid parameters or override table."""


class DowntownValidationError(Exception):
    """Raised when one or more output acceptance checks fail."""

"""
Error taxonomy for the indexing subsystem.

Parse and commit failures abort the whole import. Stale references degrade to
the nearest valid line. Storage failures are retried by the index store and
surface as StorageError once the retries are exhausted.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GuideIndexError(Exception):
    """
    Base exception for all indexing errors. Carries an optional context dict
    with details useful for logging and API responses.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ParseError(GuideIndexError):
    pass


class InvalidEncodingError(ParseError):
    def __init__(self, message: str, byte_offset: int, encoding: str):
        super().__init__(message, {"byte_offset": byte_offset, "encoding": encoding})
        self.byte_offset = byte_offset
        self.encoding = encoding


class EmptyDocumentError(ParseError):
    pass


class OutOfRangeError(GuideIndexError):
    """
    Requested line or range lies outside the bounds of the addressed version.
    """

    def __init__(self, message: str, line_count: int, start: Optional[int] = None, end: Optional[int] = None):
        super().__init__(message, {"line_count": line_count, "start": start, "end": end})
        self.line_count = line_count
        self.start = start
        self.end = end


class StaleReferenceError(GuideIndexError):
    """
    A stored line reference no longer fits the current version. `nearest_line`
    is the clamped line callers should fall back to.
    """

    def __init__(self, message: str, line_number: int, nearest_line: int):
        super().__init__(message, {"line_number": line_number, "nearest_line": nearest_line})
        self.line_number = line_number
        self.nearest_line = nearest_line


class StorageError(GuideIndexError):
    pass


class NotFoundError(GuideIndexError):
    pass


class GuideNotReadyError(GuideIndexError):
    pass


class ValidationError(GuideIndexError):
    pass


class CollectionCycleError(ValidationError):
    pass

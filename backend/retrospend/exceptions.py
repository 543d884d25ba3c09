"""Errors raised by the import pipeline.

``ImportQueueError`` and its subclasses are validation failures returned to the
caller synchronously; they never change job state. ``ImportParseError`` is
raised by parsers for whole-file problems and moves the job to FAILED.
"""

from __future__ import annotations


class ImportQueueError(Exception):
    code: str = "BAD_REQUEST"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(ImportQueueError):
    code = "BAD_REQUEST"
    status_code = 400


class ForbiddenError(ImportQueueError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(ImportQueueError):
    code = "NOT_FOUND"
    status_code = 404


class ImportParseError(Exception):
    """The uploaded file could not be turned into transactions."""

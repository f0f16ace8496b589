"""Error taxonomy for live quiz sessions.

Every failure a quiz service reports is a ``QuizError`` with a stable ``kind``
string and a human-readable ``detail``. The API layer turns these into JSON
error bodies; services never let raw store exceptions escape.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    ALREADY_SUBMITTED = "already_submitted"
    VALIDATION_ERROR = "validation_error"
    STORE_FAILURE = "store_failure"


class QuizError(Exception):
    kind: ErrorKind = ErrorKind.STORE_FAILURE
    status_code: int = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "detail": self.detail}


class UnauthorizedError(QuizError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class NotFoundError(QuizError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class InvalidStateError(QuizError):
    kind = ErrorKind.INVALID_STATE
    status_code = 409


class AlreadySubmittedError(QuizError):
    kind = ErrorKind.ALREADY_SUBMITTED
    status_code = 409


class QuizValidationError(QuizError):
    kind = ErrorKind.VALIDATION_ERROR
    status_code = 422


class StoreFailureError(QuizError):
    kind = ErrorKind.STORE_FAILURE
    status_code = 503


__all__ = [
    "ErrorKind",
    "QuizError",
    "UnauthorizedError",
    "NotFoundError",
    "InvalidStateError",
    "AlreadySubmittedError",
    "QuizValidationError",
    "StoreFailureError",
]

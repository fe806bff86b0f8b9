"""Exception hierarchy for the search pipeline.

Exception Hierarchy:
    ObserverError (base)
    ├── ConfigurationError - unusable backend selection
    ├── StorageError - SQLite failures, propagated to callers
    ├── FatalSessionError - synchronous stages could not run at all
    └── StageError - one pipeline stage failed; the rest continue
        ├── BackendTimeout - adapter call exceeded its timeout
        ├── BackendUnavailable - transport or service error
        └── LexicalQueryError - lexical index rejected the query

Stage errors are attributed to the session token that issued the request and
are reported as status text, never raised into the UI loop.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    CFG_INVALID = "CFG_INVALID"
    STORE_FAILED = "STORE_FAILED"
    STORE_MIGRATION_FAILED = "STORE_MIGRATION_FAILED"
    SESSION_FATAL = "SESSION_FATAL"
    STAGE_FAILED = "STAGE_FAILED"
    STAGE_TIMEOUT = "STAGE_TIMEOUT"
    STAGE_UNAVAILABLE = "STAGE_UNAVAILABLE"
    LEXICAL_SYNTAX = "LEXICAL_SYNTAX"
    UNKNOWN = "UNKNOWN"


class ObserverError(Exception):
    """Base exception for all feed reader errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Optional additional context.
        cause: Optional original exception.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ObserverError):
    default_message = "Invalid configuration"
    default_code = ErrorCode.CFG_INVALID


class StorageError(ObserverError):
    default_message = "Storage operation failed"
    default_code = ErrorCode.STORE_FAILED


class FatalSessionError(ObserverError):
    default_message = "Search could not start"
    default_code = ErrorCode.SESSION_FATAL


class StageError(ObserverError):
    """A failure confined to one pipeline stage."""

    default_message = "Search stage failed"
    default_code = ErrorCode.STAGE_FAILED

    def __init__(self, message: str | None = None, *, stage: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.stage = stage
        if stage:
            self.details.setdefault("stage", stage)


class BackendTimeout(StageError):
    default_message = "Backend call timed out"
    default_code = ErrorCode.STAGE_TIMEOUT


class BackendUnavailable(StageError):
    default_message = "Backend unavailable"
    default_code = ErrorCode.STAGE_UNAVAILABLE


class LexicalQueryError(StageError):
    default_message = "Lexical query rejected"
    default_code = ErrorCode.LEXICAL_SYNTAX

"""
Error Taxonomy

Exceptions surfaced by the engine, the coordinator and the aggregator.
Each carries an ErrorCode so it can be turned into an Error record for
notifications and the audit log.

PROPAGATION POLICY:
===================
- ValidationError, NotFoundError, AlreadyCompletedError,
  ConsecutiveAuthorError: never retried, surfaced immediately
- ConflictError: bounded automatic retry (re-read, reattempt)
- ConnectivityError: absorbed into the offline queue
- PermanentRejection: queued op found invalid on replay, surfaced once
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional

from .base import Error, ErrorCode


class ChainSparkError(Exception):
    """Root of every error the package raises on purpose."""

    code: ErrorCode = ErrorCode.INVALID_TEXT

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_error(self) -> Error:
        error = Error(
            code=self.code,
            message=self.message,
            timestamp=datetime.now(timezone.utc),
        )
        if self.entity_id:
            error = error.with_context("entity_id", self.entity_id)
        return error


class ValidationError(ChainSparkError):
    """Bad input shape (fragment text, comment text, identity, config)."""
    code = ErrorCode.INVALID_TEXT

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        code: Optional[ErrorCode] = None
    ):
        super().__init__(message, entity_id)
        if code is not None:
            self.code = code


class NotFoundError(ChainSparkError):
    code = ErrorCode.CHAIN_NOT_FOUND

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        code: Optional[ErrorCode] = None
    ):
        super().__init__(message, entity_id)
        if code is not None:
            self.code = code


class AlreadyCompletedError(ChainSparkError):
    code = ErrorCode.CHAIN_ALREADY_COMPLETED


class ConsecutiveAuthorError(ChainSparkError):
    code = ErrorCode.CONSECUTIVE_AUTHOR


class ConflictError(ChainSparkError):
    """Lost an optimistic-concurrency race. Recoverable by refetch + retry."""
    code = ErrorCode.VERSION_CONFLICT


class ConnectivityError(ChainSparkError):
    """Remote store unreachable. Recoverable by queuing."""
    code = ErrorCode.REMOTE_UNREACHABLE


class PermanentRejection(ChainSparkError):
    """A queued operation was found invalid when replayed against Remote."""
    code = ErrorCode.PERMANENT_REJECTION

    def __init__(self, message: str, entity_id: Optional[str] = None,
                 op_id: Optional[str] = None,
                 cause: Optional[ChainSparkError] = None):
        super().__init__(message, entity_id)
        self.op_id = op_id
        self.cause = cause

    def to_error(self) -> Error:
        error = super().to_error()
        if self.op_id:
            error = error.with_context("op_id", self.op_id)
        if self.cause is not None:
            error = error.with_context("cause", self.cause.code.name)
        return error


def is_retryable(exc: BaseException) -> bool:
    """Only lost races and unreachable remotes are worth another attempt."""
    return isinstance(exc, (ConflictError, ConnectivityError))

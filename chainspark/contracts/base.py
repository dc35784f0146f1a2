"""
Base Contracts and Shared Types

Foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.
No behavior, no side effects, no dependencies.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Tuple
from enum import Enum, auto
import uuid


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes.
    Every failure the engine can surface is enumerated here.
    """
    # Input shape
    INVALID_TEXT = auto()
    INVALID_IDENTITY = auto()
    INVALID_CONFIGURATION = auto()

    # Lookup
    CHAIN_NOT_FOUND = auto()
    IDEA_NOT_FOUND = auto()

    # Chain invariants
    CHAIN_ALREADY_COMPLETED = auto()
    CONSECUTIVE_AUTHOR = auto()

    # Concurrency & connectivity
    VERSION_CONFLICT = auto()
    REMOTE_UNREACHABLE = auto()

    # Offline queue
    PERMANENT_REJECTION = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data: they travel inside notifications and audit entries.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def with_context(self, key: str, value: str) -> Error:
        """Return new Error with additional context (immutable)."""
        return Error(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            context=self.context + ((key, value),)
        )


# =============================================================================
# TEMPORAL TYPES
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()


# =============================================================================
# IDENTIFIERS
# =============================================================================

def new_id(prefix: str) -> str:
    """Client-generated opaque identifier, e.g. ``spark_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def new_op_id() -> str:
    """Idempotency key for a single write operation."""
    return f"op_{uuid.uuid4().hex}"

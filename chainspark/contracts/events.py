"""
Event Contracts

Domain events the engine and coordinator emit, plus the audit and
metric records collected by the observability layer.

Each domain event exposes an event_key: the identity of the LOGICAL
event. Two emissions with the same key are the same event and must
reach the UI at most once. An event with a mark_version supersedes an
earlier one under the same key only when its version is higher.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .base import Timestamp, Error


# =============================================================================
# DOMAIN EVENTS
# =============================================================================

@dataclass(frozen=True)
class ChainCompleted:
    chain_id: str
    timestamp: Timestamp = field(default_factory=Timestamp.now, compare=False)

    @property
    def event_key(self) -> str:
        return f"chain_completed:{self.chain_id}"

    @property
    def mark_version(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class ContributionRejected:
    chain_id: str
    op_id: str
    reason: Error
    timestamp: Timestamp = field(default_factory=Timestamp.now, compare=False)

    @property
    def event_key(self) -> str:
        return f"contribution_rejected:{self.op_id}"

    @property
    def mark_version(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class Reconciled:
    chain_id: str
    remote_version: int
    timestamp: Timestamp = field(default_factory=Timestamp.now, compare=False)

    @property
    def event_key(self) -> str:
        return f"reconciled:{self.chain_id}"

    @property
    def mark_version(self) -> Optional[int]:
        return self.remote_version


# =============================================================================
# AUDIT & METRICS
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    CONTRIBUTION = "contribution"
    SYNC = "sync"
    ENGAGEMENT = "engagement"
    NOTIFICATION = "notification"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str
    action: str
    entity_id: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

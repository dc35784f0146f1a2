"""
Sync Contracts

Types exchanged between the Sync Coordinator and the stores.

A PendingOperation is a write that has not yet been confirmed by the
Remote Store. It is identified by its client-generated op_id, which is
also the idempotency key the Remote Store uses to ignore replays.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .base import Timestamp, Error


class OperationKind(Enum):
    CREATE_CHAIN = "create_chain"
    APPEND_FRAGMENT = "append_fragment"
    REACT = "react"
    CLEAR_REACTION = "clear_reaction"
    COMMENT = "comment"


@dataclass(frozen=True)
class PendingOperation:
    """
    One write waiting for Remote confirmation.

    base_version pins the write to the document version the caller read;
    None means the operation may be rebased onto whatever Remote holds.
    queued is True once an attempt failed for connectivity reasons and the
    op now lives in the offline queue.
    """
    op_id: str
    entity_id: str
    kind: OperationKind
    payload: Dict[str, Any] = field(default_factory=dict, hash=False)
    base_version: Optional[int] = None
    created_at: Timestamp = field(default_factory=Timestamp.now)
    queued: bool = False

    def as_queued(self) -> PendingOperation:
        return replace(self, queued=True)

    def unpinned(self) -> PendingOperation:
        return replace(self, base_version=None)


@dataclass(frozen=True)
class SyncRecord:
    """
    Reconciliation state for one entity.

    Destroyed once pending_ops drains and the versions match.
    """
    entity_id: str
    local_version: int
    remote_version: int
    pending_ops: Tuple[PendingOperation, ...] = field(default_factory=tuple)

    @property
    def is_settled(self) -> bool:
        return not self.pending_ops and self.local_version == self.remote_version

    @property
    def queued_ops(self) -> Tuple[PendingOperation, ...]:
        return tuple(op for op in self.pending_ops if op.queued)

    def with_ops(self, ops: Tuple[PendingOperation, ...], remote_version: Optional[int] = None) -> SyncRecord:
        remote = self.remote_version if remote_version is None else remote_version
        return SyncRecord(
            entity_id=self.entity_id,
            local_version=remote + len(ops),
            remote_version=remote,
            pending_ops=ops,
        )


@dataclass(frozen=True)
class PersistResult:
    """What the coordinator hands back after persisting one operation."""
    document: Optional[Dict[str, Any]]
    queued: bool
    op_id: str


@dataclass(frozen=True)
class RemoteWriteResult:
    """
    Outcome of a conditioned write.

    success=False with a VERSION_CONFLICT error means the expected version
    no longer matched. applied=False on success means the idempotency key
    had already been applied and the write was a no-op.
    """
    success: bool
    version: int = 0
    applied: bool = True
    document: Optional[Dict[str, Any]] = None
    error: Optional[Error] = None

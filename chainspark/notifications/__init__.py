"""
Notification Capability

What the UI receives:
    on_chain_completed(chain_id)
    on_contribution_rejected(chain_id, reason)
    on_reconciled(chain_id)

GUARANTEE: each LOGICAL event reaches the sink at most once, no matter
how many code paths (own write, change feed, redelivery, replay) observe
it. The dispatcher claims a mark keyed by the event before it calls the
sink.

MARKS:
======
The dispatcher never writes storage itself. Marks are claimed through a
ledger: the Sync Coordinator in a wired client (durable, in the Local
Store under ``announced:``), or InMemoryMarks for a standalone
dispatcher. One mark per key; a versioned event replaces the mark of an
older version instead of adding a new one.
"""

from __future__ import annotations
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from ..contracts.base import Error
from ..contracts.events import (
    AuditEventType, ChainCompleted, ContributionRejected, Reconciled
)
from ..observability import ObservabilityHub

logger = logging.getLogger(__name__)

MARK_PREFIX = "announced:"


def mark_value(claimed_at: str, version: Optional[int] = None) -> Dict[str, Any]:
    return {'claimed_at': claimed_at, 'version': version}


def supersedes(existing: Optional[Dict[str, Any]], version: Optional[int]) -> bool:
    """True when a claim for version may replace the existing mark."""
    if existing is None:
        return True
    if version is None:
        return False
    return version > (existing.get('version') or 0)


class InMemoryMarks:
    """Process-local mark ledger for a dispatcher with no coordinator."""

    def __init__(self):
        self._marks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def claim_mark(self, event_key: str, claimed_at: str, version: Optional[int] = None) -> bool:
        with self._lock:
            if not supersedes(self._marks.get(event_key), version):
                return False
            self._marks[event_key] = mark_value(claimed_at, version)
        return True

    def has_mark(self, event_key: str) -> bool:
        with self._lock:
            return event_key in self._marks

    def mark_keys(self) -> List[str]:
        with self._lock:
            return sorted(MARK_PREFIX + key for key in self._marks)


class NotificationSink:
    """UI-side receiver. Override what you need."""

    def on_chain_completed(self, chain_id: str) -> None:
        pass

    def on_contribution_rejected(self, chain_id: str, reason: Error) -> None:
        pass

    def on_reconciled(self, chain_id: str) -> None:
        pass


class RecordingSink(NotificationSink):
    """Keeps every notification in arrival order (tests, polling UIs)."""

    def __init__(self):
        self.events: List[Tuple[str, str]] = []
        self.completed: List[str] = []
        self.rejected: List[Tuple[str, Error]] = []
        self.reconciled: List[str] = []
        self._lock = threading.Lock()

    def on_chain_completed(self, chain_id: str) -> None:
        with self._lock:
            self.completed.append(chain_id)
            self.events.append(("chain_completed", chain_id))

    def on_contribution_rejected(self, chain_id: str, reason: Error) -> None:
        with self._lock:
            self.rejected.append((chain_id, reason))
            self.events.append(("contribution_rejected", chain_id))

    def on_reconciled(self, chain_id: str) -> None:
        with self._lock:
            self.reconciled.append(chain_id)
            self.events.append(("reconciled", chain_id))


class LoggingSink(NotificationSink):
    def on_chain_completed(self, chain_id: str) -> None:
        logger.info("chain %s completed", chain_id)

    def on_contribution_rejected(self, chain_id: str, reason: Error) -> None:
        logger.warning("contribution to %s rejected: %s", chain_id, reason.message)

    def on_reconciled(self, chain_id: str) -> None:
        logger.info("chain %s reconciled", chain_id)


class NotificationDispatcher:
    """
    At-most-once gate in front of a NotificationSink.

    marks is any ledger with claim_mark(event_key, claimed_at, version)
    and has_mark(event_key).
    """

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        marks=None,
        observability: Optional[ObservabilityHub] = None
    ):
        self._sink = sink or NotificationSink()
        self._marks = marks if marks is not None else InMemoryMarks()
        self._observability = observability or ObservabilityHub()

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    def _claim(self, event) -> bool:
        return self._marks.claim_mark(
            event.event_key, event.timestamp.to_iso(), event.mark_version
        )

    def already_announced(self, event_key: str) -> bool:
        return self._marks.has_mark(event_key)

    def chain_completed(self, event: ChainCompleted) -> bool:
        if not self._claim(event):
            logger.debug("suppressed repeat completion for %s", event.chain_id)
            return False
        self._record("chain_completed", event.chain_id)
        self._sink.on_chain_completed(event.chain_id)
        return True

    def contribution_rejected(self, event: ContributionRejected) -> bool:
        if not self._claim(event):
            return False
        self._record("contribution_rejected", event.chain_id, op_id=event.op_id,
                     reason=event.reason.code.name)
        self._sink.on_contribution_rejected(event.chain_id, event.reason)
        return True

    def reconciled(self, event: Reconciled) -> bool:
        if not self._claim(event):
            return False
        self._record("reconciled", event.chain_id, remote_version=event.remote_version)
        self._sink.on_reconciled(event.chain_id)
        return True

    def _record(self, action: str, chain_id: str, **metadata: object):
        self._observability.audit(
            layer="notifications",
            action=action,
            event_type=AuditEventType.NOTIFICATION,
            entity_id=chain_id,
            **metadata
        )


__all__ = [
    'NotificationSink',
    'RecordingSink',
    'LoggingSink',
    'NotificationDispatcher',
    'InMemoryMarks',
    'MARK_PREFIX',
    'mark_value',
    'supersedes',
]

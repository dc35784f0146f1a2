"""
Sync Coordinator

RESPONSIBILITY: Keep one client's view of each document consistent
between the Remote Store (source of truth when reachable) and the Local
Store (durable cache and offline queue).

WHAT THIS LAYER MUST NOT DO:
============================
- Decide chain rules on its own (it re-runs domain transforms)
- Be bypassed: it is the ONLY writer of Local and the ONLY issuer of
  conditioned writes to Remote

PROTOCOL:
=========
1. persist(op): the op is written ahead into the entity's SyncRecord,
   then applied to Remote with a conditioned update carrying op_id as
   idempotency key. Success -> Local mirrors Remote. ConnectivityError ->
   the op stays in the record marked queued and the caller gets
   queued=True. Any other failure removes the op and propagates.
2. reconcile_remote(doc): change-feed handler. Local is overwritten with
   the newer Remote document, ops Remote already applied are dropped,
   and queued ops Remote has not seen are replayed in order.
3. Replay: each queued op is rebased onto the freshest Remote document.
   A transient failure stops the pass; a domain error rolls the op back
   and surfaces exactly one ContributionRejected.

LOCAL KEYS:
===========
    doc:{id}         last confirmed Remote document
    sync:{id}        SyncRecord (absent once settled)
    announced:{key}  notification mark, one per logical event key
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set
import logging
import threading

from ..contracts.base import ErrorCode
from ..contracts.errors import (
    ChainSparkError, ConflictError, ConnectivityError, PermanentRejection,
    ValidationError
)
from ..contracts.events import AuditEventType, ContributionRejected, Reconciled
from ..contracts.sync import PendingOperation, PersistResult, SyncRecord
from ..domain.operations import apply_operation, project
from ..domain.rules import ChainRules, DEFAULT_RULES
from ..domain.serialization import (
    applied_ops, document_body, sync_record_from_dict, sync_record_to_dict
)
from ..notifications import (
    MARK_PREFIX, NotificationDispatcher, NotificationSink, mark_value, supersedes
)
from ..observability import ObservabilityHub
from ..storage.local import LocalStore
from ..storage.remote import RemoteStore

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Listener = Callable[[Document, Optional[Document]], None]

DOC_PREFIX = "doc:"
SYNC_PREFIX = "sync:"


@dataclass
class SyncConfig:
    max_conflict_retries: int = 3
    collection: str = "sparks"

    def __post_init__(self):
        if self.max_conflict_retries < 0:
            raise ValidationError(
                "max_conflict_retries must be >= 0",
                code=ErrorCode.INVALID_CONFIGURATION
            )


class SyncCoordinator:
    """
    Reconciles Local and Remote for one client.

    The lock only guards Local read-modify-write sections; it is never
    held across a Remote call, since Remote may call straight back into
    reconcile_remote() from its change feed.
    """

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalStore,
        sink: Optional[NotificationSink] = None,
        rules: ChainRules = DEFAULT_RULES,
        config: Optional[SyncConfig] = None,
        observability: Optional[ObservabilityHub] = None
    ):
        self._remote = remote
        self._local = local
        self._rules = rules
        self._config = config or SyncConfig()
        self._observability = observability or ObservabilityHub()
        self._dispatcher = NotificationDispatcher(
            sink=sink, marks=self, observability=self._observability
        )
        self._lock = threading.RLock()
        self._replaying: Set[str] = set()
        self._listeners: List[Listener] = []

        self._unsubscribe_feed = remote.subscribe(self._config.collection, self.reconcile_remote)
        self._unsubscribe_connectivity = remote.subscribe_connectivity(self._on_connectivity)

    @property
    def collection(self) -> str:
        return self._config.collection

    @property
    def remote_connected(self) -> bool:
        return self._remote.connected

    def close(self):
        self._unsubscribe_feed()
        self._unsubscribe_connectivity()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Listener gets (document, previous) each time the confirmed copy
        of a document advances. previous is None on first sighting.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    # =========================================================================
    # NOTIFICATION MARKS
    # =========================================================================

    def claim_mark(self, event_key: str, claimed_at: str, version: Optional[int] = None) -> bool:
        """
        Durably claim the right to announce event_key. False when it was
        already claimed (for version, or a newer one). A versioned claim
        overwrites the older mark, so each key holds one entry.
        """
        key = MARK_PREFIX + event_key
        with self._lock:
            if not supersedes(self._local.get(key), version):
                return False
            self._local.set(key, mark_value(claimed_at, version))
        return True

    def has_mark(self, event_key: str) -> bool:
        with self._lock:
            return self._local.get(MARK_PREFIX + event_key) is not None

    def mark_keys(self) -> List[str]:
        with self._lock:
            return self._local.keys(MARK_PREFIX)

    # =========================================================================
    # LOCAL STATE
    # =========================================================================

    def _confirmed(self, entity_id: str) -> Optional[Document]:
        return self._local.get(DOC_PREFIX + entity_id)

    def _record(self, entity_id: str) -> Optional[SyncRecord]:
        raw = self._local.get(SYNC_PREFIX + entity_id)
        return sync_record_from_dict(raw) if raw else None

    def _save_record(self, record: SyncRecord):
        if record.is_settled:
            self._local.delete(SYNC_PREFIX + record.entity_id)
        else:
            self._local.set(SYNC_PREFIX + record.entity_id, sync_record_to_dict(record))

    def _store_confirmed(self, doc: Document) -> Optional[Document]:
        """
        Keep doc if it is not older than what Local holds. Returns the
        previous copy when the confirmed version advanced, else None.
        Must be called with the lock held.
        """
        entity_id = doc['id']
        previous = self._confirmed(entity_id)
        if previous is not None and previous['version'] >= doc['version']:
            return None
        self._local.set(DOC_PREFIX + entity_id, doc)
        return previous if previous is not None else {}

    def _settle(self, doc: Document, extra_op: Optional[str] = None) -> Optional[SyncRecord]:
        """Drop ops Remote has applied; must be called with the lock held."""
        record = self._record(doc['id'])
        if record is None:
            return None
        done = set(applied_ops(doc))
        if extra_op:
            done.add(extra_op)
        remaining = tuple(op for op in record.pending_ops if op.op_id not in done)
        record = record.with_ops(remaining, remote_version=max(record.remote_version, doc['version']))
        self._save_record(record)
        return record

    def sync_record(self, entity_id: str) -> Optional[SyncRecord]:
        with self._lock:
            return self._record(entity_id)

    def pending_operations(self, entity_id: str):
        record = self.sync_record(entity_id)
        return record.pending_ops if record else ()

    def pending_count(self) -> int:
        with self._lock:
            return sum(
                len(self._local.get(key).get('pending_ops', ()))
                for key in self._local.keys(SYNC_PREFIX)
            )

    def local_projection(self, entity_id: str) -> Optional[Document]:
        """Confirmed copy with every still-valid pending op applied on top."""
        with self._lock:
            doc = self._confirmed(entity_id)
            record = self._record(entity_id)
        for op in (record.pending_ops if record else ()):
            if doc is not None and op.op_id in applied_ops(doc):
                continue
            try:
                doc = project(doc, op, self._rules)
            except ChainSparkError as e:
                logger.debug("pending %s on %s no longer applies locally: %s",
                             op.kind.value, entity_id, e.message)
        return doc

    # =========================================================================
    # READS
    # =========================================================================

    def load(self, entity_id: str) -> Optional[Document]:
        """
        Remote truth when reachable (reconciled into Local first), else
        the local projection.
        """
        try:
            doc = self._remote.get(self.collection, entity_id)
        except ConnectivityError:
            logger.debug("remote unreachable, serving %s from local", entity_id)
            return self.local_projection(entity_id)

        if doc is None:
            record = self.sync_record(entity_id)
            if record and record.queued_ops:
                self._replay(entity_id)
            return self.local_projection(entity_id)

        self.reconcile_remote(doc)
        with self._lock:
            confirmed = self._confirmed(entity_id)
        return confirmed if confirmed is not None else doc

    def list_documents(self) -> List[Document]:
        """Every known document, pending local writes applied on top."""
        try:
            docs = {d['id']: d for d in self._remote.list_documents(self.collection)}
        except ConnectivityError:
            with self._lock:
                ids = {k[len(DOC_PREFIX):] for k in self._local.keys(DOC_PREFIX)}
            docs = {}
            for entity_id in ids:
                doc = self.local_projection(entity_id)
                if doc is not None:
                    docs[entity_id] = doc

        with self._lock:
            pending_ids = [k[len(SYNC_PREFIX):] for k in self._local.keys(SYNC_PREFIX)]
        for entity_id in pending_ids:
            projected = self.local_projection(entity_id)
            if projected is not None:
                docs[entity_id] = projected
        return list(docs.values())

    # =========================================================================
    # WRITES
    # =========================================================================

    def persist(self, op: PendingOperation) -> PersistResult:
        """
        Resolve op to committed or queued. Never drops it silently: the op
        is durable in Local before Remote is contacted.
        """
        self._write_ahead(op)
        try:
            doc = self._apply_remote(op, pinned=op.base_version is not None)
        except ConnectivityError:
            self._mark_queued(op)
            return PersistResult(
                document=self.local_projection(op.entity_id),
                queued=True,
                op_id=op.op_id,
            )
        except Exception:
            self._discard(op.entity_id, op.op_id)
            raise

        self._confirm(doc, op.op_id)
        return PersistResult(document=doc, queued=False, op_id=op.op_id)

    def _write_ahead(self, op: PendingOperation):
        with self._lock:
            record = self._record(op.entity_id)
            if record is None:
                confirmed = self._confirmed(op.entity_id)
                version = confirmed['version'] if confirmed else 0
                record = SyncRecord(entity_id=op.entity_id, local_version=version, remote_version=version)
            self._save_record(record.with_ops(record.pending_ops + (op,)))

    def _mark_queued(self, op: PendingOperation):
        queued = op.as_queued().unpinned()
        with self._lock:
            record = self._record(op.entity_id)
            if record is None or all(p.op_id != op.op_id for p in record.pending_ops):
                return
            ops = tuple(queued if p.op_id == op.op_id else p for p in record.pending_ops)
            self._save_record(record.with_ops(ops))
        logger.info("remote unreachable, queued %s %s on %s", op.kind.value, op.op_id, op.entity_id)
        self._observability.increment("ops_queued_total", kind=op.kind.value)
        self._observability.gauge("pending_ops", self.pending_count())
        self._observability.audit(
            layer="sync", action="op_queued", event_type=AuditEventType.SYNC,
            entity_id=op.entity_id, op_id=op.op_id, kind=op.kind.value
        )

    def _discard(self, entity_id: str, op_id: str):
        with self._lock:
            record = self._record(entity_id)
            if record is None:
                return
            remaining = tuple(p for p in record.pending_ops if p.op_id != op_id)
            self._save_record(record.with_ops(remaining))

    def _confirm(self, doc: Document, op_id: Optional[str] = None):
        with self._lock:
            previous = self._store_confirmed(doc)
            self._settle(doc, extra_op=op_id)
        if previous is not None:
            self._notify_listeners(doc, previous or None)

    def _apply_remote(self, op: PendingOperation, pinned: bool) -> Document:
        """
        Rebase op onto the current Remote document and write it there.

        Pinned ops get a single attempt: any version movement since the
        caller's read is a ConflictError for the caller to handle.
        Unpinned ops re-read and retry up to max_conflict_retries times.
        """
        attempts = 1 if pinned else self._config.max_conflict_retries + 1
        for attempt in range(attempts):
            current = self._remote.get(self.collection, op.entity_id)
            if current is not None and op.op_id in applied_ops(current):
                return current
            if pinned and current is not None and current['version'] != op.base_version:
                self._lost_race(op, attempt)
                raise ConflictError(
                    f"{op.entity_id} moved from version {op.base_version} to {current['version']}",
                    entity_id=op.entity_id
                )

            body = apply_operation(current, op, self._rules)

            if current is None:
                try:
                    self._remote.create(
                        self.collection, body,
                        doc_id=op.entity_id, idempotency_key=op.op_id
                    )
                except ConflictError:
                    self._lost_race(op, attempt)
                    continue
                return self._remote.get(self.collection, op.entity_id)

            if body == document_body(current):
                return current

            result = self._remote.update(
                self.collection, op.entity_id, body,
                expected_version=current['version'],
                idempotency_key=op.op_id
            )
            if result.success:
                return result.document or self._remote.get(self.collection, op.entity_id)

            self._lost_race(op, attempt)
            if pinned:
                raise ConflictError(result.error.message, entity_id=op.entity_id)

        raise ConflictError(
            f"gave up on {op.kind.value} after {attempts} conflicting attempts",
            entity_id=op.entity_id
        )

    def _lost_race(self, op: PendingOperation, attempt: int):
        logger.debug("version conflict on %s (attempt %d)", op.entity_id, attempt + 1)
        self._observability.increment("conflict_retries_total")

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def reconcile_remote(self, doc: Document) -> None:
        """
        Change-feed handler. Stale deliveries are ignored; a redelivery of
        the same version changes nothing.
        """
        entity_id = doc['id']
        with self._lock:
            previous = self._store_confirmed(doc)
            if previous is None:
                current = self._confirmed(entity_id)
                if current is not None and current['version'] > doc['version']:
                    return
            before = self._record(entity_id)
            had_queued = bool(before and before.queued_ops)
            record = self._settle(doc)
            still_queued = bool(record and record.queued_ops)
            replaying = entity_id in self._replaying

        self._observability.increment("reconciliations_total")
        if previous is not None:
            self._notify_listeners(doc, previous or None)

        if still_queued and not replaying:
            self._replay(entity_id)
        elif had_queued and not still_queued and not replaying:
            self._announce_reconciled(entity_id, doc['version'])

    def flush_pending(self) -> int:
        """Replay every queued op; returns how many ops are still pending."""
        with self._lock:
            entity_ids = [k[len(SYNC_PREFIX):] for k in self._local.keys(SYNC_PREFIX)]
        for entity_id in entity_ids:
            record = self.sync_record(entity_id)
            if record and record.queued_ops:
                self._replay(entity_id)
        remaining = self.pending_count()
        self._observability.gauge("pending_ops", remaining)
        return remaining

    def _on_connectivity(self, connected: bool):
        if connected:
            logger.info("remote reachable again, flushing offline queue")
            self.flush_pending()

    def _replay(self, entity_id: str) -> bool:
        """
        Replay queued ops for one entity, oldest first. Returns True when
        the queue drained.
        """
        with self._lock:
            if entity_id in self._replaying:
                return False
            self._replaying.add(entity_id)

        confirmed_any = False
        try:
            while True:
                record = self.sync_record(entity_id)
                queue = record.queued_ops if record else ()
                if not queue:
                    break
                op = queue[0]
                try:
                    doc = self._apply_remote(op, pinned=False)
                except (ConnectivityError, ConflictError) as e:
                    logger.info("replay of %s on %s paused: %s", op.op_id, entity_id, e.message)
                    break
                except ChainSparkError as e:
                    self._rollback(op, e)
                    continue
                self._confirm(doc, op.op_id)
                confirmed_any = True
                self._observability.increment("ops_replayed_total", kind=op.kind.value)
                self._observability.audit(
                    layer="sync", action="op_replayed", event_type=AuditEventType.SYNC,
                    entity_id=entity_id, op_id=op.op_id, version=doc['version']
                )
        finally:
            with self._lock:
                self._replaying.discard(entity_id)

        record = self.sync_record(entity_id)
        drained = not (record and record.queued_ops)
        # rollbacks alone surface as ContributionRejected, not Reconciled
        if drained and confirmed_any:
            with self._lock:
                confirmed = self._confirmed(entity_id)
            self._announce_reconciled(entity_id, confirmed['version'] if confirmed else 0)
        return drained

    def _rollback(self, op: PendingOperation, cause: ChainSparkError):
        """
        Revert Local to the last confirmed Remote state for this op and
        surface a single rejection.
        """
        self._discard(op.entity_id, op.op_id)
        try:
            fresh = self._remote.get(self.collection, op.entity_id)
        except ConnectivityError:
            fresh = None
        if fresh is not None:
            self._confirm(fresh)

        rejection = PermanentRejection(
            f"queued {op.kind.value} rejected: {cause.message}",
            entity_id=op.entity_id, op_id=op.op_id, cause=cause
        )
        logger.warning("rolled back %s on %s: %s", op.op_id, op.entity_id, cause.message)
        self._observability.increment("ops_rejected_total", kind=op.kind.value)
        self._observability.audit(
            layer="sync", action="op_rejected", event_type=AuditEventType.ERROR,
            entity_id=op.entity_id, op_id=op.op_id, cause=cause.code.name
        )
        self._dispatcher.contribution_rejected(ContributionRejected(
            chain_id=op.entity_id,
            op_id=op.op_id,
            reason=rejection.to_error(),
        ))

    def _announce_reconciled(self, entity_id: str, version: int):
        self._dispatcher.reconciled(Reconciled(chain_id=entity_id, remote_version=version))

    def _notify_listeners(self, doc: Document, previous: Optional[Document]):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(doc, previous)


__all__ = ['SyncCoordinator', 'SyncConfig', 'DOC_PREFIX', 'SYNC_PREFIX']

"""
Remote Store Adapter
====================

Networked document store with optimistic-concurrency writes and a
change-subscription feed.

CONTRACT:
- create(collection, doc)                     -> id
- update(collection, id, patch, expected_version, idempotency_key)
                                              -> RemoteWriteResult (ok | VersionConflict)
- get(collection, id)                         -> doc | None
- list_documents(collection)                  -> [doc]
- subscribe(collection, callback)             -> unsubscribe()
- connected / subscribe_connectivity(callback)

Every call on an unreachable store raises ConnectivityError.
An update whose idempotency key was already applied is a no-op.
"""

from __future__ import annotations
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..contracts.base import Error, ErrorCode, new_id
from ..contracts.errors import ConflictError, ConnectivityError, NotFoundError
from ..contracts.sync import RemoteWriteResult
from ..domain.serialization import document_body

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
ChangeCallback = Callable[[Document], None]
ConnectivityCallback = Callable[[bool], None]
Unsubscribe = Callable[[], None]


class RemoteStore:
    """
    Abstract remote document store.

    Implementations MUST support conditioned updates: it is the one hard
    structural requirement on any backing store.
    """

    def __init__(self):
        self._connectivity_listeners: List[ConnectivityCallback] = []
        self._listener_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    def create(
        self,
        collection: str,
        doc: Document,
        doc_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        raise NotImplementedError

    def update(
        self,
        collection: str,
        doc_id: str,
        patch: Document,
        expected_version: int,
        idempotency_key: Optional[str] = None
    ) -> RemoteWriteResult:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def list_documents(self, collection: str) -> List[Document]:
        raise NotImplementedError

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        raise NotImplementedError

    def subscribe_connectivity(self, callback: ConnectivityCallback) -> Unsubscribe:
        """Callback receives the new reachability on every change."""
        with self._listener_lock:
            self._connectivity_listeners.append(callback)

        def unsubscribe():
            with self._listener_lock:
                if callback in self._connectivity_listeners:
                    self._connectivity_listeners.remove(callback)

        return unsubscribe

    def _announce_connectivity(self, connected: bool):
        with self._listener_lock:
            listeners = list(self._connectivity_listeners)
        for listener in listeners:
            listener(connected)


def _version_conflict(doc_id: str, expected: int, actual: int) -> RemoteWriteResult:
    return RemoteWriteResult(
        success=False,
        version=actual,
        applied=False,
        error=Error(
            code=ErrorCode.VERSION_CONFLICT,
            message=f"expected version {expected}, found {actual}",
            timestamp=datetime.now(timezone.utc),
            context=(("doc_id", doc_id),),
        ),
    )


# =============================================================================
# IN-MEMORY REMOTE (Reference Implementation)
# =============================================================================

class InMemoryRemoteStore(RemoteStore):
    """
    Shared in-process document store.

    - Version starts at 1 on create and grows by 1 per applied update
    - Applied idempotency keys are kept per document in `applied_ops`
    - Reads and notifications hand out deep copies
    - Change notifications are delivered after the store lock is released;
      with auto_deliver=False they are buffered until deliver_pending()
    """

    def __init__(self, connected: bool = True, auto_deliver: bool = True):
        super().__init__()
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._connected = connected
        self._auto_deliver = auto_deliver
        self._undelivered: List[tuple] = []
        self._write_count = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def write_count(self) -> int:
        return self._write_count

    def set_connected(self, connected: bool):
        with self._lock:
            changed = connected != self._connected
            self._connected = connected
        if changed:
            logger.info("remote store %s", "reachable" if connected else "unreachable")
            self._announce_connectivity(connected)

    def _ensure_connected(self):
        if not self._connected:
            raise ConnectivityError("remote store unreachable")

    def create(
        self,
        collection: str,
        doc: Document,
        doc_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        self._ensure_connected()
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            doc_id = doc_id or doc.get('id') or new_id("doc")
            existing = docs.get(doc_id)
            if existing is not None:
                if idempotency_key and idempotency_key in existing['applied_ops']:
                    return doc_id
                raise ConflictError(f"document {doc_id} already exists", entity_id=doc_id)

            stored = document_body(copy.deepcopy(doc))
            stored['id'] = doc_id
            stored['version'] = 1
            stored['applied_ops'] = [idempotency_key] if idempotency_key else []
            docs[doc_id] = stored
            self._write_count += 1
            snapshot = copy.deepcopy(stored)

        self._publish(collection, snapshot)
        return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        patch: Document,
        expected_version: int,
        idempotency_key: Optional[str] = None
    ) -> RemoteWriteResult:
        self._ensure_connected()
        with self._lock:
            current = self._collections.get(collection, {}).get(doc_id)
            if current is None:
                raise NotFoundError(f"document {doc_id} not found", entity_id=doc_id)

            if idempotency_key and idempotency_key in current['applied_ops']:
                return RemoteWriteResult(
                    success=True,
                    version=current['version'],
                    applied=False,
                    document=copy.deepcopy(current),
                )

            if current['version'] != expected_version:
                return _version_conflict(doc_id, expected_version, current['version'])

            updated = copy.deepcopy(current)
            updated.update(document_body(copy.deepcopy(patch)))
            updated['id'] = doc_id
            updated['version'] = current['version'] + 1
            if idempotency_key:
                updated['applied_ops'].append(idempotency_key)
            self._collections[collection][doc_id] = updated
            self._write_count += 1
            snapshot = copy.deepcopy(updated)

        self._publish(collection, snapshot)
        return RemoteWriteResult(
            success=True,
            version=snapshot['version'],
            applied=True,
            document=copy.deepcopy(snapshot),
        )

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._ensure_connected()
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def list_documents(self, collection: str) -> List[Document]:
        self._ensure_connected()
        with self._lock:
            return [copy.deepcopy(d) for d in self._collections.get(collection, {}).values()]

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(collection, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(collection, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def redeliver(self, collection: str, doc_id: str):
        """Push the current document to subscribers again (duplicate delivery)."""
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            snapshot = copy.deepcopy(doc) if doc is not None else None
        if snapshot is not None:
            self._publish(collection, snapshot)

    def deliver_pending(self) -> int:
        """Flush buffered notifications; returns how many were delivered."""
        with self._lock:
            pending, self._undelivered = self._undelivered, []
        for collection, snapshot in pending:
            self._deliver(collection, snapshot)
        return len(pending)

    def _publish(self, collection: str, snapshot: Document):
        if not self._auto_deliver:
            with self._lock:
                self._undelivered.append((collection, snapshot))
            return
        self._deliver(collection, snapshot)

    def _deliver(self, collection: str, snapshot: Document):
        with self._lock:
            callbacks = list(self._subscribers.get(collection, []))
        for callback in callbacks:
            try:
                callback(copy.deepcopy(snapshot))
            except Exception:
                # one broken subscriber must not hide the write from the others
                logger.exception("change subscriber failed for %s/%s", collection, snapshot.get('id'))


# =============================================================================
# PER-CLIENT CONNECTION
# =============================================================================

class RemoteConnection(RemoteStore):
    """
    One client's link to a shared remote store, with its own reachability.

    While disconnected every call raises ConnectivityError and change
    notifications from the backing store are dropped, as a client that is
    offline misses pushes.
    """

    def __init__(self, backing: RemoteStore, connected: bool = True):
        super().__init__()
        self._backing = backing
        self._connected = connected
        self._lock = threading.Lock()
        self._backing.subscribe_connectivity(self._on_backing_connectivity)

    @property
    def connected(self) -> bool:
        return self._connected and self._backing.connected

    def _on_backing_connectivity(self, connected: bool):
        if self._connected:
            self._announce_connectivity(connected)

    def set_connected(self, connected: bool):
        with self._lock:
            changed = connected != self._connected
            self._connected = connected
        if changed:
            logger.info("client link %s", "restored" if connected else "lost")
            self._announce_connectivity(connected)

    def _ensure_connected(self):
        if not self._connected:
            raise ConnectivityError("remote store unreachable from this client")

    def create(self, collection, doc, doc_id=None, idempotency_key=None) -> str:
        self._ensure_connected()
        return self._backing.create(collection, doc, doc_id=doc_id, idempotency_key=idempotency_key)

    def update(self, collection, doc_id, patch, expected_version, idempotency_key=None) -> RemoteWriteResult:
        self._ensure_connected()
        return self._backing.update(
            collection, doc_id, patch,
            expected_version=expected_version,
            idempotency_key=idempotency_key
        )

    def get(self, collection, doc_id):
        self._ensure_connected()
        return self._backing.get(collection, doc_id)

    def list_documents(self, collection):
        self._ensure_connected()
        return self._backing.list_documents(collection)

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        def forward(doc: Document):
            if self._connected:
                callback(doc)

        return self._backing.subscribe(collection, forward)

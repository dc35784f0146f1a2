"""
Shared Test Fixtures

Explicit factories for clients, clocks and chains.

RULES:
======
1. Clocks are deterministic: every call advances by one second
2. Clients sharing a Remote Store each get their own RemoteConnection,
   Local Store and RecordingSink
3. No fixture hides a write: helpers return what they created
"""

from __future__ import annotations
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

from chainspark.contracts.base import Timestamp
from chainspark.engine import ChainSparkClient, ChainSparkConfig
from chainspark.notifications import RecordingSink
from chainspark.storage import InMemoryLocalStore, InMemoryRemoteStore, LocalStore, RemoteConnection


EPOCH = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)

AUTHORS = ("ada", "bo", "cy", "dee", "eve", "fay")


class TickingClock:
    """Returns EPOCH, EPOCH+1s, EPOCH+2s, ..."""

    def __init__(self, start: datetime = EPOCH):
        self._next = start
        self._lock = threading.Lock()

    def __call__(self) -> Timestamp:
        with self._lock:
            value = self._next
            self._next = value + timedelta(seconds=1)
        return Timestamp(value=value)


def make_client(
    backing: Optional[InMemoryRemoteStore] = None,
    local: Optional[LocalStore] = None,
    config: Optional[ChainSparkConfig] = None,
    connected: bool = True,
    clock: Optional[TickingClock] = None
) -> Tuple[ChainSparkClient, RemoteConnection, RecordingSink]:
    """One client on its own link to a (possibly shared) remote store."""
    backing = backing if backing is not None else InMemoryRemoteStore()
    connection = RemoteConnection(backing, connected=connected)
    sink = RecordingSink()
    client = ChainSparkClient(
        config=config,
        remote=connection,
        local=local if local is not None else InMemoryLocalStore(),
        sink=sink,
        clock=clock or TickingClock(),
    )
    return client, connection, sink


def grow_chain(client: ChainSparkClient, authors: Sequence[str], prefix: str = "part") -> str:
    """Start a chain with authors[0] and let the rest contribute in order."""
    chain_id = client.engine.start_chain(authors[0], f"{prefix} 0")
    for slot, author in enumerate(authors[1:], start=1):
        client.engine.contribute(chain_id, author, f"{prefix} {slot}")
    return chain_id


def complete_chain(client: ChainSparkClient, authors: Sequence[str] = AUTHORS[:5]) -> str:
    return grow_chain(client, authors[:5])


def fragment_authors(client: ChainSparkClient, chain_id: str) -> List[str]:
    return [f.author_id for f in client.engine.get_chain(chain_id).fragments]

"""
Storage Layer

RESPONSIBILITY: Remote document persistence and local durable key/value
persistence.

WHAT THIS LAYER MUST NOT DO:
============================
- Validate chain invariants or execute business logic
- Decide which store is the source of truth (the sync layer does)
- Emit UI notifications

BOUNDARY ENFORCEMENT:
=====================
- Only the Sync Coordinator writes through these adapters
- Remote writes are conditioned on the expected document version
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..contracts.base import ErrorCode
from ..contracts.errors import ValidationError
from .local import InMemoryLocalStore, LocalStore, SQLiteLocalStore
from .remote import InMemoryRemoteStore, RemoteConnection, RemoteStore


LOCAL_BACKENDS = ("memory", "sqlite")


@dataclass
class StorageConfig:
    """Configuration for the client-side stores."""
    local_backend: str = "memory"  # "memory" or "sqlite"
    local_path: Optional[str] = None
    collection: str = "sparks"

    def __post_init__(self):
        if self.local_backend not in LOCAL_BACKENDS:
            raise ValidationError(
                f"local_backend must be one of {LOCAL_BACKENDS}, got {self.local_backend!r}",
                code=ErrorCode.INVALID_CONFIGURATION
            )
        if self.local_backend == "sqlite" and not self.local_path:
            raise ValidationError(
                "local_path is required for the sqlite backend",
                code=ErrorCode.INVALID_CONFIGURATION
            )
        if not self.collection:
            raise ValidationError(
                "collection must be non-empty",
                code=ErrorCode.INVALID_CONFIGURATION
            )


def create_local_store(config: StorageConfig) -> LocalStore:
    """Create local store based on configuration."""
    if config.local_backend == "sqlite":
        return SQLiteLocalStore(Path(config.local_path))
    return InMemoryLocalStore()


__all__ = [
    'LocalStore',
    'InMemoryLocalStore',
    'SQLiteLocalStore',
    'RemoteStore',
    'InMemoryRemoteStore',
    'RemoteConnection',
    'StorageConfig',
    'create_local_store',
]

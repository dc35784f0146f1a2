"""
Client Orchestration Module

Wires one client together: local store, observability hub, sync
coordinator (which owns the notification dispatcher and its marks),
contribution engine and engagement aggregator.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts
2. Every write goes engine/aggregator -> coordinator -> stores
3. All operations are traceable through observability
4. One ChainSparkClient per device/user agent; clients share nothing but
   the Remote Store
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Union
import logging
import os

from .contracts.base import ErrorCode, Timestamp
from .contracts.chain import Chain, ContributionResult
from .contracts.engagement import Comment, Idea, ReactionKind
from .contracts.errors import ValidationError
from .core import ChainContributionEngine, EngineConfig
from .domain.rules import ChainRules
from .engagement import EngagementAggregator, EngagementConfig
from .identity import IdentityContext
from .notifications import NotificationDispatcher, NotificationSink
from .observability import ObservabilityConfig, ObservabilityHub
from .storage import (
    InMemoryRemoteStore, LocalStore, RemoteStore, StorageConfig,
    create_local_store
)
from .sync import SyncConfig, SyncCoordinator

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAINSPARK_"


@dataclass
class ChainSparkConfig:
    """Unified configuration for one client."""
    engine: EngineConfig = None
    engagement: EngagementConfig = None
    storage: StorageConfig = None
    observability: ObservabilityConfig = None

    def __post_init__(self):
        self.engine = self.engine or EngineConfig()
        self.engagement = self.engagement or EngagementConfig()
        self.storage = self.storage or StorageConfig()
        self.observability = self.observability or ObservabilityConfig()

    @property
    def rules(self) -> ChainRules:
        return ChainRules(
            min_fragment_chars=self.engine.min_fragment_chars,
            max_fragment_chars=self.engine.max_fragment_chars,
            max_comment_chars=self.engagement.max_comment_chars,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> ChainSparkConfig:
        """
        Read CHAINSPARK_* variables:
            LOCAL_BACKEND, LOCAL_PATH, COLLECTION,
            MAX_CONFLICT_RETRIES, LOG_LEVEL
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        retries = get("MAX_CONFLICT_RETRIES")
        engine = EngineConfig()
        if retries is not None:
            try:
                engine = EngineConfig(max_conflict_retries=int(retries))
            except ValueError:
                raise ValidationError(
                    f"{ENV_PREFIX}MAX_CONFLICT_RETRIES must be an integer, got {retries!r}",
                    code=ErrorCode.INVALID_CONFIGURATION
                )

        storage = StorageConfig(
            local_backend=get("LOCAL_BACKEND") or "memory",
            local_path=get("LOCAL_PATH"),
            collection=get("COLLECTION") or "sparks",
        )
        observability = ObservabilityConfig(log_level=get("LOG_LEVEL") or "INFO")
        return cls(engine=engine, storage=storage, observability=observability)


class ChainSparkClient:
    """
    One client of the shared Remote Store.

    LAYER FLOW:
    ===========
    1. Engine / Aggregator: validate, build PendingOperation
    2. Sync Coordinator: write-ahead to Local, conditioned write to Remote
    3. Remote change feed -> Coordinator -> Engine listener -> Dispatcher
    4. Observability: records activity of every layer
    """

    def __init__(
        self,
        config: Optional[ChainSparkConfig] = None,
        remote: Optional[RemoteStore] = None,
        local: Optional[LocalStore] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], Timestamp] = Timestamp.now
    ):
        self._config = config or ChainSparkConfig()
        rules = self._config.rules

        self._remote = remote if remote is not None else InMemoryRemoteStore()
        self._local = local if local is not None else create_local_store(self._config.storage)
        self._observability = ObservabilityHub(self._config.observability)
        self._coordinator = SyncCoordinator(
            remote=self._remote,
            local=self._local,
            sink=sink,
            rules=rules,
            config=SyncConfig(
                max_conflict_retries=self._config.engine.max_conflict_retries,
                collection=self._config.storage.collection,
            ),
            observability=self._observability,
        )
        self._engine = ChainContributionEngine(
            coordinator=self._coordinator,
            dispatcher=self._coordinator.dispatcher,
            config=self._config.engine,
            rules=rules,
            observability=self._observability,
            clock=clock,
        )
        self._engagement = EngagementAggregator(
            coordinator=self._coordinator,
            rules=rules,
            observability=self._observability,
            clock=clock,
        )

    # =========================================================================
    # LAYER ACCESS
    # =========================================================================

    @property
    def config(self) -> ChainSparkConfig:
        return self._config

    @property
    def engine(self) -> ChainContributionEngine:
        return self._engine

    @property
    def engagement(self) -> EngagementAggregator:
        return self._engagement

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._coordinator

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._coordinator.dispatcher

    @property
    def observability(self) -> ObservabilityHub:
        return self._observability

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    @property
    def local(self) -> LocalStore:
        return self._local

    def session(self, identity: IdentityContext) -> UserSession:
        return UserSession(self, identity)

    def close(self):
        """Detach from the Remote Store's feeds. Local state stays intact."""
        self._engine.close()
        self._coordinator.close()
        logger.debug("client closed")


class UserSession:
    """The client's operations with the caller's identity filled in."""

    def __init__(self, client: ChainSparkClient, identity: IdentityContext):
        self._client = client
        self._identity = identity

    @property
    def identity(self) -> IdentityContext:
        return self._identity

    @property
    def user_id(self) -> str:
        return self._identity.user_id

    def start_chain(self, text: str) -> str:
        return self._client.engine.start_chain(self.user_id, text)

    def contribute(self, chain_id: str, text: str) -> ContributionResult:
        return self._client.engine.contribute(chain_id, self.user_id, text)

    def open_chains(self) -> List[Chain]:
        return self._client.engine.list_open_chains(for_author=self.user_id)

    def react(self, idea_id: str, kind: Union[ReactionKind, str]) -> Idea:
        return self._client.engagement.react(idea_id, self.user_id, kind)

    def clear_reaction(self, idea_id: str) -> Idea:
        return self._client.engagement.clear_reaction(idea_id, self.user_id)

    def comment(self, idea_id: str, text: str) -> Comment:
        return self._client.engagement.comment(idea_id, self.user_id, text)


__all__ = ['ChainSparkConfig', 'ChainSparkClient', 'UserSession']

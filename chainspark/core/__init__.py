"""
Chain Contribution Engine

RESPONSIBILITY: Start chains, append fragments, enforce chain invariants,
announce completion
ALLOWED INPUTS: Author ids from the Identity Context, fragment text
OUTPUTS: Chain snapshots, ContributionResult, ChainCompleted events

WHAT THIS LAYER MUST NOT DO:
============================
- Write to either store directly (every write goes through the Sync
  Coordinator as a PendingOperation)
- Trust a caller-supplied slot index (the slot is always the chain length
  at write time)
- Announce a completion more than once

BOUNDARY ENFORCEMENT:
=====================
- Text is validated before the chain is even looked up
- Every append is pinned to the version that was read; a lost race is
  retried from a fresh read, up to max_conflict_retries times
- Completion is announced on the OPEN -> COMPLETED edge, whichever path
  (own write, change feed, offline replay) observes it first
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging

from ..contracts.base import ErrorCode, Timestamp, new_id, new_op_id
from ..contracts.chain import CHAIN_LENGTH, Chain, ChainStatus, ContributionResult
from ..contracts.errors import ConflictError, NotFoundError, ValidationError
from ..contracts.events import AuditEventType, ChainCompleted
from ..domain.operations import append_fragment_op, create_chain_op
from ..domain.rules import (
    ChainRules, check_can_contribute, crosses_completion, start_chain
)
from ..domain.serialization import chain_from_document
from ..identity import require_user_id
from ..notifications import NotificationDispatcher
from ..observability import ObservabilityHub
from ..sync import SyncCoordinator

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Configuration for the contribution engine."""
    min_fragment_chars: int = 1
    max_fragment_chars: int = 100
    max_conflict_retries: int = 3

    def __post_init__(self):
        if self.max_conflict_retries < 0:
            raise ValidationError(
                "max_conflict_retries must be >= 0",
                code=ErrorCode.INVALID_CONFIGURATION
            )
        # ChainRules re-checks the text bounds
        ChainRules(
            min_fragment_chars=self.min_fragment_chars,
            max_fragment_chars=self.max_fragment_chars,
        )


class ChainContributionEngine:
    """
    Owns the chain lifecycle for one client.

    LIFECYCLE:
        (none) --start_chain--> Open(1) --contribute--> ... Open(4)
        Open(4) --contribute--> Completed (terminal)
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        dispatcher: NotificationDispatcher,
        config: Optional[EngineConfig] = None,
        rules: Optional[ChainRules] = None,
        observability: Optional[ObservabilityHub] = None,
        clock: Callable[[], Timestamp] = Timestamp.now
    ):
        self._config = config or EngineConfig()
        self._coordinator = coordinator
        self._dispatcher = dispatcher
        self._rules = rules or ChainRules(
            min_fragment_chars=self._config.min_fragment_chars,
            max_fragment_chars=self._config.max_fragment_chars,
        )
        self._observability = observability or ObservabilityHub()
        self._clock = clock
        self._unsubscribe = coordinator.subscribe(self._on_remote_change)

    @property
    def rules(self) -> ChainRules:
        return self._rules

    def close(self):
        self._unsubscribe()

    # =========================================================================
    # WRITES
    # =========================================================================

    def start_chain(self, author_id: str, text: str) -> str:
        """Create a chain holding one fragment. Returns the new chain id."""
        require_user_id(author_id)
        text = self._rules.validate_fragment_text(text)

        op_id = new_op_id()
        chain = start_chain(
            chain_id=new_id("spark"),
            author_id=author_id,
            text=text,
            created_at=self._clock(),
            op_id=op_id,
        )
        result = self._coordinator.persist(create_chain_op(chain, op_id=op_id))

        self._observability.increment("chains_started_total")
        self._observability.audit(
            layer="core", action="chain_started", event_type=AuditEventType.CONTRIBUTION,
            entity_id=chain.chain_id, author_id=author_id, queued=result.queued
        )
        logger.info("chain %s started by %s%s", chain.chain_id, author_id,
                    " (queued)" if result.queued else "")
        return chain.chain_id

    def contribute(self, chain_id: str, author_id: str, text: str) -> ContributionResult:
        """
        Append a fragment at the chain's next slot.

        Raises ValidationError, NotFoundError, AlreadyCompletedError,
        ConsecutiveAuthorError, or ConflictError once retries run out.
        """
        require_user_id(author_id)
        text = self._rules.validate_fragment_text(text)

        attempts = self._config.max_conflict_retries + 1
        for attempt in range(attempts):
            chain = self._load_chain(chain_id)
            check_can_contribute(chain, author_id)

            op = append_fragment_op(chain, author_id, text, created_at=self._clock())
            try:
                result = self._coordinator.persist(op)
            except ConflictError:
                self._observability.increment("conflict_retries_total")
                logger.debug("contribution to %s lost a race (attempt %d of %d)",
                             chain_id, attempt + 1, attempts)
                continue

            slot = chain.next_slot
            completed = slot == CHAIN_LENGTH - 1
            version = result.document['version'] if result.document else chain.version + 1
            self._record_contribution(chain_id, author_id, slot, completed, result.queued)
            if completed and not result.queued:
                self._announce_completion(chain_id)
            return ContributionResult(
                chain_id=chain_id,
                slot_index=slot,
                completed=completed,
                queued=result.queued,
                version=version,
            )

        raise ConflictError(
            f"chain {chain_id} kept changing; gave up after {attempts} attempts",
            entity_id=chain_id
        )

    def _record_contribution(self, chain_id: str, author_id: str, slot: int,
                             completed: bool, queued: bool):
        self._observability.increment("contributions_total", queued=queued)
        self._observability.audit(
            layer="core", action="fragment_appended", event_type=AuditEventType.CONTRIBUTION,
            entity_id=chain_id, author_id=author_id, slot_index=slot,
            completed=completed, queued=queued
        )

    # =========================================================================
    # READS
    # =========================================================================

    def _load_chain(self, chain_id: str) -> Chain:
        doc = self._coordinator.load(chain_id)
        if doc is None:
            raise NotFoundError(f"chain {chain_id} not found", entity_id=chain_id)
        return chain_from_document(doc)

    def get_chain(self, chain_id: str) -> Chain:
        return self._load_chain(chain_id)

    def list_open_chains(self, for_author: Optional[str] = None) -> List[Chain]:
        """
        Open chains, oldest first. With for_author, chains that author
        cannot extend right now (they wrote the last slot) are left out.
        """
        chains = [
            chain_from_document(doc)
            for doc in self._coordinator.list_documents()
        ]
        open_chains = [c for c in chains if c.status is ChainStatus.OPEN]
        if for_author is not None:
            open_chains = [c for c in open_chains if c.last_author != for_author]
        return sorted(open_chains, key=lambda c: (c.created_at.value, c.chain_id))

    # =========================================================================
    # REMOTE TRUTH
    # =========================================================================

    def reconcile_remote(self, doc: Dict[str, Any]) -> None:
        """Apply a Remote document; completion fires via the change listener."""
        self._coordinator.reconcile_remote(doc)

    def _on_remote_change(self, doc: Dict[str, Any], previous: Optional[Dict[str, Any]]):
        try:
            current_chain = chain_from_document(doc)
            previous_chain = chain_from_document(previous) if previous else None
        except ValidationError as e:
            logger.warning("ignoring malformed remote document %s: %s", doc.get('id'), e.message)
            return
        if crosses_completion(previous_chain, current_chain):
            self._announce_completion(current_chain.chain_id)

    def _announce_completion(self, chain_id: str):
        if self._dispatcher.chain_completed(ChainCompleted(chain_id=chain_id)):
            self._observability.increment("chains_completed_total")
            logger.info("chain %s completed", chain_id)


__all__ = ['ChainContributionEngine', 'EngineConfig']

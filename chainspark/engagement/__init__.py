"""
Engagement Aggregator

RESPONSIBILITY: Likes, dislikes and comments on completed chains (Ideas)
ALLOWED INPUTS: Idea ids, user ids, reaction kinds, comment text
OUTPUTS: Idea projections

WHAT THIS LAYER MUST NOT DO:
============================
- Touch fragments or chain status
- Accept engagement on a chain that is still open
- Let one user hold both a like and a dislike on the same idea

Reactions and comments are unpinned operations: they commute with other
users' engagement, so the Sync Coordinator rebases them onto the newest
document instead of failing the caller on a version race.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Optional, Union
import logging

from ..contracts.base import ErrorCode, Timestamp
from ..contracts.engagement import Comment, Idea, ReactionKind
from ..contracts.errors import NotFoundError, ValidationError
from ..contracts.events import AuditEventType
from ..domain.operations import clear_reaction_op, comment_op, react_op
from ..domain.rules import ChainRules, DEFAULT_RULES
from ..domain.serialization import comment_from_dict, idea_from_document
from ..identity import require_user_id
from ..observability import ObservabilityHub
from ..sync import SyncCoordinator

logger = logging.getLogger(__name__)

FEED_ORDERS = ("recent", "top")


@dataclass
class EngagementConfig:
    max_comment_chars: int = 500

    def __post_init__(self):
        if self.max_comment_chars < 1:
            raise ValidationError(
                "max_comment_chars must be at least 1",
                code=ErrorCode.INVALID_CONFIGURATION
            )


def _reaction_kind(kind: Union[ReactionKind, str]) -> ReactionKind:
    if isinstance(kind, ReactionKind):
        return kind
    try:
        return ReactionKind(kind)
    except ValueError:
        raise ValidationError(f"unknown reaction kind {kind!r}")


class EngagementAggregator:
    """Reads and writes the engagement part of idea documents."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        rules: ChainRules = DEFAULT_RULES,
        observability: Optional[ObservabilityHub] = None,
        clock: Callable[[], Timestamp] = Timestamp.now
    ):
        self._coordinator = coordinator
        self._rules = rules
        self._observability = observability or ObservabilityHub()
        self._clock = clock

    # =========================================================================
    # READS
    # =========================================================================

    def get_idea(self, idea_id: str) -> Idea:
        """NotFoundError for unknown ids and for chains still open."""
        doc = self._coordinator.load(idea_id)
        if doc is None or doc.get('status') != 'completed':
            raise NotFoundError(
                f"idea {idea_id} not found", entity_id=idea_id,
                code=ErrorCode.IDEA_NOT_FOUND
            )
        return idea_from_document(doc)

    def list_ideas(self, order: str = "recent") -> List[Idea]:
        """Completed ideas, newest first ("recent") or by score ("top")."""
        if order not in FEED_ORDERS:
            raise ValidationError(f"order must be one of {FEED_ORDERS}, got {order!r}")
        ideas = [
            idea_from_document(doc)
            for doc in self._coordinator.list_documents()
            if doc.get('status') == 'completed'
        ]
        if order == "top":
            return sorted(ideas, key=lambda i: (-i.score, -i.completed_at.value.timestamp(), i.idea_id))
        return sorted(ideas, key=lambda i: (-i.completed_at.value.timestamp(), i.idea_id))

    # =========================================================================
    # WRITES
    # =========================================================================

    def react(self, idea_id: str, user_id: str, kind: Union[ReactionKind, str]) -> Idea:
        """
        Record a like or dislike. Reacting again with the same kind is a
        no-op; switching kinds removes the opposite reaction.
        """
        require_user_id(user_id)
        kind = _reaction_kind(kind)
        self.get_idea(idea_id)

        result = self._coordinator.persist(react_op(idea_id, user_id, kind))

        self._observability.increment("reactions_total", kind=kind.value)
        self._observability.audit(
            layer="engagement", action="reacted", event_type=AuditEventType.ENGAGEMENT,
            entity_id=idea_id, user_id=user_id, kind=kind.value, queued=result.queued
        )
        return idea_from_document(result.document)

    def clear_reaction(self, idea_id: str, user_id: str) -> Idea:
        """Remove whatever reaction user_id holds. Idempotent."""
        require_user_id(user_id)
        self.get_idea(idea_id)

        result = self._coordinator.persist(clear_reaction_op(idea_id, user_id))

        self._observability.audit(
            layer="engagement", action="reaction_cleared", event_type=AuditEventType.ENGAGEMENT,
            entity_id=idea_id, user_id=user_id, queued=result.queued
        )
        return idea_from_document(result.document)

    def comment(self, idea_id: str, author_id: str, text: str) -> Comment:
        require_user_id(author_id)
        text = self._rules.validate_comment_text(text)
        self.get_idea(idea_id)

        op = comment_op(idea_id, author_id, text, created_at=self._clock())
        result = self._coordinator.persist(op)

        self._observability.increment("comments_total")
        self._observability.audit(
            layer="engagement", action="commented", event_type=AuditEventType.ENGAGEMENT,
            entity_id=idea_id, author_id=author_id, queued=result.queued
        )
        logger.debug("comment %s on %s", op.payload['comment']['id'], idea_id)
        return comment_from_dict(op.payload['comment'])


__all__ = ['EngagementAggregator', 'EngagementConfig', 'FEED_ORDERS']

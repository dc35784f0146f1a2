"""
Engagement Contracts

An Idea is the read-only projection of a Completed chain plus its
engagement data. It is recomputed from the stored document, never
mutated directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from .base import Timestamp, ErrorCode
from .chain import Chain
from .errors import ValidationError


class ReactionKind(Enum):
    LIKE = "like"
    DISLIKE = "dislike"

    @property
    def opposite(self) -> ReactionKind:
        return ReactionKind.DISLIKE if self is ReactionKind.LIKE else ReactionKind.LIKE


@dataclass(frozen=True)
class Comment:
    """Append-only comment owned by an Idea."""
    comment_id: str
    author_id: str
    text: str
    created_at: Timestamp

    def __post_init__(self):
        if not self.author_id:
            raise ValidationError(
                "comment author_id must be non-empty",
                code=ErrorCode.INVALID_IDENTITY
            )


@dataclass(frozen=True)
class Idea:
    """
    Completed chain + votes + comments.

    INVARIANT: likes and dislikes are disjoint.
    """
    idea_id: str
    chain: Chain
    likes: FrozenSet[str] = field(default_factory=frozenset)
    dislikes: FrozenSet[str] = field(default_factory=frozenset)
    comments: Tuple[Comment, ...] = field(default_factory=tuple)

    def __post_init__(self):
        overlap = self.likes & self.dislikes
        if overlap:
            raise ValidationError(
                f"users both like and dislike idea: {sorted(overlap)}",
                entity_id=self.idea_id
            )

    @property
    def score(self) -> int:
        return len(self.likes) - len(self.dislikes)

    @property
    def completed_at(self) -> Timestamp:
        return self.chain.fragments[-1].created_at

    def reaction_of(self, user_id: str) -> Optional[ReactionKind]:
        if user_id in self.likes:
            return ReactionKind.LIKE
        if user_id in self.dislikes:
            return ReactionKind.DISLIKE
        return None

"""
Chain Contracts

A Chain (aka "Spark") is an ordered sequence of one to five fragments.
Each accepted Fragment is immutable; the Chain only ever grows by one
slot at a time until it is Completed.

INVARIANTS (checked at construction):
- 1 <= len(fragments) <= CHAIN_LENGTH
- status == COMPLETED  <=>  len(fragments) == CHAIN_LENGTH
- slot_index runs 0, 1, 2, ... without gaps
- adjacent fragments never share an author
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .base import Timestamp, ErrorCode
from .errors import ValidationError


CHAIN_LENGTH = 5


class ChainStatus(Enum):
    """
    Chain lifecycle. OPEN -> COMPLETED is the only edge and it is one-way.
    """
    OPEN = "open"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Fragment:
    """A single author's text occupying one slot of a chain."""
    slot_index: int
    text: str
    author_id: str
    created_at: Timestamp
    op_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.slot_index, int) or not 0 <= self.slot_index < CHAIN_LENGTH:
            raise ValidationError(
                f"slot_index must be in [0, {CHAIN_LENGTH - 1}], got {self.slot_index!r}"
            )
        if not isinstance(self.text, str):
            raise ValidationError("fragment text must be a string")
        if not self.author_id or not isinstance(self.author_id, str):
            raise ValidationError(
                "fragment author_id must be a non-empty string",
                code=ErrorCode.INVALID_IDENTITY
            )


@dataclass(frozen=True)
class Chain:
    """
    Immutable view of a chain at a given store version.

    Mutations never happen in place: appending produces a new Chain.
    """
    chain_id: str
    fragments: Tuple[Fragment, ...]
    status: ChainStatus
    created_at: Timestamp
    created_by: str
    version: int = 0

    def __post_init__(self):
        count = len(self.fragments)
        if not 1 <= count <= CHAIN_LENGTH:
            raise ValidationError(
                f"chain must hold 1..{CHAIN_LENGTH} fragments, got {count}",
                entity_id=self.chain_id
            )
        if (self.status is ChainStatus.COMPLETED) != (count == CHAIN_LENGTH):
            raise ValidationError(
                f"status {self.status.value} inconsistent with {count} fragments",
                entity_id=self.chain_id
            )
        for expected, fragment in enumerate(self.fragments):
            if fragment.slot_index != expected:
                raise ValidationError(
                    f"slot {fragment.slot_index} found where {expected} was expected",
                    entity_id=self.chain_id
                )
        for previous, current in zip(self.fragments, self.fragments[1:]):
            if previous.author_id == current.author_id:
                raise ValidationError(
                    f"slots {previous.slot_index} and {current.slot_index} share an author",
                    entity_id=self.chain_id
                )

    @property
    def length(self) -> int:
        return len(self.fragments)

    @property
    def is_completed(self) -> bool:
        return self.status is ChainStatus.COMPLETED

    @property
    def last_author(self) -> str:
        return self.fragments[-1].author_id

    @property
    def next_slot(self) -> int:
        return len(self.fragments)

    @property
    def text(self) -> str:
        """The assembled idea, fragments joined in slot order."""
        return " ".join(f.text for f in self.fragments)


@dataclass(frozen=True)
class ContributionResult:
    """Outcome of a successful (or successfully queued) contribution."""
    chain_id: str
    slot_index: int
    completed: bool
    queued: bool = False
    version: int = field(default=0, compare=False)

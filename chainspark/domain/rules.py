"""
Chain Rules
===========

Pure functions enforcing the chain invariants.

INVARIANTS:
- Fragments are appended one slot at a time, never edited or removed
- A chain accepts no fragment once it holds CHAIN_LENGTH fragments
- The author of slot k differs from the author of slot k-1
- OPEN -> COMPLETED is a one-way edge

Both the engine (before a write) and the sync coordinator (when a queued
write is replayed against fresher remote state) apply these same rules.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from ..contracts.base import Timestamp, ErrorCode
from ..contracts.chain import CHAIN_LENGTH, Chain, ChainStatus, Fragment
from ..contracts.errors import (
    AlreadyCompletedError, ConsecutiveAuthorError, ValidationError
)


@dataclass(frozen=True)
class ChainRules:
    """
    Text limits. Chain length is fixed at CHAIN_LENGTH.

    min_fragment_chars defaults to 1: start_chain rejects only empty text,
    and that operation-level contract takes precedence over the looser
    "2-100 char" wording in the error taxonomy. Deployments wanting the
    two-character floor set min_fragment_chars=2.
    """
    min_fragment_chars: int = 1
    max_fragment_chars: int = 100
    max_comment_chars: int = 500

    def __post_init__(self):
        if self.min_fragment_chars < 1:
            raise ValidationError(
                "min_fragment_chars must be at least 1",
                code=ErrorCode.INVALID_CONFIGURATION
            )
        if self.max_fragment_chars < self.min_fragment_chars:
            raise ValidationError(
                "max_fragment_chars must be >= min_fragment_chars",
                code=ErrorCode.INVALID_CONFIGURATION
            )
        if self.max_comment_chars < 1:
            raise ValidationError(
                "max_comment_chars must be at least 1",
                code=ErrorCode.INVALID_CONFIGURATION
            )

    def validate_fragment_text(self, text: object) -> str:
        """
        Whitespace-only text counts as empty. The maximum applies to the
        raw text, which is stored exactly as given.
        """
        if not isinstance(text, str):
            raise ValidationError("fragment text must be a string")
        if len(text.strip()) < self.min_fragment_chars:
            if not text.strip():
                raise ValidationError("fragment text must not be empty")
            raise ValidationError(
                f"fragment text must be at least {self.min_fragment_chars} characters"
            )
        if len(text) > self.max_fragment_chars:
            raise ValidationError(
                f"fragment text exceeds {self.max_fragment_chars} characters ({len(text)})"
            )
        return text

    def validate_comment_text(self, text: object) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("comment text must not be empty")
        if len(text) > self.max_comment_chars:
            raise ValidationError(
                f"comment text exceeds {self.max_comment_chars} characters ({len(text)})"
            )
        return text


DEFAULT_RULES = ChainRules()


def check_can_contribute(chain: Chain, author_id: str) -> None:
    """Raise the chain-invariant error that would block author_id."""
    if chain.is_completed or chain.length >= CHAIN_LENGTH:
        raise AlreadyCompletedError(
            f"chain {chain.chain_id} is already completed",
            entity_id=chain.chain_id
        )
    if chain.last_author == author_id:
        raise ConsecutiveAuthorError(
            f"{author_id} wrote slot {chain.length - 1}; someone else must write the next slot",
            entity_id=chain.chain_id
        )


def start_chain(
    chain_id: str,
    author_id: str,
    text: str,
    created_at: Timestamp,
    op_id: Optional[str] = None
) -> Chain:
    """Initial state: Open(1)."""
    first = Fragment(
        slot_index=0,
        text=text,
        author_id=author_id,
        created_at=created_at,
        op_id=op_id,
    )
    return Chain(
        chain_id=chain_id,
        fragments=(first,),
        status=ChainStatus.OPEN,
        created_at=created_at,
        created_by=author_id,
    )


def append_fragment(
    chain: Chain,
    author_id: str,
    text: str,
    created_at: Timestamp,
    op_id: Optional[str] = None
) -> Chain:
    """
    Open(k) -> Open(k+1) for k < CHAIN_LENGTH - 1, Open(4) -> Completed.

    The new slot is always len(fragments); it is never taken from the caller.
    """
    check_can_contribute(chain, author_id)
    fragment = Fragment(
        slot_index=chain.next_slot,
        text=text,
        author_id=author_id,
        created_at=created_at,
        op_id=op_id,
    )
    fragments = chain.fragments + (fragment,)
    status = ChainStatus.COMPLETED if len(fragments) == CHAIN_LENGTH else ChainStatus.OPEN
    return Chain(
        chain_id=chain.chain_id,
        fragments=fragments,
        status=status,
        created_at=chain.created_at,
        created_by=chain.created_by,
        version=chain.version,
    )


def crosses_completion(previous: Optional[Chain], current: Optional[Chain]) -> bool:
    """
    True only when the OPEN -> COMPLETED edge is crossed between two
    observations. Seeing an already-completed chain again never counts,
    and neither does a first sighting with nothing to compare against.
    """
    if previous is None or current is None:
        return False
    return previous.status is ChainStatus.OPEN and current.status is ChainStatus.COMPLETED

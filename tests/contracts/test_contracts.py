"""
Contract Invariant Tests
========================

INVARIANTS TESTED:
1. A Chain holds 1..5 fragments with sequential slots
2. COMPLETED <=> exactly five fragments
3. Adjacent fragments never share an author
4. Likes and dislikes of an Idea are disjoint
5. SyncRecord is settled only with no pending ops and equal versions
6. Every error carries an ErrorCode and converts to an Error record
"""

import pytest

from chainspark.contracts.base import ErrorCode, Timestamp, new_id, new_op_id
from chainspark.contracts.chain import CHAIN_LENGTH, Chain, ChainStatus, Fragment
from chainspark.contracts.engagement import Idea, ReactionKind
from chainspark.contracts.errors import (
    AlreadyCompletedError, ConflictError, ConnectivityError,
    NotFoundError, PermanentRejection, ValidationError, is_retryable
)
from chainspark.contracts.sync import OperationKind, PendingOperation, SyncRecord
from chainspark.identity import IdentityContext, require_user_id

from tests.fixtures import AUTHORS, EPOCH


TS = Timestamp(value=EPOCH)


def make_chain(authors, status=None):
    fragments = tuple(
        Fragment(slot_index=i, text=f"t{i}", author_id=a, created_at=TS)
        for i, a in enumerate(authors)
    )
    if status is None:
        status = ChainStatus.COMPLETED if len(authors) == CHAIN_LENGTH else ChainStatus.OPEN
    return Chain(
        chain_id="spark_1",
        fragments=fragments,
        status=status,
        created_at=TS,
        created_by=authors[0] if authors else "ada",
    )


class TestChainShape:

    def test_open_chain_properties(self):
        chain = make_chain(["ada", "bo"])
        assert chain.length == 2
        assert chain.next_slot == 2
        assert chain.last_author == "bo"
        assert not chain.is_completed
        assert chain.text == "t0 t1"

    def test_completed_requires_five(self):
        assert make_chain(list(AUTHORS[:5])).is_completed
        with pytest.raises(ValidationError):
            make_chain(["ada", "bo"], status=ChainStatus.COMPLETED)
        with pytest.raises(ValidationError):
            make_chain(list(AUTHORS[:5]), status=ChainStatus.OPEN)

    def test_empty_and_oversized_rejected(self):
        with pytest.raises(ValidationError):
            make_chain([])
        with pytest.raises(ValidationError):
            # slot 5 is outside the chain
            Fragment(slot_index=5, text="x", author_id="ada", created_at=TS)

    def test_adjacent_authors_rejected(self):
        with pytest.raises(ValidationError):
            make_chain(["ada", "ada"])

    def test_non_adjacent_repeat_allowed(self):
        chain = make_chain(["ada", "bo", "ada"])
        assert chain.length == 3

    def test_slot_gap_rejected(self):
        fragments = (
            Fragment(slot_index=0, text="a", author_id="ada", created_at=TS),
            Fragment(slot_index=2, text="b", author_id="bo", created_at=TS),
        )
        with pytest.raises(ValidationError):
            Chain("spark_1", fragments, ChainStatus.OPEN, TS, "ada")

    def test_missing_author_is_identity_error(self):
        with pytest.raises(ValidationError) as exc:
            Fragment(slot_index=0, text="a", author_id="", created_at=TS)
        assert exc.value.code is ErrorCode.INVALID_IDENTITY


class TestIdea:

    def test_score_and_reaction_lookup(self):
        idea = Idea(
            idea_id="spark_1",
            chain=make_chain(list(AUTHORS[:5])),
            likes=frozenset({"u1", "u2"}),
            dislikes=frozenset({"u3"}),
        )
        assert idea.score == 1
        assert idea.reaction_of("u1") is ReactionKind.LIKE
        assert idea.reaction_of("u3") is ReactionKind.DISLIKE
        assert idea.reaction_of("nobody") is None

    def test_like_and_dislike_disjoint(self):
        with pytest.raises(ValidationError):
            Idea(
                idea_id="spark_1",
                chain=make_chain(list(AUTHORS[:5])),
                likes=frozenset({"u1"}),
                dislikes=frozenset({"u1"}),
            )

    def test_opposite_kind(self):
        assert ReactionKind.LIKE.opposite is ReactionKind.DISLIKE
        assert ReactionKind.DISLIKE.opposite is ReactionKind.LIKE


class TestSyncRecord:

    def _op(self, queued=False):
        return PendingOperation(
            op_id=new_op_id(), entity_id="spark_1",
            kind=OperationKind.REACT, payload={}, queued=queued
        )

    def test_with_ops_tracks_versions(self):
        record = SyncRecord(entity_id="spark_1", local_version=3, remote_version=3)
        assert record.is_settled

        pending = record.with_ops((self._op(), self._op(queued=True)))
        assert pending.local_version == 5
        assert not pending.is_settled
        assert len(pending.queued_ops) == 1

        drained = pending.with_ops((), remote_version=5)
        assert drained.is_settled

    def test_queued_op_is_unpinned_copy(self):
        op = PendingOperation(
            op_id="op_1", entity_id="spark_1",
            kind=OperationKind.APPEND_FRAGMENT, base_version=4
        )
        queued = op.as_queued().unpinned()
        assert queued.queued and queued.base_version is None
        assert op.base_version == 4 and not op.queued


class TestErrors:

    def test_codes(self):
        assert ValidationError("x").code is ErrorCode.INVALID_TEXT
        assert NotFoundError("x").code is ErrorCode.CHAIN_NOT_FOUND
        assert NotFoundError("x", code=ErrorCode.IDEA_NOT_FOUND).code is ErrorCode.IDEA_NOT_FOUND
        assert AlreadyCompletedError("x").code is ErrorCode.CHAIN_ALREADY_COMPLETED

    def test_to_error_keeps_context(self):
        cause = AlreadyCompletedError("done", entity_id="spark_1")
        error = PermanentRejection("rejected", entity_id="spark_1", op_id="op_9", cause=cause).to_error()
        assert error.code is ErrorCode.PERMANENT_REJECTION
        context = dict(error.context)
        assert context["entity_id"] == "spark_1"
        assert context["op_id"] == "op_9"
        assert context["cause"] == "CHAIN_ALREADY_COMPLETED"

    def test_only_races_and_outages_are_retryable(self):
        assert is_retryable(ConflictError("x"))
        assert is_retryable(ConnectivityError("x"))
        assert not is_retryable(ValidationError("x"))
        assert not is_retryable(AlreadyCompletedError("x"))


class TestIdentity:

    def test_require_user_id(self):
        assert require_user_id("ada") == "ada"
        for bad in (None, "", "   ", 42):
            with pytest.raises(ValidationError) as exc:
                require_user_id(bad)
            assert exc.value.code is ErrorCode.INVALID_IDENTITY

    def test_from_headers(self):
        identity = IdentityContext.from_headers({"x-user-id": "ada", "x-user-name": "Ada L."})
        assert identity.user_id == "ada"
        assert identity.label == "Ada L."
        assert IdentityContext(user_id="bo").label == "bo"

    def test_ids_are_prefixed_and_unique(self):
        first, second = new_id("spark"), new_id("spark")
        assert first.startswith("spark_") and first != second
        assert new_op_id().startswith("op_")

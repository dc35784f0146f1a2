"""
Chain Rules and Operation Transform Tests
=========================================

INVARIANTS TESTED:
1. Text validation: non-empty after stripping, at most 100 raw chars
2. Fragments are appended at len(fragments), never a caller-chosen slot
3. OPEN -> COMPLETED edge detection fires only on the edge
4. Transforms are pure: same document + op -> same body
5. Reactions keep likes and dislikes disjoint; repeats are no-ops
"""

import pytest

from chainspark.contracts.base import ErrorCode, Timestamp
from chainspark.contracts.chain import ChainStatus
from chainspark.contracts.engagement import ReactionKind
from chainspark.contracts.errors import (
    AlreadyCompletedError, ConsecutiveAuthorError, NotFoundError, ValidationError
)
from chainspark.domain.operations import (
    append_fragment_op, apply_operation, clear_reaction_op, comment_op,
    create_chain_op, project, react_op
)
from chainspark.domain.rules import (
    ChainRules, DEFAULT_RULES, append_fragment, check_can_contribute,
    crosses_completion, start_chain
)
from chainspark.domain.serialization import (
    chain_from_document, chain_to_document, dumps, idea_from_document, loads,
    sync_record_from_dict, sync_record_to_dict
)
from chainspark.contracts.sync import SyncRecord

from tests.fixtures import AUTHORS, EPOCH


TS = Timestamp(value=EPOCH)


def build(authors):
    chain = start_chain("spark_1", authors[0], "first", TS)
    for author in authors[1:]:
        chain = append_fragment(chain, author, "more", TS)
    return chain


def stored(chain, version=1, applied=()):
    doc = chain_to_document(chain)
    doc['version'] = version
    doc['applied_ops'] = list(applied)
    return doc


class TestTextValidation:

    def test_accepts_boundaries(self):
        assert DEFAULT_RULES.validate_fragment_text("a") == "a"
        assert DEFAULT_RULES.validate_fragment_text("x" * 100) == "x" * 100

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_rejects_empty(self, text):
        with pytest.raises(ValidationError) as exc:
            DEFAULT_RULES.validate_fragment_text(text)
        assert exc.value.code is ErrorCode.INVALID_TEXT

    def test_rejects_over_limit(self):
        with pytest.raises(ValidationError):
            DEFAULT_RULES.validate_fragment_text("x" * 101)

    def test_text_kept_verbatim(self):
        assert DEFAULT_RULES.validate_fragment_text("  padded  ") == "  padded  "

    def test_custom_minimum(self):
        rules = ChainRules(min_fragment_chars=3)
        with pytest.raises(ValidationError):
            rules.validate_fragment_text("ab")
        assert rules.validate_fragment_text("abc") == "abc"

    def test_single_char_by_default_two_on_request(self):
        assert DEFAULT_RULES.min_fragment_chars == 1
        with pytest.raises(ValidationError):
            ChainRules(min_fragment_chars=2).validate_fragment_text("a")
        assert ChainRules(min_fragment_chars=2).validate_fragment_text("ab") == "ab"

    def test_bad_configuration(self):
        with pytest.raises(ValidationError) as exc:
            ChainRules(min_fragment_chars=10, max_fragment_chars=5)
        assert exc.value.code is ErrorCode.INVALID_CONFIGURATION

    def test_comment_text(self):
        with pytest.raises(ValidationError):
            DEFAULT_RULES.validate_comment_text("  ")
        with pytest.raises(ValidationError):
            DEFAULT_RULES.validate_comment_text("c" * 501)


class TestChainLifecycle:

    def test_slot_is_chain_length(self):
        chain = build(["ada", "bo", "cy"])
        assert [f.slot_index for f in chain.fragments] == [0, 1, 2]

    def test_fifth_fragment_completes(self):
        chain = build(list(AUTHORS[:4]))
        assert chain.status is ChainStatus.OPEN
        done = append_fragment(chain, "eve", "last", TS)
        assert done.status is ChainStatus.COMPLETED

    def test_completed_rejects_more(self):
        with pytest.raises(AlreadyCompletedError):
            check_can_contribute(build(list(AUTHORS[:5])), "fay")

    def test_consecutive_author_rejected(self):
        with pytest.raises(ConsecutiveAuthorError):
            append_fragment(build(["ada", "bo"]), "bo", "again", TS)

    def test_crosses_completion_only_on_edge(self):
        four = build(list(AUTHORS[:4]))
        five = append_fragment(four, "eve", "last", TS)
        assert crosses_completion(four, five)
        assert not crosses_completion(five, five)
        assert not crosses_completion(None, five)
        assert not crosses_completion(four, four)


class TestTransforms:

    def test_create_on_existing_id_is_rejected(self):
        chain = build(["ada"])
        op = create_chain_op(chain)
        assert apply_operation(None, op)['fragments'][0]['text'] == "first"
        with pytest.raises(ValidationError):
            apply_operation(stored(chain), op)

    def test_append_is_deterministic_and_rebases(self):
        chain = build(["ada"])
        op = append_fragment_op(chain, "bo", "second", TS)
        doc = stored(chain)
        assert apply_operation(doc, op) == apply_operation(doc, op)

        # someone else took slot 1 first: the op lands on slot 2
        moved = stored(build(["ada", "cy"]), version=2)
        body = apply_operation(moved, op)
        assert [f['author_id'] for f in body['fragments']] == ["ada", "cy", "bo"]
        assert body['fragments'][2]['op_id'] == op.op_id

    def test_append_payload_carries_no_slot(self):
        # the slot is always the chain length at apply time
        op = append_fragment_op(build(["ada"]), "bo", "x", TS)
        assert set(op.payload) == {'author_id', 'text', 'created_at'}

    def test_append_to_missing_chain(self):
        op = append_fragment_op(build(["ada"]), "bo", "x", TS)
        with pytest.raises(NotFoundError):
            apply_operation(None, op)

    def test_append_replay_rejected_when_author_now_adjacent(self):
        op = append_fragment_op(build(["ada"]), "bo", "x", TS)
        with pytest.raises(ConsecutiveAuthorError):
            apply_operation(stored(build(["ada", "bo"]), version=2), op)

    def test_reactions_stay_disjoint(self):
        doc = stored(build(list(AUTHORS[:5])), version=5)
        liked = apply_operation(doc, react_op("spark_1", "u1", ReactionKind.LIKE))
        assert liked['likes'] == ["u1"]
        again = apply_operation(liked, react_op("spark_1", "u1", ReactionKind.LIKE))
        assert again['likes'] == ["u1"]
        flipped = apply_operation(again, react_op("spark_1", "u1", ReactionKind.DISLIKE))
        assert flipped['likes'] == [] and flipped['dislikes'] == ["u1"]
        cleared = apply_operation(flipped, clear_reaction_op("spark_1", "u1"))
        assert cleared['likes'] == [] and cleared['dislikes'] == []

    def test_engagement_needs_completed_chain(self):
        doc = stored(build(["ada", "bo"]), version=2)
        with pytest.raises(NotFoundError) as exc:
            apply_operation(doc, react_op("spark_1", "u1", ReactionKind.LIKE))
        assert exc.value.code is ErrorCode.IDEA_NOT_FOUND

    def test_comment_applied_once(self):
        doc = stored(build(list(AUTHORS[:5])), version=5)
        op = comment_op("spark_1", "u1", "nice", TS)
        once = apply_operation(doc, op)
        twice = apply_operation(once, op)
        assert len(twice['comments']) == 1
        assert idea_from_document(twice).comments[0].text == "nice"

    def test_project_bumps_store_fields(self):
        chain = build(["ada"])
        op = append_fragment_op(chain, "bo", "x", TS)
        projected = project(stored(chain, version=1, applied=["op_a"]), op)
        assert projected['version'] == 2
        assert projected['applied_ops'] == ["op_a", op.op_id]


class TestCodec:

    def test_chain_document_decodes(self):
        chain = build(["ada", "bo"])
        decoded = chain_from_document(stored(chain, version=7))
        assert decoded.version == 7
        assert [f.author_id for f in decoded.fragments] == ["ada", "bo"]

    def test_malformed_document(self):
        with pytest.raises(ValidationError):
            chain_from_document({'id': 'spark_1', 'fragments': []})

    def test_sync_record_survives_json(self):
        op = append_fragment_op(build(["ada"]), "bo", "x", TS).as_queued()
        record = SyncRecord("spark_1", 1, 1).with_ops((op,))
        restored = sync_record_from_dict(loads(dumps(sync_record_to_dict(record))))
        assert restored == record
        assert restored.pending_ops[0].payload == op.payload

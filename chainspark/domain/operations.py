"""
Document Operations
===================

Every write is expressed as a PendingOperation whose effect is a pure
transform of the stored document:

    apply_operation(doc, op, rules) -> new document body

The transform is re-run against the freshest document on every attempt,
so a queued write is rebased onto whatever Remote holds when it is
finally replayed. A transform raises the domain error that makes the
operation invalid against that document; the same inputs always give
the same outcome.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Optional

from ..contracts.base import ErrorCode, Timestamp, new_id, new_op_id
from ..contracts.chain import Chain
from ..contracts.engagement import Comment, ReactionKind
from ..contracts.errors import NotFoundError, ValidationError
from ..contracts.sync import OperationKind, PendingOperation
from .rules import ChainRules, DEFAULT_RULES, append_fragment
from .serialization import (
    chain_from_document, chain_to_document, comment_to_dict,
    document_body, fragment_to_dict
)


Document = Dict[str, Any]


# =============================================================================
# OPERATION FACTORIES
# =============================================================================

def create_chain_op(chain: Chain, op_id: Optional[str] = None) -> PendingOperation:
    op_id = op_id or chain.fragments[0].op_id or new_op_id()
    return PendingOperation(
        op_id=op_id,
        entity_id=chain.chain_id,
        kind=OperationKind.CREATE_CHAIN,
        payload={'document': chain_to_document(chain)},
    )


def append_fragment_op(
    chain: Chain,
    author_id: str,
    text: str,
    created_at: Timestamp,
    op_id: Optional[str] = None
) -> PendingOperation:
    """Pinned to the version of the chain the caller read."""
    return PendingOperation(
        op_id=op_id or new_op_id(),
        entity_id=chain.chain_id,
        kind=OperationKind.APPEND_FRAGMENT,
        payload={
            'author_id': author_id,
            'text': text,
            'created_at': created_at.to_iso(),
        },
        base_version=chain.version,
    )


def react_op(idea_id: str, user_id: str, kind: ReactionKind) -> PendingOperation:
    return PendingOperation(
        op_id=new_op_id(),
        entity_id=idea_id,
        kind=OperationKind.REACT,
        payload={'user_id': user_id, 'kind': kind.value},
    )


def clear_reaction_op(idea_id: str, user_id: str) -> PendingOperation:
    return PendingOperation(
        op_id=new_op_id(),
        entity_id=idea_id,
        kind=OperationKind.CLEAR_REACTION,
        payload={'user_id': user_id},
    )


def comment_op(idea_id: str, author_id: str, text: str, created_at: Timestamp) -> PendingOperation:
    comment = Comment(
        comment_id=new_id("comment"),
        author_id=author_id,
        text=text,
        created_at=created_at,
    )
    return PendingOperation(
        op_id=new_op_id(),
        entity_id=idea_id,
        kind=OperationKind.COMMENT,
        payload={'comment': comment_to_dict(comment)},
    )


# =============================================================================
# TRANSFORMS
# =============================================================================

def _create_chain(doc: Optional[Document], op: PendingOperation, rules: ChainRules) -> Document:
    if doc is not None:
        raise ValidationError(
            f"chain id {op.entity_id} is already taken",
            entity_id=op.entity_id
        )
    body = dict(op.payload['document'])
    # decode to re-check invariants of what is about to be written
    chain_from_document(body)
    rules.validate_fragment_text(body['fragments'][0]['text'])
    return body


def _append_fragment(doc: Optional[Document], op: PendingOperation, rules: ChainRules) -> Document:
    if doc is None:
        raise NotFoundError(f"chain {op.entity_id} not found", entity_id=op.entity_id)
    payload = op.payload
    text = rules.validate_fragment_text(payload['text'])
    chain = append_fragment(
        chain_from_document(doc),
        author_id=payload['author_id'],
        text=text,
        created_at=Timestamp.from_iso(payload['created_at']),
        op_id=op.op_id,
    )
    body = document_body(doc)
    body['fragments'] = [fragment_to_dict(f) for f in chain.fragments]
    body['status'] = chain.status.value
    return body


def _require_idea(doc: Optional[Document], idea_id: str) -> Document:
    if doc is None:
        raise NotFoundError(
            f"idea {idea_id} not found", entity_id=idea_id,
            code=ErrorCode.IDEA_NOT_FOUND
        )
    if not chain_from_document(doc).is_completed:
        raise NotFoundError(
            f"idea {idea_id} not found: chain is still open", entity_id=idea_id,
            code=ErrorCode.IDEA_NOT_FOUND
        )
    return document_body(doc)


def _react(doc: Optional[Document], op: PendingOperation, rules: ChainRules) -> Document:
    body = _require_idea(doc, op.entity_id)
    user_id = op.payload['user_id']
    kind = ReactionKind(op.payload['kind'])
    target = 'likes' if kind is ReactionKind.LIKE else 'dislikes'
    opposite = 'dislikes' if kind is ReactionKind.LIKE else 'likes'

    body[opposite] = [u for u in body.get(opposite, []) if u != user_id]
    members = list(body.get(target, []))
    if user_id not in members:
        members.append(user_id)
    body[target] = members
    return body


def _clear_reaction(doc: Optional[Document], op: PendingOperation, rules: ChainRules) -> Document:
    body = _require_idea(doc, op.entity_id)
    user_id = op.payload['user_id']
    body['likes'] = [u for u in body.get('likes', []) if u != user_id]
    body['dislikes'] = [u for u in body.get('dislikes', []) if u != user_id]
    return body


def _comment(doc: Optional[Document], op: PendingOperation, rules: ChainRules) -> Document:
    body = _require_idea(doc, op.entity_id)
    comment = op.payload['comment']
    rules.validate_comment_text(comment['text'])
    comments = list(body.get('comments', []))
    if all(c['id'] != comment['id'] for c in comments):
        comments.append(dict(comment))
    body['comments'] = comments
    return body


_TRANSFORMS: Dict[OperationKind, Callable[[Optional[Document], PendingOperation, ChainRules], Document]] = {
    OperationKind.CREATE_CHAIN: _create_chain,
    OperationKind.APPEND_FRAGMENT: _append_fragment,
    OperationKind.REACT: _react,
    OperationKind.CLEAR_REACTION: _clear_reaction,
    OperationKind.COMMENT: _comment,
}


def apply_operation(
    doc: Optional[Document],
    op: PendingOperation,
    rules: ChainRules = DEFAULT_RULES
) -> Document:
    """Return the new document body after op, or raise why op is invalid."""
    return _TRANSFORMS[op.kind](doc, op, rules)


def project(
    doc: Optional[Document],
    op: PendingOperation,
    rules: ChainRules = DEFAULT_RULES
) -> Document:
    """
    Optimistic local application: the new body plus the store-managed
    fields a confirmed write would produce.
    """
    body = apply_operation(doc, op, rules)
    version = int(doc.get('version', 0)) if doc else 0
    applied = list(doc.get('applied_ops', [])) if doc else []
    body['version'] = version + 1
    body['applied_ops'] = applied + [op.op_id]
    return body

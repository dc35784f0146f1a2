"""
Persisted Record Codec

Maps contract types to the JSON-shaped documents kept by the Remote and
Local stores, and back.

Chain document:
    {id, status, created_at, created_by,
     fragments: [{slot_index, text, author_id, created_at, op_id}],
     likes: [user_id], dislikes: [user_id],
     comments: [{id, author_id, text, created_at}],
     version, applied_ops}

`version` and `applied_ops` are owned by the Remote Store; everything
else is the document body produced by domain operations.
"""

import json
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List

from ..contracts.base import Timestamp
from ..contracts.chain import Chain, ChainStatus, Fragment
from ..contracts.engagement import Comment, Idea
from ..contracts.errors import ValidationError
from ..contracts.sync import OperationKind, PendingOperation, SyncRecord


STORE_MANAGED_FIELDS = ("version", "applied_ops")


class StrictJSONEncoder(json.JSONEncoder):
    """
    JSON Encoder that prioritizes fidelity over flexibility.

    RULES:
    1. Dates MUST be ISO 8601 strings (UTC).
    2. Enums MUST use their .value.
    3. Timestamps serialize through to_iso().
    4. Sets -> Lists (sorted for determinism).
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Timestamp):
            return obj.to_iso()
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "__dataclass_fields__"):
            return asdict(obj)
        return super().default(obj)


def dumps(value: Any) -> str:
    return json.dumps(value, cls=StrictJSONEncoder, sort_keys=True)


def loads(raw: str) -> Any:
    return json.loads(raw)


# =============================================================================
# CHAIN / IDEA
# =============================================================================

def fragment_to_dict(fragment: Fragment) -> Dict[str, Any]:
    return {
        'slot_index': fragment.slot_index,
        'text': fragment.text,
        'author_id': fragment.author_id,
        'created_at': fragment.created_at.to_iso(),
        'op_id': fragment.op_id,
    }


def fragment_from_dict(data: Dict[str, Any]) -> Fragment:
    return Fragment(
        slot_index=data['slot_index'],
        text=data['text'],
        author_id=data['author_id'],
        created_at=Timestamp.from_iso(data['created_at']),
        op_id=data.get('op_id'),
    )


def comment_to_dict(comment: Comment) -> Dict[str, Any]:
    return {
        'id': comment.comment_id,
        'author_id': comment.author_id,
        'text': comment.text,
        'created_at': comment.created_at.to_iso(),
    }


def comment_from_dict(data: Dict[str, Any]) -> Comment:
    return Comment(
        comment_id=data['id'],
        author_id=data['author_id'],
        text=data['text'],
        created_at=Timestamp.from_iso(data['created_at']),
    )


def chain_to_document(chain: Chain) -> Dict[str, Any]:
    """Fresh document body for a chain with no engagement yet."""
    return {
        'id': chain.chain_id,
        'status': chain.status.value,
        'created_at': chain.created_at.to_iso(),
        'created_by': chain.created_by,
        'fragments': [fragment_to_dict(f) for f in chain.fragments],
        'likes': [],
        'dislikes': [],
        'comments': [],
    }


def chain_from_document(doc: Dict[str, Any]) -> Chain:
    try:
        return Chain(
            chain_id=doc['id'],
            fragments=tuple(fragment_from_dict(f) for f in doc['fragments']),
            status=ChainStatus(doc['status']),
            created_at=Timestamp.from_iso(doc['created_at']),
            created_by=doc['created_by'],
            version=int(doc.get('version', 0)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(
            f"malformed chain document: {e!r}",
            entity_id=doc.get('id') if isinstance(doc, dict) else None
        ) from e


def idea_from_document(doc: Dict[str, Any]) -> Idea:
    chain = chain_from_document(doc)
    try:
        return Idea(
            idea_id=chain.chain_id,
            chain=chain,
            likes=frozenset(doc.get('likes', ())),
            dislikes=frozenset(doc.get('dislikes', ())),
            comments=tuple(comment_from_dict(c) for c in doc.get('comments', ())),
        )
    except (KeyError, TypeError) as e:
        raise ValidationError(
            f"malformed idea document: {e!r}", entity_id=chain.chain_id
        ) from e


def document_body(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Strip the store-managed fields, leaving what operations produce."""
    return {k: v for k, v in doc.items() if k not in STORE_MANAGED_FIELDS}


def applied_ops(doc: Dict[str, Any]) -> List[str]:
    return list(doc.get('applied_ops') or ())


# =============================================================================
# SYNC RECORDS
# =============================================================================

def operation_to_dict(op: PendingOperation) -> Dict[str, Any]:
    return {
        'op_id': op.op_id,
        'entity_id': op.entity_id,
        'kind': op.kind.value,
        'payload': op.payload,
        'base_version': op.base_version,
        'created_at': op.created_at.to_iso(),
        'queued': op.queued,
    }


def operation_from_dict(data: Dict[str, Any]) -> PendingOperation:
    return PendingOperation(
        op_id=data['op_id'],
        entity_id=data['entity_id'],
        kind=OperationKind(data['kind']),
        payload=dict(data.get('payload') or {}),
        base_version=data.get('base_version'),
        created_at=Timestamp.from_iso(data['created_at']),
        queued=bool(data.get('queued', False)),
    )


def sync_record_to_dict(record: SyncRecord) -> Dict[str, Any]:
    return {
        'entity_id': record.entity_id,
        'local_version': record.local_version,
        'remote_version': record.remote_version,
        'pending_ops': [operation_to_dict(op) for op in record.pending_ops],
    }


def sync_record_from_dict(data: Dict[str, Any]) -> SyncRecord:
    return SyncRecord(
        entity_id=data['entity_id'],
        local_version=int(data['local_version']),
        remote_version=int(data['remote_version']),
        pending_ops=tuple(operation_from_dict(op) for op in data.get('pending_ops', ())),
    )

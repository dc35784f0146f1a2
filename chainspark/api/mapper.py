"""
API Mapper
==========

Transforms contract types into the JSON DTOs the UI consumes.
"""
from typing import Any, Dict, Optional

from ..contracts.chain import CHAIN_LENGTH, Chain, ContributionResult
from ..contracts.engagement import Comment, Idea
from ..domain.serialization import comment_to_dict, fragment_to_dict


def map_chain(chain: Chain) -> Dict[str, Any]:
    return {
        "id": chain.chain_id,
        "status": chain.status.value,
        "created_at": chain.created_at.to_iso(),
        "created_by": chain.created_by,
        "fragments": [fragment_to_dict(f) for f in chain.fragments],
        "slots_remaining": CHAIN_LENGTH - chain.length,
        "version": chain.version,
    }


def map_idea(idea: Idea, viewer_id: Optional[str] = None) -> Dict[str, Any]:
    """viewer_id adds the viewer's own reaction, if any."""
    dto = {
        "id": idea.idea_id,
        "text": idea.chain.text,
        "completed_at": idea.completed_at.to_iso(),
        "authors": [f.author_id for f in idea.chain.fragments],
        "likes": len(idea.likes),
        "dislikes": len(idea.dislikes),
        "score": idea.score,
        "comments": [map_comment(c) for c in idea.comments],
    }
    if viewer_id is not None:
        reaction = idea.reaction_of(viewer_id)
        dto["my_reaction"] = reaction.value if reaction else None
    return dto


def map_comment(comment: Comment) -> Dict[str, Any]:
    return comment_to_dict(comment)


def map_contribution(result: ContributionResult) -> Dict[str, Any]:
    return {
        "chain_id": result.chain_id,
        "slot_index": result.slot_index,
        "completed": result.completed,
        "queued": result.queued,
        "version": result.version,
    }

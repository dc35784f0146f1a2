"""
Identity Context

Supplies the current user id and display metadata. Identity issuance is
someone else's job: the id arriving here is an opaque, already
authenticated string and is passed through untouched.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional

from ..contracts.base import ErrorCode
from ..contracts.errors import ValidationError


USER_ID_HEADER = "x-user-id"
DISPLAY_NAME_HEADER = "x-user-name"


def require_user_id(value: object) -> str:
    """Fail fast on anything that is not a non-empty id string."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            "user id must be a non-empty string",
            code=ErrorCode.INVALID_IDENTITY
        )
    return value


@dataclass(frozen=True)
class IdentityContext:
    user_id: str
    display_name: Optional[str] = None

    def __post_init__(self):
        require_user_id(self.user_id)

    @property
    def label(self) -> str:
        return self.display_name or self.user_id

    @staticmethod
    def from_headers(headers: Mapping[str, str]) -> IdentityContext:
        """Build from request headers (case-insensitive mapping expected)."""
        return IdentityContext(
            user_id=require_user_id(headers.get(USER_ID_HEADER)),
            display_name=headers.get(DISPLAY_NAME_HEADER) or None,
        )


__all__ = ['IdentityContext', 'require_user_id', 'USER_ID_HEADER', 'DISPLAY_NAME_HEADER']

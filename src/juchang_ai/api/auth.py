"""
Caller identity for API endpoints.

Authentication happens upstream at the platform gateway, which forwards
the signed-in user's id in the ``X-User-Id`` header. A missing header
means an anonymous caller.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from juchang_ai.exceptions import AuthenticationRequiredError


@dataclass
class Caller:
    """Who is making the request."""

    user_id: Optional[UUID]
    client_key: str

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def require_user(self) -> UUID:
        if self.user_id is None:
            raise AuthenticationRequiredError()
        return self.user_id


def get_caller(
    request: Request,
    x_user_id: Optional[str] = Header(
        None,
        description="Signed-in user UUID forwarded by the gateway",
        alias="X-User-Id",
    ),
) -> Caller:
    """
    FastAPI dependency resolving the caller.

    Raises:
        HTTPException(400): If the header is present but not a UUID
    """
    client_key = request.client.host if request.client else "unknown"
    if not x_user_id:
        return Caller(user_id=None, client_key=client_key)
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid user ID format: {x_user_id}",
        )
    return Caller(user_id=user_id, client_key=client_key)

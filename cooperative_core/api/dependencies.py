"""
Request dependencies and error mapping
"""

from typing import Optional
from fastapi import Header, HTTPException, Request, status

from ..system import CooperativeSystem
from ..errors import (
    AccountNotActive, DuplicatePosting, DuplicateReference, InsufficientFunds,
    InvalidStateTransition, NotFoundError, TransactionAlreadyReversed
)


_CONFLICTS = (AccountNotActive, DuplicatePosting, DuplicateReference,
              InvalidStateTransition, TransactionAlreadyReversed)


def get_system(request: Request) -> CooperativeSystem:
    """System container attached to the application by ``create_app``"""
    return request.app.state.system


def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> str:
    """Acting user, taken from the ``X-Actor-Id`` header"""
    if not x_actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header is required")
    return x_actor_id


def http_error(error: Exception) -> HTTPException:
    """Translate a business error into an HTTP error"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InsufficientFunds):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, _CONFLICTS):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

"""
Request dependencies: the collection system, the acting user and error mapping

Authentication happens upstream; the gateway forwards the authenticated
identity in the X-Actor-Id and X-Actor-Role headers.
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..system import CollectionSystem, get_system as _get_system
from ..directory import Actor, ActorRole
from ..errors import (
    CollectionError, ValidationError, NotFoundError, AuthorizationError, ConflictError
)


def get_system() -> CollectionSystem:
    return _get_system()


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """Actor from the forwarded identity headers"""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown actor role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role)


def require_privileged(actor: Actor) -> None:
    if not actor.is_privileged:
        raise HTTPException(status_code=403, detail="Admin access required")


_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (ConflictError, 409),
]


def to_http_exception(error: CollectionError) -> HTTPException:
    """HTTP error carrying the domain message and error code"""
    status_code = 400
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={'error_code': error.error_code, 'message': error.message}
    )

"""Caller identity resolution at the request boundary."""

from dataclasses import dataclass
from typing import Optional

from core.errors import Unauthenticated


@dataclass(frozen=True)
class CallerIdentity:
    """An authenticated caller, already resolved by the identity layer."""

    user_id: str


def resolve_caller(user_id_header: Optional[str] = None, authorization: Optional[str] = None) -> CallerIdentity:
    """
    Resolve the caller from request headers.

    The ``x-user-id`` header wins; otherwise a ``Bearer <user id>`` value
    in Authorization is accepted. Token verification happens upstream.

    Raises:
        Unauthenticated: If neither header carries an identity.
    """
    user_id = (user_id_header or "").strip()
    if not user_id and authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer":
            user_id = value.strip()
    if not user_id:
        raise Unauthenticated("User ID is required in headers (x-user-id) or as a bearer value")
    return CallerIdentity(user_id=user_id)

"""
Shared security utilities.

Covers:
  - Receipt-token generation (voter can prove participation)
  - Session decoding from identity-provider JWTs (python-jose)
  - Typed role claims carried on the session
  - FastAPI dependencies that resolve the caller's session

Identity
--------
Authentication itself is delegated to an external identity provider. It
issues HS256 JWTs whose ``sub`` is the user id and whose
``app_metadata.roles`` carries the role claims. The caller identity used by
every procedure comes from that token, never from a request body.
``user_metadata`` is editable by the user, so roles found there are ignored.
"""
from __future__ import annotations

import os
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum

from fastapi import Header
from jose import jwt, JWTError

from .errors import NotAuthenticated

logger = logging.getLogger(__name__)

# -- Config -------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated")


# ---------------------------------------------------------------------------
# Roles and sessions
# ---------------------------------------------------------------------------

class Role(str, Enum):
    STUDENT = "student"
    ADMINISTRATOR = "administrator"
    ELECTORAL_COMMITTEE = "electoral_committee"


@dataclass(frozen=True)
class Session:
    """The authenticated caller, as asserted by the identity provider."""

    user_id: uuid.UUID
    roles: frozenset[Role] = field(default_factory=lambda: frozenset({Role.STUDENT}))
    email: str | None = None

    def has_role(self, role: Role) -> bool:
        return role in self.roles


def parse_roles(raw_roles) -> frozenset[Role]:
    """Turn the ``app_metadata.roles`` claim into a closed set of roles.

    Every authenticated caller is a student; unknown role strings are dropped.
    """
    roles = {Role.STUDENT}
    if isinstance(raw_roles, (list, tuple)):
        for value in raw_roles:
            try:
                roles.add(Role(str(value).strip().lower()))
            except ValueError:
                logger.debug(f"Ignoring unknown role claim: {value!r}")
    return frozenset(roles)


def decode_session(token: str) -> Session:
    """Validate a bearer token and build the caller's session."""
    try:
        payload = jwt.decode(
            token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE,
        )
        user_id = uuid.UUID(str(payload["sub"]))
    except JWTError as e:
        msg = "Token expired" if "expired" in str(e).lower() else "Invalid token"
        raise NotAuthenticated(msg)
    except (KeyError, ValueError):
        raise NotAuthenticated("Invalid token subject")

    app_metadata = payload.get("app_metadata")
    if not isinstance(app_metadata, dict):
        app_metadata = {}
    return Session(
        user_id=user_id,
        roles=parse_roles(app_metadata.get("roles")),
        email=payload.get("email"),
    )


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_session(authorization: str | None = Header(default=None)) -> Session:
    """FastAPI dependency: the caller's session, or 401."""
    token = _bearer_token(authorization)
    if token is None:
        raise NotAuthenticated()
    return decode_session(token)


# ---------------------------------------------------------------------------
# Receipt token
# ---------------------------------------------------------------------------

def generate_receipt_token() -> str:
    """Generate a receipt token so the voter can verify their ballot was recorded.

    Pure randomness: nothing about the ballot (election, list, voter) goes in.
    Uniqueness is enforced by the ``ballots_receipt_token_key`` index.
    """
    return secrets.token_urlsafe(24)

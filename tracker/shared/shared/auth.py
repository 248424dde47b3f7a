"""Member authentication for the tracking API.

Apps send ``Authorization: Bearer <token>``; only the sha256 of the token
is stored in ``member_tokens``.

Usage in a FastAPI route::

    from shared.auth import AuthenticatedMember, require_member

    @router.post("/fix")
    async def post_fix(body: dict, member: AuthenticatedMember = Depends(require_member)):
        ...
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from fastapi import Request
from sqlalchemy import select

from shared.database import get_session_factory
from shared.errors import SubscriptionLocked, Unauthorized
from shared.models.family import Family, FamilyMember, MemberToken

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuthenticatedMember:
    """The caller, resolved from a bearer token."""

    user_id: uuid.UUID
    family_id: uuid.UUID
    display_name: str
    location_sharing: bool
    role: str = "member"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


async def resolve_member(session_factory, token: str) -> AuthenticatedMember:
    """Look up the member behind ``token``.

    Raises Unauthorized for unknown/expired tokens or inactive members and
    SubscriptionLocked when the member's family is locked.
    """
    async with session_factory() as session:
        result = await session.execute(
            select(MemberToken, FamilyMember, Family)
            .join(FamilyMember, FamilyMember.id == MemberToken.user_id)
            .join(Family, Family.id == FamilyMember.family_id)
            .where(MemberToken.token_hash == hash_token(token))
        )
        row = result.first()

    if row is None:
        raise Unauthorized("Invalid token")

    member_token, member, family = row
    now = datetime.now(timezone.utc)
    if member_token.expires_at is not None and member_token.expires_at <= now:
        raise Unauthorized("Token expired")
    if member.status != "active":
        raise Unauthorized("Member is not active")
    if family.subscription_locked:
        raise SubscriptionLocked("Family subscription is locked")

    return AuthenticatedMember(
        user_id=member.id,
        family_id=member.family_id,
        display_name=member.display_name,
        location_sharing=member.location_sharing,
        role=member.role,
    )


async def require_member(request: Request) -> AuthenticatedMember:
    """FastAPI dependency that authenticates the calling family member."""
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Missing bearer token")

    try:
        return await resolve_member(get_session_factory(), token)
    except Unauthorized:
        logger.warning(
            "member_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise

"""Tests for bearer-token member authentication and the error envelope."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from shared.auth import hash_token, resolve_member
from shared.errors import RateLimited, SubscriptionLocked, Unauthorized
from shared.models.family import Family, FamilyMember, MemberToken


def _row(expires_at=None, status="active", locked=False, role="member"):
    family = Family(id=uuid.uuid4(), name="Smiths", subscription_locked=locked)
    member = FamilyMember(
        id=uuid.uuid4(),
        family_id=family.id,
        display_name="Sam",
        role=role,
        location_sharing=True,
        status=status,
    )
    token = MemberToken(id=uuid.uuid4(), user_id=member.id, token_hash=hash_token("t0k"), expires_at=expires_at)
    return token, member, family


def _result(row):
    result = MagicMock()
    result.first.return_value = row
    return result


class TestResolveMember:
    @pytest.mark.asyncio
    async def test_valid_token(self, mock_session_factory, mock_db_session):
        token, member, family = _row(role="admin")
        mock_db_session.execute.return_value = _result((token, member, family))

        resolved = await resolve_member(mock_session_factory, "t0k")

        assert resolved.user_id == member.id
        assert resolved.family_id == family.id
        assert resolved.role == "admin"

    @pytest.mark.asyncio
    async def test_unknown_token(self, mock_session_factory):
        with pytest.raises(Unauthorized):
            await resolve_member(mock_session_factory, "nope")

    @pytest.mark.asyncio
    async def test_expired_token(self, mock_session_factory, mock_db_session):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        mock_db_session.execute.return_value = _result(_row(expires_at=past))
        with pytest.raises(Unauthorized):
            await resolve_member(mock_session_factory, "t0k")

    @pytest.mark.asyncio
    async def test_removed_member(self, mock_session_factory, mock_db_session):
        mock_db_session.execute.return_value = _result(_row(status="removed"))
        with pytest.raises(Unauthorized):
            await resolve_member(mock_session_factory, "t0k")

    @pytest.mark.asyncio
    async def test_locked_family(self, mock_session_factory, mock_db_session):
        mock_db_session.execute.return_value = _result(_row(locked=True))
        with pytest.raises(SubscriptionLocked) as exc:
            await resolve_member(mock_session_factory, "t0k")
        assert exc.value.status_code == 402


class TestErrorEnvelope:
    def test_to_dict(self):
        err = RateLimited("slow down", retry_after=4)
        assert err.to_dict() == {
            "success": False,
            "error": "rate_limited",
            "message": "slow down",
            "retry_after": 4,
        }

    def test_hash_is_stable(self):
        assert hash_token("abc") == hash_token("abc")
        assert len(hash_token("abc")) == 64

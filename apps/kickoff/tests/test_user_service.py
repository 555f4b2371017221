"""
Tests for the local identity mirror.
"""

import asyncio

import pytest
from sqlalchemy import select, func

from conftest import create_user
from kickoff.database.models import User
from kickoff.services import user_service


@pytest.mark.asyncio
async def test_upsert_creates_then_refreshes(db_session):
    created = await user_service.upsert_user(
        db_session, "user-1", display_name="Sam", roles=["player"]
    )
    assert created["display_name"] == "Sam"
    assert created["roles"] == ["player"]

    refreshed = await user_service.upsert_user(db_session, "user-1", email="sam@example.com")
    assert refreshed["display_name"] == "Sam"
    assert refreshed["email"] == "sam@example.com"


@pytest.mark.asyncio
async def test_upsert_requires_user_id(db_session):
    with pytest.raises(ValueError):
        await user_service.upsert_user(db_session, "")


@pytest.mark.asyncio
async def test_upsert_recovers_when_row_appears_after_lookup(session_maker, db_session):
    """Another request inserted the user between this request's lookup and insert."""
    async with session_maker() as other:
        await create_user(other, "user-2", "First Name")

    original_get = db_session.get
    calls = []

    async def stale_first_get(entity, ident, **kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            return None
        return await original_get(entity, ident, **kwargs)

    db_session.get = stale_first_get

    result = await user_service.upsert_user(db_session, "user-2", display_name="Second Name")

    assert result["display_name"] == "Second Name"
    assert len(calls) == 2
    count = await db_session.scalar(select(func.count()).select_from(User).where(User.id == "user-2"))
    assert count == 1


@pytest.mark.asyncio
async def test_concurrent_first_requests_create_one_user(session_maker, db_session):
    async def first_request(name):
        async with session_maker() as session:
            return await user_service.upsert_user(session, "user-3", display_name=name)

    results = await asyncio.gather(first_request("Tab One"), first_request("Tab Two"))

    assert [r["id"] for r in results] == ["user-3", "user-3"]
    count = await db_session.scalar(select(func.count()).select_from(User).where(User.id == "user-3"))
    assert count == 1

"""Tests for user and membership enrichment."""

import pytest

from groupguard.datatypes.automod_datatypes import UserGroup, UserSnapshot
from groupguard.errors import ApiHttpError, AuthError, ResolverUnavailable
from groupguard.network.user_resolver import UserResolver

FULL_USER = {
    "id": "usr_1",
    "displayName": "Alice",
    "tags": ["system_trust_known"],
    "bio": "hello there",
    "status": "active",
    "pronouns": "they/them",
    "ageVerificationStatus": "18+",
}


@pytest.mark.asyncio
async def test_fetch_user_is_cached(resolver, client):
    client.users["usr_1"] = FULL_USER

    first = await resolver.fetch_user("usr_1")
    second = await resolver.fetch_user("usr_1")

    assert first == second
    assert first.age_verification_status == "18+"
    assert len(client.calls_to("get_user")) == 1


@pytest.mark.asyncio
async def test_fetch_user_returns_none_on_failure(resolver):
    assert await resolver.fetch_user("usr_missing") is None


@pytest.mark.asyncio
async def test_fetch_user_raises_when_not_authenticated(resolver, client):
    client.fail("get_user", ApiHttpError(401, "Unauthorized"))
    with pytest.raises(AuthError):
        await resolver.fetch_user("usr_1")


@pytest.mark.asyncio
async def test_enrich_backfills_missing_fields(resolver, client):
    client.users["usr_1"] = FULL_USER
    partial = UserSnapshot(id="usr_1", display_name="Alice (request)")

    enriched = await resolver.enrich(partial)

    assert enriched.display_name == "Alice (request)"
    assert enriched.tags == ["system_trust_known"]
    assert enriched.bio == "hello there"


@pytest.mark.asyncio
async def test_enrich_skips_complete_snapshots(resolver, client):
    complete = UserSnapshot(id="usr_1", tags=[], bio="")
    assert await resolver.enrich(complete) is complete
    assert client.calls_to("get_user") == []


@pytest.mark.asyncio
async def test_enrich_keeps_snapshot_on_failure(resolver):
    partial = UserSnapshot(id="usr_missing", display_name="Ghost")
    assert await resolver.enrich(partial) is partial


@pytest.mark.asyncio
async def test_user_groups_are_cached(resolver, client):
    client.user_groups["usr_1"] = [{"groupId": "grp_a", "name": "Alpha", "shortCode": "ALPHA"}]

    groups = await resolver.get_user_groups("usr_1")
    await resolver.get_user_groups("usr_1")

    assert groups == [UserGroup(id="grp_a", name="Alpha", short_code="ALPHA")]
    assert len(client.calls_to("get_user_groups")) == 1


@pytest.mark.asyncio
async def test_user_groups_unavailable_raises(resolver, client):
    client.fail("get_user_groups", ApiHttpError(403, "Forbidden"))
    with pytest.raises(ResolverUnavailable):
        await resolver.get_user_groups("usr_1")


@pytest.mark.asyncio
async def test_clear_drops_cached_entries(api, client):
    resolver = UserResolver(api)
    client.users["usr_1"] = FULL_USER
    await resolver.fetch_user("usr_1")
    resolver.clear()
    await resolver.fetch_user("usr_1")
    assert len(client.calls_to("get_user")) == 2

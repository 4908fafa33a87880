import asyncio

import pytest

from amora.core.errors import ConflictError, NotFoundError, ValidationError
from amora.matching import match_id_for
from amora.models.user import Role


async def test_one_sided_like_is_not_a_match(matches, users, make_user):
    a, b = await make_user(), await make_user()

    result = await matches.like(a.id, b.id)

    assert result == {"message": "Like recorded", "isMatch": False}
    assert (await users.relations(a.id))["likes"] == {b.id}
    assert (await users.relations(b.id))["likes"] == set()


async def test_mutual_like_creates_match_for_both(matches, users, hub, make_user):
    a, b = await make_user(), await make_user()

    await matches.like(a.id, b.id)
    result = await matches.like(b.id, a.id)

    assert result == {"message": "Match created!", "isMatch": True}
    rel_a = await users.relations(a.id)
    rel_b = await users.relations(b.id)
    assert rel_a["matches"] == {b.id} and rel_a["likes"] == set()
    assert rel_b["matches"] == {a.id} and rel_b["likes"] == set()

    created = hub.of("match:created")
    assert {uid for uid, _ in created} == {a.id, b.id}
    for uid, payload in created:
        assert payload["matchId"] == match_id_for(a.id, b.id)
        assert payload["users"] == sorted([a.id, b.id])
        assert payload["userId"] == (b.id if uid == a.id else a.id)


async def test_match_id_is_order_independent():
    assert match_id_for("u2", "u1") == match_id_for("u1", "u2") == "u1-u2"


async def test_repeated_like_is_rejected(matches, make_user):
    a, b = await make_user(), await make_user()
    await matches.like(a.id, b.id)

    with pytest.raises(ConflictError):
        await matches.like(a.id, b.id)


async def test_like_after_match_does_not_duplicate(matches, make_user, db_path):
    a, b = await make_user(), await make_user()
    await matches.like(a.id, b.id)
    await matches.like(b.id, a.id)

    with pytest.raises(ConflictError):
        await matches.like(a.id, b.id)

    mutual = await matches.get_mutual_matches(a.id)
    assert [u.id for u in mutual] == [b.id]


async def test_concurrent_mutual_likes_match_exactly_once(matches, users, make_user):
    a, b = await make_user(), await make_user()

    results = await asyncio.gather(matches.like(a.id, b.id), matches.like(b.id, a.id))

    assert sorted(r["isMatch"] for r in results) == [False, True]
    assert (await users.relations(a.id))["matches"] == {b.id}
    assert (await users.relations(b.id))["matches"] == {a.id}


async def test_cannot_like_self(matches, make_user):
    a = await make_user()
    with pytest.raises(ValidationError):
        await matches.like(a.id, a.id)


async def test_like_unknown_user(matches, make_user):
    a = await make_user()
    with pytest.raises(NotFoundError):
        await matches.like(a.id, "usr_missing")


async def test_dislike_unwinds_match_on_both_sides(matches, users, make_user):
    a, b = await make_user(), await make_user()
    await matches.like(a.id, b.id)
    await matches.like(b.id, a.id)

    assert await matches.dislike(a.id, b.id) == {"message": "Dislike recorded"}

    rel_a = await users.relations(a.id)
    rel_b = await users.relations(b.id)
    assert rel_a == {"likes": set(), "dislikes": {b.id}, "matches": set()}
    assert rel_b == {"likes": set(), "dislikes": set(), "matches": set()}
    assert await matches.get_mutual_matches(b.id) == []


async def test_dislike_twice_is_rejected(matches, make_user):
    a, b = await make_user(), await make_user()
    await matches.dislike(a.id, b.id)

    with pytest.raises(ConflictError):
        await matches.dislike(a.id, b.id)


async def test_like_replaces_dislike(matches, users, make_user):
    a, b = await make_user(), await make_user()
    await matches.dislike(a.id, b.id)
    await matches.like(a.id, b.id)

    rel = await users.relations(a.id)
    assert rel["likes"] == {b.id}
    assert rel["dislikes"] == set()


async def test_candidates_filter(matches, make_user):
    me       = await make_user()
    liked    = await make_user()
    disliked = await make_user()
    fresh    = await make_user()
    await make_user(role=Role.ADMIN)
    await make_user(complete=False)
    await make_user(profile_image="")

    await matches.like(me.id, liked.id)
    await matches.dislike(me.id, disliked.id)

    candidates = await matches.find_candidates(me.id)
    assert [u.id for u in candidates] == [fresh.id]


async def test_candidates_are_capped(matches, make_user):
    me = await make_user()
    for _ in range(12):
        await make_user()

    assert len(await matches.find_candidates(me.id)) == 10
    assert len(await matches.find_candidates(me.id, limit=3)) == 3

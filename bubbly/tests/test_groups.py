import pytest

from bubbly.internal.domain.errors import AlreadyMember, Invalid, NotFound


@pytest.fixture
def alice(users):
    return users.add_user("alice", "pw1")


@pytest.fixture
def bob(users):
    return users.add_user("bob", "pw2")


def test_creator_is_always_a_member(groups, alice, bob):
    group = groups.create_group("G", alice.id, [bob.id, alice.id, bob.id])

    assert group.creatorId == alice.id
    assert group.members == [alice.id, bob.id]
    assert groups.find_by_id(group.id) == group


def test_group_requires_known_users(groups, alice):
    with pytest.raises(NotFound):
        groups.create_group("G", alice.id, ["ghost"])
    with pytest.raises(NotFound):
        groups.create_group("G", "ghost")


def test_group_requires_a_name(groups, alice):
    with pytest.raises(Invalid):
        groups.create_group("   ", alice.id)


def test_add_member(groups, users, alice, bob):
    group = groups.create_group("G", alice.id)
    carol = users.add_user("carol", "pw3")

    updated = groups.add_member(group.id, carol.id)

    assert updated.members == [alice.id, carol.id]
    assert groups.get(group.id).members == [alice.id, carol.id]
    with pytest.raises(AlreadyMember):
        groups.add_member(group.id, carol.id)


def test_add_member_to_missing_group_or_user(groups, alice):
    group = groups.create_group("G", alice.id)

    with pytest.raises(NotFound):
        groups.add_member("missing", alice.id)
    with pytest.raises(NotFound):
        groups.add_member(group.id, "ghost")


def test_get_user_groups(groups, alice, bob):
    first = groups.create_group("first", alice.id, [bob.id])
    groups.create_group("second", alice.id)

    assert [g.id for g in groups.get_user_groups(bob.id)] == [first.id]
    assert len(groups.get_user_groups(alice.id)) == 2

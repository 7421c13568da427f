import pytest

from murmur.service.errors import ForbiddenError, NotFoundError, ValidationError
from murmur.service.relationships import (
    CONTENT_INTERACTIONS,
    DENIED_MESSAGE,
    Operation,
    RelationshipService,
    decide,
    enforce,
)
from murmur.storage.models import User


def _user(user_id, *, following=(), block_list=()):
    return User(
        id=user_id,
        name=user_id.title(),
        username=user_id,
        email=f"{user_id}@example.com",
        following=list(following),
        block_list=list(block_list),
    )


class TestDecide:
    @pytest.mark.parametrize("operation", list(Operation))
    def test_self_is_always_allowed(self, operation):
        alice = _user("alice", block_list=["alice"])
        assert decide(alice, alice, operation)

    @pytest.mark.parametrize("operation", list(Operation))
    def test_block_in_either_direction_denies_everything(self, operation):
        alice = _user("alice", following=["bob"], block_list=["bob"])
        bob = _user("bob", following=["alice"])
        assert not decide(alice, bob, operation)
        assert not decide(bob, alice, operation)
        assert decide(bob, alice, operation).reason == "blocked"

    @pytest.mark.parametrize("operation", sorted(CONTENT_INTERACTIONS, key=lambda op: op.value))
    def test_content_needs_a_follow_edge(self, operation):
        alice = _user("alice")
        bob = _user("bob")
        decision = decide(alice, bob, operation)
        assert not decision
        assert decision.reason == "not_following"

    @pytest.mark.parametrize("operation", sorted(CONTENT_INTERACTIONS, key=lambda op: op.value))
    def test_follow_in_either_direction_suffices(self, operation):
        follower = _user("alice", following=["bob"])
        followee = _user("bob")
        assert decide(follower, followee, operation)
        assert decide(followee, follower, operation)

    @pytest.mark.parametrize("operation", [Operation.VIEW_PROFILE, Operation.FOLLOW])
    def test_non_content_operations_need_no_edge(self, operation):
        assert decide(_user("alice"), _user("bob"), operation)

    def test_followers_list_alone_does_not_count(self):
        alice = _user("alice")
        bob = _user("bob")
        bob.followers.append("alice")
        assert not decide(alice, bob, Operation.COMMENT)

    def test_enforce_uses_one_message_for_every_reason(self):
        blocker = _user("alice", block_list=["bob"])
        stranger = _user("carol")
        bob = _user("bob")
        with pytest.raises(ForbiddenError) as blocked:
            enforce(bob, blocker, Operation.COMMENT)
        with pytest.raises(ForbiddenError) as unfollowed:
            enforce(bob, stranger, Operation.COMMENT)
        assert blocked.value.message == unfollowed.value.message == DENIED_MESSAGE


@pytest.fixture
def people(store):
    created = {}
    for name in ("alice", "bob", "carol"):
        created[name] = store.create_user(
            name=name.title(),
            username=name,
            email=f"{name}@example.com",
            password_hash="x",
            password_algo="argon2id",
        )
    return created


@pytest.fixture
def service(store):
    return RelationshipService(store)


class TestRelationshipService:
    @pytest.mark.asyncio
    async def test_follow_updates_both_sides(self, service, store, people):
        await service.follow(people["alice"], people["bob"].id)
        assert store.get_user(people["alice"].id).following == [people["bob"].id]
        assert store.get_user(people["bob"].id).followers == [people["alice"].id]

    @pytest.mark.asyncio
    async def test_follow_twice_is_rejected(self, service, store, people):
        await service.follow(people["alice"], people["bob"].id)
        alice = store.get_user(people["alice"].id)
        with pytest.raises(ValidationError):
            await service.follow(alice, people["bob"].id)
        assert store.get_user(people["bob"].id).followers == [people["alice"].id]

    @pytest.mark.asyncio
    async def test_self_follow_rejected_before_lookup(self, service, people):
        with pytest.raises(ValidationError):
            await service.follow(people["alice"], people["alice"].id)

    @pytest.mark.asyncio
    async def test_missing_target(self, service, people):
        with pytest.raises(NotFoundError):
            await service.follow(people["alice"], "nobody")

    @pytest.mark.asyncio
    async def test_follow_blocked_user_forbidden(self, service, store, people):
        await service.block(people["bob"], people["alice"].id)
        with pytest.raises(ForbiddenError):
            await service.follow(store.get_user(people["alice"].id), people["bob"].id)

    @pytest.mark.asyncio
    async def test_block_severs_follow_edges(self, service, store, people):
        await service.follow(people["alice"], people["bob"].id)
        bob = store.get_user(people["bob"].id)
        await service.follow(bob, people["alice"].id)

        await service.block(store.get_user(people["alice"].id), people["bob"].id)

        alice = store.get_user(people["alice"].id)
        bob = store.get_user(people["bob"].id)
        assert alice.block_list == [bob.id]
        assert alice.following == [] and alice.followers == []
        assert bob.following == [] and bob.followers == []

    @pytest.mark.asyncio
    async def test_unblock_does_not_restore_follows(self, service, store, people):
        await service.follow(people["alice"], people["bob"].id)
        await service.block(store.get_user(people["alice"].id), people["bob"].id)
        await service.unblock(store.get_user(people["alice"].id), people["bob"].id)
        alice = store.get_user(people["alice"].id)
        assert alice.block_list == []
        assert alice.following == []

    @pytest.mark.asyncio
    async def test_unfollow_and_unblock_require_existing_edge(self, service, people):
        with pytest.raises(ValidationError):
            await service.unfollow(people["alice"], people["bob"].id)
        with pytest.raises(ValidationError):
            await service.unblock(people["alice"], people["bob"].id)

    @pytest.mark.asyncio
    async def test_blocked_users(self, service, store, people):
        await service.block(people["alice"], people["bob"].id)
        blocked = await service.blocked_users(store.get_user(people["alice"].id))
        assert [u.username for u in blocked] == ["bob"]

    @pytest.mark.asyncio
    async def test_view_profile(self, service, store, people):
        profile = await service.view_profile(people["alice"], people["bob"].id)
        assert profile.username == "bob"
        with pytest.raises(ValidationError):
            await service.view_profile(people["alice"], people["alice"].id)
        await service.block(people["bob"], people["alice"].id)
        with pytest.raises(ForbiddenError):
            await service.view_profile(store.get_user(people["alice"].id), people["bob"].id)

    @pytest.mark.asyncio
    async def test_search_hides_self_and_blocked(self, service, store, people):
        await service.block(people["carol"], people["alice"].id)
        results = await service.search(store.get_user(people["alice"].id), "bob")
        assert [u.username for u in results] == ["bob"]
        results = await service.search(store.get_user(people["alice"].id), "ca")
        assert results == []

    @pytest.mark.asyncio
    async def test_search_fills_page_past_hidden_users(self, service, store, people):
        fans = [
            store.create_user(
                name=f"Fan {i}",
                username=f"fan{i:02d}",
                email=f"fan{i:02d}@example.com",
                password_hash="x",
                password_algo="argon2id",
            )
            for i in range(14)
        ]
        alice = people["alice"]
        for fan in fans[:3]:
            await service.block(alice, fan.id)
        await service.block(fans[3], alice.id)

        results = await service.search(store.get_user(alice.id), "fan")

        assert [u.username for u in results] == [f"fan{i:02d}" for i in range(4, 14)]

    @pytest.mark.asyncio
    async def test_search_term_length(self, service, people):
        with pytest.raises(ValidationError):
            await service.search(people["alice"], "a")
        with pytest.raises(ValidationError):
            await service.search(people["alice"], "a" * 11)

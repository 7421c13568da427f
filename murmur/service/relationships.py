"""Relationship-based authorization and social graph mutations.

``decide`` is the single place where follow and block state turns into an
allow/deny answer. Route handlers and services never inspect relationship
lists themselves; they call ``decide`` or ``enforce`` with an ``Operation``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from murmur.logging import get_logger
from murmur.service.errors import ForbiddenError, NotFoundError, ValidationError
from murmur.storage.models import User

logger = get_logger(__name__)

DENIED_MESSAGE = "you cannot interact with this user"


class Operation(str, Enum):
    VIEW_PROFILE = "view_profile"
    FOLLOW = "follow"
    VIEW_POSTS = "view_posts"
    LIKE_POST = "like_post"
    UNLIKE_POST = "unlike_post"
    COMMENT = "comment"
    REPLY = "reply"
    VIEW_COMMENTS = "view_comments"
    LIKE_COMMENT = "like_comment"
    UNLIKE_COMMENT = "unlike_comment"


# Operations that need at least one follow edge between actor and target
CONTENT_INTERACTIONS = frozenset(
    {
        Operation.VIEW_POSTS,
        Operation.LIKE_POST,
        Operation.UNLIKE_POST,
        Operation.COMMENT,
        Operation.REPLY,
        Operation.VIEW_COMMENTS,
        Operation.LIKE_COMMENT,
        Operation.UNLIKE_COMMENT,
    }
)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def is_blocked_either_way(a: User, b: User) -> bool:
    return a.has_blocked(b.id) or b.has_blocked(a.id)


def follows_either_way(a: User, b: User) -> bool:
    # Only each side's own "following" list counts; a one-sided followers entry
    # left behind by a partial write is ignored.
    return a.is_following(b.id) or b.is_following(a.id)


def decide(actor: User, target: User, operation: Operation) -> Decision:
    """Decide whether ``actor`` may perform ``operation`` against ``target``.

    Rules, first match wins: self is allowed; a block in either direction is
    denied; content interactions need a follow edge in either direction;
    anything else is allowed.
    """
    if actor.id == target.id:
        return ALLOW
    if is_blocked_either_way(actor, target):
        return Decision(False, "blocked")
    if operation in CONTENT_INTERACTIONS and not follows_either_way(actor, target):
        return Decision(False, "not_following")
    return ALLOW


def enforce(actor: User, target: User, operation: Operation) -> None:
    """Raise ``ForbiddenError`` when ``decide`` denies.

    The message is the same for every reason so a caller cannot tell a block
    from a missing follow.
    """
    decision = decide(actor, target, operation)
    if not decision:
        logger.info(
            "relationship_denied",
            actor_id=actor.id,
            target_id=target.id,
            operation=operation.value,
            reason=decision.reason,
        )
        raise ForbiddenError(DENIED_MESSAGE)


class GraphStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_users(self, user_ids: List[str]) -> List[User]: ...

    def add_follow(self, follower_id: str, followee_id: str) -> bool: ...

    def remove_follow(self, follower_id: str, followee_id: str) -> bool: ...

    def add_block(self, blocker_id: str, blocked_id: str) -> bool: ...

    def remove_block(self, blocker_id: str, blocked_id: str) -> bool: ...

    def search_users(
        self, term: str, limit: int = 10, *, viewer_id: Optional[str] = None
    ) -> List[User]: ...


class RelationshipService:
    def __init__(self, store: GraphStore) -> None:
        self.store = store

    async def _load_target(self, actor: User, target_id: str, action: str) -> User:
        if target_id == actor.id:
            raise ValidationError(f"you cannot {action} yourself")
        target = await asyncio.to_thread(self.store.get_user, target_id)
        if not target:
            raise NotFoundError("user not found")
        return target

    async def follow(self, actor: User, target_id: str) -> User:
        target = await self._load_target(actor, target_id, "follow")
        enforce(actor, target, Operation.FOLLOW)
        if actor.is_following(target.id):
            raise ValidationError("you are already following this user")
        added = await asyncio.to_thread(self.store.add_follow, actor.id, target.id)
        if not added:
            # Lost a race with a block or a duplicate follow; re-read to tell which
            fresh_actor = await asyncio.to_thread(self.store.get_user, actor.id)
            fresh_target = await asyncio.to_thread(self.store.get_user, target.id)
            if fresh_actor and fresh_target:
                enforce(fresh_actor, fresh_target, Operation.FOLLOW)
            raise ValidationError("you are already following this user")
        logger.info("user_followed", actor_id=actor.id, target_id=target.id)
        return target

    async def unfollow(self, actor: User, target_id: str) -> User:
        target = await self._load_target(actor, target_id, "unfollow")
        if not actor.is_following(target.id):
            raise ValidationError("you are not following this user")
        await asyncio.to_thread(self.store.remove_follow, actor.id, target.id)
        logger.info("user_unfollowed", actor_id=actor.id, target_id=target.id)
        return target

    async def block(self, actor: User, target_id: str) -> User:
        target = await self._load_target(actor, target_id, "block")
        if actor.has_blocked(target.id):
            raise ValidationError("user is already blocked")
        if not await asyncio.to_thread(self.store.add_block, actor.id, target.id):
            raise ValidationError("user is already blocked")
        logger.info("user_blocked", actor_id=actor.id, target_id=target.id)
        return target

    async def unblock(self, actor: User, target_id: str) -> User:
        target = await self._load_target(actor, target_id, "unblock")
        if not actor.has_blocked(target.id):
            raise ValidationError("user is not blocked")
        await asyncio.to_thread(self.store.remove_block, actor.id, target.id)
        logger.info("user_unblocked", actor_id=actor.id, target_id=target.id)
        return target

    async def blocked_users(self, actor: User) -> List[User]:
        return await asyncio.to_thread(self.store.get_users, list(actor.block_list))

    async def view_profile(self, actor: User, target_id: str) -> User:
        if target_id == actor.id:
            raise ValidationError("use /users/me for your own profile")
        target = await asyncio.to_thread(self.store.get_user, target_id)
        if not target:
            raise NotFoundError("user not found")
        enforce(actor, target, Operation.VIEW_PROFILE)
        return target

    async def search(self, actor: User, term: str, *, limit: int = 10) -> List[User]:
        term = term.strip()
        if not 2 <= len(term) <= 10:
            raise ValidationError("search term must be between 2 and 10 characters")
        matches = await asyncio.to_thread(
            self.store.search_users, term, limit, viewer_id=actor.id
        )
        return [
            u
            for u in matches
            if u.id != actor.id and decide(actor, u, Operation.VIEW_PROFILE)
        ]

from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from murmur.logging import get_logger
from murmur.service.errors import ForbiddenError, NotFoundError, ValidationError
from murmur.service.relationships import Operation, decide, enforce, is_blocked_either_way
from murmur.storage.models import Comment, Post, User

logger = get_logger(__name__)

MAX_COMMENT_LENGTH = 256
MAX_HEADER_LENGTH = 2200


class ContentStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_users(self, user_ids: Iterable[str]) -> List[User]: ...

    def create_post(self, author_id: str, header: str, images: Sequence[str]) -> Post: ...

    def get_post(self, post_id: str) -> Optional[Post]: ...

    def update_post(
        self,
        post_id: str,
        *,
        header: Optional[str] = None,
        images: Optional[Sequence[str]] = None,
    ) -> Optional[Post]: ...

    def delete_post(self, post_id: str) -> bool: ...

    def list_posts_by_authors(self, author_ids: Iterable[str], *, limit: int = 50) -> List[Post]: ...

    def add_post_like(self, post_id: str, user_id: str) -> bool: ...

    def remove_post_like(self, post_id: str, user_id: str) -> bool: ...

    def create_comment(
        self,
        post_id: str,
        author_id: str,
        content: str,
        parent_comment_id: Optional[str] = None,
    ) -> Comment: ...

    def get_comment(self, comment_id: str) -> Optional[Comment]: ...

    def list_comments(self, post_id: str) -> List[Comment]: ...

    def update_comment(self, comment_id: str, content: str) -> Optional[Comment]: ...

    def delete_comment(self, comment_id: str) -> bool: ...

    def add_comment_like(self, comment_id: str, user_id: str) -> bool: ...

    def remove_comment_like(self, comment_id: str, user_id: str) -> bool: ...


def _clean_comment(content: str) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("comment text is required")
    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationError(f"comment must be at most {MAX_COMMENT_LENGTH} characters")
    return text


def _clean_header(header: str) -> str:
    text = (header or "").strip()
    if not text:
        raise ValidationError("post header is required")
    if len(text) > MAX_HEADER_LENGTH:
        raise ValidationError(f"post header must be at most {MAX_HEADER_LENGTH} characters")
    return text


class ContentService:
    """Posts and comments.

    Every operation loads what it refers to first (404 on a missing post,
    comment or author) and only then asks the relationship engine, so
    authorization failures are never confused with missing resources.
    """

    def __init__(self, store: ContentStore) -> None:
        self.store = store

    async def _get_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def _get_post_with_author(self, post_id: str) -> Tuple[Post, User]:
        post = await asyncio.to_thread(self.store.get_post, post_id)
        if not post:
            raise NotFoundError("post not found")
        author = await asyncio.to_thread(self.store.get_user, post.author_id)
        if not author:
            raise NotFoundError("post not found")
        return post, author

    async def _get_comment(self, comment_id: str) -> Comment:
        comment = await asyncio.to_thread(self.store.get_comment, comment_id)
        if not comment:
            raise NotFoundError("comment not found")
        return comment

    # -- posts ----------------------------------------------------------------------

    async def create_post(self, actor: User, *, header: str, images: Sequence[str]) -> Post:
        post = await asyncio.to_thread(
            self.store.create_post, actor.id, _clean_header(header), list(images)
        )
        logger.info("post_created", post_id=post.id, author_id=actor.id)
        return post

    async def update_post(
        self,
        actor: User,
        post_id: str,
        *,
        header: Optional[str] = None,
        images: Optional[Sequence[str]] = None,
    ) -> Post:
        post = await asyncio.to_thread(self.store.get_post, post_id)
        if not post:
            raise NotFoundError("post not found")
        if post.author_id != actor.id:
            raise ForbiddenError("you can only edit your own posts")
        updated = await asyncio.to_thread(
            self.store.update_post,
            post_id,
            header=_clean_header(header) if header is not None else None,
            images=images,
        )
        if not updated:
            raise NotFoundError("post not found")
        return updated

    async def delete_post(self, actor: User, post_id: str) -> None:
        post = await asyncio.to_thread(self.store.get_post, post_id)
        if not post:
            raise NotFoundError("post not found")
        if post.author_id != actor.id and actor.role != "admin":
            raise ForbiddenError("you can only delete your own posts")
        await asyncio.to_thread(self.store.delete_post, post_id)
        logger.info("post_deleted", post_id=post_id, actor_id=actor.id)

    async def user_posts(self, actor: User, author_id: str, *, limit: int = 50) -> List[Post]:
        author = await self._get_user(author_id)
        enforce(actor, author, Operation.VIEW_POSTS)
        return await asyncio.to_thread(self.store.list_posts_by_authors, [author.id], limit=limit)

    async def feed(self, actor: User, *, limit: int = 50) -> List[Post]:
        followed = await asyncio.to_thread(self.store.get_users, list(actor.following))
        visible = [actor.id] + [
            u.id for u in followed if decide(actor, u, Operation.VIEW_POSTS)
        ]
        return await asyncio.to_thread(self.store.list_posts_by_authors, visible, limit=limit)

    async def like_post(self, actor: User, post_id: str) -> Post:
        post, author = await self._get_post_with_author(post_id)
        enforce(actor, author, Operation.LIKE_POST)
        if not await asyncio.to_thread(self.store.add_post_like, post.id, actor.id):
            raise ValidationError("you already liked this post")
        return await self._reload_post(post.id)

    async def unlike_post(self, actor: User, post_id: str) -> Post:
        post, author = await self._get_post_with_author(post_id)
        enforce(actor, author, Operation.UNLIKE_POST)
        if not await asyncio.to_thread(self.store.remove_post_like, post.id, actor.id):
            raise ValidationError("you have not liked this post")
        return await self._reload_post(post.id)

    async def _reload_post(self, post_id: str) -> Post:
        post = await asyncio.to_thread(self.store.get_post, post_id)
        if not post:
            raise NotFoundError("post not found")
        return post

    # -- comments -------------------------------------------------------------------

    async def create_comment(self, actor: User, post_id: str, content: str) -> Comment:
        text = _clean_comment(content)
        post, author = await self._get_post_with_author(post_id)
        enforce(actor, author, Operation.COMMENT)
        comment = await asyncio.to_thread(self.store.create_comment, post.id, actor.id, text)
        logger.info("comment_created", comment_id=comment.id, post_id=post.id)
        return comment

    async def reply(self, actor: User, comment_id: str, content: str) -> Comment:
        text = _clean_comment(content)
        parent = await self._get_comment(comment_id)
        post, post_author = await self._get_post_with_author(parent.post_id)
        parent_author = await self._get_user(parent.author_id)
        enforce(actor, post_author, Operation.REPLY)
        enforce(actor, parent_author, Operation.REPLY)
        reply = await asyncio.to_thread(
            self.store.create_comment, post.id, actor.id, text, parent.id
        )
        logger.info("comment_replied", comment_id=reply.id, parent_id=parent.id)
        return reply

    async def list_comments(self, actor: User, post_id: str) -> List[Comment]:
        post, author = await self._get_post_with_author(post_id)
        enforce(actor, author, Operation.VIEW_COMMENTS)
        comments = await asyncio.to_thread(self.store.list_comments, post.id)
        author_ids = {c.author_id for c in comments} - {actor.id}
        authors = await asyncio.to_thread(self.store.get_users, list(author_ids))
        hidden = {u.id for u in authors if is_blocked_either_way(actor, u)}
        return [c for c in comments if c.author_id not in hidden]

    async def update_comment(self, actor: User, comment_id: str, content: str) -> Comment:
        text = _clean_comment(content)
        comment = await self._get_comment(comment_id)
        if comment.author_id != actor.id:
            raise ForbiddenError("you can only edit your own comments")
        updated = await asyncio.to_thread(self.store.update_comment, comment.id, text)
        if not updated:
            raise NotFoundError("comment not found")
        return updated

    async def delete_comment(self, actor: User, comment_id: str) -> None:
        comment = await self._get_comment(comment_id)
        if comment.author_id != actor.id:
            post = await asyncio.to_thread(self.store.get_post, comment.post_id)
            if not post or post.author_id != actor.id:
                raise ForbiddenError("you can only delete your own comments")
        await asyncio.to_thread(self.store.delete_comment, comment.id)
        logger.info("comment_deleted", comment_id=comment.id, actor_id=actor.id)

    async def like_comment(self, actor: User, comment_id: str) -> Comment:
        comment = await self._get_comment(comment_id)
        author = await self._get_user(comment.author_id)
        enforce(actor, author, Operation.LIKE_COMMENT)
        if not await asyncio.to_thread(self.store.add_comment_like, comment.id, actor.id):
            raise ValidationError("you already liked this comment")
        return await self._get_comment(comment.id)

    async def unlike_comment(self, actor: User, comment_id: str) -> Comment:
        comment = await self._get_comment(comment_id)
        author = await self._get_user(comment.author_id)
        enforce(actor, author, Operation.UNLIKE_COMMENT)
        if not await asyncio.to_thread(self.store.remove_comment_like, comment.id, actor.id):
            raise ValidationError("you have not liked this comment")
        return await self._get_comment(comment.id)

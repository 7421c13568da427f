from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from murmur.logging import get_logger
from murmur.storage.errors import ConstraintViolation
from murmur.storage.models import (
    PROFILE_FIELDS,
    Comment,
    Post,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process user and content store used for tests and local development.

    Every public method takes ``_data_lock`` for its whole duration, which gives
    the same per-record atomicity the Postgres store gets from single-statement
    updates. Records handed out are copies, so callers never mutate stored state.
    When ``fs_root`` is set the full state is written to
    ``<fs_root>/state/memory_store.json`` after each mutation and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.posts: Dict[str, Post] = {}
        self.comments: Dict[str, Comment] = {}
        # RLock so helpers can be called while a public method already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("memory_store_state_loaded", users=len(self.users))

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        *,
        name: str,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
        role: str = "user",
        email_verification_hash: Optional[str] = None,
        email_verification_expires: Optional[datetime] = None,
    ) -> User:
        email = email.strip().lower()
        username = username.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=new_id(),
                name=name,
                username=username,
                email=email,
                role=role,
                email_verification_hash=email_verification_hash,
                email_verification_expires=email_verification_expires,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return self._copy(user)
        return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = username.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return self._copy(user)
        return None

    def get_users(self, user_ids: Iterable[str]) -> List[User]:
        with self._data_lock:
            return [
                self._copy(self.users[user_id])
                for user_id in user_ids
                if user_id in self.users
            ]

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._copy(u) for u in ordered[:limit]]

    def search_users(
        self, term: str, limit: int = 10, *, viewer_id: Optional[str] = None
    ) -> List[User]:
        """Match username or name; with ``viewer_id``, skip the viewer and blocks either way."""
        needle = term.strip().lower()
        with self._data_lock:
            viewer = self.users.get(viewer_id) if viewer_id else None
            hidden = set(viewer.block_list) if viewer else set()
            matches = [
                u
                for u in self.users.values()
                if (needle in u.username or needle in u.name.lower())
                and u.id != viewer_id
                and u.id not in hidden
                and (viewer_id is None or viewer_id not in u.block_list)
            ]
            matches.sort(key=lambda u: u.username)
            return [self._copy(u) for u in matches[:limit]]

    def update_profile(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not profile fields: {sorted(unknown)}")
        if "username" in fields and fields["username"] is not None:
            fields["username"] = fields["username"].strip().lower()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_username = fields.get("username")
            if new_username and new_username != user.username:
                if any(
                    u.username == new_username
                    for u in self.users.values()
                    if u.id != user_id
                ):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            for key, value in fields.items():
                if value is not None:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy(user)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy(user)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].updated_at = utcnow()
            self._persist_state()

    # -- verification artifacts ---------------------------------------------

    def set_email_verification(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.email_verification_hash = token_hash
            user.email_verification_expires = expires_at
            self._persist_state()

    def consume_email_verification(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.email_verification_hash == token_hash
                    and user.email_verification_expires is not None
                    and user.email_verification_expires > now
                ):
                    user.is_email_verified = True
                    user.email_verification_hash = None
                    user.email_verification_expires = None
                    user.updated_at = now
                    self._persist_state()
                    return self._copy(user)
        return None

    def set_two_factor_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.two_factor_code_hash = code_hash
            user.two_factor_code_expires = expires_at
            self._persist_state()

    def clear_two_factor_code(
        self, user_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        """Clear a pending code; with ``expected_hash`` only if it is still the pending one."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.two_factor_code_hash is None:
                return False
            if expected_hash is not None and user.two_factor_code_hash != expected_hash:
                return False
            user.two_factor_code_hash = None
            user.two_factor_code_expires = None
            self._persist_state()
            return True

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_two_factor_enabled = enabled
            if not enabled:
                user.two_factor_code_hash = None
                user.two_factor_code_expires = None
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy(user)

    # -- relationship edges ---------------------------------------------------

    def add_follow(self, follower_id: str, followee_id: str) -> bool:
        with self._data_lock:
            follower = self.users.get(follower_id)
            followee = self.users.get(followee_id)
            if not follower or not followee or follower_id == followee_id:
                return False
            if follower.has_blocked(followee_id) or followee.has_blocked(follower_id):
                return False
            if follower.is_following(followee_id):
                return False
            follower.following.append(followee_id)
            if follower_id not in followee.followers:
                followee.followers.append(follower_id)
            self._persist_state()
            return True

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        with self._data_lock:
            follower = self.users.get(follower_id)
            followee = self.users.get(followee_id)
            removed = False
            if follower and followee_id in follower.following:
                follower.following.remove(followee_id)
                removed = True
            if followee and follower_id in followee.followers:
                followee.followers.remove(follower_id)
                removed = True
            if removed:
                self._persist_state()
            return removed

    def add_block(self, blocker_id: str, blocked_id: str) -> bool:
        with self._data_lock:
            blocker = self.users.get(blocker_id)
            blocked = self.users.get(blocked_id)
            if not blocker or not blocked or blocker_id == blocked_id:
                return False
            if blocker.has_blocked(blocked_id):
                return False
            blocker.block_list.append(blocked_id)
            self._drop(blocker.following, blocked_id)
            self._drop(blocker.followers, blocked_id)
            self._drop(blocked.following, blocker_id)
            self._drop(blocked.followers, blocker_id)
            self._persist_state()
            return True

    def remove_block(self, blocker_id: str, blocked_id: str) -> bool:
        with self._data_lock:
            blocker = self.users.get(blocker_id)
            if not blocker or blocked_id not in blocker.block_list:
                return False
            blocker.block_list.remove(blocked_id)
            self._persist_state()
            return True

    # -- posts ----------------------------------------------------------------

    def create_post(self, author_id: str, header: str, images: Sequence[str]) -> Post:
        with self._data_lock:
            if author_id not in self.users:
                raise ConstraintViolation("author does not exist", {"field": "author_id"})
            post = Post(id=new_id(), author_id=author_id, header=header, images=list(images))
            self.posts[post.id] = post
            self._persist_state()
            return self._copy(post)

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            return self._copy(post) if post else None

    def update_post(
        self,
        post_id: str,
        *,
        header: Optional[str] = None,
        images: Optional[Sequence[str]] = None,
    ) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            if header is not None:
                post.header = header
            if images is not None:
                post.images = list(images)
            post.updated_at = utcnow()
            self._persist_state()
            return self._copy(post)

    def delete_post(self, post_id: str) -> bool:
        with self._data_lock:
            if self.posts.pop(post_id, None) is None:
                return False
            self.comments = {
                cid: c for cid, c in self.comments.items() if c.post_id != post_id
            }
            self._persist_state()
            return True

    def list_posts_by_authors(
        self, author_ids: Iterable[str], *, limit: int = 50
    ) -> List[Post]:
        wanted = set(author_ids)
        with self._data_lock:
            # Newest insertion first so equal timestamps still list newest first
            matches = [p for p in reversed(list(self.posts.values())) if p.author_id in wanted]
            matches.sort(key=lambda p: p.created_at, reverse=True)
            return [self._copy(p) for p in matches[:limit]]

    def add_post_like(self, post_id: str, user_id: str) -> bool:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post or user_id in post.likes:
                return False
            post.likes.append(user_id)
            self._persist_state()
            return True

    def remove_post_like(self, post_id: str, user_id: str) -> bool:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post or user_id not in post.likes:
                return False
            post.likes.remove(user_id)
            self._persist_state()
            return True

    # -- comments -------------------------------------------------------------

    def create_comment(
        self,
        post_id: str,
        author_id: str,
        content: str,
        parent_comment_id: Optional[str] = None,
    ) -> Comment:
        with self._data_lock:
            if post_id not in self.posts:
                raise ConstraintViolation("post does not exist", {"field": "post_id"})
            if parent_comment_id is not None and parent_comment_id not in self.comments:
                raise ConstraintViolation(
                    "parent comment does not exist", {"field": "parent_comment_id"}
                )
            comment = Comment(
                id=new_id(),
                post_id=post_id,
                author_id=author_id,
                content=content,
                parent_comment_id=parent_comment_id,
            )
            self.comments[comment.id] = comment
            self._persist_state()
            return self._copy(comment)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            return self._copy(comment) if comment else None

    def list_comments(self, post_id: str) -> List[Comment]:
        with self._data_lock:
            matches = [c for c in self.comments.values() if c.post_id == post_id]
            matches.sort(key=lambda c: c.created_at)
            return [self._copy(c) for c in matches]

    def update_comment(self, comment_id: str, content: str) -> Optional[Comment]:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment:
                return None
            comment.content = content
            comment.updated_at = utcnow()
            self._persist_state()
            return self._copy(comment)

    def delete_comment(self, comment_id: str) -> bool:
        with self._data_lock:
            if comment_id not in self.comments:
                return False
            doomed = {comment_id}
            # Replies can nest; sweep until no new descendants appear
            changed = True
            while changed:
                changed = False
                for cid, c in self.comments.items():
                    if c.parent_comment_id in doomed and cid not in doomed:
                        doomed.add(cid)
                        changed = True
            for cid in doomed:
                self.comments.pop(cid, None)
            self._persist_state()
            return True

    def add_comment_like(self, comment_id: str, user_id: str) -> bool:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment or user_id in comment.likes:
                return False
            comment.likes.append(user_id)
            self._persist_state()
            return True

    def remove_comment_like(self, comment_id: str, user_id: str) -> bool:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment or user_id not in comment.likes:
                return False
            comment.likes.remove(user_id)
            self._persist_state()
            return True

    def close(self) -> None:
        return None

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _copy(record):
        return copy.deepcopy(record)

    @staticmethod
    def _drop(values: List[str], item: str) -> None:
        while item in values:
            values.remove(item)

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "posts": [self._serialize_post(p) for p in self.posts.values()],
            "comments": [self._serialize_comment(c) for c in self.comments.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.posts = {p["id"]: self._deserialize_post(p) for p in data.get("posts", [])}
        self.comments = {
            c["id"]: self._deserialize_comment(c) for c in data.get("comments", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "bio": user.bio,
            "profile_picture": user.profile_picture,
            "is_email_verified": user.is_email_verified,
            "email_verification_hash": user.email_verification_hash,
            "email_verification_expires": self._serialize_datetime(
                user.email_verification_expires
            ),
            "is_two_factor_enabled": user.is_two_factor_enabled,
            "two_factor_code_hash": user.two_factor_code_hash,
            "two_factor_code_expires": self._serialize_datetime(
                user.two_factor_code_expires
            ),
            "followers": user.followers,
            "following": user.following,
            "block_list": user.block_list,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data.get("name", ""),
            username=data["username"],
            email=data["email"],
            role=data.get("role", "user"),
            bio=data.get("bio", ""),
            profile_picture=data.get("profile_picture", ""),
            is_email_verified=data.get("is_email_verified", False),
            email_verification_hash=data.get("email_verification_hash"),
            email_verification_expires=self._deserialize_datetime(
                data.get("email_verification_expires")
            ),
            is_two_factor_enabled=data.get("is_two_factor_enabled", False),
            two_factor_code_hash=data.get("two_factor_code_hash"),
            two_factor_code_expires=self._deserialize_datetime(
                data.get("two_factor_code_expires")
            ),
            followers=list(data.get("followers", [])),
            following=list(data.get("following", [])),
            block_list=list(data.get("block_list", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_post(self, post: Post) -> dict:
        return {
            "id": post.id,
            "author_id": post.author_id,
            "header": post.header,
            "images": post.images,
            "likes": post.likes,
            "created_at": self._serialize_datetime(post.created_at),
            "updated_at": self._serialize_datetime(post.updated_at),
        }

    def _deserialize_post(self, data: dict) -> Post:
        return Post(
            id=data["id"],
            author_id=data["author_id"],
            header=data["header"],
            images=list(data.get("images", [])),
            likes=list(data.get("likes", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_comment(self, comment: Comment) -> dict:
        return {
            "id": comment.id,
            "post_id": comment.post_id,
            "author_id": comment.author_id,
            "content": comment.content,
            "parent_comment_id": comment.parent_comment_id,
            "likes": comment.likes,
            "created_at": self._serialize_datetime(comment.created_at),
            "updated_at": self._serialize_datetime(comment.updated_at),
        }

    def _deserialize_comment(self, data: dict) -> Comment:
        return Comment(
            id=data["id"],
            post_id=data["post_id"],
            author_id=data["author_id"],
            content=data["content"],
            parent_comment_id=data.get("parent_comment_id"),
            likes=list(data.get("likes", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

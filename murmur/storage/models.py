from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    """Account record with security state and relationship lists.

    Relationship lists keep insertion order but are treated as sets by every
    store operation. The password digest lives in a separate credential record.
    """

    id: str
    name: str
    username: str
    email: str
    role: str = "user"
    bio: str = ""
    profile_picture: str = ""
    is_email_verified: bool = False
    email_verification_hash: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    is_two_factor_enabled: bool = False
    two_factor_code_hash: Optional[str] = None
    two_factor_code_expires: Optional[datetime] = None
    followers: List[str] = field(default_factory=list)
    following: List[str] = field(default_factory=list)
    block_list: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_following(self, other_id: str) -> bool:
        return other_id in self.following

    def has_blocked(self, other_id: str) -> bool:
        return other_id in self.block_list


@dataclass
class Post:
    id: str
    author_id: str
    header: str
    images: List[str] = field(default_factory=list)
    likes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment:
    id: str
    post_id: str
    author_id: str
    content: str
    parent_comment_id: Optional[str] = None
    likes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Fields a profile update may touch; everything else has a dedicated operation.
PROFILE_FIELDS = frozenset({"name", "username", "bio", "profile_picture"})

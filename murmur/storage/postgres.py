from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from murmur.logging import get_logger
from murmur.storage.errors import ConstraintViolation, StorageUnavailable
from murmur.storage.models import PROFILE_FIELDS, Comment, Post, User, new_id

# Columns safe to load into a User; password columns are read only by get_password_record.
_USER_COLUMNS = """
    id, name, username, email, role, bio, profile_picture,
    is_email_verified, email_verification_hash, email_verification_expires,
    is_two_factor_enabled, two_factor_code_hash, two_factor_code_expires,
    followers, following, block_list, created_at, updated_at
"""

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        bio TEXT NOT NULL DEFAULT '',
        profile_picture TEXT NOT NULL DEFAULT '',
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        is_email_verified BOOLEAN NOT NULL DEFAULT false,
        email_verification_hash TEXT,
        email_verification_expires TIMESTAMPTZ,
        is_two_factor_enabled BOOLEAN NOT NULL DEFAULT false,
        two_factor_code_hash TEXT,
        two_factor_code_expires TIMESTAMPTZ,
        followers TEXT[] NOT NULL DEFAULT '{}',
        following TEXT[] NOT NULL DEFAULT '{}',
        block_list TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS app_user_email_verification_idx
        ON app_user (email_verification_hash)
        WHERE email_verification_hash IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS post (
        id TEXT PRIMARY KEY,
        author_id TEXT NOT NULL REFERENCES app_user(id),
        header TEXT NOT NULL,
        images TEXT[] NOT NULL DEFAULT '{}',
        likes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS post_author_created_idx ON post (author_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS comment (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL REFERENCES post(id) ON DELETE CASCADE,
        author_id TEXT NOT NULL REFERENCES app_user(id),
        content TEXT NOT NULL,
        parent_comment_id TEXT REFERENCES comment(id) ON DELETE CASCADE,
        likes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS comment_post_created_idx ON comment (post_id, created_at)",
)

_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
}


class PostgresStore:
    """Postgres-backed user and content store.

    Relationship lists are ``TEXT[]`` columns mutated with single conditional
    ``UPDATE`` statements, so concurrent follow and block requests never lose
    each other's writes.
    """

    def __init__(self, dsn: str, *, pool_timeout: float = 10.0) -> None:
        self.dsn = dsn
        self.pool_timeout = pool_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self):
        try:
            with self.pool.connection(timeout=self.pool_timeout) as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            username=row["username"],
            email=row["email"],
            role=row.get("role") or "user",
            bio=row.get("bio") or "",
            profile_picture=row.get("profile_picture") or "",
            is_email_verified=bool(row.get("is_email_verified")),
            email_verification_hash=row.get("email_verification_hash"),
            email_verification_expires=row.get("email_verification_expires"),
            is_two_factor_enabled=bool(row.get("is_two_factor_enabled")),
            two_factor_code_hash=row.get("two_factor_code_hash"),
            two_factor_code_expires=row.get("two_factor_code_expires"),
            followers=list(row.get("followers") or []),
            following=list(row.get("following") or []),
            block_list=list(row.get("block_list") or []),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_post(row: dict[str, Any]) -> Post:
        return Post(
            id=row["id"],
            author_id=row["author_id"],
            header=row["header"],
            images=list(row.get("images") or []),
            likes=list(row.get("likes") or []),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_comment(row: dict[str, Any]) -> Comment:
        return Comment(
            id=row["id"],
            post_id=row["post_id"],
            author_id=row["author_id"],
            content=row["content"],
            parent_comment_id=row.get("parent_comment_id"),
            likes=list(row.get("likes") or []),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        name = getattr(getattr(exc, "diag", None), "constraint_name", None)
        return _CONSTRAINT_FIELDS.get(name or "", "unknown")

    def _fetch_user(self, where: str, params: Sequence[Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._row_to_user(row) if row else None

    # -- users ------------------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, name, username, email, role, password_hash, password_algo,
                        email_verification_hash, email_verification_expires
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        new_id(),
                        name,
                        username.strip().lower(),
                        email.strip().lower(),
                        role,
                        password_hash,
                        password_algo,
                        email_verification_hash,
                        email_verification_expires,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email.strip().lower(),))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username = %s", (username.strip().lower(),))

    def get_users(self, user_ids: Iterable[str]) -> List[User]:
        ids = list(user_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = ANY(%s)", (ids,)
            ).fetchall()
        by_id = {row["id"]: self._row_to_user(row) for row in rows}
        return [by_id[user_id] for user_id in ids if user_id in by_id]

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def search_users(
        self, term: str, limit: int = 10, *, viewer_id: Optional[str] = None
    ) -> List[User]:
        escaped = term.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        where = "(username LIKE %s OR lower(name) LIKE %s)"
        params: list[Any] = [pattern, pattern]
        if viewer_id:
            # Filter before LIMIT so hidden rows do not eat into the page
            where += """
                AND id <> %s
                AND NOT (%s = ANY(block_list))
                AND id <> ALL(COALESCE(
                    (SELECT block_list FROM app_user WHERE id = %s), '{}'::text[]
                ))
            """
            params += [viewer_id, viewer_id, viewer_id]
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM app_user
                WHERE {where}
                ORDER BY username
                LIMIT %s
                """,
                (*params, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_profile(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not profile fields: {sorted(unknown)}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if "username" in updates:
            updates["username"] = updates["username"].strip().lower()
        if not updates:
            return self.get_user(user_id)
        # Column names come from PROFILE_FIELDS, never from the caller
        assignments = ", ".join(f"{column} = %s" for column in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {assignments}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (*updates.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row) if row else None

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET role = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})

    # -- verification artifacts ---------------------------------------------------

    def set_email_verification(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET email_verification_hash = %s, email_verification_expires = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def consume_email_verification(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET is_email_verified = true,
                    email_verification_hash = NULL,
                    email_verification_expires = NULL,
                    updated_at = %s
                WHERE email_verification_hash = %s AND email_verification_expires > %s
                RETURNING {_USER_COLUMNS}
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_two_factor_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET two_factor_code_hash = %s, two_factor_code_expires = %s
                WHERE id = %s
                """,
                (code_hash, expires_at, user_id),
            )

    def clear_two_factor_code(
        self, user_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        query = """
            UPDATE app_user SET two_factor_code_hash = NULL, two_factor_code_expires = NULL
            WHERE id = %s AND two_factor_code_hash IS NOT NULL
        """
        params: tuple = (user_id,)
        if expected_hash is not None:
            query += " AND two_factor_code_hash = %s"
            params = (user_id, expected_hash)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount > 0

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET is_two_factor_enabled = %s,
                    two_factor_code_hash = CASE WHEN %s THEN two_factor_code_hash END,
                    two_factor_code_expires = CASE WHEN %s THEN two_factor_code_expires END,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (enabled, enabled, enabled, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # -- relationship edges -------------------------------------------------------

    def add_follow(self, follower_id: str, followee_id: str) -> bool:
        if follower_id == followee_id:
            return False
        params = {"follower": follower_id, "followee": followee_id}
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET following = array_append(following, %(followee)s), updated_at = now()
                WHERE id = %(follower)s
                  AND NOT (%(followee)s = ANY(following))
                  AND NOT (%(followee)s = ANY(block_list))
                  AND EXISTS (
                      SELECT 1 FROM app_user t
                      WHERE t.id = %(followee)s AND NOT (%(follower)s = ANY(t.block_list))
                  )
                """,
                params,
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                """
                UPDATE app_user
                SET followers = array_append(followers, %(follower)s), updated_at = now()
                WHERE id = %(followee)s AND NOT (%(follower)s = ANY(followers))
                """,
                params,
            )
        return True

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        params = {"follower": follower_id, "followee": followee_id}
        with self._connect() as conn:
            first = conn.execute(
                """
                UPDATE app_user
                SET following = array_remove(following, %(followee)s), updated_at = now()
                WHERE id = %(follower)s AND %(followee)s = ANY(following)
                """,
                params,
            )
            second = conn.execute(
                """
                UPDATE app_user
                SET followers = array_remove(followers, %(follower)s), updated_at = now()
                WHERE id = %(followee)s AND %(follower)s = ANY(followers)
                """,
                params,
            )
            return (first.rowcount + second.rowcount) > 0

    def add_block(self, blocker_id: str, blocked_id: str) -> bool:
        if blocker_id == blocked_id:
            return False
        params = {"blocker": blocker_id, "blocked": blocked_id}
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET block_list = array_append(block_list, %(blocked)s),
                    following = array_remove(following, %(blocked)s),
                    followers = array_remove(followers, %(blocked)s),
                    updated_at = now()
                WHERE id = %(blocker)s
                  AND NOT (%(blocked)s = ANY(block_list))
                  AND EXISTS (SELECT 1 FROM app_user t WHERE t.id = %(blocked)s)
                """,
                params,
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                """
                UPDATE app_user
                SET following = array_remove(following, %(blocker)s),
                    followers = array_remove(followers, %(blocker)s),
                    updated_at = now()
                WHERE id = %(blocked)s
                """,
                params,
            )
        return True

    def remove_block(self, blocker_id: str, blocked_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET block_list = array_remove(block_list, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(block_list)
                """,
                (blocked_id, blocker_id, blocked_id),
            )
            return cur.rowcount > 0

    # -- posts --------------------------------------------------------------------

    def create_post(self, author_id: str, header: str, images: Sequence[str]) -> Post:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO post (id, author_id, header, images)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), author_id, header, list(images)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("author does not exist", {"field": "author_id"})
        return self._row_to_post(row)

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM post WHERE id = %s", (post_id,)).fetchone()
        return self._row_to_post(row) if row else None

    def update_post(
        self,
        post_id: str,
        *,
        header: Optional[str] = None,
        images: Optional[Sequence[str]] = None,
    ) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE post
                SET header = COALESCE(%s, header),
                    images = COALESCE(%s, images),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (header, list(images) if images is not None else None, post_id),
            ).fetchone()
        return self._row_to_post(row) if row else None

    def delete_post(self, post_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM post WHERE id = %s", (post_id,))
            return cur.rowcount > 0

    def list_posts_by_authors(
        self, author_ids: Iterable[str], *, limit: int = 50
    ) -> List[Post]:
        ids = list(author_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM post WHERE author_id = ANY(%s)
                ORDER BY created_at DESC LIMIT %s
                """,
                (ids, limit),
            ).fetchall()
        return [self._row_to_post(row) for row in rows]

    def _toggle_like(self, table: str, record_id: str, user_id: str, add: bool) -> bool:
        # table is one of two literals chosen by the callers below
        if add:
            query = f"""
                UPDATE {table} SET likes = array_append(likes, %s)
                WHERE id = %s AND NOT (%s = ANY(likes))
            """
        else:
            query = f"""
                UPDATE {table} SET likes = array_remove(likes, %s)
                WHERE id = %s AND %s = ANY(likes)
            """
        with self._connect() as conn:
            cur = conn.execute(query, (user_id, record_id, user_id))
            return cur.rowcount > 0

    def add_post_like(self, post_id: str, user_id: str) -> bool:
        return self._toggle_like("post", post_id, user_id, add=True)

    def remove_post_like(self, post_id: str, user_id: str) -> bool:
        return self._toggle_like("post", post_id, user_id, add=False)

    # -- comments -----------------------------------------------------------------

    def create_comment(
        self,
        post_id: str,
        author_id: str,
        content: str,
        parent_comment_id: Optional[str] = None,
    ) -> Comment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO comment (id, post_id, author_id, content, parent_comment_id)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), post_id, author_id, content, parent_comment_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "post or parent comment does not exist", {"field": "post_id"}
            )
        return self._row_to_comment(row)

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM comment WHERE id = %s", (comment_id,)
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def list_comments(self, post_id: str) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM comment WHERE post_id = %s ORDER BY created_at",
                (post_id,),
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

    def update_comment(self, comment_id: str, content: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE comment SET content = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (content, comment_id),
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def delete_comment(self, comment_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM comment WHERE id = %s", (comment_id,))
            return cur.rowcount > 0

    def add_comment_like(self, comment_id: str, user_id: str) -> bool:
        return self._toggle_like("comment", comment_id, user_id, add=True)

    def remove_comment_like(self, comment_id: str, user_id: str) -> bool:
        return self._toggle_like("comment", comment_id, user_id, add=False)

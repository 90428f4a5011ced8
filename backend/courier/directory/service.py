"""DuckDB-based user and community directory.

The messaging core does not own users or communities; it only needs to
look them up, check membership, and keep the push-token fields of a user.
This service is that boundary. Creating users and communities is exposed
here for seeding and tests, not over HTTP.

Database Schema:
    users table:
        - id, username, picture, push_token, push_platform, updated_at
    communities table:
        - id, name, created_by, created_at
    community_members table:
        - (community_id, user_id) primary key, role, joined_at
"""
import logging
import threading
import time
from typing import List, Optional

import duckdb

from ..errors import NotFoundError
from .schemas import (
    CommunityRecord,
    MemberRole,
    PushPlatform,
    PushTarget,
    UserRecord,
)

logger = logging.getLogger(__name__)


class DirectoryService:
    """User and community lookups backed by DuckDB."""

    _db_path: str = "directory.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id VARCHAR PRIMARY KEY,
                    username VARCHAR,
                    picture VARCHAR,
                    push_token VARCHAR,
                    push_platform VARCHAR,
                    updated_at DOUBLE NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS communities (
                    id VARCHAR PRIMARY KEY,
                    name VARCHAR NOT NULL,
                    created_by VARCHAR NOT NULL,
                    created_at DOUBLE NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS community_members (
                    community_id VARCHAR NOT NULL,
                    user_id VARCHAR NOT NULL,
                    role VARCHAR NOT NULL,
                    joined_at DOUBLE NOT NULL,
                    PRIMARY KEY (community_id, user_id)
                )
            """)

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> UserRecord:
        """Create a user, or update its profile fields if it exists."""
        with self._lock:
            conn = self._get_connection()
            exists = conn.execute("SELECT 1 FROM users WHERE id = ?", [user_id]).fetchone()
            if exists:
                conn.execute(
                    """
                    UPDATE users
                    SET username = COALESCE(?, username),
                        picture = COALESCE(?, picture),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    [username, picture, time.time(), user_id],
                )
            else:
                conn.execute(
                    "INSERT INTO users (id, username, picture, updated_at) VALUES (?, ?, ?, ?)",
                    [user_id, username, picture, time.time()],
                )
            return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT id, username, picture, push_token, push_platform FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        if row is None:
            return None
        return UserRecord(
            userId=row[0],
            username=row[1],
            picture=row[2],
            hasPushToken=bool(row[3]),
            pushPlatform=PushPlatform(row[4]) if row[4] else None,
        )

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT 1 FROM users WHERE id = ?", [user_id]
            ).fetchone()
        return row is not None

    def set_push_token(
        self,
        user_id: str,
        push_token: str,
        platform: Optional[PushPlatform] = None,
    ) -> UserRecord:
        """Store the push token fields of a user.

        Raises:
            NotFoundError: If the user does not exist.
        """
        with self._lock:
            if not self.user_exists(user_id):
                raise NotFoundError("User not found")
            self._get_connection().execute(
                """
                UPDATE users
                SET push_token = ?, push_platform = ?, updated_at = ?
                WHERE id = ?
                """,
                [push_token, platform.value if platform else None, time.time(), user_id],
            )
            logger.info(f"[Directory] Push token registered for {user_id} ({platform})")
            return self.get_user(user_id)

    def get_push_target(self, user_id: str) -> Optional[PushTarget]:
        """Push token of a user, or None if none is registered."""
        with self._lock:
            row = self._get_connection().execute(
                "SELECT push_token, push_platform FROM users WHERE id = ?", [user_id]
            ).fetchone()
        if row is None or not row[0]:
            return None
        return PushTarget(
            userId=user_id,
            pushToken=row[0],
            platform=PushPlatform(row[1]) if row[1] else None,
        )

    # =========================================================================
    # Communities
    # =========================================================================

    def create_community(self, community_id: str, name: str, created_by: str) -> CommunityRecord:
        """Create a community; the creator becomes its owner and first member."""
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "INSERT INTO communities (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
                [community_id, name, created_by, time.time()],
            )
            self.add_member(community_id, created_by, MemberRole.OWNER)
        return CommunityRecord(communityId=community_id, name=name, createdBy=created_by)

    def get_community(self, community_id: str) -> Optional[CommunityRecord]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT id, name, created_by FROM communities WHERE id = ?", [community_id]
            ).fetchone()
        if row is None:
            return None
        return CommunityRecord(communityId=row[0], name=row[1], createdBy=row[2])

    def community_exists(self, community_id: str) -> bool:
        return self.get_community(community_id) is not None

    def add_member(
        self,
        community_id: str,
        user_id: str,
        role: MemberRole = MemberRole.MEMBER,
    ) -> None:
        """Add a member, or change the role of an existing one."""
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "DELETE FROM community_members WHERE community_id = ? AND user_id = ?",
                [community_id, user_id],
            )
            conn.execute(
                """
                INSERT INTO community_members (community_id, user_id, role, joined_at)
                VALUES (?, ?, ?, ?)
                """,
                [community_id, user_id, role.value, time.time()],
            )

    def remove_member(self, community_id: str, user_id: str) -> None:
        with self._lock:
            self._get_connection().execute(
                "DELETE FROM community_members WHERE community_id = ? AND user_id = ?",
                [community_id, user_id],
            )

    def members(self, community_id: str) -> List[str]:
        """User ids of a community's members, in join order."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT user_id FROM community_members
                WHERE community_id = ?
                ORDER BY joined_at, user_id
                """,
                [community_id],
            ).fetchall()
        return [row[0] for row in rows]

    def member_role(self, community_id: str, user_id: str) -> Optional[MemberRole]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT role FROM community_members WHERE community_id = ? AND user_id = ?",
                [community_id, user_id],
            ).fetchone()
        return MemberRole(row[0]) if row else None

    def is_member(self, community_id: str, user_id: str) -> bool:
        return self.member_role(community_id, user_id) is not None

    def is_admin(self, community_id: str, user_id: str) -> bool:
        """True for the community's owner and its admins."""
        community = self.get_community(community_id)
        if community is not None and community.createdBy == user_id:
            return True
        return self.member_role(community_id, user_id) in (MemberRole.OWNER, MemberRole.ADMIN)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

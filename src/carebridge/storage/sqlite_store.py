"""Summary: SQLite storage implementation for CareBridge.

Importance: Provides the connection, profile, account, and membership tables with atomic conditional writes.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from carebridge.errors import Internal
from carebridge.models import (
    Account,
    Connection,
    ConnectionMetadata,
    ConnectionStatus,
    ConnectionType,
    Membership,
    MembershipStatus,
    Profile,
    ProfileType,
)


_CONNECTION_COLUMNS = (
    "id, from_profile_id, to_profile_id, type, status, message, metadata, "
    "created_at, updated_at, revision"
)
_PROFILE_COLUMNS = (
    "id, type, display_name, city, state, care_types, description, phone, email, website"
)
_MEMBERSHIP_COLUMNS = (
    "account_id, status, plan, free_responses_used, stripe_customer_id, "
    "stripe_subscription_id, billing_cycle, current_period_ends_at"
)
_MEMBERSHIP_UPDATABLE = {
    "status",
    "plan",
    "stripe_customer_id",
    "stripe_subscription_id",
    "billing_cycle",
    "current_period_ends_at",
}


@dataclass(frozen=True)
class StoredApiKey:
    """Summary: API key record with database identifier.

    Importance: Lets accounts list and revoke their keys without exposing tokens.
    Alternatives: Store only a single key per account.
    """

    id: int
    account_id: int
    token_hash: str
    label: str | None
    created_at: str


@dataclass(frozen=True)
class QuotaClaim:
    """Summary: Request to consume one free response in the same transaction as a write.

    Importance: Removes the race where two requests both pass the gate before either increments.
    Alternatives: Check the gate and increment in two separate calls.
    """

    account_id: int
    limit: int


class WriteOutcome(str, Enum):
    APPLIED = "applied"
    CONFLICT = "conflict"
    QUOTA_EXHAUSTED = "quota_exhausted"


class SqliteStore:
    """Summary: SQLite-backed storage for CareBridge.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready before the first request.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    active_profile_id TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    label TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    account_id INTEGER,
                    type TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    city TEXT,
                    state TEXT,
                    care_types TEXT NOT NULL DEFAULT '[]',
                    description TEXT,
                    phone TEXT,
                    email TEXT,
                    website TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS memberships (
                    account_id INTEGER PRIMARY KEY,
                    status TEXT NOT NULL,
                    plan TEXT NOT NULL,
                    free_responses_used INTEGER NOT NULL DEFAULT 0
                        CHECK (free_responses_used >= 0),
                    stripe_customer_id TEXT,
                    stripe_subscription_id TEXT,
                    billing_cycle TEXT,
                    current_period_ends_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    from_profile_id TEXT NOT NULL,
                    to_profile_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_connections_from ON connections (from_profile_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_connections_to ON connections (to_profile_id)"
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS saved_profiles (
                    profile_id TEXT NOT NULL,
                    saved_profile_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, saved_profile_id)
                )
                """
            )
            connection.commit()

    def ensure_account(self, email: str, display_name: str) -> int:
        """Summary: Ensure an account exists and return its ID.

        Importance: Provides a stable owner for profiles, keys, and membership.
        Alternatives: Trust identity provider ids directly.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO accounts (email, display_name) VALUES (?, ?)",
                (email, display_name),
            )
            if cursor.rowcount:
                account_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM accounts WHERE email = ?", (email,))
                row = cursor.fetchone()
                account_id = int(row[0]) if row else 0
            connection.commit()
        return int(account_id)

    def get_account(self, account_id: int) -> Account | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, email, display_name, active_profile_id FROM accounts WHERE id = ?",
                (account_id,),
            )
            row = cursor.fetchone()
        return Account(*row) if row else None

    def set_active_profile(self, account_id: int, profile_id: str) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE accounts SET active_profile_id = ? WHERE id = ?",
                (profile_id, account_id),
            )
            connection.commit()

    def save_profile(self, profile: Profile, account_id: int | None = None) -> str:
        """Summary: Insert or replace a profile record.

        Importance: Seeds the directory the lifecycle engine reads from.
        Alternatives: Sync profiles from an external directory service.
        """

        with self._connection() as connection:
            connection.execute(
                f"""
                INSERT OR REPLACE INTO profiles (account_id, {_PROFILE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    profile.id,
                    profile.type.value,
                    profile.display_name,
                    profile.city,
                    profile.state,
                    json.dumps(sorted(profile.care_types)),
                    profile.description,
                    profile.phone,
                    profile.email,
                    profile.website,
                ),
            )
            connection.commit()
        return profile.id

    def get_profile(self, profile_id: str) -> Profile | None:
        return self.get_profiles([profile_id]).get(profile_id)

    def get_profiles(self, profile_ids: list[str]) -> dict[str, Profile]:
        """Summary: Fetch several profiles keyed by ID.

        Importance: Joins both participants into a connection view with one query.
        Alternatives: Fetch each profile separately.
        """

        if not profile_ids:
            return {}
        placeholders = ", ".join("?" for _ in profile_ids)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id IN ({placeholders})",
                tuple(profile_ids),
            )
            rows = cursor.fetchall()
        profiles = [_row_to_profile(row) for row in rows]
        return {profile.id: profile for profile in profiles}

    def create_api_key(
        self, account_id: int, token_hash: str, label: str | None, created_at: str
    ) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO api_keys (account_id, token_hash, label, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (account_id, token_hash, label, created_at),
            )
            key_id = cursor.lastrowid
            connection.commit()
        return int(key_id)

    def get_account_id_for_token(self, token_hash: str) -> int | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT account_id FROM api_keys WHERE token_hash = ?", (token_hash,))
            row = cursor.fetchone()
        return int(row[0]) if row else None

    def list_api_keys(self, account_id: int) -> list[StoredApiKey]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, account_id, token_hash, label, created_at
                FROM api_keys
                WHERE account_id = ?
                ORDER BY id
                """,
                (account_id,),
            )
            rows = cursor.fetchall()
        return [StoredApiKey(*row) for row in rows]

    def delete_api_key(self, account_id: int, key_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM api_keys WHERE id = ? AND account_id = ?", (key_id, account_id)
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def ensure_membership(self, account_id: int) -> Membership:
        """Summary: Ensure an account has a membership row, defaulting to the free plan.

        Importance: Every account starts on the free tier with an unused quota.
        Alternatives: Treat a missing row as free everywhere.
        """

        with self._connection() as connection:
            connection.execute(
                """
                INSERT OR IGNORE INTO memberships (account_id, status, plan, free_responses_used)
                VALUES (?, ?, ?, 0)
                """,
                (account_id, MembershipStatus.FREE.value, "free"),
            )
            connection.commit()
        membership = self.get_membership(account_id)
        if membership is None:
            raise Internal(f"Membership for account {account_id} could not be created")
        return membership

    def get_membership(self, account_id: int) -> Membership | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships WHERE account_id = ?",
                (account_id,),
            )
            row = cursor.fetchone()
        return _row_to_membership(row) if row else None

    def update_membership(self, account_id: int, fields: dict[str, Any]) -> bool:
        return self._update_membership_where("account_id", account_id, fields) > 0

    def update_membership_by_customer(self, customer_id: str, fields: dict[str, Any]) -> int:
        """Summary: Update memberships matched by payment provider customer ID.

        Importance: Subscription webhooks identify accounts only by customer.
        Alternatives: Store a separate customer-to-account lookup table.
        """

        return self._update_membership_where("stripe_customer_id", customer_id, fields)

    def insert_connection(
        self, connection_record: Connection, quota: QuotaClaim | None = None
    ) -> WriteOutcome:
        """Summary: Insert a new connection, optionally consuming free quota atomically.

        Importance: A provider's first contact and its quota charge succeed or fail together.
        Alternatives: Insert first and charge quota afterwards.
        """

        with self._transaction() as connection:
            if quota is not None and not _consume_quota(connection, quota):
                connection.rollback()
                return WriteOutcome.QUOTA_EXHAUSTED
            connection.execute(
                f"INSERT INTO connections ({_CONNECTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    connection_record.id,
                    connection_record.from_profile_id,
                    connection_record.to_profile_id,
                    connection_record.type.value,
                    connection_record.status.value,
                    connection_record.message,
                    json.dumps(connection_record.metadata.to_dict()),
                    connection_record.created_at,
                    connection_record.updated_at,
                    connection_record.revision,
                ),
            )
        return WriteOutcome.APPLIED

    def compare_and_swap(
        self,
        updated: Connection,
        expected_status: ConnectionStatus,
        expected_revision: int,
        quota: QuotaClaim | None = None,
    ) -> WriteOutcome:
        """Summary: Write a connection only if it still has the expected status and revision.

        Importance: Concurrent transitions and thread appends never overwrite each other.
        Alternatives: Select then update without a guard.
        """

        with self._transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE connections
                SET status = ?, metadata = ?, updated_at = ?, revision = revision + 1
                WHERE id = ? AND status = ? AND revision = ?
                """,
                (
                    updated.status.value,
                    json.dumps(updated.metadata.to_dict()),
                    updated.updated_at,
                    updated.id,
                    expected_status.value,
                    expected_revision,
                ),
            )
            if cursor.rowcount == 0:
                connection.rollback()
                return WriteOutcome.CONFLICT
            if quota is not None and not _consume_quota(connection, quota):
                connection.rollback()
                return WriteOutcome.QUOTA_EXHAUSTED
        return WriteOutcome.APPLIED

    def get_connection(self, connection_id: str) -> Connection | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE id = ?", (connection_id,)
            )
            row = cursor.fetchone()
        return _row_to_connection(row) if row else None

    def list_connections(self, profile_id: str, limit: int = 100) -> list[Connection]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM connections
                WHERE from_profile_id = ? OR to_profile_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (profile_id, profile_id, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_connection(row) for row in rows]

    def add_saved_profile(self, profile_id: str, saved_profile_id: str, created_at: str) -> bool:
        """Summary: Bookmark a profile for another profile.

        Importance: Returns False when the bookmark already exists so repeats are reported, not duplicated.
        Alternatives: Store saves as connections with a dedicated type.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO saved_profiles (profile_id, saved_profile_id, created_at)
                VALUES (?, ?, ?)
                """,
                (profile_id, saved_profile_id, created_at),
            )
            inserted = cursor.rowcount > 0
            connection.commit()
        return inserted

    def remove_saved_profile(self, profile_id: str, saved_profile_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM saved_profiles WHERE profile_id = ? AND saved_profile_id = ?",
                (profile_id, saved_profile_id),
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def list_saved_profile_ids(self, profile_id: str) -> list[str]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT saved_profile_id FROM saved_profiles
                WHERE profile_id = ?
                ORDER BY created_at DESC, saved_profile_id
                """,
                (profile_id,),
            )
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    def find_open_connection(
        self,
        from_profile_id: str,
        to_profile_id: str,
        connection_type: ConnectionType,
        statuses: frozenset[ConnectionStatus],
    ) -> Connection | None:
        placeholders = ", ".join("?" for _ in statuses)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM connections
                WHERE from_profile_id = ? AND to_profile_id = ? AND type = ?
                    AND status IN ({placeholders})
                LIMIT 1
                """,
                (
                    from_profile_id,
                    to_profile_id,
                    connection_type.value,
                    *sorted(status.value for status in statuses),
                ),
            )
            row = cursor.fetchone()
        return _row_to_connection(row) if row else None

    def _update_membership_where(self, column: str, value: Any, fields: dict[str, Any]) -> int:
        unknown = set(fields) - _MEMBERSHIP_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown membership fields: {sorted(unknown)}")
        if not fields:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [
            item.value if isinstance(item, Enum) else item for item in fields.values()
        ]
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"UPDATE memberships SET {assignments} WHERE {column} = ?",
                (*values, value),
            )
            updated = cursor.rowcount
            connection.commit()
        return int(updated)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Summary: Run a write transaction holding the database write lock.

        Importance: Multi-statement writes apply fully or not at all.
        Alternatives: Rely on implicit autocommit per statement.
        """

        with self._connection() as connection:
            try:
                connection.execute("BEGIN IMMEDIATE")
                yield connection
                connection.commit()
            except sqlite3.Error as exc:
                connection.rollback()
                raise Internal(f"Storage failure: {exc}") from exc
            except Exception:
                connection.rollback()
                raise

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
        finally:
            connection.close()


def _consume_quota(connection: sqlite3.Connection, quota: QuotaClaim) -> bool:
    cursor = connection.execute(
        """
        UPDATE memberships
        SET free_responses_used = free_responses_used + 1
        WHERE account_id = ? AND status IN (?, ?) AND free_responses_used < ?
        """,
        (
            quota.account_id,
            MembershipStatus.FREE.value,
            MembershipStatus.TRIALING.value,
            quota.limit,
        ),
    )
    if cursor.rowcount == 1:
        return True
    # an upgrade landing between the gate check and this write is not charged
    cursor = connection.execute(
        "SELECT 1 FROM memberships WHERE account_id = ? AND status IN (?, ?)",
        (quota.account_id, MembershipStatus.ACTIVE.value, MembershipStatus.PAST_DUE.value),
    )
    return cursor.fetchone() is not None


def _row_to_profile(row: tuple[Any, ...]) -> Profile:
    return Profile(
        id=row[0],
        type=ProfileType(row[1]),
        display_name=row[2],
        city=row[3],
        state=row[4],
        care_types=frozenset(json.loads(row[5] or "[]")),
        description=row[6],
        phone=row[7],
        email=row[8],
        website=row[9],
    )


def _row_to_membership(row: tuple[Any, ...]) -> Membership:
    return Membership(
        account_id=int(row[0]),
        status=MembershipStatus(row[1]),
        plan=row[2],
        free_responses_used=int(row[3]),
        stripe_customer_id=row[4],
        stripe_subscription_id=row[5],
        billing_cycle=row[6],
        current_period_ends_at=row[7],
    )


def _row_to_connection(row: tuple[Any, ...]) -> Connection:
    return Connection(
        id=row[0],
        from_profile_id=row[1],
        to_profile_id=row[2],
        type=ConnectionType(row[3]),
        status=ConnectionStatus(row[4]),
        message=row[5],
        metadata=ConnectionMetadata.from_dict(json.loads(row[6] or "{}")),
        created_at=row[7],
        updated_at=row[8],
        revision=int(row[9]),
    )
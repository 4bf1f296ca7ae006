"""Database layer for topickeys.

Holds the server-side state the key-distribution engine works against:

- users / topics / topic_allowed_users: the forum's view of who may read a
  topic (participant records)
- topic_keys: the server key store, one wrapped topic key per
  (topic, user). This is the source of truth for encrypted-topic access.
- user_keys: each user's exported identity (public half in clear, private
  half as labeled passphrase-protected blobs)

Connection Management:
    # Global thread-local connection (configured via TOPICKEYS_DB)
    init_db()
    topic = create_topic("Plans", created_by=user_id)

    # Scoped connection
    with scoped_connection("/path/to/topickeys.db") as conn:
        init_db_with_conn(conn)
        set_key(topic_id, user_id, wrapped, conn=conn)
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .metrics import timed_db_operation

# Thread-local storage for per-thread connections
# FastAPI runs sync handlers in a thread pool, and the reconciler may fan out
# over worker threads; each thread gets its own SQLite connection.
_local = threading.local()


# --- Connection Management ---


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Args:
        db_path: Optional explicit database path. If None, uses the thread-local
                 connection configured by TOPICKEYS_DB. ":memory:" creates a
                 private in-memory database.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    if not hasattr(_local, "conn") or _local.conn is None:
        db_path_env = os.environ.get("TOPICKEYS_DB", ":memory:")

        if db_path_env == ":memory:":
            # Shared cache so every thread sees the same in-memory database
            _local.conn = sqlite3.connect(
                f"file:topickeys_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn.execute("PRAGMA journal_mode=WAL")

        # Wait for locks instead of failing immediately
        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.execute("PRAGMA foreign_keys=ON")
        _local.conn.row_factory = sqlite3.Row

    return _local.conn


def is_using_shared_memory() -> bool:
    """Check if the global connection is the shared in-memory database.

    Shared-cache connections fail table locks with SQLITE_LOCKED instead of
    waiting on busy_timeout, so callers must not write to it from several
    threads at once.
    """
    return os.environ.get("TOPICKEYS_DB", ":memory:") == ":memory:"


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the current thread's connection."""
    if hasattr(_local, "conn") and _local.conn is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to global."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Schema ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        groups JSON DEFAULT '[]',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS user_keys (
        user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        private_keys JSON NOT NULL DEFAULT '{}',
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS topics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        encrypted_title TEXT,
        created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_topics_encrypted
        ON topics(id) WHERE encrypted_title IS NOT NULL;

    CREATE TABLE IF NOT EXISTS topic_allowed_users (
        topic_id INTEGER NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (topic_id, user_id)
    );

    CREATE TABLE IF NOT EXISTS topic_keys (
        topic_id INTEGER NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        wrapped_key TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (topic_id, user_id)
    );
"""

DROP_SQL = """
    DROP TABLE IF EXISTS topic_keys;
    DROP TABLE IF EXISTS topic_allowed_users;
    DROP TABLE IF EXISTS topics;
    DROP TABLE IF EXISTS user_keys;
    DROP TABLE IF EXISTS users;
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def init_db():
    """Initialize database schema using the global connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None):
    """Drop and recreate every table (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript(DROP_SQL)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Users ---


def create_user(
    username: str,
    groups: list[str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user.

    Raises:
        ValueError: If the username is taken
    """
    conn = _get_conn(conn)
    now = _now()
    try:
        cursor = conn.execute(
            "INSERT INTO users (username, groups, created_at) VALUES (?, ?, ?)",
            (username, json.dumps(groups or []), now),
        )
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise ValueError(f"Username {username} is taken") from e
    conn.commit()
    return {"id": cursor.lastrowid, "username": username, "groups": groups or [], "created_at": now}


def _user_from_row(row: sqlite3.Row | None) -> dict | None:
    user = _row_to_dict(row)
    if user is not None:
        user["groups"] = json.loads(user.get("groups") or "[]")
    return user


def get_user(user_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, username, groups, created_at FROM users WHERE id = ?", (user_id,)
    )
    return _user_from_row(cursor.fetchone())


def get_user_by_username(username: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, username, groups, created_at FROM users WHERE username = ?", (username,)
    )
    return _user_from_row(cursor.fetchone())


# --- User Keys (identity exports) ---


def get_user_keys(user_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user's exported identity.

    Returns:
        {"public": str, "private": {label: blob}} or None if the user has no keys
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT public_key, private_keys FROM user_keys WHERE user_id = ?", (user_id,)
    )
    row = cursor.fetchone()
    if row is None:
        return None
    return {"public": row["public_key"], "private": json.loads(row["private_keys"] or "{}")}


def set_user_keys(
    user_id: int,
    public: str,
    private: dict[str, str],
    overwrite: bool = False,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Store a user's exported identity.

    Without overwrite, existing keys are left untouched. With overwrite, the
    public key is replaced and the given private blobs are merged over the
    stored ones (labels not mentioned are kept).

    Returns:
        True if stored, False if keys existed and overwrite was not set
    """
    conn = _get_conn(conn)
    existing = get_user_keys(user_id, conn=conn)
    if existing is not None and not overwrite:
        return False

    merged = dict(existing["private"]) if existing else {}
    merged.update(private)
    conn.execute(
        """INSERT INTO user_keys (user_id, public_key, private_keys, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (user_id) DO UPDATE SET
               public_key = excluded.public_key,
               private_keys = excluded.private_keys,
               updated_at = excluded.updated_at""",
        (user_id, public, json.dumps(merged), _now()),
    )
    conn.commit()
    return True


def get_public_identities(
    usernames: list[str],
    conn: sqlite3.Connection | None = None,
) -> dict[str, str]:
    """Look up encoded public identities by username.

    Usernames without keys (or unknown usernames) are absent from the result.
    """
    if not usernames:
        return {}
    conn = _get_conn(conn)
    placeholders = ",".join("?" * len(usernames))
    with timed_db_operation("get_public_identities"):
        cursor = conn.execute(
            f"""SELECT u.username, k.public_key
                FROM users u JOIN user_keys k ON k.user_id = u.id
                WHERE u.username IN ({placeholders})""",
            list(usernames),
        )
        rows = cursor.fetchall()
    return {row["username"]: row["public_key"] for row in rows}


# --- Topics ---


def create_topic(
    title: str,
    created_by: int | None = None,
    encrypted_title: str | None = None,
    wrapped_key: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a topic. The creator, if given, becomes its first participant.

    The topic, the creator's participant record and the creator's wrapped
    key (if given) are written in one transaction.

    Raises:
        ValueError: If wrapped_key is given without created_by
    """
    if wrapped_key is not None and created_by is None:
        raise ValueError("A wrapped topic key needs a creator to hold it")

    conn = _get_conn(conn)
    now = _now()
    try:
        cursor = conn.execute(
            "INSERT INTO topics (title, encrypted_title, created_by, created_at) VALUES (?, ?, ?, ?)",
            (title, encrypted_title, created_by, now),
        )
        topic_id = cursor.lastrowid
        if created_by is not None:
            conn.execute(
                "INSERT INTO topic_allowed_users (topic_id, user_id, created_at) VALUES (?, ?, ?)",
                (topic_id, created_by, now),
            )
            if wrapped_key is not None:
                _upsert_key(conn, topic_id, created_by, wrapped_key)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return {
        "id": topic_id,
        "title": title,
        "encrypted_title": encrypted_title,
        "created_by": created_by,
        "created_at": now,
    }


def get_topic(topic_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, title, encrypted_title, created_by, created_at FROM topics WHERE id = ?",
        (topic_id,),
    )
    return _row_to_dict(cursor.fetchone())


def is_topic_encrypted(topic_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """A topic is encrypted when it carries an encrypted title."""
    topic = get_topic(topic_id, conn=conn)
    return topic is not None and topic["encrypted_title"] is not None


def set_encrypted_title(
    topic_id: int,
    encrypted_title: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Set a topic's encrypted title.

    Returns:
        True if the topic exists
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE topics SET encrypted_title = ? WHERE id = ?", (encrypted_title, topic_id)
    )
    conn.commit()
    return cursor.rowcount > 0


def list_encrypted_topic_ids(conn: sqlite3.Connection | None = None) -> list[int]:
    conn = _get_conn(conn)
    with timed_db_operation("list_encrypted_topic_ids"):
        cursor = conn.execute(
            "SELECT id FROM topics WHERE encrypted_title IS NOT NULL ORDER BY id"
        )
        return [row[0] for row in cursor.fetchall()]


# --- Participant Records ---


def participants_of(topic_id: int, conn: sqlite3.Connection | None = None) -> set[int]:
    """User IDs of a topic's allowed participants."""
    conn = _get_conn(conn)
    with timed_db_operation("participants_of"):
        cursor = conn.execute(
            "SELECT user_id FROM topic_allowed_users WHERE topic_id = ?", (topic_id,)
        )
        return {row[0] for row in cursor.fetchall()}


def is_participant(topic_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT 1 FROM topic_allowed_users WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    )
    return cursor.fetchone() is not None


def add_participant(topic_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Add a participant record.

    Returns:
        True if added, False if the user already was a participant
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """INSERT OR IGNORE INTO topic_allowed_users (topic_id, user_id, created_at)
           VALUES (?, ?, ?)""",
        (topic_id, user_id, _now()),
    )
    conn.commit()
    return cursor.rowcount > 0


def remove_participant(
    topic_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Remove a participant record (the topic key, if any, is untouched).

    Returns:
        True if removed, False if the user was not a participant
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM topic_allowed_users WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    )
    conn.commit()
    return cursor.rowcount > 0


# --- Server Key Store ---


def set_key(
    topic_id: int,
    user_id: int,
    wrapped_key: str,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Store (or replace) a user's wrapped key for a topic."""
    conn = _get_conn(conn)
    _upsert_key(conn, topic_id, user_id, wrapped_key)
    conn.commit()


def _upsert_key(conn: sqlite3.Connection, topic_id: int, user_id: int, wrapped_key: str) -> None:
    conn.execute(
        """INSERT INTO topic_keys (topic_id, user_id, wrapped_key, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (topic_id, user_id) DO UPDATE SET
               wrapped_key = excluded.wrapped_key,
               updated_at = excluded.updated_at""",
        (topic_id, user_id, wrapped_key, _now()),
    )


def get_key(topic_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> str | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT wrapped_key FROM topic_keys WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def delete_key(topic_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Delete a user's wrapped key for a topic.

    Returns:
        True if a key was deleted
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM topic_keys WHERE topic_id = ? AND user_id = ?", (topic_id, user_id)
    )
    conn.commit()
    return cursor.rowcount > 0


def keys_for_topic(topic_id: int, conn: sqlite3.Connection | None = None) -> set[int]:
    """User IDs holding a wrapped key for a topic."""
    conn = _get_conn(conn)
    with timed_db_operation("keys_for_topic"):
        cursor = conn.execute("SELECT user_id FROM topic_keys WHERE topic_id = ?", (topic_id,))
        return {row[0] for row in cursor.fetchall()}


# --- Access Grants ---


def invite_user(
    topic_id: int,
    user_id: int,
    wrapped_key: str | None,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Grant a user access: participant record and wrapped key together.

    Both rows are written in one transaction; if anything fails neither
    exists afterwards.

    Raises:
        ValueError: If wrapped_key is missing (nothing is written)
    """
    if not wrapped_key:
        raise ValueError("A wrapped topic key is required to invite a user")

    conn = _get_conn(conn)
    try:
        conn.execute(
            """INSERT OR IGNORE INTO topic_allowed_users (topic_id, user_id, created_at)
               VALUES (?, ?, ?)""",
            (topic_id, user_id, _now()),
        )
        _upsert_key(conn, topic_id, user_id, wrapped_key)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def remove_access(topic_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Revoke a user's access: participant record and wrapped key together.

    Returns:
        True if either record existed
    """
    conn = _get_conn(conn)
    try:
        removed_participant = conn.execute(
            "DELETE FROM topic_allowed_users WHERE topic_id = ? AND user_id = ?",
            (topic_id, user_id),
        ).rowcount
        removed_key = conn.execute(
            "DELETE FROM topic_keys WHERE topic_id = ? AND user_id = ?", (topic_id, user_id)
        ).rowcount
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return (removed_participant + removed_key) > 0

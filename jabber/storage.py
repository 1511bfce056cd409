"""Relational storage for credentials, memories, events and the chat transcript.

Two backends share the same SQL: sqlite for a local single-file database and
MySQL through pymysql. Statements are written with ``%s`` placeholders and the
sqlite backend rewrites them to ``?``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import sqlite3
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pymysql
from pydantic import BaseModel, TypeAdapter, ValidationError

from jabber.errors import StorageError

LOGGER = logging.getLogger("jabber.storage")

CREDENTIAL_ROW_ID = 1

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        id INTEGER PRIMARY KEY,
        access_token TEXT,
        refresh_token TEXT,
        scope TEXT,
        token_type TEXT,
        expiry_date INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        memory_key TEXT NOT NULL,
        memory_value TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL DEFAULT '',
        timezone TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
]

MYSQL_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        id INT PRIMARY KEY,
        access_token TEXT NULL,
        refresh_token TEXT NULL,
        scope TEXT NULL,
        token_type VARCHAR(32) NULL,
        expiry_date BIGINT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memories (
        id INT AUTO_INCREMENT PRIMARY KEY,
        memory_key VARCHAR(255) NOT NULL,
        memory_value TEXT NOT NULL,
        created_at VARCHAR(64) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INT AUTO_INCREMENT PRIMARY KEY,
        title VARCHAR(512) NOT NULL,
        description TEXT NOT NULL,
        start_time VARCHAR(64) NOT NULL,
        end_time VARCHAR(64) NOT NULL DEFAULT '',
        timezone VARCHAR(64) NOT NULL DEFAULT '',
        created_at VARCHAR(64) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INT AUTO_INCREMENT PRIMARY KEY,
        role VARCHAR(16) NOT NULL,
        content TEXT NOT NULL,
        created_at VARCHAR(64) NOT NULL
    )
    """,
]


class Credential(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    expiry_date: Optional[int] = None


class MemoryRecord(BaseModel):
    id: int
    key: str
    value: str
    created_at: datetime


class EventRecord(BaseModel):
    id: int
    title: str
    description: str = ""
    start: str
    end: str = ""
    timezone: str = ""
    created_at: datetime


class MessageRecord(BaseModel):
    id: int
    role: str
    content: str
    created_at: datetime


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


_TIMESTAMP = TypeAdapter(datetime)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 / RFC 3339 timestamp into an aware datetime.

    Naive values are read as UTC. Returns ``None`` for anything that is not a
    calendar timestamp, including bare numbers pydantic would read as epochs.
    """
    candidate = (value or "").strip()
    if not candidate[:4].isdigit() or candidate[4:5] != "-":
        return None
    try:
        parsed = _TIMESTAMP.validate_python(candidate)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Connection lifecycle plus a handful of single-statement helpers."""

    name = "database"
    schema: Sequence[str] = ()
    driver_errors: Tuple[type, ...] = ()

    def _connect(self) -> Any:
        raise NotImplementedError

    def _prepare(self, sql: str) -> str:
        return sql

    @contextmanager
    def connection(self) -> Iterator[Any]:
        try:
            connection = self._connect()
        except self.driver_errors as exc:
            LOGGER.error("storage_connect_failed backend=%s error=%s", self.name, exc)
            raise StorageError(str(exc)) from exc
        try:
            yield connection
        except self.driver_errors as exc:
            LOGGER.error("storage_statement_failed backend=%s error=%s", self.name, exc)
            raise StorageError(str(exc)) from exc
        finally:
            connection.close()

    def execute(self, sql: str, params: Sequence[object] = ()) -> int:
        with self.connection() as connection:
            cursor = connection.cursor()
            try:
                cursor.execute(self._prepare(sql), tuple(params))
                row_id = cursor.lastrowid
            finally:
                cursor.close()
            connection.commit()
        return row_id

    def fetch_all(self, sql: str, params: Sequence[object] = ()) -> List[Dict[str, Any]]:
        with self.connection() as connection:
            cursor = connection.cursor()
            try:
                cursor.execute(self._prepare(sql), tuple(params))
                rows = cursor.fetchall()
            finally:
                cursor.close()
        return [dict(row) for row in rows]

    def fetch_one(self, sql: str, params: Sequence[object] = ()) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def initialize(self) -> None:
        with self.connection() as connection:
            cursor = connection.cursor()
            try:
                for statement in self.schema:
                    cursor.execute(statement)
            finally:
                cursor.close()
            connection.commit()
        existing = self.fetch_one(
            "SELECT id FROM oauth_tokens WHERE id = %s", (CREDENTIAL_ROW_ID,)
        )
        if existing is None:
            self.execute("INSERT INTO oauth_tokens (id) VALUES (%s)", (CREDENTIAL_ROW_ID,))
        LOGGER.info("storage_initialized backend=%s", self.name)

    def close(self) -> None:
        # Connections are opened per statement, so there is nothing to release.
        LOGGER.info("storage_closed backend=%s", self.name)


class SQLiteDatabase(Database):
    name = "sqlite"
    schema = SQLITE_SCHEMA
    driver_errors = (sqlite3.Error,)

    def __init__(self, path: str) -> None:
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.path)
        connection.row_factory = sqlite3.Row
        return connection

    def _prepare(self, sql: str) -> str:
        return sql.replace("%s", "?")


class MySQLDatabase(Database):
    name = "mysql"
    schema = MYSQL_SCHEMA
    driver_errors = (pymysql.MySQLError,)

    def __init__(self, host: str, port: int, user: str, password: str, database: str) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database

    def _connect(self) -> pymysql.connections.Connection:
        return pymysql.connect(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            database=self.database,
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=False,
        )


class TokenStore:
    """Owns the single OAuth credential row."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def load(self) -> Optional[Credential]:
        row = self.database.fetch_one(
            """
            SELECT access_token, refresh_token, scope, token_type, expiry_date
            FROM oauth_tokens
            WHERE id = %s
            """,
            (CREDENTIAL_ROW_ID,),
        )
        if row is None:
            return None
        return Credential(**row)

    def save(self, credential: Credential) -> None:
        self.database.execute(
            """
            UPDATE oauth_tokens
            SET access_token = %s, refresh_token = %s, scope = %s,
                token_type = %s, expiry_date = %s
            WHERE id = %s
            """,
            (
                credential.access_token,
                credential.refresh_token,
                credential.scope,
                credential.token_type,
                credential.expiry_date,
                CREDENTIAL_ROW_ID,
            ),
        )

    def merge(self, fields: Credential) -> Credential:
        """Overlay the fields that are set on ``fields`` and persist the result.

        Fields left as ``None`` keep their stored value, which is how a refresh
        response without a refresh token leaves the original one in place.
        """
        current = self.load() or Credential()
        merged = current.model_copy(update=fields.model_dump(exclude_none=True))
        self.save(merged)
        return merged


def _row_to_memory(row: Dict[str, Any]) -> MemoryRecord:
    return MemoryRecord(
        id=int(row["id"]),
        key=row["memory_key"],
        value=row["memory_value"],
        created_at=row["created_at"],
    )


def _row_to_event(row: Dict[str, Any]) -> EventRecord:
    return EventRecord(
        id=int(row["id"]),
        title=row["title"],
        description=row["description"] or "",
        start=row["start_time"],
        end=row["end_time"] or "",
        timezone=row["timezone"] or "",
        created_at=row["created_at"],
    )


def _row_to_message(row: Dict[str, Any]) -> MessageRecord:
    return MessageRecord(
        id=int(row["id"]),
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
    )


def create_memory(database: Database, key: str, value: str) -> MemoryRecord:
    created_at = _utc_now()
    memory_id = database.execute(
        "INSERT INTO memories (memory_key, memory_value, created_at) VALUES (%s, %s, %s)",
        (key, value, created_at),
    )
    LOGGER.info("memory_event action=create memory_id=%s key=%s", memory_id, key)
    return MemoryRecord(id=memory_id, key=key, value=value, created_at=created_at)


def list_memories(database: Database) -> List[MemoryRecord]:
    rows = database.fetch_all(
        """
        SELECT id, memory_key, memory_value, created_at
        FROM memories
        ORDER BY id DESC
        """
    )
    return [_row_to_memory(row) for row in rows]


def create_event(
    database: Database,
    title: str,
    start: str,
    end: str = "",
    description: str = "",
    timezone: str = "",
) -> EventRecord:
    created_at = _utc_now()
    event_id = database.execute(
        """
        INSERT INTO events (title, description, start_time, end_time, timezone, created_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (title, description, start, end, timezone, created_at),
    )
    LOGGER.info("event_event action=create event_id=%s start=%s", event_id, start)
    return EventRecord(
        id=event_id,
        title=title,
        description=description,
        start=start,
        end=end,
        timezone=timezone,
        created_at=created_at,
    )


def _event_sort_key(event: EventRecord) -> Tuple[int, float]:
    # Unparseable starts go last; sorted() is stable so ids break ties.
    start = parse_timestamp(event.start)
    if start is None:
        return (1, 0.0)
    return (0, start.timestamp())


def list_events(database: Database) -> List[EventRecord]:
    rows = database.fetch_all(
        """
        SELECT id, title, description, start_time, end_time, timezone, created_at
        FROM events
        ORDER BY id ASC
        """
    )
    return sorted((_row_to_event(row) for row in rows), key=_event_sort_key)


def store_message(database: Database, role: str, content: str) -> MessageRecord:
    created_at = _utc_now()
    message_id = database.execute(
        "INSERT INTO messages (role, content, created_at) VALUES (%s, %s, %s)",
        (role, content, created_at),
    )
    LOGGER.info("message_event action=create message_id=%s role=%s", message_id, role)
    return MessageRecord(id=message_id, role=role, content=content, created_at=created_at)


def list_messages(database: Database, limit: Optional[int] = None) -> List[MessageRecord]:
    sql = "SELECT id, role, content, created_at FROM messages ORDER BY id DESC"
    params: Tuple[object, ...] = ()
    if limit:
        sql += " LIMIT %s"
        params = (limit,)
    rows = database.fetch_all(sql, params)
    return [_row_to_message(row) for row in reversed(rows)]


def open_database(backend: str, **options: Any) -> Database:
    if backend == "mysql":
        return MySQLDatabase(
            host=options["host"],
            port=options["port"],
            user=options["user"],
            password=options["password"],
            database=options["database"],
        )
    if backend == "sqlite":
        return SQLiteDatabase(options["path"])
    raise ValueError(f"Unsupported DB_BACKEND: {backend}")

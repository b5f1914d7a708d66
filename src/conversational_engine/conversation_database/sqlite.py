"""
SQLite implementation of the thread and message repositories.

Both repositories share one 'SQLiteDatabase', which owns the single connection
and the lock that serialises every store operation. Each operation is a short
synchronous unit of work executed on a worker thread via 'asyncio.to_thread',
so the event loop keeps streaming other generations while SQLite is busy. The
lock is taken inside the worker thread: an operation that is abandoned by a
cancelled caller still finishes before the next one starts.

Multi-statement operations ('delete_thread', 'add_message' with its reference
checks) run inside one transaction ('with conn:'), so they either apply fully
or not at all.
"""

import asyncio
import json
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger

from conversational_engine.conversation_database.data_models.message import Message, MessageDatabase
from conversational_engine.conversation_database.data_models.thread import (
    SystemPromptLookup,
    Thread,
    ThreadDatabase,
)
from conversational_engine.errors import ForeignKeyError, StorageError
from conversational_engine.llms.base import GenerationMetrics, Roles
from conversational_engine.utils.time import get_current_timestamp

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    system_prompt TEXT,
    is_archived BOOLEAN NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id INTEGER NOT NULL REFERENCES threads(id),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    images TEXT,
    model TEXT,
    thinking_process TEXT,
    total_duration INTEGER,
    load_duration INTEGER,
    prompt_eval_count INTEGER,
    eval_count INTEGER,
    eval_duration INTEGER,
    tokens_per_second REAL,
    reply_to_id INTEGER REFERENCES messages(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_thread_order
ON messages(thread_id, created_at, id);
"""

# Columns added after the first schema version, applied to older database files.
_MIGRATIONS: dict[str, dict[str, str]] = {
    "threads": {
        "system_prompt": "TEXT",
        "is_archived": "BOOLEAN NOT NULL DEFAULT 0",
    },
    "messages": {
        "images": "TEXT",
        "model": "TEXT",
        "thinking_process": "TEXT",
        "total_duration": "INTEGER",
        "load_duration": "INTEGER",
        "prompt_eval_count": "INTEGER",
        "eval_count": "INTEGER",
        "eval_duration": "INTEGER",
        "tokens_per_second": "REAL",
        "reply_to_id": "INTEGER REFERENCES messages(id) ON DELETE SET NULL",
    },
}

_MESSAGE_COLUMNS = (
    "id, thread_id, role, content, created_at, images, model, thinking_process, "
    "total_duration, load_duration, prompt_eval_count, eval_count, eval_duration, "
    "tokens_per_second, reply_to_id"
)

_METRIC_COLUMNS = ("total_duration", "load_duration", "prompt_eval_count", "eval_count", "eval_duration")


class SQLiteDatabase:
    """
    Shared SQLite connection guarded by a single lock.

    Attributes:
        path: Database file path, or ':memory:' for a private in-memory database.
    """

    def __init__(self, path: str | Path = "chat.db") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(self.path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._tune_pragmas()
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open database {self.path!r}: {exc}", exc) from exc
        logger.info(f"Conversation store ready at {self.path}")

    def _tune_pragmas(self) -> None:
        self.conn.execute("PRAGMA foreign_keys = ON")
        if self.path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA synchronous = NORMAL")

    def _init_schema(self) -> None:
        self.conn.executescript(_SCHEMA)
        for table, columns in _MIGRATIONS.items():
            existing = {row["name"] for row in self.conn.execute(f"PRAGMA table_info({table})").fetchall()}
            for name, definition in columns.items():
                if name not in existing:
                    logger.info(f"Migrating {table}: adding column {name}")
                    self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _locked(self, func: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            return func(self.conn)

    async def run(self, operation: str, func: Callable[[sqlite3.Connection], T]) -> T:
        """Run 'func' with exclusive access to the connection, off the event loop.

        Driver errors are wrapped in 'StorageError'; errors the repositories
        raise themselves ('ForeignKeyError') pass through unchanged.
        """
        try:
            return await asyncio.to_thread(self._locked, func)
        except sqlite3.Error as exc:
            logger.error(f"Store operation {operation} failed: {exc}")
            raise StorageError(f"{operation} failed: {exc}", exc) from exc


def _metric_values(metrics: GenerationMetrics | None) -> tuple[Any, ...]:
    """Metric column values in '_METRIC_COLUMNS' order, then 'tokens_per_second'."""
    if metrics is None:
        return (None,) * (len(_METRIC_COLUMNS) + 1)
    return (*(getattr(metrics, name) for name in _METRIC_COLUMNS), metrics.tokens_per_second)


def _row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        system_prompt=row["system_prompt"],
        is_archived=bool(row["is_archived"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    images: list[str] | None = None
    if row["images"]:
        try:
            decoded = json.loads(row["images"])
        except json.JSONDecodeError:
            decoded = []
        images = [str(image) for image in decoded] if isinstance(decoded, list) and decoded else None

    metrics = None
    counters = {name: row[name] for name in _METRIC_COLUMNS}
    if all(value is not None for value in counters.values()):
        if row["tokens_per_second"] is not None:
            metrics = GenerationMetrics(**counters, tokens_per_second=row["tokens_per_second"])
        else:
            metrics = GenerationMetrics.from_counters(**counters)

    return Message(
        id=row["id"],
        thread_id=row["thread_id"],
        role=Roles(row["role"]),
        content=row["content"],
        created_at=row["created_at"],
        images=images,
        model=row["model"],
        thinking_process=row["thinking_process"],
        metrics=metrics,
        reply_to_id=row["reply_to_id"],
    )


class SQLiteThreadDatabase(ThreadDatabase):
    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    async def create_thread(self, title: str, system_prompt: str | None = None) -> int:
        def insert(conn: sqlite3.Connection) -> int:
            with conn:
                cursor = conn.execute(
                    "INSERT INTO threads (title, created_at, system_prompt, is_archived) VALUES (?, ?, ?, 0)",
                    (title, get_current_timestamp(), system_prompt),
                )
            return int(cursor.lastrowid)

        thread_id = await self.db.run("create_thread", insert)
        logger.info(f"Created thread {thread_id} ({title!r})")
        return thread_id

    async def list_threads(self) -> list[Thread]:
        def select(conn: sqlite3.Connection) -> list[Thread]:
            rows = conn.execute(
                "SELECT id, title, created_at, system_prompt, is_archived FROM threads "
                "WHERE is_archived = 0 ORDER BY created_at DESC, id DESC"
            ).fetchall()
            return [_row_to_thread(row) for row in rows]

        return await self.db.run("list_threads", select)

    async def get_thread(self, thread_id: int) -> Thread | None:
        def select(conn: sqlite3.Connection) -> Thread | None:
            row = conn.execute(
                "SELECT id, title, created_at, system_prompt, is_archived FROM threads WHERE id = ?",
                (thread_id,),
            ).fetchone()
            return None if row is None else _row_to_thread(row)

        return await self.db.run("get_thread", select)

    async def get_system_prompt(self, thread_id: int) -> SystemPromptLookup:
        def select(conn: sqlite3.Connection) -> SystemPromptLookup:
            row = conn.execute("SELECT system_prompt FROM threads WHERE id = ?", (thread_id,)).fetchone()
            if row is None:
                return SystemPromptLookup(thread_exists=False)
            return SystemPromptLookup(thread_exists=True, system_prompt=row["system_prompt"])

        return await self.db.run("get_system_prompt", select)

    async def archive_thread(self, thread_id: int) -> None:
        def update(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("UPDATE threads SET is_archived = 1 WHERE id = ?", (thread_id,))

        await self.db.run("archive_thread", update)

    async def rename_thread(self, thread_id: int, new_title: str) -> None:
        def update(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("UPDATE threads SET title = ? WHERE id = ?", (new_title, thread_id))

        await self.db.run("rename_thread", update)

    async def delete_thread(self, thread_id: int) -> None:
        def delete(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
                conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))

        await self.db.run("delete_thread", delete)
        logger.info(f"Deleted thread {thread_id}")


class SQLiteMessageDatabase(MessageDatabase):
    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    async def add_message(
        self,
        thread_id: int,
        role: Roles,
        content: str,
        images: list[str] | None = None,
        model: str | None = None,
        reply_to_id: int | None = None,
        thinking_process: str | None = None,
        metrics: GenerationMetrics | None = None,
    ) -> int:
        images_json = json.dumps(images) if images else None
        values = _metric_values(metrics)

        def insert(conn: sqlite3.Connection) -> int:
            with conn:
                if conn.execute("SELECT 1 FROM threads WHERE id = ?", (thread_id,)).fetchone() is None:
                    raise ForeignKeyError(f"Thread {thread_id} does not exist")
                if reply_to_id is not None:
                    target = conn.execute("SELECT thread_id FROM messages WHERE id = ?", (reply_to_id,)).fetchone()
                    if target is None or target["thread_id"] != thread_id:
                        raise ForeignKeyError(f"Message {reply_to_id} is not part of thread {thread_id}")
                try:
                    cursor = conn.execute(
                        "INSERT INTO messages (thread_id, role, content, images, model, created_at, reply_to_id, "
                        "thinking_process, total_duration, load_duration, prompt_eval_count, eval_count, "
                        "eval_duration, tokens_per_second) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            thread_id,
                            str(role),
                            content,
                            images_json,
                            model,
                            get_current_timestamp(),
                            reply_to_id,
                            thinking_process,
                            *values,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ForeignKeyError(f"Could not add message to thread {thread_id}: {exc}", exc) from exc
            return int(cursor.lastrowid)

        return await self.db.run("add_message", insert)

    async def get_message(self, message_id: int) -> Message | None:
        def select(conn: sqlite3.Connection) -> Message | None:
            row = conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)).fetchone()
            return None if row is None else _row_to_message(row)

        return await self.db.run("get_message", select)

    async def list_messages(self, thread_id: int) -> list[Message]:
        def select(conn: sqlite3.Connection) -> list[Message]:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id = ? ORDER BY created_at ASC, id ASC",
                (thread_id,),
            ).fetchall()
            return [_row_to_message(row) for row in rows]

        return await self.db.run("list_messages", select)

    async def update_message_content(self, message_id: int, new_content: str) -> None:
        def update(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("UPDATE messages SET content = ? WHERE id = ?", (new_content, message_id))

        await self.db.run("update_message_content", update)

    async def update_message_generation(
        self,
        message_id: int,
        thinking_process: str | None,
        metrics: GenerationMetrics | None,
    ) -> None:
        values = _metric_values(metrics)

        def update(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    "UPDATE messages SET thinking_process = ?, total_duration = ?, load_duration = ?, "
                    "prompt_eval_count = ?, eval_count = ?, eval_duration = ?, tokens_per_second = ? "
                    "WHERE id = ?",
                    (thinking_process, *values, message_id),
                )

        await self.db.run("update_message_generation", update)

    async def delete_messages_from(self, thread_id: int, message_id: int) -> None:
        def delete(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("DELETE FROM messages WHERE thread_id = ? AND id >= ?", (thread_id, message_id))

        await self.db.run("delete_messages_from", delete)

    async def delete_messages_after(self, thread_id: int, message_id: int) -> None:
        def delete(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute("DELETE FROM messages WHERE thread_id = ? AND id > ?", (thread_id, message_id))

        await self.db.run("delete_messages_after", delete)

    async def delete_last_message(self, thread_id: int) -> None:
        def delete(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    "DELETE FROM messages WHERE id = ("
                    "SELECT id FROM messages WHERE thread_id = ? ORDER BY created_at DESC, id DESC LIMIT 1)",
                    (thread_id,),
                )

        await self.db.run("delete_last_message", delete)

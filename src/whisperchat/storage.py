"""SQLite storage for chats, settings and admin records, with FTS5 search."""

from __future__ import annotations

import json
import os
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import DEFAULT_TITLE, SESSIONS_DIR
from .models import (
    GROUP_PERMISSIONS,
    Attachment,
    CatalogModel,
    Company,
    Conversation,
    Group,
    GroupMember,
    Message,
    ModelInfo,
    Settings,
    new_id,
)


class StorageError(Exception):
    """A read or write against the database failed."""


class ChatStore:
    """SQLite-backed storage for chats, messages and the admin tables."""

    def __init__(self, db_path: Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(db_path))
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {db_path}: {exc}") from exc

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                title TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                has_attachments INTEGER NOT NULL DEFAULT 0,
                timestamp REAL NOT NULL,
                FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat
                ON messages(chat_id, timestamp);

            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                message_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                size INTEGER NOT NULL,
                content TEXT,
                url TEXT,
                created_at REAL NOT NULL,
                FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_attachments_message
                ON attachments(message_id);

            CREATE VIRTUAL TABLE IF NOT EXISTS chats_fts USING fts5(
                title,
                content='chats',
                content_rowid='rowid',
                tokenize='porter unicode61'
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                content,
                content='messages',
                content_rowid='rowid',
                tokenize='porter unicode61'
            );

            CREATE TRIGGER IF NOT EXISTS chats_ai AFTER INSERT ON chats BEGIN
                INSERT INTO chats_fts(rowid, title) VALUES (new.rowid, new.title);
            END;

            CREATE TRIGGER IF NOT EXISTS chats_ad AFTER DELETE ON chats BEGIN
                INSERT INTO chats_fts(chats_fts, rowid, title)
                VALUES ('delete', old.rowid, old.title);
            END;

            CREATE TRIGGER IF NOT EXISTS chats_au AFTER UPDATE OF title ON chats BEGIN
                INSERT INTO chats_fts(chats_fts, rowid, title)
                VALUES ('delete', old.rowid, old.title);
                INSERT INTO chats_fts(rowid, title) VALUES (new.rowid, new.title);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
                INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, content)
                VALUES ('delete', old.rowid, old.content);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE OF content ON messages BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, content)
                VALUES ('delete', old.rowid, old.content);
                INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
            END;

            CREATE TABLE IF NOT EXISTS api_settings (
                user_id TEXT PRIMARY KEY,
                api_key TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS available_models (
                model_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                max_tokens INTEGER NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS companies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                logo TEXT,
                cnpj TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                authorized_models TEXT NOT NULL DEFAULT '[]',
                permissions TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY (company_id) REFERENCES companies(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS group_users (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                UNIQUE (group_id, user_id),
                FOREIGN KEY (group_id) REFERENCES groups(id) ON DELETE CASCADE
            );
        """)
        self.conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run writes in one transaction; any sqlite error becomes StorageError."""
        try:
            with self.conn:
                yield self.conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    # -- chats ---------------------------------------------------------------

    def create_chat(
        self, model: str, user_id: str | None = None, title: str = DEFAULT_TITLE
    ) -> Conversation:
        now = time.time()
        chat = Conversation(title=title, model=model, created_at=now, updated_at=now)
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO chats (id, user_id, title, model, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (chat.id, user_id, chat.title, chat.model, now, now),
            )
        return chat

    def chat_exists(self, chat_id: str) -> bool:
        return self._fetchone("SELECT 1 FROM chats WHERE id = ?", (chat_id,)) is not None

    def get_chat(self, chat_id: str) -> Conversation | None:
        """Get a chat with all its messages and their attachments."""
        row = self._fetchone("SELECT * FROM chats WHERE id = ?", (chat_id,))
        if not row:
            return None

        return Conversation(
            id=row["id"],
            title=row["title"],
            model=row["model"],
            messages=self.get_messages(chat_id),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def latest_chat(self, user_id: str | None = None) -> Conversation | None:
        """The most recently updated chat, optionally only the user's own."""
        if user_id is None:
            row = self._fetchone("SELECT id FROM chats ORDER BY updated_at DESC LIMIT 1")
        else:
            row = self._fetchone(
                "SELECT id FROM chats WHERE user_id = ? ORDER BY updated_at DESC LIMIT 1",
                (user_id,),
            )
        return self.get_chat(row["id"]) if row else None

    def list_chats(
        self,
        limit: int = 20,
        offset: int = 0,
        keyword: str | None = None,
    ) -> list[dict]:
        """List chats newest first, optionally filtered by keyword (FTS5 on titles)."""
        if keyword:
            rows = self._fetchall(
                """SELECT c.id, c.title, c.model, c.created_at, c.updated_at,
                          (SELECT COUNT(*) FROM messages m WHERE m.chat_id = c.id)
                              AS message_count
                   FROM chats c
                   JOIN chats_fts fts ON c.rowid = fts.rowid
                   WHERE chats_fts MATCH ?
                   ORDER BY c.updated_at DESC
                   LIMIT ? OFFSET ?""",
                (keyword, limit, offset),
            )
        else:
            rows = self._fetchall(
                """SELECT c.id, c.title, c.model, c.created_at, c.updated_at,
                          (SELECT COUNT(*) FROM messages m WHERE m.chat_id = c.id)
                              AS message_count
                   FROM chats c
                   ORDER BY c.updated_at DESC
                   LIMIT ? OFFSET ?""",
                (limit, offset),
            )
        return [dict(r) for r in rows]

    def search_chats(self, query: str, limit: int = 20) -> list[dict]:
        """Full-text search over chat titles and message text."""
        title_hits = self._fetchall(
            """SELECT c.id, c.title, c.updated_at, c.title AS snippet, rank
               FROM chats_fts fts
               JOIN chats c ON c.rowid = fts.rowid
               WHERE chats_fts MATCH ?
               ORDER BY rank
               LIMIT ?""",
            (query, limit),
        )
        message_hits = self._fetchall(
            """SELECT c.id, c.title, c.updated_at,
                      snippet(messages_fts, 0, '>>>', '<<<', '...', 40) AS snippet,
                      rank
               FROM messages_fts fts
               JOIN messages m ON m.rowid = fts.rowid
               JOIN chats c ON c.id = m.chat_id
               WHERE messages_fts MATCH ?
               ORDER BY rank
               LIMIT ?""",
            (query, limit),
        )

        # Keep the best-ranked hit per chat
        best: dict[str, dict] = {}
        for r in [*title_hits, *message_hits]:
            hit = dict(r)
            current = best.get(hit["id"])
            if current is None or hit["rank"] < current["rank"]:
                best[hit["id"]] = hit

        ranked = sorted(best.values(), key=lambda h: h["rank"])
        return ranked[:limit]

    def update_chat_title(self, chat_id: str, title: str):
        with self._transaction() as conn:
            conn.execute(
                "UPDATE chats SET title = ?, updated_at = ? WHERE id = ?",
                (title, time.time(), chat_id),
            )

    def update_chat_model(self, chat_id: str, model: str):
        with self._transaction() as conn:
            conn.execute("UPDATE chats SET model = ? WHERE id = ?", (model, chat_id))

    def touch_chat(self, chat_id: str, timestamp: float | None = None):
        with self._transaction() as conn:
            conn.execute(
                "UPDATE chats SET updated_at = ? WHERE id = ?",
                (timestamp or time.time(), chat_id),
            )

    def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat; its messages and attachments go with it."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        return cur.rowcount > 0

    # -- messages ------------------------------------------------------------

    def add_message(self, chat_id: str, message: Message) -> str:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO messages (id, chat_id, role, content, has_attachments, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    chat_id,
                    message.role,
                    message.content,
                    int(bool(message.attachments)),
                    message.timestamp,
                ),
            )
        return message.id

    def update_message_content(self, message_id: str, content: str):
        with self._transaction() as conn:
            conn.execute(
                "UPDATE messages SET content = ? WHERE id = ?", (content, message_id)
            )

    def add_attachments(self, message_id: str, attachments: Iterable[Attachment]):
        """Insert all attachment rows for a message in one batch."""
        now = time.time()
        rows = [
            (a.id, message_id, a.name, a.type, a.size, a.content, a.url, now)
            for a in attachments
        ]
        if not rows:
            return
        with self._transaction() as conn:
            conn.executemany(
                """INSERT INTO attachments
                   (id, message_id, name, type, size, content, url, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )

    def get_messages(self, chat_id: str) -> list[Message]:
        rows = self._fetchall(
            """SELECT id, role, content, has_attachments, timestamp FROM messages
               WHERE chat_id = ? ORDER BY timestamp, rowid""",
            (chat_id,),
        )

        messages = []
        for row in rows:
            attachments: list[Attachment] = []
            if row["has_attachments"]:
                attachments = [
                    Attachment(
                        id=a["id"], name=a["name"], type=a["type"], size=a["size"],
                        content=a["content"], url=a["url"],
                    )
                    for a in self._fetchall(
                        "SELECT * FROM attachments WHERE message_id = ? ORDER BY rowid",
                        (row["id"],),
                    )
                ]
            role = row["role"] if row["role"] in ("user", "assistant", "system") else "user"
            messages.append(
                Message(
                    id=row["id"],
                    role=role,
                    content=row["content"],
                    timestamp=row["timestamp"],
                    attachments=attachments,
                )
            )
        return messages

    # -- credentials & model catalog -----------------------------------------

    def save_api_key(self, user_id: str, api_key: str):
        now = time.time()
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO api_settings (user_id, api_key, created_at, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       api_key = excluded.api_key, updated_at = excluded.updated_at""",
                (user_id, api_key, now, now),
            )

    def get_api_key(self, user_id: str) -> str | None:
        row = self._fetchone("SELECT api_key FROM api_settings WHERE user_id = ?", (user_id,))
        return row["api_key"] if row else None

    def replace_models(self, models: Iterable[ModelInfo], enabled_ids: Iterable[str] = ()):
        """Replace the whole catalog with `models`, enabling those in `enabled_ids`."""
        enabled = set(enabled_ids)
        now = time.time()
        rows = [
            (m.id, m.name, m.max_tokens, int(m.id in enabled), now, now) for m in models
        ]
        with self._transaction() as conn:
            conn.execute("DELETE FROM available_models")
            conn.executemany(
                """INSERT INTO available_models
                   (model_id, name, max_tokens, enabled, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                rows,
            )

    def get_models(self, enabled_only: bool = False) -> list[CatalogModel]:
        sql = "SELECT model_id, name, max_tokens, enabled FROM available_models"
        if enabled_only:
            sql += " WHERE enabled = 1"
        rows = self._fetchall(sql + " ORDER BY name")
        return [
            CatalogModel(
                id=r["model_id"], name=r["name"], max_tokens=r["max_tokens"],
                enabled=bool(r["enabled"]),
            )
            for r in rows
        ]

    def set_model_enabled(self, model_id: str, enabled: bool) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE available_models SET enabled = ?, updated_at = ? WHERE model_id = ?",
                (int(enabled), time.time(), model_id),
            )
        return cur.rowcount > 0

    def load_settings(self, user_id: str) -> Settings:
        models = [
            ModelInfo(id=m.id, name=m.name, max_tokens=m.max_tokens)
            for m in self.get_models(enabled_only=True)
        ]
        return Settings(api_key=self.get_api_key(user_id) or "", models=models)

    # -- company -------------------------------------------------------------

    def get_company(self) -> Company | None:
        row = self._fetchone("SELECT * FROM companies ORDER BY created_at LIMIT 1")
        return Company(**dict(row)) if row else None

    def save_company(
        self, name: str, logo: str | None = None, cnpj: str | None = None
    ) -> Company:
        """Create the company record, or update it if one exists."""
        if not name.strip():
            raise ValueError("Company name is required")

        now = time.time()
        existing = self.get_company()
        with self._transaction() as conn:
            if existing:
                conn.execute(
                    "UPDATE companies SET name = ?, logo = ?, cnpj = ?, updated_at = ? WHERE id = ?",
                    (name, logo, cnpj, now, existing.id),
                )
            else:
                conn.execute(
                    """INSERT INTO companies (id, name, logo, cnpj, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (new_id(), name, logo, cnpj, now, now),
                )
        return self.get_company()

    # -- groups --------------------------------------------------------------

    @staticmethod
    def _group_from_row(row: sqlite3.Row) -> Group:
        data: dict[str, Any] = dict(row)
        data["authorized_models"] = json.loads(data["authorized_models"] or "[]")
        data["permissions"] = json.loads(data["permissions"] or "{}")
        return Group(**data)

    def create_group(self, company_id: str, name: str) -> Group:
        if not name.strip():
            raise ValueError("Group name is required")
        now = time.time()
        group = Group(company_id=company_id, name=name, created_at=now, updated_at=now)
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO groups
                   (id, company_id, name, authorized_models, permissions, created_at, updated_at)
                   VALUES (?, ?, ?, '[]', '{}', ?, ?)""",
                (group.id, company_id, name, now, now),
            )
        return group

    def get_group(self, group_id: str) -> Group | None:
        row = self._fetchone("SELECT * FROM groups WHERE id = ?", (group_id,))
        return self._group_from_row(row) if row else None

    def list_groups(self, company_id: str | None = None) -> list[Group]:
        if company_id is None:
            rows = self._fetchall("SELECT * FROM groups ORDER BY name")
        else:
            rows = self._fetchall(
                "SELECT * FROM groups WHERE company_id = ? ORDER BY name", (company_id,)
            )
        return [self._group_from_row(r) for r in rows]

    def update_group(
        self,
        group_id: str,
        name: str | None = None,
        authorized_models: list[str] | None = None,
        permissions: dict[str, bool] | None = None,
    ) -> Group | None:
        if name is not None and not name.strip():
            raise ValueError("Group name is required")
        unknown = set(permissions or {}) - set(GROUP_PERMISSIONS)
        if unknown:
            raise ValueError(f"Unknown permission(s): {', '.join(sorted(unknown))}")

        group = self.get_group(group_id)
        if group is None:
            return None

        with self._transaction() as conn:
            conn.execute(
                """UPDATE groups SET name = ?, authorized_models = ?, permissions = ?,
                   updated_at = ? WHERE id = ?""",
                (
                    name if name is not None else group.name,
                    json.dumps(
                        authorized_models
                        if authorized_models is not None
                        else group.authorized_models
                    ),
                    json.dumps(permissions if permissions is not None else group.permissions),
                    time.time(),
                    group_id,
                ),
            )
        return self.get_group(group_id)

    def set_group_permission(self, group_id: str, permission: str, allowed: bool) -> Group | None:
        """Turn one permission on or off, leaving the others as they are."""
        group = self.get_group(group_id)
        if group is None:
            return None
        return self.update_group(group_id, permissions={**group.permissions, permission: allowed})

    def delete_group(self, group_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM groups WHERE id = ?", (group_id,))
        return cur.rowcount > 0

    def add_group_member(self, group_id: str, user_id: str) -> GroupMember:
        member = GroupMember(group_id=group_id, user_id=user_id)
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO group_users (id, group_id, user_id, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(group_id, user_id) DO NOTHING""",
                (member.id, group_id, user_id, time.time()),
            )
        row = self._fetchone(
            "SELECT id, group_id, user_id FROM group_users WHERE group_id = ? AND user_id = ?",
            (group_id, user_id),
        )
        return GroupMember(**dict(row))

    def remove_group_member(self, group_id: str, user_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM group_users WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )
        return cur.rowcount > 0

    def list_group_members(self, group_id: str) -> list[GroupMember]:
        rows = self._fetchall(
            "SELECT id, group_id, user_id FROM group_users WHERE group_id = ? ORDER BY user_id",
            (group_id,),
        )
        return [GroupMember(**dict(r)) for r in rows]

    def groups_for_user(self, user_id: str) -> list[Group]:
        rows = self._fetchall(
            """SELECT g.* FROM groups g
               JOIN group_users gu ON gu.group_id = g.id
               WHERE gu.user_id = ?""",
            (user_id,),
        )
        return [self._group_from_row(r) for r in rows]

    # -- stats ---------------------------------------------------------------

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        chat_count = self._fetchone("SELECT COUNT(*) FROM chats")[0]
        msg_count = self._fetchone("SELECT COUNT(*) FROM messages")[0]

        date_range = self._fetchone("SELECT MIN(created_at), MAX(created_at) FROM chats")

        models = self._fetchall(
            """SELECT model, COUNT(*) as cnt FROM chats
               GROUP BY model ORDER BY cnt DESC LIMIT 10"""
        )

        return {
            "total_conversations": chat_count,
            "total_messages": msg_count,
            "date_range_start": _format_ts(date_range[0]) if date_range[0] else None,
            "date_range_end": _format_ts(date_range[1]) if date_range[1] else None,
            "top_models": [{"model": r[0], "count": r[1]} for r in models],
            "avg_messages_per_conversation": round(msg_count / chat_count, 1) if chat_count else 0,
        }

    def close(self):
        self.conn.close()


class SessionPointer:
    """Remembers the current chat id for one terminal session.

    The pointer lives in a small file keyed by the parent process id, so
    each shell resumes its own chat. It is a convenience, not a record:
    losing it only means the latest chat is resumed instead.
    """

    def __init__(self, sessions_dir: Path = SESSIONS_DIR, key: str | None = None):
        self.path = sessions_dir / f"{key or os.getppid()}.current"

    def get(self) -> str | None:
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def set(self, chat_id: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(chat_id, encoding="utf-8")

    def clear(self):
        self.path.unlink(missing_ok=True)

    def clear_if(self, chat_id: str):
        if self.get() == chat_id:
            self.clear()


def _format_ts(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import PersistenceFailure
from .models import StoredMessage

logger = logging.getLogger("concierge.store")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS contacts (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    email       TEXT,
    phone       TEXT,
    tags        TEXT NOT NULL DEFAULT '[]',
    metadata    TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS conversations (
    id               TEXT PRIMARY KEY,
    contact_id       TEXT NOT NULL REFERENCES contacts(id),
    channel          TEXT NOT NULL,
    session_key      TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'open',
    subject          TEXT NOT NULL DEFAULT '',
    stage            TEXT NOT NULL DEFAULT 'initial',
    chat_state       TEXT NOT NULL DEFAULT '{}',
    created_at       TEXT NOT NULL,
    last_message_at  TEXT,
    UNIQUE (channel, session_key)
);
CREATE TABLE IF NOT EXISTS messages (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id  TEXT NOT NULL REFERENCES conversations(id),
    direction        TEXT NOT NULL,
    content          TEXT NOT NULL,
    sender_name      TEXT NOT NULL DEFAULT '',
    metadata         TEXT NOT NULL DEFAULT '{}',
    created_at       REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, id);
CREATE TABLE IF NOT EXISTS escalations (
    conversation_id  TEXT NOT NULL,
    situation        TEXT NOT NULL,
    claimed_at       TEXT NOT NULL,
    delivered_at     TEXT,
    PRIMARY KEY (conversation_id, situation)
);
CREATE TABLE IF NOT EXISTS quotes (
    quote_number     TEXT PRIMARY KEY,
    conversation_id  TEXT NOT NULL,
    customer_email   TEXT NOT NULL,
    vehicle          TEXT NOT NULL DEFAULT '{}',
    sqft             INTEGER NOT NULL,
    cost             INTEGER NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    created_at       TEXT NOT NULL,
    sent_at          TEXT
);
CREATE TABLE IF NOT EXISTS tasks (
    id               TEXT PRIMARY KEY,
    conversation_id  TEXT NOT NULL,
    title            TEXT NOT NULL,
    description      TEXT NOT NULL DEFAULT '',
    category         TEXT NOT NULL,
    priority         TEXT NOT NULL DEFAULT 'normal',
    assignee         TEXT,
    due_date         TEXT,
    status           TEXT NOT NULL DEFAULT 'open',
    created_at       TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ContactRecord:
    id: str
    name: str
    email: Optional[str]
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationRecord:
    id: str
    contact_id: str
    channel: str
    session_key: str
    status: str
    subject: str
    stage: str
    chat_state: Dict[str, Any]
    created_at: str
    last_message_at: Optional[str] = None


@dataclass
class TaskRecord:
    id: str
    conversation_id: str
    title: str
    description: str
    category: str
    priority: str
    assignee: Optional[str]
    due_date: Optional[str]
    status: str


class ConversationStore:
    """SQLite-backed record store for contacts, conversations, messages, and side effects."""

    def __init__(self, path: Union[Path, str]) -> None:
        """Purpose: Open (or create) the SQLite database and apply the schema.
        Inputs/Outputs: Input is a file path or ":memory:"; no return value.
        Side Effects / State: Creates the parent directory and tables if missing.
        Dependencies: sqlite3 with a single shared connection guarded by an RLock.
        Failure Modes: sqlite3 errors on open propagate; the app cannot start without a store.
        If Removed: No conversation survives a request and session resolution breaks.
        Testing Notes: Use a tmp_path file so concurrent-thread tests share one database.
        """
        # One connection shared across FastAPI worker threads, serialized by the lock.
        target = str(path)
        if target != ":memory:":
            Path(target).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(target, check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        # Commit on success; roll back and wrap sqlite errors otherwise.
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("store operation=%s error=%s", operation, exc)
                raise PersistenceFailure(operation, exc) from exc

    # Contacts and conversations

    def find_or_create_conversation(
        self,
        channel: str,
        session_key: str,
        contact_name: str,
        contact_tags: List[str],
        contact_metadata: Dict[str, Any],
        subject: str,
        initial_state: Dict[str, Any],
    ) -> Tuple[ConversationRecord, bool]:
        """Purpose: Compare-and-create the conversation for (channel, session_key).
        Inputs/Outputs: Inputs describe the session and the contact to create on first
            contact; output is (ConversationRecord, created).
        Side Effects / State: On first contact inserts one contact and one conversation
            inside a single IMMEDIATE transaction.
        Dependencies: UNIQUE(channel, session_key) backs the check across processes.
        Failure Modes: sqlite errors roll back and raise PersistenceFailure.
        If Removed: Concurrent first messages could fork one visitor into two threads.
        Testing Notes: Call from several threads with one key; exactly one row must exist.
        """
        # Fast path outside the write transaction, then re-check under BEGIN IMMEDIATE.
        existing = self.get_conversation_by_session(channel, session_key)
        if existing:
            return existing, False
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                row = self._conn.execute(
                    "SELECT * FROM conversations WHERE channel = ? AND session_key = ?",
                    (channel, session_key),
                ).fetchone()
                if row is not None:
                    self._conn.rollback()
                    return _conversation_from_row(row), False
                now = _now()
                contact_id = str(uuid.uuid4())
                conversation_id = str(uuid.uuid4())
                self._conn.execute(
                    "INSERT INTO contacts (id, name, tags, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                    (contact_id, contact_name, json.dumps(contact_tags), json.dumps(contact_metadata), now),
                )
                self._conn.execute(
                    """INSERT INTO conversations
                       (id, contact_id, channel, session_key, status, subject, stage,
                        chat_state, created_at, last_message_at)
                       VALUES (?, ?, ?, ?, 'open', ?, ?, ?, ?, ?)""",
                    (
                        conversation_id,
                        contact_id,
                        channel,
                        session_key,
                        subject,
                        str(initial_state.get("stage", "initial")),
                        json.dumps(initial_state),
                        now,
                        now,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("store operation=create_conversation error=%s", exc)
                raise PersistenceFailure("create_conversation", exc) from exc
        logger.info("conversation=%s created channel=%s session=%s", conversation_id, channel, session_key)
        created = self.get_conversation(conversation_id)
        if created is None:
            raise PersistenceFailure("create_conversation", LookupError(f"conversation {conversation_id} missing after insert"))
        return created, True

    def get_conversation_by_session(self, channel: str, session_key: str) -> Optional[ConversationRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM conversations WHERE channel = ? AND session_key = ?",
                (channel, session_key),
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def count_conversations(self, channel: str, session_key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM conversations WHERE channel = ? AND session_key = ?",
                (channel, session_key),
            ).fetchone()
        return int(row[0])

    def save_state(self, conversation_id: str, stage: str, chat_state: Dict[str, Any]) -> None:
        """Persist stage and the chat_state bag for a conversation."""
        with self._write("save_state") as conn:
            conn.execute(
                "UPDATE conversations SET stage = ?, chat_state = ? WHERE id = ?",
                (stage, json.dumps(chat_state), conversation_id),
            )

    def mark_completed(self, conversation_id: str) -> None:
        """Close a conversation from outside the chat flow (staff action)."""
        with self._write("mark_completed") as conn:
            row = conn.execute(
                "SELECT chat_state FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                return
            state = json.loads(row["chat_state"] or "{}")
            state["stage"] = "completed"
            conn.execute(
                "UPDATE conversations SET stage = 'completed', status = 'closed', chat_state = ? WHERE id = ?",
                (json.dumps(state), conversation_id),
            )

    def get_contact(self, contact_id: str) -> Optional[ContactRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        if row is None:
            return None
        return ContactRecord(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            tags=json.loads(row["tags"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def backfill_contact_email(self, contact_id: str, email: str) -> bool:
        """Set the contact email if it is still empty; returns True when written."""
        with self._write("backfill_contact_email") as conn:
            row = conn.execute("SELECT tags FROM contacts WHERE id = ?", (contact_id,)).fetchone()
            if row is None:
                return False
            tags = json.loads(row["tags"] or "[]")
            if "email_captured" not in tags:
                tags.append("email_captured")
            cursor = conn.execute(
                "UPDATE contacts SET email = ?, tags = ? WHERE id = ? AND (email IS NULL OR email = '')",
                (email, json.dumps(tags), contact_id),
            )
            return cursor.rowcount == 1

    # Messages

    def append_message(
        self,
        conversation_id: str,
        direction: str,
        content: str,
        sender_name: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Purpose: Append one message and bump last_message_at.
        Inputs/Outputs: Inputs are the conversation id, direction (inbound/outbound),
            content, sender label, and optional metadata; no return value.
        Side Effects / State: Inserts a message row and updates the conversation.
        Dependencies: _write for commit/rollback handling.
        Failure Modes: Raises PersistenceFailure; callers after reply generation log it.
        If Removed: Transcripts and model history go empty.
        Testing Notes: Append two messages and check recent_messages ordering.
        """
        # Messages are append-only; no update path exists.
        timestamp = time.time()
        with self._write("append_message") as conn:
            conn.execute(
                """INSERT INTO messages (conversation_id, direction, content, sender_name, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conversation_id, direction, content, sender_name, json.dumps(metadata or {}), timestamp),
            )
            conn.execute(
                "UPDATE conversations SET last_message_at = ? WHERE id = ?",
                (_now(), conversation_id),
            )

    def recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        """Return the newest `limit` messages, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY id DESC LIMIT ?""",
                (conversation_id, limit),
            ).fetchall()
        return [_message_from_row(row) for row in reversed(rows)]

    def get_messages(self, conversation_id: str) -> List[StoredMessage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id ASC",
                (conversation_id,),
            ).fetchall()
        return [_message_from_row(row) for row in rows]

    # Escalations

    def claim_escalation(self, conversation_id: str, situation: str) -> bool:
        """Purpose: Atomically add a situation tag to the conversation's escalation set.
        Inputs/Outputs: Inputs are conversation id and situation tag; returns True only
            for the caller whose insert created the row.
        Side Effects / State: Inserts into escalations (PRIMARY KEY conversation+situation).
        Dependencies: INSERT OR IGNORE; rowcount distinguishes winner from duplicate.
        Failure Modes: Raises PersistenceFailure on sqlite errors.
        If Removed: Two concurrent turns could both notify staff for one situation.
        Testing Notes: Two claims for the same pair return True then False.
        """
        # The insert itself is the check; no read-before-write.
        with self._write("claim_escalation") as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO escalations (conversation_id, situation, claimed_at) VALUES (?, ?, ?)",
                (conversation_id, situation, _now()),
            )
            return cursor.rowcount == 1

    def release_escalation(self, conversation_id: str, situation: str) -> None:
        with self._write("release_escalation") as conn:
            conn.execute(
                "DELETE FROM escalations WHERE conversation_id = ? AND situation = ? AND delivered_at IS NULL",
                (conversation_id, situation),
            )

    def mark_escalation_delivered(self, conversation_id: str, situation: str) -> str:
        delivered_at = _now()
        with self._write("mark_escalation_delivered") as conn:
            conn.execute(
                "UPDATE escalations SET delivered_at = ? WHERE conversation_id = ? AND situation = ?",
                (delivered_at, conversation_id, situation),
            )
        return delivered_at

    def list_escalations(self, conversation_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM escalations WHERE conversation_id = ? ORDER BY claimed_at",
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # Quotes and tasks

    def create_quote(
        self,
        quote_number: str,
        conversation_id: str,
        customer_email: str,
        vehicle: Dict[str, Any],
        sqft: int,
        cost: int,
    ) -> None:
        with self._write("create_quote") as conn:
            conn.execute(
                """INSERT INTO quotes
                   (quote_number, conversation_id, customer_email, vehicle, sqft, cost, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)""",
                (quote_number, conversation_id, customer_email, json.dumps(vehicle), sqft, cost, _now()),
            )

    def set_quote_status(self, quote_number: str, status: str) -> None:
        sent_at = _now() if status == "sent" else None
        with self._write("set_quote_status") as conn:
            conn.execute(
                "UPDATE quotes SET status = ?, sent_at = COALESCE(?, sent_at) WHERE quote_number = ?",
                (status, sent_at, quote_number),
            )

    def get_quote(self, quote_number: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM quotes WHERE quote_number = ?", (quote_number,)
            ).fetchone()
        if row is None:
            return None
        quote = dict(row)
        quote["vehicle"] = json.loads(quote["vehicle"] or "{}")
        return quote

    def create_task(
        self,
        conversation_id: str,
        title: str,
        category: str,
        description: str = "",
        priority: str = "normal",
        assignee: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> str:
        task_id = str(uuid.uuid4())
        with self._write("create_task") as conn:
            conn.execute(
                """INSERT INTO tasks
                   (id, conversation_id, title, description, category, priority, assignee, due_date, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'open', ?)""",
                (task_id, conversation_id, title, description, category, priority, assignee, due_date, _now()),
            )
        logger.info("conversation=%s task=%s category=%s priority=%s", conversation_id, task_id, category, priority)
        return task_id

    def list_tasks(self, conversation_id: str, category: Optional[str] = None) -> List[TaskRecord]:
        query = "SELECT * FROM tasks WHERE conversation_id = ?"
        params: Tuple[Any, ...] = (conversation_id,)
        if category:
            query += " AND category = ?"
            params = (conversation_id, category)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [
            TaskRecord(
                id=row["id"],
                conversation_id=row["conversation_id"],
                title=row["title"],
                description=row["description"],
                category=row["category"],
                priority=row["priority"],
                assignee=row["assignee"],
                due_date=row["due_date"],
                status=row["status"],
            )
            for row in rows
        ]


def _conversation_from_row(row: sqlite3.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        contact_id=row["contact_id"],
        channel=row["channel"],
        session_key=row["session_key"],
        status=row["status"],
        subject=row["subject"],
        stage=row["stage"],
        chat_state=json.loads(row["chat_state"] or "{}"),
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
    )


def _message_from_row(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        direction=row["direction"],
        content=row["content"],
        sender_name=row["sender_name"],
        timestamp=row["created_at"],
        metadata=json.loads(row["metadata"] or "{}"),
    )

"""SQLite-backed message store using aiosqlite.

This module provides the MessageStore class that persists projects, their
conversation, generated fragments, workflow runs, pending questions and
credit usage. Every public method opens its own connection, so the store is
safe to share between concurrently running workflows.

Unlike a metrics sink, this store is the system of record: write failures
propagate to the caller so a run is never reported as finished without its
terminal message on disk.

Tables:
    projects: One conversation per project (owner, last sandbox, business info).
    messages: Append-only conversation turns (metadata stored as JSON).
    fragments: Generated artifact snapshots, 1:1 with RESULT messages.
    workflow_runs: One row per run; a partial unique index allows at most one
        active (running or waiting) run per project.
    pending_questions: Persisted waits for a user's answer, keyed by the
        QUESTION message id.
    credit_usage: Fixed-window credit counters per user.

Usage:
    >>> store = MessageStore("./data/sitesmith.db")
    >>> await store.init()
    >>> project = await store.create_project(user_id="user_1", name="Bakery")
    >>> await store.create_message(
    ...     project_id=project["id"],
    ...     role=MessageRole.USER,
    ...     message_type=MessageType.RESULT,
    ...     content="Build me a bakery site",
    ... )
"""

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    ACTIVE_RUN_STATUSES,
    MessageRole,
    MessageType,
    PendingQuestionStatus,
    RunStatus,
)

logger = structlog.get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        sandbox_id TEXT,
        business_info TEXT NOT NULL DEFAULT '{}',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        role TEXT NOT NULL,
        type TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        FOREIGN KEY (project_id) REFERENCES projects(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_project
    ON messages(project_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS fragments (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL UNIQUE,
        sandbox_url TEXT NOT NULL,
        title TEXT NOT NULL,
        files TEXT NOT NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        FOREIGN KEY (message_id) REFERENCES messages(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        status TEXT NOT NULL,
        sandbox_id TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        FOREIGN KEY (project_id) REFERENCES projects(id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_workflow_runs_active_project
    ON workflow_runs(project_id) WHERE status IN ('running', 'waiting')
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_questions (
        question_id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        question TEXT NOT NULL,
        status TEXT NOT NULL,
        answer TEXT,
        deadline REAL NOT NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pending_questions_deadline
    ON pending_questions(status, deadline)
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_usage (
        key TEXT PRIMARY KEY,
        points INTEGER NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _load_json(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("stored_json_invalid", preview=str(raw)[:80])
        return default


def _project_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    project = dict(row)
    project["business_info"] = _load_json(project.get("business_info"), {})
    return project


def _message_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    message = dict(row)
    message["metadata"] = _load_json(message.get("metadata"), {})
    return message


def _fragment_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    fragment = dict(row)
    fragment["files"] = _load_json(fragment.get("files"), {})
    return fragment


class MessageStore:
    """Async SQLite store for the conversation and workflow bookkeeping.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the message store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables and indexes if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
            logger.info("message_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "message_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(
        self,
        user_id: str,
        name: str = "",
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a new project owned by ``user_id`` and return it."""
        now = time.time()
        project_id = project_id or _new_id()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO projects (id, user_id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (project_id, user_id, name, now, now),
            )
            await db.commit()
        logger.info("project_created", project_id=project_id, user_id=user_id)
        return {
            "id": project_id,
            "user_id": user_id,
            "name": name,
            "sandbox_id": None,
            "business_info": {},
            "created_at": now,
            "updated_at": now,
        }

    async def get_project(
        self,
        project_id: str,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Return a project, optionally only when owned by ``user_id``."""
        query = "SELECT * FROM projects WHERE id = ?"
        params: tuple[Any, ...] = (project_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (project_id, user_id)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
        return _project_from_row(row) if row is not None else None

    async def update_project_state(
        self,
        project_id: str,
        *,
        sandbox_id: str | None = None,
        business_info: dict[str, str] | None = None,
    ) -> None:
        """Record the project's current sandbox and/or gathered business info."""
        assignments = ["updated_at = ?"]
        params: list[Any] = [time.time()]
        if sandbox_id is not None:
            assignments.append("sandbox_id = ?")
            params.append(sandbox_id)
        if business_info is not None:
            assignments.append("business_info = ?")
            params.append(json.dumps(business_info))
        params.append(project_id)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE projects SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            await db.commit()

    # -----------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------

    async def create_message(
        self,
        project_id: str,
        role: MessageRole,
        message_type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> dict[str, Any]:
        """Append a message to a project's conversation.

        When ``message_id`` is supplied the insert is idempotent: a second
        call with the same id returns the row written by the first.
        """
        now = time.time()
        message_id = message_id or _new_id()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT OR IGNORE INTO messages
                    (id, project_id, role, type, content, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    project_id,
                    role.value,
                    message_type.value,
                    content,
                    json.dumps(metadata or {}),
                    now,
                    now,
                ),
            )
            await db.execute(
                "UPDATE projects SET updated_at = ? WHERE id = ?",
                (now, project_id),
            )
            await db.commit()
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()

        logger.debug(
            "message_created",
            project_id=project_id,
            message_id=message_id,
            role=role.value,
            type=message_type.value,
        )
        return _message_from_row(row)

    async def get_message(self, message_id: str) -> dict[str, Any] | None:
        """Return one message by id."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()
        return _message_from_row(row) if row is not None else None

    async def list_messages(self, project_id: str) -> list[dict[str, Any]]:
        """List a project's messages by update time, fragments attached."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM messages
                WHERE project_id = ?
                ORDER BY updated_at ASC, rowid ASC
                """,
                (project_id,),
            )
            message_rows = await cursor.fetchall()
            cursor = await db.execute(
                """
                SELECT f.* FROM fragments f
                JOIN messages m ON m.id = f.message_id
                WHERE m.project_id = ?
                """,
                (project_id,),
            )
            fragment_rows = await cursor.fetchall()

        fragments = {row["message_id"]: _fragment_from_row(row) for row in fragment_rows}
        messages: list[dict[str, Any]] = []
        for row in message_rows:
            message = _message_from_row(row)
            message["fragment"] = fragments.get(message["id"])
            messages.append(message)
        return messages

    async def list_recent_messages(
        self,
        project_id: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Return the last ``limit`` messages, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM messages
                WHERE project_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (project_id, limit),
            )
            rows = await cursor.fetchall()
        return [_message_from_row(row) for row in reversed(rows)]

    async def _find_latest(
        self,
        project_id: str,
        *,
        role: MessageRole | None = None,
        message_type: MessageType | None = None,
    ) -> dict[str, Any] | None:
        query = "SELECT rowid AS seq, * FROM messages WHERE project_id = ?"
        params: list[Any] = [project_id]
        if role is not None:
            query += " AND role = ?"
            params.append(role.value)
        if message_type is not None:
            query += " AND type = ?"
            params.append(message_type.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
        return _message_from_row(row) if row is not None else None

    async def find_latest_question(self, project_id: str) -> dict[str, Any] | None:
        """Return the most recent QUESTION message of a project."""
        question = await self._find_latest(project_id, message_type=MessageType.QUESTION)
        if question is not None:
            question.pop("seq", None)
        return question

    async def find_latest_user_message(self, project_id: str) -> dict[str, Any] | None:
        """Return the most recent USER message of a project."""
        message = await self._find_latest(project_id, role=MessageRole.USER)
        if message is not None:
            message.pop("seq", None)
        return message

    async def _find_waiting_question(
        self, project_id: str
    ) -> tuple[dict[str, Any], bool] | None:
        """Return the QUESTION behind the project's waiting pending record.

        A re-asked question reuses its original message, so this can be older
        than the latest QUESTION. The flag is True when an answer for the
        current wait (a USER message referencing it, stored after the record
        was armed) already exists but has not been delivered yet.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT m.*, p.updated_at AS waiting_since
                FROM pending_questions p
                JOIN messages m ON m.id = p.question_id
                WHERE p.project_id = ? AND p.status = ?
                ORDER BY p.updated_at DESC
                LIMIT 1
                """,
                (project_id, PendingQuestionStatus.WAITING.value),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await db.execute(
                """
                SELECT metadata FROM messages
                WHERE project_id = ? AND role = ? AND created_at >= ?
                """,
                (project_id, MessageRole.USER.value, row["waiting_since"]),
            )
            recent_user_rows = await cursor.fetchall()

        question = _message_from_row(row)
        question.pop("waiting_since", None)
        answered = any(
            _load_json(user_row["metadata"], {}).get("respondingTo") == question["id"]
            for user_row in recent_user_rows
        )
        return question, answered

    async def find_unanswered_question(self, project_id: str) -> dict[str, Any] | None:
        """Return the outstanding QUESTION of a project, else None.

        A waiting pending record names the open question directly. Without
        one, only the latest QUESTION is considered: it is closed when a
        later USER message references it through ``metadata.respondingTo``
        or when its pending record is no longer waiting. Rows without a
        pending record fall back to "any later USER message closes it".
        """
        waiting = await self._find_waiting_question(project_id)
        if waiting is not None:
            question, answered = waiting
            return None if answered else question

        question = await self._find_latest(project_id, message_type=MessageType.QUESTION)
        if question is None:
            return None
        seq = question.pop("seq")

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT metadata FROM messages
                WHERE project_id = ? AND role = ? AND rowid > ?
                """,
                (project_id, MessageRole.USER.value, seq),
            )
            later_user_rows = await cursor.fetchall()
            cursor = await db.execute(
                "SELECT status FROM pending_questions WHERE question_id = ?",
                (question["id"],),
            )
            pending = await cursor.fetchone()

        for row in later_user_rows:
            if _load_json(row["metadata"], {}).get("respondingTo") == question["id"]:
                return None

        if pending is None:
            return None if later_user_rows else question
        if pending["status"] != PendingQuestionStatus.WAITING.value:
            return None
        return question

    # -----------------------------------------------------------------
    # Fragments
    # -----------------------------------------------------------------

    async def get_fragment(self, fragment_id: str) -> dict[str, Any] | None:
        """Return a fragment together with its owning message's project id."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT f.*, m.project_id AS project_id FROM fragments f
                JOIN messages m ON m.id = f.message_id
                WHERE f.id = ?
                """,
                (fragment_id,),
            )
            row = await cursor.fetchone()
        return _fragment_from_row(row) if row is not None else None

    async def get_latest_fragment(self, project_id: str) -> dict[str, Any] | None:
        """Return the newest fragment of a project."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT f.*, m.project_id AS project_id FROM fragments f
                JOIN messages m ON m.id = f.message_id
                WHERE m.project_id = ?
                ORDER BY f.created_at DESC, f.rowid DESC
                LIMIT 1
                """,
                (project_id,),
            )
            row = await cursor.fetchone()
        return _fragment_from_row(row) if row is not None else None

    async def update_fragment_sandbox_url(
        self,
        fragment_id: str,
        sandbox_url: str,
    ) -> dict[str, Any] | None:
        """Point a fragment at a new sandbox and return the updated row."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE fragments SET sandbox_url = ?, updated_at = ? WHERE id = ?",
                (sandbox_url, time.time(), fragment_id),
            )
            await db.commit()
        return await self.get_fragment(fragment_id)

    # -----------------------------------------------------------------
    # Workflow runs
    # -----------------------------------------------------------------

    async def create_run(
        self,
        run_id: str,
        project_id: str,
        sandbox_id: str | None = None,
    ) -> bool:
        """Take the project's run lease.

        Returns:
            False when the project already has a running or waiting run.
        """
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO workflow_runs
                        (id, project_id, status, sandbox_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, project_id, RunStatus.RUNNING.value, sandbox_id, now, now),
                )
                await db.commit()
        except sqlite3.IntegrityError:
            logger.info("run_lease_denied", project_id=project_id, run_id=run_id)
            return False
        return True

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Return one workflow run by id."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def get_active_run(self, project_id: str) -> dict[str, Any] | None:
        """Return the project's running or waiting run, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM workflow_runs WHERE project_id = ? AND status IN (?, ?)",
                (project_id, *(status.value for status in ACTIVE_RUN_STATUSES)),
            )
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus | None = None,
        sandbox_id: str | None = None,
    ) -> None:
        """Update a run's status and/or sandbox."""
        assignments = ["updated_at = ?"]
        params: list[Any] = [time.time()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
        if sandbox_id is not None:
            assignments.append("sandbox_id = ?")
            params.append(sandbox_id)
        params.append(run_id)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE workflow_runs SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            await db.commit()

    async def list_runs_by_status(self, status: RunStatus) -> list[dict[str, Any]]:
        """Return every run currently in ``status``."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM workflow_runs WHERE status = ? ORDER BY created_at",
                (status.value,),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        message: dict[str, Any],
        fragment: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Close a run and write its terminal message in one transaction.

        The run's status moves from running/waiting to ``status`` only if it
        has not been closed already; the message (and fragment) are written
        in the same transaction. A second call for the same run writes
        nothing.

        Args:
            run_id: The run being finalized.
            status: COMPLETED or FAILED.
            message: ``project_id``, ``role``, ``type``, ``content`` and
                optional ``metadata`` of the terminal message.
            fragment: Optional ``sandbox_url``, ``title`` and ``files``.

        Returns:
            The persisted message (with ``fragment``), or None when the run
            was already finalized.
        """
        now = time.time()
        message_id = _new_id()
        fragment_row: dict[str, Any] | None = None

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE workflow_runs SET status = ?, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    status.value,
                    now,
                    run_id,
                    *(active.value for active in ACTIVE_RUN_STATUSES),
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                logger.warning("run_already_finalized", run_id=run_id)
                return None

            await db.execute(
                """
                INSERT INTO messages
                    (id, project_id, role, type, content, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    message["project_id"],
                    MessageRole(message["role"]).value,
                    MessageType(message["type"]).value,
                    message["content"],
                    json.dumps(message.get("metadata") or {}),
                    now,
                    now,
                ),
            )
            if fragment is not None:
                fragment_row = {
                    "id": _new_id(),
                    "message_id": message_id,
                    "sandbox_url": fragment["sandbox_url"],
                    "title": fragment["title"],
                    "files": dict(fragment["files"]),
                    "created_at": now,
                    "updated_at": now,
                }
                await db.execute(
                    """
                    INSERT INTO fragments
                        (id, message_id, sandbox_url, title, files, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        fragment_row["id"],
                        message_id,
                        fragment_row["sandbox_url"],
                        fragment_row["title"],
                        json.dumps(fragment_row["files"]),
                        now,
                        now,
                    ),
                )
            await db.execute(
                "UPDATE projects SET updated_at = ? WHERE id = ?",
                (now, message["project_id"]),
            )
            await db.commit()

        logger.info(
            "run_finalized",
            run_id=run_id,
            status=status.value,
            message_id=message_id,
            has_fragment=fragment_row is not None,
        )
        return {
            "id": message_id,
            "project_id": message["project_id"],
            "role": MessageRole(message["role"]).value,
            "type": MessageType(message["type"]).value,
            "content": message["content"],
            "metadata": message.get("metadata") or {},
            "created_at": now,
            "updated_at": now,
            "fragment": fragment_row,
        }

    # -----------------------------------------------------------------
    # Pending questions
    # -----------------------------------------------------------------

    async def save_pending_question(
        self,
        question_id: str,
        project_id: str,
        run_id: str,
        question: str,
        deadline: float,
    ) -> None:
        """Create or re-open the wait for an answer to ``question_id``."""
        now = time.time()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO pending_questions
                    (question_id, project_id, run_id, question, status, deadline,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(question_id) DO UPDATE SET
                    status = excluded.status,
                    answer = NULL,
                    deadline = excluded.deadline,
                    updated_at = excluded.updated_at
                """,
                (
                    question_id,
                    project_id,
                    run_id,
                    question,
                    PendingQuestionStatus.WAITING.value,
                    deadline,
                    now,
                    now,
                ),
            )
            await db.commit()

    async def get_pending_question(self, question_id: str) -> dict[str, Any] | None:
        """Return the pending record for a question message."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM pending_questions WHERE question_id = ?",
                (question_id,),
            )
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def resolve_pending_question(
        self,
        question_id: str,
        status: PendingQuestionStatus,
        answer: str | None = None,
    ) -> bool:
        """Move a waiting record to ``status``, storing the answer if given.

        Returns:
            True for exactly one caller; False if it was no longer waiting.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE pending_questions SET status = ?, answer = ?, updated_at = ?
                WHERE question_id = ? AND status = ?
                """,
                (
                    status.value,
                    answer,
                    time.time(),
                    question_id,
                    PendingQuestionStatus.WAITING.value,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def list_overdue_pending_questions(self, now: float) -> list[dict[str, Any]]:
        """Return waiting records whose deadline has passed."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM pending_questions
                WHERE status = ? AND deadline <= ?
                ORDER BY deadline
                """,
                (PendingQuestionStatus.WAITING.value, now),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # -----------------------------------------------------------------
    # Credits
    # -----------------------------------------------------------------

    async def consume_credit(
        self,
        key: str,
        max_points: int,
        duration_seconds: int,
        now: float | None = None,
    ) -> dict[str, Any]:
        """Consume one point from ``key``'s fixed window.

        Returns:
            ``allowed``, ``consumed_points``, ``remaining_points`` and
            ``resets_at``. When ``allowed`` is False nothing was consumed.
        """
        now = now if now is not None else time.time()
        async with aiosqlite.connect(self.db_path) as db:
            # Serialize concurrent consumers of the same database
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT points, expires_at FROM credit_usage WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
            if row is None or row[1] <= now:
                points, expires_at = 0, now + duration_seconds
            else:
                points, expires_at = int(row[0]), float(row[1])

            if points + 1 > max_points:
                await db.rollback()
                return {
                    "allowed": False,
                    "consumed_points": points,
                    "remaining_points": 0,
                    "resets_at": expires_at,
                }

            points += 1
            await db.execute(
                """
                INSERT INTO credit_usage (key, points, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    points = excluded.points,
                    expires_at = excluded.expires_at
                """,
                (key, points, expires_at),
            )
            await db.commit()

        return {
            "allowed": True,
            "consumed_points": points,
            "remaining_points": max(0, max_points - points),
            "resets_at": expires_at,
        }

    async def get_credit_usage(
        self,
        key: str,
        now: float | None = None,
    ) -> dict[str, Any] | None:
        """Return ``points`` and ``expires_at`` of a live credit window."""
        now = now if now is not None else time.time()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT points, expires_at FROM credit_usage WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
        if row is None or row["expires_at"] <= now:
            return None
        return dict(row)

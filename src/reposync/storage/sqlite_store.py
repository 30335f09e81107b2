"""SQLite storage for repos, tracked files, code chunks, jobs and workflow checkpoints."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CodeChunk:
    file_path: str
    chunk_index: int
    chunk_type: str
    name: str
    code: str
    start_line: int
    end_line: int
    language: str
    docstring: str = ""


_JOB_TABLES = ("sync_jobs", "review_jobs")
_JSON_COLUMNS = {"indexed_branches", "findings", "args"}


def _decode(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    result = dict(row)
    for key in _JSON_COLUMNS & result.keys():
        if result[key] is not None:
            result[key] = json.loads(result[key])
    for key in ("dirty", "auto_review", "review_drafts", "cancel_requested"):
        if key in result and result[key] is not None:
            result[key] = bool(result[key])
    return result


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._in_transaction = False

    def _commit(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several writes into one commit; roll all of them back on error."""
        if self._in_transaction:
            yield
            return
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._in_transaction = False

    def init_db(self) -> None:
        """Create all tables and indexes."""
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS repos (
                id INTEGER PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                full_name TEXT NOT NULL UNIQUE,
                default_branch TEXT NOT NULL DEFAULT 'main',
                indexed_branches TEXT NOT NULL DEFAULT '[]',
                auto_review INTEGER NOT NULL DEFAULT 0,
                review_drafts INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                last_indexed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS files (
                id INTEGER PRIMARY KEY,
                repo_id INTEGER NOT NULL,
                branch TEXT NOT NULL,
                path TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT 'file',
                content TEXT,
                original_content TEXT,
                content_hash TEXT,
                size INTEGER,
                dirty INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (repo_id, branch, path)
            );
            CREATE INDEX IF NOT EXISTS idx_files_repo_branch ON files(repo_id, branch);

            CREATE TABLE IF NOT EXISTS code_chunks (
                id INTEGER PRIMARY KEY,
                repo_id INTEGER NOT NULL,
                branch TEXT NOT NULL,
                file_path TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                chunk_type TEXT NOT NULL,
                name TEXT NOT NULL,
                code TEXT NOT NULL,
                docstring TEXT,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                language TEXT,
                file_sha TEXT,
                indexed_at TEXT NOT NULL,
                UNIQUE (repo_id, branch, file_path, chunk_index)
            );
            CREATE INDEX IF NOT EXISTS idx_chunks_repo_branch ON code_chunks(repo_id, branch);

            CREATE TABLE IF NOT EXISTS sync_jobs (
                id TEXT PRIMARY KEY,
                repo_id INTEGER NOT NULL,
                branch TEXT NOT NULL,
                trigger_type TEXT NOT NULL DEFAULT 'manual',
                commit_sha TEXT,
                phase TEXT NOT NULL DEFAULT 'pending',
                total_items INTEGER NOT NULL DEFAULT 0,
                processed_items INTEGER NOT NULL DEFAULT 0,
                failed_items INTEGER NOT NULL DEFAULT 0,
                total_units INTEGER NOT NULL DEFAULT 0,
                stored_units INTEGER NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                workflow_id TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_sync_jobs_repo ON sync_jobs(repo_id, branch);

            CREATE TABLE IF NOT EXISTS review_jobs (
                id TEXT PRIMARY KEY,
                repo_id INTEGER NOT NULL,
                pr_number INTEGER NOT NULL,
                pr_title TEXT,
                pr_author TEXT,
                pr_url TEXT,
                base_branch TEXT,
                head_branch TEXT,
                head_sha TEXT,
                phase TEXT NOT NULL DEFAULT 'pending',
                summary TEXT,
                findings TEXT,
                review_id INTEGER,
                error TEXT,
                workflow_id TEXT,
                triggered_at TEXT NOT NULL,
                completed_at TEXT,
                UNIQUE (repo_id, pr_number)
            );

            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                job_id TEXT NOT NULL,
                args TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at TEXT NOT NULL,
                finished_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows(status);

            CREATE TABLE IF NOT EXISTS workflow_steps (
                workflow_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                result TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (workflow_id, step_key)
            );

            CREATE TABLE IF NOT EXISTS webhook_events (
                id INTEGER PRIMARY KEY,
                delivery_id TEXT NOT NULL UNIQUE,
                event_type TEXT NOT NULL,
                action TEXT,
                repo_full_name TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                error TEXT,
                received_at TEXT NOT NULL,
                processed_at TEXT
            );
            """
        )
        self._commit()

        # ── Migrations ──
        self._migrate_add_column("sync_jobs", "failed_items", "INTEGER NOT NULL DEFAULT 0")
        self._migrate_add_column("files", "original_content", "TEXT")

    def _migrate_add_column(self, table: str, column: str, col_type: str) -> None:
        """Add a column to a table if it doesn't exist."""
        cur = self._conn.execute(f"PRAGMA table_info({table})")
        columns = {row[1] for row in cur.fetchall()}
        if column not in columns:
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            self._commit()

    # ── Repo operations ──

    def insert_repo(
        self,
        owner: str,
        name: str,
        default_branch: str = "main",
        auto_review: bool = False,
        review_drafts: bool = False,
    ) -> int:
        """Insert a new repo and return its id."""
        cur = self._conn.execute(
            """INSERT INTO repos
               (owner, name, full_name, default_branch, auto_review, review_drafts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (owner, name, f"{owner}/{name}", default_branch,
             int(auto_review), int(review_drafts), _now()),
        )
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def get_repo(self, repo_id: int) -> dict | None:
        cur = self._conn.execute("SELECT * FROM repos WHERE id = ?", (repo_id,))
        return _decode(cur.fetchone())

    def get_repo_by_full_name(self, full_name: str) -> dict | None:
        cur = self._conn.execute("SELECT * FROM repos WHERE full_name = ?", (full_name,))
        return _decode(cur.fetchone())

    def list_repos(self) -> list[dict]:
        """List all repos ordered by full name."""
        cur = self._conn.execute("SELECT * FROM repos ORDER BY full_name")
        return [_decode(row) for row in cur.fetchall()]  # type: ignore[misc]

    def update_repo(self, repo_id: int, **kwargs: str | int | bool | None) -> None:
        """Update repo fields. Pass column=value keyword arguments."""
        if not kwargs:
            return
        set_clause = ", ".join(f"{k} = ?" for k in kwargs)
        values = [int(v) if isinstance(v, bool) else v for v in kwargs.values()] + [repo_id]
        self._conn.execute(
            f"UPDATE repos SET {set_clause} WHERE id = ?", values  # noqa: S608
        )
        self._commit()

    def add_indexed_branch(self, repo_id: int, branch: str) -> list[str]:
        """Record that a branch has been synced at least once. Idempotent."""
        repo = self.get_repo(repo_id)
        if repo is None:
            return []
        branches: list[str] = repo["indexed_branches"]
        if branch not in branches:
            branches.append(branch)
        self._conn.execute(
            "UPDATE repos SET indexed_branches = ?, last_indexed_at = ? WHERE id = ?",
            (json.dumps(branches), _now(), repo_id),
        )
        self._commit()
        return branches

    def delete_repo(self, repo_id: int) -> None:
        """Delete a repo and everything tracked for it."""
        for table in ["code_chunks", "files", "sync_jobs", "review_jobs"]:
            self._conn.execute(f"DELETE FROM {table} WHERE repo_id = ?", (repo_id,))  # noqa: S608
        self._conn.execute("DELETE FROM repos WHERE id = ?", (repo_id,))
        self._commit()

    # ── Tracked file operations ──

    def list_files(self, repo_id: int, branch: str) -> list[dict]:
        """List tracked files for a branch, without their content."""
        cur = self._conn.execute(
            """SELECT id, repo_id, branch, path, name, kind, content_hash, size, dirty,
                      created_at, updated_at
               FROM files WHERE repo_id = ? AND branch = ? ORDER BY path""",
            (repo_id, branch),
        )
        return [_decode(row) for row in cur.fetchall()]  # type: ignore[misc]

    def get_file(self, repo_id: int, branch: str, path: str) -> dict | None:
        cur = self._conn.execute(
            "SELECT * FROM files WHERE repo_id = ? AND branch = ? AND path = ?",
            (repo_id, branch, path),
        )
        return _decode(cur.fetchone())

    def upsert_file(
        self,
        repo_id: int,
        branch: str,
        path: str,
        content: str,
        content_hash: str | None,
        size: int | None = None,
    ) -> bool:
        """Insert or refresh a tracked file from the remote.

        Returns False without writing when the existing record is dirty.
        """
        now = _now()
        cur = self._conn.execute(
            """INSERT INTO files
               (repo_id, branch, path, name, kind, content, content_hash, size, dirty,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, 'file', ?, ?, ?, 0, ?, ?)
               ON CONFLICT (repo_id, branch, path) DO UPDATE SET
                   content = excluded.content,
                   content_hash = excluded.content_hash,
                   size = excluded.size,
                   updated_at = excluded.updated_at
               WHERE files.dirty = 0""",
            (repo_id, branch, path, path.rsplit("/", 1)[-1], content, content_hash,
             size if size is not None else len(content.encode("utf-8")), now, now),
        )
        self._commit()
        return cur.rowcount > 0

    def delete_file(self, repo_id: int, branch: str, path: str) -> bool:
        """Delete a tracked file unless it has local edits. Returns True if deleted."""
        cur = self._conn.execute(
            "DELETE FROM files WHERE repo_id = ? AND branch = ? AND path = ? AND dirty = 0",
            (repo_id, branch, path),
        )
        self._commit()
        return cur.rowcount > 0

    def update_file_content(self, repo_id: int, branch: str, path: str, content: str) -> bool:
        """Apply a local edit and mark the file dirty, keeping the synced original."""
        cur = self._conn.execute(
            """UPDATE files
               SET original_content = CASE WHEN dirty = 0 THEN content ELSE original_content END,
                   content = ?, size = ?, dirty = 1, updated_at = ?
               WHERE repo_id = ? AND branch = ? AND path = ?""",
            (content, len(content.encode("utf-8")), _now(), repo_id, branch, path),
        )
        self._commit()
        return cur.rowcount > 0

    def discard_changes(self, repo_id: int, branch: str, paths: list[str] | None = None) -> int:
        """Restore the synced content of dirty files and clear their dirty flag."""
        sql = """UPDATE files
                 SET content = original_content, original_content = NULL,
                     size = length(CAST(original_content AS BLOB)), dirty = 0, updated_at = ?
                 WHERE repo_id = ? AND branch = ? AND dirty = 1"""
        params: list = [_now(), repo_id, branch]
        if paths is not None:
            sql += f" AND path IN ({', '.join('?' for _ in paths)})"
            params.extend(paths)
        cur = self._conn.execute(sql, params)
        self._commit()
        return cur.rowcount

    def mark_files_clean(self, repo_id: int, branch: str, paths: list[str]) -> int:
        """Accept local edits as the new baseline."""
        if not paths:
            return 0
        cur = self._conn.execute(
            f"""UPDATE files SET dirty = 0, original_content = NULL, updated_at = ?
                WHERE repo_id = ? AND branch = ? AND path IN ({', '.join('?' for _ in paths)})""",  # noqa: S608
            [_now(), repo_id, branch, *paths],
        )
        self._commit()
        return cur.rowcount

    # ── Chunk operations ──

    def replace_file_chunks(
        self,
        repo_id: int,
        branch: str,
        file_path: str,
        chunks: list[CodeChunk],
        file_sha: str | None = None,
    ) -> int:
        """Replace every chunk of one file in a single transaction."""
        now = _now()
        with self._conn:
            self._conn.execute(
                "DELETE FROM code_chunks WHERE repo_id = ? AND branch = ? AND file_path = ?",
                (repo_id, branch, file_path),
            )
            self._conn.executemany(
                """INSERT INTO code_chunks
                   (repo_id, branch, file_path, chunk_index, chunk_type, name, code, docstring,
                    start_line, end_line, language, file_sha, indexed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        repo_id, branch, file_path, c.chunk_index, c.chunk_type, c.name,
                        c.code, c.docstring, c.start_line, c.end_line, c.language,
                        file_sha, now,
                    )
                    for c in chunks
                ],
            )
        return len(chunks)

    def delete_file_chunks(self, repo_id: int, branch: str, file_path: str) -> int:
        cur = self._conn.execute(
            "DELETE FROM code_chunks WHERE repo_id = ? AND branch = ? AND file_path = ?",
            (repo_id, branch, file_path),
        )
        self._commit()
        return cur.rowcount

    def get_chunks_by_file(self, repo_id: int, branch: str, file_path: str) -> list[dict]:
        cur = self._conn.execute(
            """SELECT * FROM code_chunks
               WHERE repo_id = ? AND branch = ? AND file_path = ? ORDER BY chunk_index""",
            (repo_id, branch, file_path),
        )
        return [dict(row) for row in cur.fetchall()]

    # ── Job operations ──

    def insert_job(self, table: str, job_id: str, **fields: str | int | None) -> None:
        """Insert a job row with the given id and column values."""
        self._check_job_table(table)
        columns = ["id", *fields]
        placeholders = ", ".join("?" for _ in columns)
        self._conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",  # noqa: S608
            [job_id, *(self._encode(k, v) for k, v in fields.items())],
        )
        self._commit()

    def get_job(self, table: str, job_id: str) -> dict | None:
        self._check_job_table(table)
        cur = self._conn.execute(f"SELECT * FROM {table} WHERE id = ?", (job_id,))  # noqa: S608
        return _decode(cur.fetchone())

    def update_job(
        self,
        table: str,
        job_id: str,
        *,
        expected_workflow: str | None = None,
        **fields: str | int | list | None,
    ) -> int:
        """Patch a job row. Only the provided columns are written.

        With ``expected_workflow`` the row is only written while it is unbound
        or still bound to that workflow. Returns the number of rows written.
        """
        self._check_job_table(table)
        if not fields:
            return 0
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = [self._encode(k, v) for k, v in fields.items()] + [job_id]
        sql = f"UPDATE {table} SET {set_clause} WHERE id = ?"  # noqa: S608
        if expected_workflow is not None:
            sql += " AND (workflow_id IS NULL OR workflow_id = ?)"
            values.append(expected_workflow)
        cur = self._conn.execute(sql, values)
        self._commit()
        return cur.rowcount

    def get_latest_sync_job(self, repo_id: int, branch: str | None = None) -> dict | None:
        """Most recently started sync job for a repo, optionally for one branch."""
        if branch is None:
            cur = self._conn.execute(
                """SELECT * FROM sync_jobs WHERE repo_id = ?
                   ORDER BY started_at DESC, rowid DESC LIMIT 1""",
                (repo_id,),
            )
        else:
            cur = self._conn.execute(
                """SELECT * FROM sync_jobs WHERE repo_id = ? AND branch = ?
                   ORDER BY started_at DESC, rowid DESC LIMIT 1""",
                (repo_id, branch),
            )
        return _decode(cur.fetchone())

    def get_active_sync_job(self, repo_id: int, branch: str) -> dict | None:
        """The non-terminal sync job for (repo, branch), if any."""
        cur = self._conn.execute(
            """SELECT * FROM sync_jobs
               WHERE repo_id = ? AND branch = ? AND phase NOT IN ('completed', 'failed')
               ORDER BY started_at DESC LIMIT 1""",
            (repo_id, branch),
        )
        return _decode(cur.fetchone())

    def get_review_job_by_pr(self, repo_id: int, pr_number: int) -> dict | None:
        cur = self._conn.execute(
            "SELECT * FROM review_jobs WHERE repo_id = ? AND pr_number = ?",
            (repo_id, pr_number),
        )
        return _decode(cur.fetchone())

    def list_review_jobs(self, repo_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM review_jobs WHERE repo_id = ? ORDER BY triggered_at DESC",
            (repo_id,),
        )
        return [_decode(row) for row in cur.fetchall()]  # type: ignore[misc]

    def list_orphaned_jobs(self, table: str) -> list[dict]:
        """Non-terminal jobs whose workflow is missing or no longer running.

        Each row carries ``workflow_name``, ``workflow_status`` and
        ``workflow_error`` from the bound workflow (all None when it is missing).
        """
        self._check_job_table(table)
        cur = self._conn.execute(
            f"""SELECT j.*, w.name AS workflow_name, w.status AS workflow_status,
                       w.error AS workflow_error
                FROM {table} j LEFT JOIN workflows w ON w.id = j.workflow_id
                WHERE j.phase NOT IN ('completed', 'failed')
                  AND (w.id IS NULL OR w.status != 'running')"""  # noqa: S608
        )
        return [_decode(row) for row in cur.fetchall()]  # type: ignore[misc]

    @staticmethod
    def _check_job_table(table: str) -> None:
        if table not in _JOB_TABLES:
            raise ValueError(f"Unknown job table {table!r}")

    @staticmethod
    def _encode(column: str, value):
        if column in _JSON_COLUMNS and value is not None:
            return json.dumps(value)
        if isinstance(value, bool):
            return int(value)
        return value

    # ── Workflow operations ──

    def insert_workflow(self, workflow_id: str, name: str, job_id: str, args: dict) -> None:
        self._conn.execute(
            """INSERT INTO workflows (id, name, job_id, args, status, created_at)
               VALUES (?, ?, ?, ?, 'running', ?)""",
            (workflow_id, name, job_id, json.dumps(args), _now()),
        )
        self._commit()

    def get_workflow(self, workflow_id: str) -> dict | None:
        cur = self._conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
        return _decode(cur.fetchone())

    def list_workflows(self, status: str | None = None) -> list[dict]:
        if status is None:
            cur = self._conn.execute("SELECT * FROM workflows ORDER BY created_at")
        else:
            cur = self._conn.execute(
                "SELECT * FROM workflows WHERE status = ? ORDER BY created_at", (status,)
            )
        return [_decode(row) for row in cur.fetchall()]  # type: ignore[misc]

    def finish_workflow(self, workflow_id: str, status: str, error: str | None = None) -> None:
        self._conn.execute(
            "UPDATE workflows SET status = ?, error = ?, finished_at = ? WHERE id = ?",
            (status, error, _now(), workflow_id),
        )
        self._commit()

    def request_cancel(self, workflow_id: str) -> bool:
        """Flag a running workflow for cancellation. Returns False if not running."""
        cur = self._conn.execute(
            "UPDATE workflows SET cancel_requested = 1 WHERE id = ? AND status = 'running'",
            (workflow_id,),
        )
        self._commit()
        return cur.rowcount > 0

    def is_cancel_requested(self, workflow_id: str) -> bool:
        cur = self._conn.execute(
            "SELECT cancel_requested FROM workflows WHERE id = ?", (workflow_id,)
        )
        row = cur.fetchone()
        return bool(row[0]) if row else False

    def get_step_result(self, workflow_id: str, step_key: str) -> str | None:
        """Return a step's checkpointed result JSON, or None if it never completed."""
        cur = self._conn.execute(
            "SELECT result FROM workflow_steps WHERE workflow_id = ? AND step_key = ?",
            (workflow_id, step_key),
        )
        row = cur.fetchone()
        return row[0] if row else None

    def save_step_result(
        self, workflow_id: str, step_key: str, result: str, attempts: int = 1
    ) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO workflow_steps
               (workflow_id, step_key, result, attempts, completed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (workflow_id, step_key, result, attempts, _now()),
        )
        self._commit()

    def list_step_keys(self, workflow_id: str) -> list[str]:
        cur = self._conn.execute(
            "SELECT step_key FROM workflow_steps WHERE workflow_id = ? ORDER BY rowid",
            (workflow_id,),
        )
        return [row[0] for row in cur.fetchall()]

    # ── Webhook events ──

    def record_webhook_event(
        self,
        delivery_id: str,
        event_type: str,
        action: str | None = None,
        repo_full_name: str | None = None,
    ) -> bool:
        """Record a delivery. Returns False if this delivery id was already seen."""
        cur = self._conn.execute(
            """INSERT OR IGNORE INTO webhook_events
               (delivery_id, event_type, action, repo_full_name, status, received_at)
               VALUES (?, ?, ?, ?, 'pending', ?)""",
            (delivery_id, event_type, action, repo_full_name, _now()),
        )
        self._commit()
        return cur.rowcount > 0

    def update_webhook_event(
        self, delivery_id: str, status: str, error: str | None = None
    ) -> None:
        processed_at = _now() if status in ("completed", "failed") else None
        self._conn.execute(
            """UPDATE webhook_events SET status = ?, error = ?,
                   processed_at = COALESCE(?, processed_at)
               WHERE delivery_id = ?""",
            (status, error, processed_at, delivery_id),
        )
        self._commit()

    def get_webhook_event(self, delivery_id: str) -> dict | None:
        cur = self._conn.execute(
            "SELECT * FROM webhook_events WHERE delivery_id = ?", (delivery_id,)
        )
        return _decode(cur.fetchone())

    # ── Counts ──

    def count(self, table: str, repo_id: int | None = None) -> int:
        if repo_id is None:
            cur = self._conn.execute(f"SELECT count(*) FROM {table}")  # noqa: S608
        else:
            cur = self._conn.execute(
                f"SELECT count(*) FROM {table} WHERE repo_id = ?", (repo_id,)  # noqa: S608
            )
        return cur.fetchone()[0]

    def close(self) -> None:
        self._conn.close()

"""SQLite persistence for projects and jobs.

Tables:
    projects(id, name, path UNIQUE, profile, created_at)
    jobs(id, project_id, status, log, exit_code, error, started_at, completed_at)

Uses per-call connections with check_same_thread=False so worker threads
and HTTP handler threads can share one JobStore.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_FILENAME = 'jobs.db'

JOB_RUNNING = 'running'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    profile TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    profile TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    log TEXT NOT NULL DEFAULT '',
    exit_code INTEGER,
    error TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_project ON jobs(project_id);
CREATE INDEX IF NOT EXISTS idx_jobs_started ON jobs(started_at);
"""


class JobStateError(Exception):
    """Job is missing or already completed."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


def get_default_db_path() -> Path:
    """Database path: $BOOTSTRAP_DB, else ~/.bootstrap/jobs.db."""
    if env_path := os.environ.get('BOOTSTRAP_DB'):
        return Path(env_path)
    return Path.home() / '.bootstrap' / DEFAULT_DB_FILENAME


class JobStore:
    """Project and job records in one SQLite file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_default_db_path()
        self._write_lock = threading.Lock()
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Get a database connection.

        Usage:
            with store.get_connection() as conn:
                conn.execute(...)
                conn.commit()
        """
        conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.debug(f"Job database ready at {self.path}")

    def execute(self, sql: str, params: tuple = (), fetch: bool = False) -> Any:
        """Execute a statement; returns rows as dicts when fetch is set, else the row count."""
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            if fetch:
                return [dict(row) for row in cursor.fetchall()]
            conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def upsert_project(self, path: str, profile: Optional[str] = None,
                       name: Optional[str] = None) -> dict:
        """Create the project for a path, or update its name/profile."""
        path = str(path)
        name = name or Path(path).name or path
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO projects (name, path, profile, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    name = excluded.name,
                    profile = COALESCE(excluded.profile, projects.profile)
                """,
                (name, path, profile, _now()),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM projects WHERE path = ?", (path,)).fetchone()
        return dict(row)

    def get_project(self, project_id: int) -> Optional[dict]:
        rows = self.execute("SELECT * FROM projects WHERE id = ?", (project_id,), fetch=True)
        return rows[0] if rows else None

    def list_projects(self) -> list[dict]:
        return self.execute("SELECT * FROM projects ORDER BY id", fetch=True)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, project_id: int, profile: Optional[str] = None) -> int:
        """Insert a job in running status; returns its id."""
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO jobs (project_id, profile, status, log, started_at) VALUES (?, ?, ?, '', ?)",
                (project_id, profile, JOB_RUNNING, _now()),
            )
            conn.commit()
            return cursor.lastrowid

    def complete_job(self, job_id: int, exit_code: int, log: str,
                     error: Optional[str] = None) -> dict:
        """Mark a running job completed (exit 0) or failed; happens exactly once.

        Raises:
            JobStateError: If the job does not exist or was already completed
        """
        status = JOB_COMPLETED if exit_code == 0 and not error else JOB_FAILED
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, exit_code = ?, log = ?, error = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (status, exit_code, log, error, _now(), job_id, JOB_RUNNING),
            )
            conn.commit()
            if cursor.rowcount != 1:
                raise JobStateError(f"Job {job_id} is not running (missing or already completed)")
        return self.get_job(job_id) or {}

    def get_job(self, job_id: int) -> Optional[dict]:
        rows = self.execute(
            """
            SELECT jobs.*, projects.path AS project_path, projects.name AS project_name
            FROM jobs JOIN projects ON projects.id = jobs.project_id
            WHERE jobs.id = ?
            """,
            (job_id,), fetch=True,
        )
        return rows[0] if rows else None

    def list_jobs(self, limit: int = 20) -> list[dict]:
        """Most recent jobs, newest first (log omitted)."""
        return self.execute(
            """
            SELECT jobs.id, jobs.project_id, jobs.profile, jobs.status, jobs.exit_code,
                   jobs.error, jobs.started_at, jobs.completed_at,
                   projects.path AS project_path, projects.name AS project_name
            FROM jobs JOIN projects ON projects.id = jobs.project_id
            ORDER BY jobs.id DESC
            LIMIT ?
            """,
            (limit,), fetch=True,
        )

    def fail_orphaned_jobs(self) -> int:
        """Mark jobs left running by a previous server process as failed."""
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, error = ?, completed_at = ? WHERE status = ?",
                (JOB_FAILED, 'server restarted while job was running', _now(), JOB_RUNNING),
            )
            conn.commit()
            return cursor.rowcount

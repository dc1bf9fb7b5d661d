import os
import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional

from crash_analysis.models import (
    Bug,
    Deploy,
    Environment,
    Occurrence,
    Project,
    ScopeKey,
    utcnow,
)

logger = logging.getLogger("triage.db")

BUG_COLUMNS = (
    "bug_id", "environment_id", "class_name", "file", "line", "special_file",
    "message_template", "blamed_revision", "deploy_id", "fixed", "fixed_at",
    "fix_deployed", "resolution_revision", "duplicate_of", "occurrences_count",
    "first_occurrence", "latest_occurrence", "create_time",
)
BUG_TIMESTAMPS = ("fixed_at", "first_occurrence", "latest_occurrence", "create_time")
BUG_FLAGS = ("special_file", "fixed", "fix_deployed")
UPDATABLE_BUG_FIELDS = set(BUG_COLUMNS) - {"bug_id", "environment_id", "create_time"}


def _to_ts(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TriageDB:
    """
    sqlite store for projects, environments, deploys, bugs and occurrences.

    The connection runs in autocommit mode; multi-statement work goes through
    ``transaction()``, which takes a write lock (BEGIN IMMEDIATE) so that
    find-then-insert sequences are atomic across processes too.
    """

    def __init__(self, db_path: str = "~/.crashtriage/triage.db"):
        self.db_path = db_path if db_path == ":memory:" else os.path.expanduser(db_path)
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
        self._conn = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.connect()
        self.create_tables()
        self.migrate_schema()

    def connect(self):
        logger.debug(f"Connecting to SQLite DB at {self.db_path}")
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False,
                                     isolation_level=None, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")

    def create_tables(self):
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                project_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                repo_path TEXT,
                filter_paths TEXT
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS environments (
                environment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                UNIQUE (project_id, name),
                FOREIGN KEY (project_id) REFERENCES projects(project_id)
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS deploys (
                deploy_id INTEGER PRIMARY KEY AUTOINCREMENT,
                environment_id INTEGER NOT NULL,
                revision TEXT NOT NULL,
                build TEXT,
                deployed_at REAL,
                FOREIGN KEY (environment_id) REFERENCES environments(environment_id)
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS bugs (
                bug_id INTEGER PRIMARY KEY AUTOINCREMENT,
                environment_id INTEGER NOT NULL,
                class_name TEXT NOT NULL,
                file TEXT NOT NULL,
                line INTEGER NOT NULL,
                special_file INTEGER NOT NULL DEFAULT 0,
                message_template TEXT,
                blamed_revision TEXT,
                deploy_id INTEGER,
                fixed INTEGER NOT NULL DEFAULT 0,
                fixed_at REAL,
                fix_deployed INTEGER NOT NULL DEFAULT 0,
                resolution_revision TEXT,
                duplicate_of INTEGER,
                occurrences_count INTEGER NOT NULL DEFAULT 0,
                first_occurrence REAL,
                latest_occurrence REAL,
                create_time REAL,
                FOREIGN KEY (environment_id) REFERENCES environments(environment_id),
                FOREIGN KEY (deploy_id) REFERENCES deploys(deploy_id),
                FOREIGN KEY (duplicate_of) REFERENCES bugs(bug_id)
            )
            """)
            cur.execute("""
            CREATE INDEX IF NOT EXISTS bugs_scope
            ON bugs (environment_id, class_name, file, line, special_file)
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS occurrences (
                occurrence_id INTEGER PRIMARY KEY AUTOINCREMENT,
                bug_id INTEGER NOT NULL,
                deploy_id INTEGER,
                revision TEXT,
                class_name TEXT,
                message TEXT,
                occurred_at REAL,
                FOREIGN KEY (bug_id) REFERENCES bugs(bug_id)
            )
            """)
            logger.debug("Tables ensured/created: projects, environments, deploys, bugs, occurrences.")

    def migrate_schema(self):
        """Add missing columns to existing tables."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("PRAGMA table_info(bugs)")
            columns = [col[1] for col in cur.fetchall()]
            if "resolution_revision" not in columns:
                logger.info("Migrating bugs table to add resolution_revision column")
                cur.execute("ALTER TABLE bugs ADD COLUMN resolution_revision TEXT")

    def close(self):
        if self._conn:
            logger.debug("Closing SQLite DB connection.")
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self):
        """Serialize a unit of work; nested calls join the outer transaction."""
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    # Projects & environments
    def add_project(self, name: str, repo_path: str = None, filter_paths: List[str] = None) -> Project:
        cur = self._execute(
            "INSERT INTO projects(name, repo_path, filter_paths) VALUES (?, ?, ?)",
            (name, repo_path, json.dumps(filter_paths) if filter_paths is not None else None))
        logger.info(f"Project '{name}' added with project_id={cur.lastrowid}")
        return Project(cur.lastrowid, name, repo_path, filter_paths or [])

    def get_project_by_name(self, name: str) -> Optional[Project]:
        row = self._execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
        return self._row_to_project(row) if row else None

    def get_or_create_project(self, name: str, repo_path: str = None, filter_paths: List[str] = None) -> Project:
        with self.transaction():
            project = self.get_project_by_name(name)
            if project is None:
                project = self.add_project(name, repo_path, filter_paths)
            elif repo_path and project.repo_path != repo_path:
                self._execute("UPDATE projects SET repo_path = ? WHERE project_id = ?",
                              (repo_path, project.project_id))
                project.repo_path = repo_path
            return project

    def add_environment(self, project_id: int, name: str) -> Environment:
        cur = self._execute("INSERT INTO environments(project_id, name) VALUES (?, ?)", (project_id, name))
        logger.info(f"Environment '{name}' added with environment_id={cur.lastrowid}")
        return Environment(cur.lastrowid, project_id, name)

    def get_environment(self, environment_id: int) -> Optional[Environment]:
        row = self._execute("SELECT * FROM environments WHERE environment_id = ?", (environment_id,)).fetchone()
        return Environment(row["environment_id"], row["project_id"], row["name"]) if row else None

    def get_or_create_environment(self, project_id: int, name: str) -> Environment:
        with self.transaction():
            row = self._execute("SELECT * FROM environments WHERE project_id = ? AND name = ?",
                                (project_id, name)).fetchone()
            if row:
                return Environment(row["environment_id"], row["project_id"], row["name"])
            return self.add_environment(project_id, name)

    # Deploys
    def add_deploy(self, environment_id: int, revision: str, build: str = None,
                   deployed_at: datetime = None) -> Deploy:
        deployed_at = deployed_at or utcnow()
        cur = self._execute(
            "INSERT INTO deploys(environment_id, revision, build, deployed_at) VALUES (?, ?, ?, ?)",
            (environment_id, revision, build, _to_ts(deployed_at)))
        logger.info(f"Deploy of {revision[:10]} recorded for environment_id={environment_id} "
                    f"(deploy_id={cur.lastrowid})")
        return Deploy(cur.lastrowid, environment_id, revision, build, deployed_at)

    def get_deploy(self, deploy_id: Optional[int]) -> Optional[Deploy]:
        if deploy_id is None:
            return None
        row = self._execute("SELECT * FROM deploys WHERE deploy_id = ?", (deploy_id,)).fetchone()
        return self._row_to_deploy(row) if row else None

    def get_deploys(self, environment_id: int) -> List[Deploy]:
        """All deploys of an environment in creation order."""
        rows = self._execute("SELECT * FROM deploys WHERE environment_id = ? ORDER BY deploy_id",
                             (environment_id,)).fetchall()
        return [self._row_to_deploy(row) for row in rows]

    def is_distributed(self, environment_id: int) -> bool:
        row = self._execute("SELECT 1 FROM deploys WHERE environment_id = ? LIMIT 1",
                            (environment_id,)).fetchone()
        return row is not None

    def resolve_deploy_for_revision(self, environment_id: int, revision: str,
                                    contains: Callable[[str, str], bool] = None) -> Optional[Deploy]:
        """
        Find the deploy an occurrence at ``revision`` belongs to.

        The latest deploy of exactly that revision wins. Otherwise the oldest
        deploy whose revision contains ``revision`` (as decided by
        ``contains(revision, deploy_revision)``) is used.
        """
        deploys = self.get_deploys(environment_id)
        exact = [d for d in deploys if d.revision == revision]
        if exact:
            return exact[-1]
        if contains is not None:
            for deploy in deploys:
                if contains(revision, deploy.revision):
                    return deploy
        return None

    # Bugs
    def create_bug(self, bug: Bug) -> Bug:
        bug.create_time = bug.create_time or utcnow()
        values = self._bug_values(bug)
        columns = [c for c in BUG_COLUMNS if c != "bug_id"]
        cur = self._execute(
            f"INSERT INTO bugs({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(values[c] for c in columns))
        bug.bug_id = cur.lastrowid
        logger.info(f"New bug recorded: bug_id={bug.bug_id}, {bug.class_name} at {bug.file}:{bug.line}")
        return bug

    def get_bug(self, bug_id: int) -> Optional[Bug]:
        row = self._execute("SELECT * FROM bugs WHERE bug_id = ?", (bug_id,)).fetchone()
        return self._row_to_bug(row) if row else None

    def find_bugs_by_scope(self, scope: ScopeKey) -> List[Bug]:
        """Bugs matching the scope key, oldest first."""
        rows = self._execute("""
            SELECT * FROM bugs
            WHERE environment_id = ? AND class_name = ? AND file = ? AND line = ? AND special_file = ?
            ORDER BY bug_id
        """, (scope.environment_id, scope.class_name, scope.file, scope.line,
              int(scope.special_file))).fetchall()
        return [self._row_to_bug(row) for row in rows]

    def get_bugs(self, environment_id: int, fixed: bool = None, fix_deployed: bool = None) -> List[Bug]:
        sql = "SELECT * FROM bugs WHERE environment_id = ?"
        params = [environment_id]
        if fixed is not None:
            sql += " AND fixed = ?"
            params.append(int(fixed))
        if fix_deployed is not None:
            sql += " AND fix_deployed = ?"
            params.append(int(fix_deployed))
        rows = self._execute(sql + " ORDER BY bug_id", tuple(params)).fetchall()
        return [self._row_to_bug(row) for row in rows]

    def update_bug(self, bug_id: int, **fields) -> Optional[Bug]:
        unknown = set(fields) - UPDATABLE_BUG_FIELDS
        if unknown:
            raise ValueError(f"Cannot update bug fields: {sorted(unknown)}")
        if fields:
            values = self._encode_bug_fields(fields)
            assignments = ", ".join(f"{name} = ?" for name in values)
            self._execute(f"UPDATE bugs SET {assignments} WHERE bug_id = ?",
                          tuple(values.values()) + (bug_id,))
            logger.debug(f"Bug {bug_id} updated: {sorted(fields)}")
        return self.get_bug(bug_id)

    def reopen_bug(self, bug_id: int) -> bool:
        """Clear the fixed state; returns False if the bug was not fixed."""
        cur = self._execute("""
            UPDATE bugs SET fixed = 0, fixed_at = NULL, fix_deployed = 0
            WHERE bug_id = ? AND fixed = 1
        """, (bug_id,))
        return cur.rowcount == 1

    # Occurrences
    def record_occurrence(self, bug_id: int, occurrence: Occurrence, deploy_id: int = None) -> int:
        occurred_at = _to_ts(occurrence.occurred_at)
        with self.transaction():
            cur = self._execute("""
                INSERT INTO occurrences(bug_id, deploy_id, revision, class_name, message, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (bug_id, deploy_id, occurrence.revision, occurrence.class_name,
                  occurrence.message, occurred_at))
            self._execute("""
                UPDATE bugs SET occurrences_count = occurrences_count + 1,
                    first_occurrence = COALESCE(MIN(first_occurrence, ?), ?),
                    latest_occurrence = COALESCE(MAX(latest_occurrence, ?), ?)
                WHERE bug_id = ?
            """, (occurred_at, occurred_at, occurred_at, occurred_at, bug_id))
        logger.debug(f"Occurrence {cur.lastrowid} recorded for bug_id={bug_id}")
        return cur.lastrowid

    def get_occurrences(self, bug_id: int) -> List[dict]:
        rows = self._execute("SELECT * FROM occurrences WHERE bug_id = ? ORDER BY occurrence_id",
                             (bug_id,)).fetchall()
        occurrences = []
        for row in rows:
            data = dict(row)
            data["occurred_at"] = _from_ts(data["occurred_at"])
            occurrences.append(data)
        return occurrences

    # Row conversion
    def _bug_values(self, bug: Bug) -> dict:
        return self._encode_bug_fields({c: getattr(bug, c) for c in BUG_COLUMNS})

    @staticmethod
    def _encode_bug_fields(fields: dict) -> dict:
        encoded = {}
        for name, value in fields.items():
            if name in BUG_TIMESTAMPS:
                value = _to_ts(value)
            elif name in BUG_FLAGS:
                value = int(bool(value))
            encoded[name] = value
        return encoded

    @staticmethod
    def _row_to_bug(row: sqlite3.Row) -> Bug:
        data = {c: row[c] for c in BUG_COLUMNS}
        for name in BUG_TIMESTAMPS:
            data[name] = _from_ts(data[name])
        for name in BUG_FLAGS:
            data[name] = bool(data[name])
        return Bug(**data)

    @staticmethod
    def _row_to_deploy(row: sqlite3.Row) -> Deploy:
        return Deploy(row["deploy_id"], row["environment_id"], row["revision"],
                      row["build"], _from_ts(row["deployed_at"]))

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        filter_paths = json.loads(row["filter_paths"]) if row["filter_paths"] else []
        return Project(row["project_id"], row["name"], row["repo_path"], filter_paths)

"""
Ben OS Database Layer

SQLite storage for the areas → projects → milestones → boards → tasks →
subtasks hierarchy, plus PRDs and their versions, agents, the activity audit
log and generated reports.

WAL mode gives concurrent readers; a single RLock-guarded connection with
BEGIN IMMEDIATE transactions makes the per-scope position counter atomic, so
two inserts into the same column can never receive the same position.
"""

import sqlite3
import threading
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple, Iterable
from contextlib import contextmanager
from pathlib import Path

from .performance import timed_query

logger = logging.getLogger(__name__)

AREA_TYPES = ("personal", "work", "project", "content", "community", "other")
PROJECT_STATUSES = ("active", "paused", "completed", "archived")
MILESTONE_STATUSES = ("pending", "in_progress", "completed")
TASK_STATUSES = ("backlog", "todo", "in_progress", "review", "done")
TASK_PRIORITIES = ("low", "medium", "high", "critical")
PRD_STATUSES = ("draft", "approved", "in_progress", "completed")
AGENT_TYPES = ("primary", "task")
REPORT_TYPES = ("daily", "weekly", "monthly")

DEFAULT_AREA_COLOR = "#6366f1"

DEFAULT_COLUMN_CONFIG = [
    {"id": "backlog", "name": "Backlog", "position": 0},
    {"id": "todo", "name": "To Do", "position": 1},
    {"id": "in_progress", "name": "In Progress", "position": 2},
    {"id": "review", "name": "Review", "position": 3},
    {"id": "done", "name": "Done", "position": 4},
]

# Parent keys that scope each table's position counter
POSITION_SCOPES: Dict[str, Tuple[str, ...]] = {
    "areas": (),
    "projects": ("area_id",),
    "milestones": ("project_id",),
    "boards": ("project_id",),
    "tasks": ("board_id", "column_id"),
    "subtasks": ("task_id",),
}

# JSON columns per table with the factory for their empty value
JSON_COLUMNS: Dict[str, Dict[str, Any]] = {
    "projects": {"metadata": dict},
    "boards": {"column_config": list},
    "prds": {"sections": list},
    "prd_versions": {"sections": list},
    "agents": {"capabilities": list},
    "tasks": {"ai_context": dict},
    "activity_logs": {"payload": dict},
    "reports": {"content": dict},
}

BOOL_COLUMNS = {"is_active", "completed", "user_initiated"}

TIMESTAMP_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "areas": ("created_at", "updated_at"),
    "projects": ("created_at", "updated_at"),
    "milestones": ("created_at", "updated_at"),
    "boards": ("created_at", "updated_at"),
    "prds": ("created_at", "updated_at"),
    "prd_versions": ("created_at",),
    "agents": ("created_at", "updated_at"),
    "tasks": ("created_at", "updated_at"),
    "subtasks": ("created_at", "updated_at"),
    "activity_logs": ("created_at",),
    "reports": ("generated_at", "created_at"),
}

UPDATABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "areas": ("name", "color", "icon", "type", "position"),
    "projects": ("area_id", "title", "description", "status", "target_date", "metadata", "position"),
    "milestones": ("project_id", "title", "description", "status", "target_date", "position"),
    "boards": ("project_id", "name", "column_config", "position"),
    "prds": ("project_id", "title", "content", "status", "sections", "file_path"),
    "agents": ("name", "type", "capabilities", "api_key_hash", "is_active", "last_active_at"),
    "tasks": (
        "milestone_id", "board_id", "prd_id", "assigned_agent_id", "title", "description",
        "status", "priority", "story_points", "ai_context", "column_id", "position",
        "due_date", "completed_at",
    ),
    "subtasks": ("title", "completed", "completed_at", "position"),
}

# Columns declared NOT NULL; an update carrying None for them is ignored
NOT_NULL_COLUMNS = {
    "name", "title", "type", "status", "priority", "color", "column_id", "position",
    "column_config", "metadata", "sections", "capabilities", "ai_context", "completed",
    "is_active", "api_key_hash", "area_id", "project_id", "board_id", "task_id",
}


class BoardExistsError(ValueError):
    """Raised when a project already owns a board."""


def format_timestamp(value: datetime) -> str:
    """Render a datetime as the UTC ISO-8601 string stored in every table."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def status_for_column(column_id: Optional[str]) -> Optional[str]:
    """Task status implied by a board column, None for custom columns."""
    return column_id if column_id in TASK_STATUSES else None


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _sql_list(values: Iterable[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


def _parse_json(text: Optional[str], default_factory):
    if text is None:
        return default_factory()
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default_factory()


def _nest_joined(record: Dict[str, Any]) -> Dict[str, Any]:
    """Fold `prefix__field` aliases from JOINs into nested dicts (None when all NULL)."""
    nested: Dict[str, Dict[str, Any]] = {}
    for key in [k for k in record if "__" in k]:
        prefix, field = key.split("__", 1)
        nested.setdefault(prefix, {})[field] = record.pop(key)
    for prefix, values in nested.items():
        record[prefix] = values if any(v is not None for v in values.values()) else None
    return record


class BenOSDatabase:
    """
    SQLite database for the Ben OS project hierarchy.

    Features:
    - WAL mode for concurrent read/write access
    - Foreign keys with ON DELETE CASCADE / SET NULL
    - Atomic next-position counters per parent scope
    - Thread-safe access through a single RLock-guarded connection
    """

    def __init__(self, db_path: str):
        """
        Initialize BenOSDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure pragmas and create the schema.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # explicit BEGIN/COMMIT only
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        cursor = self._connection.cursor()

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS areas (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                color TEXT NOT NULL DEFAULT '{DEFAULT_AREA_COLOR}',
                icon TEXT,
                type TEXT NOT NULL CHECK (type IN ({_sql_list(AREA_TYPES)})),
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                area_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ({_sql_list(PROJECT_STATUSES)})),
                target_date TEXT,
                metadata TEXT NOT NULL DEFAULT '{{}}' CHECK (json_valid(metadata)),
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (area_id) REFERENCES areas (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS milestones (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ({_sql_list(MILESTONE_STATUSES)})),
                target_date TEXT,
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        # One board per project
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS boards (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                column_config TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(column_config)),
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'task' CHECK (type IN ({_sql_list(AGENT_TYPES)})),
                capabilities TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(capabilities)),
                api_key_hash TEXT NOT NULL UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_active_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS prds (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT,
                status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({_sql_list(PRD_STATUSES)})),
                sections TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(sections)),
                file_path TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS prd_versions (
                id TEXT PRIMARY KEY,
                prd_id TEXT NOT NULL,
                version_number INTEGER NOT NULL,
                title TEXT NOT NULL,
                content TEXT,
                sections TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(sections)),
                status TEXT NOT NULL,
                created_by TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (prd_id, version_number),
                FOREIGN KEY (prd_id) REFERENCES prds (id) ON DELETE CASCADE,
                FOREIGN KEY (created_by) REFERENCES agents (id) ON DELETE SET NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                board_id TEXT NOT NULL,
                milestone_id TEXT,
                prd_id TEXT,
                assigned_agent_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'backlog'
                    CHECK (status IN ({_sql_list(TASK_STATUSES)})),
                priority TEXT NOT NULL DEFAULT 'medium'
                    CHECK (priority IN ({_sql_list(TASK_PRIORITIES)})),
                story_points INTEGER CHECK (story_points IS NULL OR story_points BETWEEN 0 AND 21),
                ai_context TEXT NOT NULL DEFAULT '{{}}' CHECK (json_valid(ai_context)),
                column_id TEXT NOT NULL DEFAULT 'backlog',
                position INTEGER NOT NULL DEFAULT 0,
                due_date TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (board_id) REFERENCES boards (id) ON DELETE CASCADE,
                FOREIGN KEY (milestone_id) REFERENCES milestones (id) ON DELETE SET NULL,
                FOREIGN KEY (prd_id) REFERENCES prds (id) ON DELETE SET NULL,
                FOREIGN KEY (assigned_agent_id) REFERENCES agents (id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS subtasks (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                title TEXT NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        # Append-only audit log; entity_id is not a foreign key so history outlives deletes
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS activity_logs (
                id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                agent_id TEXT,
                user_initiated INTEGER NOT NULL DEFAULT 1,
                action TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(payload)),
                created_at TEXT NOT NULL,
                FOREIGN KEY (agent_id) REFERENCES agents (id) ON DELETE SET NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS reports (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL CHECK (type IN ({_sql_list(REPORT_TYPES)})),
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '{{}}' CHECK (json_valid(content)),
                generated_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_areas_position ON areas(position)",
            "CREATE INDEX IF NOT EXISTS idx_projects_area ON projects(area_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_projects_status ON projects(status)",
            "CREATE INDEX IF NOT EXISTS idx_milestones_project ON milestones(project_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_board_column ON tasks(board_id, column_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_milestone ON tasks(milestone_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_prd ON tasks(prd_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(assigned_agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_completed_at ON tasks(completed_at)",
            "CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(task_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_prds_project ON prds(project_id)",
            "CREATE INDEX IF NOT EXISTS idx_prd_versions_prd ON prd_versions(prd_id, version_number)",
            "CREATE INDEX IF NOT EXISTS idx_activity_entity ON activity_logs(entity_type, entity_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_agent ON activity_logs(agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_logs(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_reports_type ON reports(type, generated_at)",
        ]
        for statement in indexes:
            cursor.execute(statement)

    def _drop_existing_tables(self) -> None:
        """Drop all tables, children first."""
        cursor = self._connection.cursor()
        for table in ("activity_logs", "subtasks", "tasks", "prd_versions", "prds", "boards",
                      "milestones", "projects", "areas", "agents", "reports"):
            cursor.execute(f"DROP TABLE IF EXISTS {table}")

    @contextmanager
    def _transaction(self):
        """
        Hold the connection lock inside a BEGIN IMMEDIATE transaction.

        Nested use joins the outer transaction.
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            if self._connection.in_transaction:
                yield cursor
                return
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    def _get_current_time_str(self) -> str:
        """Get current UTC time as ISO string for database operations."""
        return format_timestamp(datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _decode_row(self, table: str, row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        record = dict(row)
        for column, default_factory in JSON_COLUMNS.get(table, {}).items():
            if column in record:
                record[column] = _parse_json(record[column], default_factory)
        for column in BOOL_COLUMNS & record.keys():
            if record[column] is not None:
                record[column] = bool(record[column])
        return _nest_joined(record)

    def _encode_value(self, table: str, column: str, value: Any) -> Any:
        json_columns = JSON_COLUMNS.get(table, {})
        if column in json_columns:
            return json.dumps(value if value is not None else json_columns[column]())
        if isinstance(value, bool):
            return int(value)
        return value

    def _get_row(self, cursor: sqlite3.Cursor, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
        return self._decode_row(table, cursor.fetchone())

    def _insert_row(self, cursor: sqlite3.Cursor, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row, omitting None values so column defaults apply."""
        record = {k: v for k, v in values.items() if v is not None}
        record.setdefault("id", str(uuid.uuid4()))
        now = self._get_current_time_str()
        for column in TIMESTAMP_COLUMNS.get(table, ()):
            record.setdefault(column, now)

        columns = list(record)
        cursor.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [self._encode_value(table, c, record[c]) for c in columns],
        )
        return self._get_row(cursor, table, record["id"])

    def _update_row(self, cursor: sqlite3.Cursor, table: str, row_id: str,
                    updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply whitelisted column updates and refresh updated_at."""
        fields = {
            k: v for k, v in updates.items()
            if k in UPDATABLE_COLUMNS[table] and not (v is None and k in NOT_NULL_COLUMNS)
        }
        if "updated_at" in TIMESTAMP_COLUMNS.get(table, ()):
            fields["updated_at"] = self._get_current_time_str()

        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [self._encode_value(table, c, v) for c, v in fields.items()] + [row_id],
        )
        if cursor.rowcount == 0:
            return None
        return self._get_row(cursor, table, row_id)

    def _delete_row(self, table: str, row_id: str, label: str) -> Dict[str, Any]:
        with self._transaction() as cursor:
            existing = self._get_row(cursor, table, row_id)
            if not existing:
                return {"success": False, "error": f"{label} not found"}
            try:
                cursor.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            except sqlite3.Error as e:
                logger.error(f"Database error deleting {table} {row_id}: {e}")
                raise
            return {"success": True, "deleted": existing}

    def _fetch_page(self, table: str, select_sql: str, from_sql: str, where: List[str],
                    params: List[Any], order_by: str, limit: Optional[int] = None,
                    offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Run a filtered SELECT returning (rows, total matching count)."""
        where_sql = f" WHERE {' AND '.join(where)}" if where else ""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT COUNT(*) {from_sql}{where_sql}", params)
            total = cursor.fetchone()[0]

            sql = f"SELECT {select_sql} {from_sql}{where_sql} ORDER BY {order_by}"
            page_params = list(params)
            if limit is not None:
                sql += " LIMIT ? OFFSET ?"
                page_params += [limit, offset]
            cursor.execute(sql, page_params)
            rows = [self._decode_row(table, row) for row in cursor.fetchall()]
        return rows, total

    @staticmethod
    def _search_clause(columns: Iterable[str], term: str, params: List[Any]) -> str:
        pattern = f"%{escape_like(term)}%"
        clauses = []
        for column in columns:
            clauses.append(f"{column} LIKE ? ESCAPE '\\'")
            params.append(pattern)
        return f"({' OR '.join(clauses)})"

    @staticmethod
    def _in_clause(column: str, values: List[Any], params: List[Any]) -> str:
        params.extend(values)
        return f"{column} IN ({', '.join('?' for _ in values)})"

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @timed_query("next_position")
    def next_position(self, table: str, cursor: Optional[sqlite3.Cursor] = None, **scope: Any) -> int:
        """
        Next free position within a parent scope: MAX(position) + 1, or 0.

        Callers that insert afterwards must pass the cursor of their open
        transaction so the read and the insert are one atomic unit.

        Args:
            table: Table with a position column listed in POSITION_SCOPES
            cursor: Cursor of an open transaction
            **scope: Values for the table's scope keys

        Returns:
            The position to assign to the next row in that scope
        """
        keys = POSITION_SCOPES[table]
        missing = [k for k in keys if k not in scope]
        if missing:
            raise ValueError(f"Missing position scope for {table}: {', '.join(missing)}")

        sql = f"SELECT COALESCE(MAX(position), -1) + 1 FROM {table}"
        if keys:
            sql += " WHERE " + " AND ".join(f"{k} IS ?" for k in keys)
        with self._connection_lock:
            cur = cursor or self._connection.cursor()
            cur.execute(sql, [scope[k] for k in keys])
            return cur.fetchone()[0]

    def _resolve_position(self, cursor, table: str, position: Optional[int], **scope) -> int:
        if position is not None:
            return position
        return self.next_position(table, cursor, **scope)

    # ------------------------------------------------------------------
    # Areas
    # ------------------------------------------------------------------

    def create_area(self, name: str, type: str, color: Optional[str] = None,
                    icon: Optional[str] = None, position: Optional[int] = None) -> Dict[str, Any]:
        """Create an area at the end of the global area ordering."""
        with self._transaction() as cursor:
            return self._insert_row(cursor, "areas", {
                "name": name,
                "type": type,
                "color": color,
                "icon": icon,
                "position": self._resolve_position(cursor, "areas", position),
            })

    def get_area(self, area_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            return self._get_row(self._connection.cursor(), "areas", area_id)

    def find_area_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM areas WHERE name = ? ORDER BY position LIMIT 1", (name,))
            return self._decode_row("areas", cursor.fetchone())

    @timed_query("list_areas")
    def list_areas(self, search: Optional[str] = None, limit: Optional[int] = None,
                   offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if search:
            where.append(self._search_clause(["name"], search, params))
        return self._fetch_page("areas", "*", "FROM areas", where, params,
                                "position ASC, created_at ASC", limit, offset)

    def update_area(self, area_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._transaction() as cursor:
            return self._update_row(cursor, "areas", area_id, updates)

    def delete_area(self, area_id: str) -> Dict[str, Any]:
        """Delete an area; projects and everything below them cascade."""
        return self._delete_row("areas", area_id, "Area")

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, area_id: str, title: str, description: Optional[str] = None,
                       status: Optional[str] = None, target_date: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None,
                       position: Optional[int] = None) -> Dict[str, Any]:
        """
        Create a project together with its board.

        The board is named "<title> Board" and gets the default columns.
        Both rows are written in one transaction.

        Returns:
            The project dict with the created board under "board"
        """
        with self._transaction() as cursor:
            project = self._insert_row(cursor, "projects", {
                "area_id": area_id,
                "title": title,
                "description": description,
                "status": status,
                "target_date": target_date,
                "metadata": metadata if metadata is not None else {},
                "position": self._resolve_position(cursor, "projects", position, area_id=area_id),
            })
            board = self._insert_row(cursor, "boards", {
                "project_id": project["id"],
                "name": f"{title} Board",
                "column_config": DEFAULT_COLUMN_CONFIG,
                "position": self.next_position("boards", cursor, project_id=project["id"]),
            })
        project["board"] = board
        return project

    _PROJECT_SELECT = "p.*, a.name AS area__name, a.color AS area__color"
    _PROJECT_FROM = "FROM projects p LEFT JOIN areas a ON a.id = p.area_id"

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Project with its area name and colour."""
        rows, _ = self._fetch_page("projects", self._PROJECT_SELECT, self._PROJECT_FROM,
                                   ["p.id = ?"], [project_id], "p.id")
        return rows[0] if rows else None

    def project_exists(self, project_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,))
            return cursor.fetchone() is not None

    def find_project_by_title(self, area_id: str, title: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM projects WHERE area_id = ? AND title = ? LIMIT 1",
                           (area_id, title))
            return self._decode_row("projects", cursor.fetchone())

    @timed_query("list_projects")
    def list_projects(self, status: Optional[List[str]] = None, area_id: Optional[str] = None,
                      search: Optional[str] = None, limit: Optional[int] = None,
                      offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if status:
            where.append(self._in_clause("p.status", status, params))
        if area_id:
            where.append("p.area_id = ?")
            params.append(area_id)
        if search:
            where.append(self._search_clause(["p.title", "p.description"], search, params))
        return self._fetch_page("projects", self._PROJECT_SELECT, self._PROJECT_FROM, where, params,
                                "p.position ASC, p.created_at ASC", limit, offset)

    def get_project_task_counts(self) -> Dict[str, Dict[str, int]]:
        """Map project id to {"total", "completed"} task counts."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT b.project_id AS project_id,
                       COUNT(t.id) AS total,
                       SUM(CASE WHEN t.status = 'done' THEN 1 ELSE 0 END) AS completed
                FROM boards b LEFT JOIN tasks t ON t.board_id = b.id
                GROUP BY b.project_id
            """)
            return {
                row["project_id"]: {"total": row["total"], "completed": row["completed"] or 0}
                for row in cursor.fetchall()
            }

    def update_project(self, project_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._transaction() as cursor:
            if not self._update_row(cursor, "projects", project_id, updates):
                return None
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> Dict[str, Any]:
        """Delete a project; milestones, board, tasks and PRDs cascade."""
        return self._delete_row("projects", project_id, "Project")

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def create_milestone(self, project_id: str, title: str, description: Optional[str] = None,
                         status: Optional[str] = None, target_date: Optional[str] = None,
                         position: Optional[int] = None) -> Dict[str, Any]:
        with self._transaction() as cursor:
            return self._insert_row(cursor, "milestones", {
                "project_id": project_id,
                "title": title,
                "description": description,
                "status": status,
                "target_date": target_date,
                "position": self._resolve_position(cursor, "milestones", position, project_id=project_id),
            })

    _MILESTONE_SELECT = "m.*, p.title AS project__title"
    _MILESTONE_FROM = "FROM milestones m LEFT JOIN projects p ON p.id = m.project_id"

    def get_milestone(self, milestone_id: str) -> Optional[Dict[str, Any]]:
        rows, _ = self._fetch_page("milestones", self._MILESTONE_SELECT, self._MILESTONE_FROM,
                                   ["m.id = ?"], [milestone_id], "m.id")
        return rows[0] if rows else None

    def find_milestone_by_title(self, project_id: str, title: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM milestones WHERE project_id = ? AND title = ? LIMIT 1",
                           (project_id, title))
            return self._decode_row("milestones", cursor.fetchone())

    def list_milestones(self, status: Optional[List[str]] = None, project_id: Optional[str] = None,
                        search: Optional[str] = None, limit: Optional[int] = None,
                        offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if status:
            where.append(self._in_clause("m.status", status, params))
        if project_id:
            where.append("m.project_id = ?")
            params.append(project_id)
        if search:
            where.append(self._search_clause(["m.title", "m.description"], search, params))
        return self._fetch_page("milestones", self._MILESTONE_SELECT, self._MILESTONE_FROM, where,
                                params, "m.position ASC, m.created_at ASC", limit, offset)

    def update_milestone(self, milestone_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._transaction() as cursor:
            if not self._update_row(cursor, "milestones", milestone_id, updates):
                return None
        return self.get_milestone(milestone_id)

    def delete_milestone(self, milestone_id: str) -> Dict[str, Any]:
        """Delete a milestone; its tasks keep living with milestone_id cleared."""
        return self._delete_row("milestones", milestone_id, "Milestone")

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    def create_board(self, project_id: str, name: str,
                     column_config: Optional[List[Dict[str, Any]]] = None,
                     position: Optional[int] = None) -> Dict[str, Any]:
        """
        Create the board of a project.

        Raises:
            BoardExistsError: If the project already has a board
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT 1 FROM boards WHERE project_id = ?", (project_id,))
            if cursor.fetchone():
                raise BoardExistsError("Project already has a board")
            return self._insert_row(cursor, "boards", {
                "project_id": project_id,
                "name": name,
                "column_config": column_config or DEFAULT_COLUMN_CONFIG,
                "position": self._resolve_position(cursor, "boards", position, project_id=project_id),
            })

    _BOARD_SELECT = "b.*, p.title AS project__title"
    _BOARD_FROM = "FROM boards b LEFT JOIN projects p ON p.id = b.project_id"

    def get_board(self, board_id: str, include_tasks: bool = False) -> Optional[Dict[str, Any]]:
        """Board with its project title, and its tasks when requested."""
        rows, _ = self._fetch_page("boards", self._BOARD_SELECT, self._BOARD_FROM,
                                   ["b.id = ?"], [board_id], "b.id")
        if not rows:
            return None
        board = rows[0]
        if include_tasks:
            board["tasks"] = self.get_board_tasks(board_id)
        return board

    def get_board_by_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM boards WHERE project_id = ?", (project_id,))
            return self._decode_row("boards", cursor.fetchone())

    def get_board_tasks(self, board_id: str) -> List[Dict[str, Any]]:
        rows, _ = self._fetch_page(
            "tasks", "t.*, ag.name AS agent__name",
            "FROM tasks t LEFT JOIN agents ag ON ag.id = t.assigned_agent_id",
            ["t.board_id = ?"], [board_id], "t.column_id ASC, t.position ASC",
        )
        return rows

    def list_boards(self, project_id: Optional[str] = None, search: Optional[str] = None,
                    limit: Optional[int] = None, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if project_id:
            where.append("b.project_id = ?")
            params.append(project_id)
        if search:
            where.append(self._search_clause(["b.name"], search, params))
        return self._fetch_page("boards", self._BOARD_SELECT, self._BOARD_FROM, where, params,
                                "b.position ASC, b.created_at ASC", limit, offset)

    def update_board(self, board_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._transaction() as cursor:
            if not self._update_row(cursor, "boards", board_id, updates):
                return None
        return self.get_board(board_id)

    def delete_board(self, board_id: str) -> Dict[str, Any]:
        return self._delete_row("boards", board_id, "Board")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _insert_task(self, cursor: sqlite3.Cursor, board_id: str, title: str,
                     **fields: Any) -> Dict[str, Any]:
        """
        Insert a task inside an open transaction.

        The column defaults to the status (or backlog); the status defaults to
        whatever the column implies. The position is drawn from the
        (board_id, column_id) counter unless given.
        """
        status = fields.get("status")
        column_id = fields.get("column_id") or status or "backlog"
        status = status or status_for_column(column_id) or "backlog"
        position = fields.get("position")
        if position is None:
            position = self.next_position("tasks", cursor, board_id=board_id, column_id=column_id)

        return self._insert_row(cursor, "tasks", {
            "board_id": board_id,
            "title": title,
            "description": fields.get("description"),
            "status": status,
            "priority": fields.get("priority"),
            "column_id": column_id,
            "position": position,
            "milestone_id": fields.get("milestone_id"),
            "prd_id": fields.get("prd_id"),
            "assigned_agent_id": fields.get("assigned_agent_id"),
            "story_points": fields.get("story_points"),
            "ai_context": fields.get("ai_context") or {},
            "due_date": fields.get("due_date"),
            "completed_at": self._get_current_time_str() if status == "done" else None,
        })

    @timed_query("create_task")
    def create_task(self, board_id: str, title: str, **fields: Any) -> Dict[str, Any]:
        """
        Create a task at the end of its board column.

        Args:
            board_id: Owning board
            title: Task title
            **fields: description, status, priority, column_id, milestone_id,
                prd_id, assigned_agent_id, story_points, ai_context, due_date, position

        Returns:
            The created task row
        """
        with self._transaction() as cursor:
            return self._insert_task(cursor, board_id, title, **fields)

    def create_tasks(self, board_id: str, tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Create several tasks on one board atomically."""
        with self._transaction() as cursor:
            return [self._insert_task(cursor, board_id, **task) for task in tasks]

    def find_task_by_title(self, board_id: str, title: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tasks WHERE board_id = ? AND title = ? "
                           "ORDER BY created_at LIMIT 1", (board_id, title))
            return self._decode_row("tasks", cursor.fetchone())

    _TASK_DETAIL_SELECT = (
        "t.*, b.name AS board__name, b.project_id AS board__project_id, "
        "m.title AS milestone__title, ag.name AS agent__name"
    )
    _TASK_DETAIL_FROM = (
        "FROM tasks t "
        "LEFT JOIN boards b ON b.id = t.board_id "
        "LEFT JOIN milestones m ON m.id = t.milestone_id "
        "LEFT JOIN agents ag ON ag.id = t.assigned_agent_id"
    )

    def get_task(self, task_id: str, include_relations: bool = False) -> Optional[Dict[str, Any]]:
        """
        Fetch a task.

        Args:
            task_id: Task ID
            include_relations: Attach board, milestone, agent and subtasks

        Returns:
            Task dict or None
        """
        if not include_relations:
            with self._connection_lock:
                return self._get_row(self._connection.cursor(), "tasks", task_id)

        rows, _ = self._fetch_page("tasks", self._TASK_DETAIL_SELECT, self._TASK_DETAIL_FROM,
                                   ["t.id = ?"], [task_id], "t.id")
        if not rows:
            return None
        task = rows[0]
        task["subtasks"] = self.list_subtasks(task_id)
        return task

    @timed_query("list_tasks")
    def list_tasks(self, search: Optional[str] = None, status: Optional[List[str]] = None,
                   priority: Optional[List[str]] = None, board_id: Optional[str] = None,
                   milestone_id: Optional[str] = None, assigned_agent_id: Optional[str] = None,
                   prd_id: Optional[str] = None, limit: Optional[int] = None,
                   offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if search:
            where.append(self._search_clause(["t.title", "t.description"], search, params))
        if status:
            where.append(self._in_clause("t.status", status, params))
        if priority:
            where.append(self._in_clause("t.priority", priority, params))
        for column, value in (("t.board_id", board_id), ("t.milestone_id", milestone_id),
                              ("t.assigned_agent_id", assigned_agent_id), ("t.prd_id", prd_id)):
            if value:
                where.append(f"{column} = ?")
                params.append(value)
        return self._fetch_page("tasks", self._TASK_DETAIL_SELECT, self._TASK_DETAIL_FROM, where,
                                params, "t.position ASC, t.created_at ASC", limit, offset)

    def _apply_task_rules(self, cursor: sqlite3.Cursor, current: Dict[str, Any],
                          updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Derive column, status, completed_at and position for a task update.

        - a status without a column moves the task to the column of that status
        - a known column without a status sets that status
        - entering done stamps completed_at; any other status clears it
        - changing board or column appends the task to the target column
        """
        updates = {k: v for k, v in updates.items()
                   if not (v is None and k in ("status", "column_id", "board_id"))}
        new_status = updates.get("status")
        if new_status is None and updates.get("column_id"):
            new_status = status_for_column(updates["column_id"])
            if new_status:
                updates["status"] = new_status

        if new_status is not None:
            updates.setdefault("column_id", new_status)
            if new_status == "done" and current["status"] != "done":
                updates["completed_at"] = self._get_current_time_str()
            elif new_status != "done":
                updates["completed_at"] = None

        target_board = updates.get("board_id", current["board_id"])
        target_column = updates.get("column_id", current["column_id"])
        moved = (target_board, target_column) != (current["board_id"], current["column_id"])
        if moved and updates.get("position") is None:
            updates["position"] = self.next_position(
                "tasks", cursor, board_id=target_board, column_id=target_column
            )
        return updates

    @timed_query("update_task")
    def update_task(self, task_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update a task applying the status/column/completed_at rules.

        A task that leaves its column closes the gap behind it.

        Returns:
            The updated task, or None if it does not exist
        """
        with self._transaction() as cursor:
            current = self._get_row(cursor, "tasks", task_id)
            if not current:
                return None
            task = self._update_row(cursor, "tasks", task_id,
                                    self._apply_task_rules(cursor, current, updates))
            if (task["board_id"], task["column_id"]) != (current["board_id"], current["column_id"]):
                self._compact_column(cursor, current["board_id"], current["column_id"])
            return task

    def update_task_status(self, task_id: str, status: str) -> Optional[Dict[str, Any]]:
        """Set status; the column follows the status."""
        return self.update_task(task_id, {"status": status, "column_id": status})

    def assign_task(self, task_id: str, agent_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return self.update_task(task_id, {"assigned_agent_id": agent_id})

    def _column_task_ids(self, cursor: sqlite3.Cursor, board_id: str, column_id: str,
                         exclude: Optional[str] = None) -> List[str]:
        cursor.execute(
            "SELECT id FROM tasks WHERE board_id = ? AND column_id = ? AND id IS NOT ? "
            "ORDER BY position ASC, created_at ASC",
            (board_id, column_id, exclude),
        )
        return [row["id"] for row in cursor.fetchall()]

    def _renumber(self, cursor: sqlite3.Cursor, ordered_ids: List[str]) -> None:
        for index, row_id in enumerate(ordered_ids):
            cursor.execute("UPDATE tasks SET position = ? WHERE id = ?", (index, row_id))

    def _compact_column(self, cursor: sqlite3.Cursor, board_id: str, column_id: str) -> None:
        self._renumber(cursor, self._column_task_ids(cursor, board_id, column_id))

    @timed_query("move_task")
    def move_task(self, task_id: str, column_id: Optional[str] = None,
                  board_id: Optional[str] = None,
                  position: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Move a task to another column, board or slot.

        Without a position the task is appended to the target column. With a
        position it is inserted at that index (clamped) and the target column
        is renumbered 0..n-1. The source column is compacted when the task
        leaves it.

        Returns:
            The moved task, or None if it does not exist
        """
        with self._transaction() as cursor:
            current = self._get_row(cursor, "tasks", task_id)
            if not current:
                return None

            target_board = board_id or current["board_id"]
            target_column = column_id or current["column_id"]
            same_scope = (target_board, target_column) == (current["board_id"], current["column_id"])

            updates: Dict[str, Any] = {"board_id": target_board, "column_id": target_column}
            mapped_status = status_for_column(target_column)
            if mapped_status:
                updates["status"] = mapped_status
            updates = self._apply_task_rules(cursor, current, updates)

            if position is None:
                if same_scope:
                    updates.pop("position", None)
                task = self._update_row(cursor, "tasks", task_id, updates)
            else:
                siblings = self._column_task_ids(cursor, target_board, target_column, exclude=task_id)
                index = max(0, min(position, len(siblings)))
                siblings.insert(index, task_id)
                updates.pop("position", None)
                self._update_row(cursor, "tasks", task_id, updates)
                self._renumber(cursor, siblings)
                task = self._get_row(cursor, "tasks", task_id)

            if not same_scope:
                self._compact_column(cursor, current["board_id"], current["column_id"])
            return task

    def reorder_tasks(self, board_id: str, column_id: str, ordered_ids: List[str]) -> List[Dict[str, Any]]:
        """
        Rewrite positions of a column in the given order.

        Tasks of the column that are missing from `ordered_ids` keep their
        relative order after the listed ones; ids from other columns are ignored.
        """
        with self._transaction() as cursor:
            existing = self._column_task_ids(cursor, board_id, column_id)
            known = set(existing)
            listed = [task_id for task_id in dict.fromkeys(ordered_ids) if task_id in known]
            listed_set = set(listed)
            remainder = [task_id for task_id in existing if task_id not in listed_set]
            self._renumber(cursor, listed + remainder)
            now = self._get_current_time_str()
            cursor.execute("UPDATE tasks SET updated_at = ? WHERE board_id = ? AND column_id = ?",
                           (now, board_id, column_id))
        rows, _ = self.list_tasks(board_id=board_id)
        return [row for row in rows if row["column_id"] == column_id]

    def delete_task(self, task_id: str) -> Dict[str, Any]:
        """Delete a task and close the gap it leaves in its column."""
        with self._transaction() as cursor:
            result = self._delete_row("tasks", task_id, "Task")
            if result["success"]:
                deleted = result["deleted"]
                self._compact_column(cursor, deleted["board_id"], deleted["column_id"])
            return result

    def get_related_tasks(self, task: Dict[str, Any], limit: int = 10) -> List[Dict[str, Any]]:
        """
        Tasks related to `task`: milestone siblings first, then board siblings.

        Board siblings are only added while fewer than 5 milestone siblings were found.
        """
        related: List[Dict[str, Any]] = []
        with self._connection_lock:
            cursor = self._connection.cursor()
            if task.get("milestone_id"):
                cursor.execute(
                    "SELECT * FROM tasks WHERE milestone_id = ? AND id != ? ORDER BY position LIMIT ?",
                    (task["milestone_id"], task["id"], limit),
                )
                related = [self._decode_row("tasks", row) for row in cursor.fetchall()]
            if len(related) < 5:
                seen = {t["id"] for t in related} | {task["id"]}
                cursor.execute(
                    "SELECT * FROM tasks WHERE board_id = ? AND id != ? ORDER BY position LIMIT ?",
                    (task["board_id"], task["id"], limit),
                )
                for row in cursor.fetchall():
                    if len(related) >= limit:
                        break
                    if row["id"] not in seen:
                        related.append(self._decode_row("tasks", row))
        return related

    # ------------------------------------------------------------------
    # Subtasks
    # ------------------------------------------------------------------

    def create_subtask(self, task_id: str, title: str, completed: bool = False,
                       position: Optional[int] = None) -> Dict[str, Any]:
        with self._transaction() as cursor:
            return self._insert_row(cursor, "subtasks", {
                "task_id": task_id,
                "title": title,
                "completed": completed,
                "completed_at": self._get_current_time_str() if completed else None,
                "position": self._resolve_position(cursor, "subtasks", position, task_id=task_id),
            })

    def get_subtask(self, subtask_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            return self._get_row(self._connection.cursor(), "subtasks", subtask_id)

    def list_subtasks(self, task_id: str) -> List[Dict[str, Any]]:
        rows, _ = self._fetch_page("subtasks", "*", "FROM subtasks", ["task_id = ?"], [task_id],
                                   "position ASC, created_at ASC")
        return rows

    def update_subtask(self, subtask_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update a subtask; toggling `completed` stamps or clears completed_at."""
        with self._transaction() as cursor:
            current = self._get_row(cursor, "subtasks", subtask_id)
            if not current:
                return None
            updates = dict(updates)
            completed = updates.get("completed")
            if completed is not None and bool(completed) != current["completed"]:
                updates["completed_at"] = self._get_current_time_str() if completed else None
            return self._update_row(cursor, "subtasks", subtask_id, updates)

    def delete_subtask(self, subtask_id: str) -> Dict[str, Any]:
        return self._delete_row("subtasks", subtask_id, "Subtask")

    # ------------------------------------------------------------------
    # PRDs
    # ------------------------------------------------------------------

    def create_prd(self, project_id: str, title: str, content: Optional[str] = None,
                   status: Optional[str] = None, sections: Optional[List[Dict[str, Any]]] = None,
                   file_path: Optional[str] = None) -> Dict[str, Any]:
        with self._transaction() as cursor:
            return self._insert_row(cursor, "prds", {
                "project_id": project_id,
                "title": title,
                "content": content,
                "status": status,
                "sections": sections if sections is not None else [],
                "file_path": file_path,
            })

    _PRD_SELECT = "r.*, p.title AS project__title"
    _PRD_FROM = "FROM prds r LEFT JOIN projects p ON p.id = r.project_id"

    def get_prd(self, prd_id: str, include_relations: bool = False) -> Optional[Dict[str, Any]]:
        """PRD with its project title; linked tasks and versions when requested."""
        rows, _ = self._fetch_page("prds", self._PRD_SELECT, self._PRD_FROM,
                                   ["r.id = ?"], [prd_id], "r.id")
        if not rows:
            return None
        prd = rows[0]
        if include_relations:
            prd["tasks"] = self.get_prd_tasks(prd_id)
            prd["versions"] = self.list_prd_versions(prd_id)
        return prd

    def get_prd_tasks(self, prd_id: str) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT id, title, status, priority, column_id FROM tasks "
                "WHERE prd_id = ? ORDER BY position ASC, created_at ASC",
                (prd_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def list_prds(self, project_id: Optional[str] = None, status: Optional[List[str]] = None,
                  search: Optional[str] = None, limit: Optional[int] = None,
                  offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if project_id:
            where.append("r.project_id = ?")
            params.append(project_id)
        if status:
            where.append(self._in_clause("r.status", status, params))
        if search:
            where.append(self._search_clause(["r.title", "r.content"], search, params))
        return self._fetch_page("prds", self._PRD_SELECT, self._PRD_FROM, where, params,
                                "r.updated_at DESC", limit, offset)

    def update_prd(self, prd_id: str, updates: Dict[str, Any], create_version: bool = False,
                   agent_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Update a PRD, snapshotting the previous state first.

        A single version row is written when `create_version` is set or when
        the content or sections change.

        Args:
            prd_id: PRD to update
            updates: Column updates
            create_version: Force a snapshot even without content changes
            agent_id: Recorded as the snapshot's creator

        Returns:
            The updated PRD or None if it does not exist
        """
        with self._transaction() as cursor:
            current = self._get_row(cursor, "prds", prd_id)
            if not current:
                return None

            content_changed = "content" in updates and updates["content"] != current["content"]
            sections_changed = (
                updates.get("sections") is not None and updates["sections"] != current["sections"]
            )
            if create_version or content_changed or sections_changed:
                cursor.execute(
                    "SELECT COALESCE(MAX(version_number), 0) + 1 FROM prd_versions WHERE prd_id = ?",
                    (prd_id,),
                )
                self._insert_row(cursor, "prd_versions", {
                    "prd_id": prd_id,
                    "version_number": cursor.fetchone()[0],
                    "title": current["title"],
                    "content": current["content"],
                    "sections": current["sections"],
                    "status": current["status"],
                    "created_by": agent_id,
                })
            self._update_row(cursor, "prds", prd_id, updates)
        return self.get_prd(prd_id)

    def list_prd_versions(self, prd_id: str) -> List[Dict[str, Any]]:
        rows, _ = self._fetch_page("prd_versions", "*", "FROM prd_versions", ["prd_id = ?"],
                                   [prd_id], "version_number DESC")
        return rows

    def delete_prd(self, prd_id: str) -> Dict[str, Any]:
        return self._delete_row("prds", prd_id, "PRD")

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def insert_agent(self, name: str, api_key_hash: str, type: str = "task",
                     capabilities: Optional[List[str]] = None, is_active: bool = True) -> Dict[str, Any]:
        with self._transaction() as cursor:
            return self._insert_row(cursor, "agents", {
                "name": name,
                "type": type,
                "capabilities": capabilities or [],
                "api_key_hash": api_key_hash,
                "is_active": is_active,
            })

    def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            return self._get_row(self._connection.cursor(), "agents", agent_id)

    def get_agent_by_key_hash(self, api_key_hash: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM agents WHERE api_key_hash = ?", (api_key_hash,))
            return self._decode_row("agents", cursor.fetchone())

    def list_agents(self, active_only: bool = False) -> List[Dict[str, Any]]:
        where = ["is_active = 1"] if active_only else []
        rows, _ = self._fetch_page("agents", "*", "FROM agents", where, [], "created_at ASC")
        return rows

    def update_agent(self, agent_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._transaction() as cursor:
            return self._update_row(cursor, "agents", agent_id, updates)

    def touch_agent_last_active(self, agent_id: str) -> None:
        with self._connection_lock:
            self._connection.cursor().execute(
                "UPDATE agents SET last_active_at = ? WHERE id = ?",
                (self._get_current_time_str(), agent_id),
            )

    # ------------------------------------------------------------------
    # Activity logs
    # ------------------------------------------------------------------

    def insert_activity(self, entity_type: str, entity_id: str, action: str,
                        payload: Optional[Dict[str, Any]] = None, agent_id: Optional[str] = None,
                        user_initiated: bool = True) -> str:
        """Append an activity row and return its id."""
        with self._transaction() as cursor:
            row = self._insert_row(cursor, "activity_logs", {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "agent_id": agent_id,
                "user_initiated": user_initiated,
                "action": action,
                "payload": payload or {},
            })
        return row["id"]

    @timed_query("query_activity")
    def query_activity(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                       agent_id: Optional[str] = None, user_initiated: Optional[bool] = None,
                       action: Optional[str] = None, start_date: Optional[str] = None,
                       end_date: Optional[str] = None, limit: Optional[int] = 50,
                       offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Filtered activity entries, newest first, with the acting agent's name."""
        where: List[str] = []
        params: List[Any] = []
        for column, value in (("l.entity_type", entity_type), ("l.entity_id", entity_id),
                              ("l.agent_id", agent_id), ("l.action", action)):
            if value:
                where.append(f"{column} = ?")
                params.append(value)
        if user_initiated is not None:
            where.append("l.user_initiated = ?")
            params.append(int(user_initiated))
        if start_date:
            where.append("l.created_at >= ?")
            params.append(start_date)
        if end_date:
            where.append("l.created_at <= ?")
            params.append(end_date)
        return self._fetch_page(
            "activity_logs", "l.*, ag.name AS agent__name",
            "FROM activity_logs l LEFT JOIN agents ag ON ag.id = l.agent_id",
            where, params, "l.created_at DESC", limit, offset,
        )

    def delete_activity_older_than(self, cutoff: datetime) -> int:
        """Delete activity rows created before `cutoff`; returns the count."""
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM activity_logs WHERE created_at < ?", (format_timestamp(cutoff),))
            return cursor.rowcount

    def get_agent_activity_counts(self, start: str, end: str) -> Dict[str, Dict[str, int]]:
        """Per-agent action and task-creation counts within [start, end]."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT agent_id,
                       COUNT(*) AS actions,
                       SUM(CASE WHEN action = 'create' AND entity_type = 'tasks' THEN 1 ELSE 0 END)
                           AS tasks_created
                FROM activity_logs
                WHERE agent_id IS NOT NULL AND created_at >= ? AND created_at <= ?
                GROUP BY agent_id
            """, (start, end))
            return {
                row["agent_id"]: {"actions": row["actions"], "tasks_created": row["tasks_created"] or 0}
                for row in cursor.fetchall()
            }

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def insert_report(self, type: str, period_start: str, period_end: str,
                      content: Dict[str, Any]) -> Dict[str, Any]:
        with self._transaction() as cursor:
            return self._insert_row(cursor, "reports", {
                "type": type,
                "period_start": period_start,
                "period_end": period_end,
                "content": content,
            })

    def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            return self._get_row(self._connection.cursor(), "reports", report_id)

    def list_reports(self, type: Optional[str] = None, limit: Optional[int] = None,
                     offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where: List[str] = []
        params: List[Any] = []
        if type:
            where.append("type = ?")
            params.append(type)
        return self._fetch_page("reports", "*", "FROM reports", where, params,
                                "generated_at DESC", limit, offset)

    def delete_report(self, report_id: str) -> Dict[str, Any]:
        return self._delete_row("reports", report_id, "Report")

    # ------------------------------------------------------------------
    # Aggregates for reports, search and monitoring
    # ------------------------------------------------------------------

    def get_tasks_in_range(self, status: str, field: str, start: str,
                           end: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Tasks with `status` whose `field` timestamp falls in [start, end].

        Each row carries project__title and area__name from its board's project.
        """
        if field not in ("completed_at", "updated_at"):
            raise ValueError(f"Unsupported range field: {field}")
        where = ["t.status = ?", f"t.{field} >= ?"]
        params: List[Any] = [status, start]
        if end is not None:
            where.append(f"t.{field} <= ?")
            params.append(end)
        rows, _ = self._fetch_page(
            "tasks",
            "t.*, p.id AS project__id, p.title AS project__title, a.name AS area__name",
            "FROM tasks t LEFT JOIN boards b ON b.id = t.board_id "
            "LEFT JOIN projects p ON p.id = b.project_id "
            "LEFT JOIN areas a ON a.id = p.area_id",
            where, params, f"t.{field} ASC",
        )
        return rows

    def get_milestone_progress_rows(self) -> List[Dict[str, Any]]:
        """Milestones with project title and total/completed task counts."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT m.*, p.title AS project_title,
                       COUNT(t.id) AS tasks_total,
                       SUM(CASE WHEN t.status = 'done' THEN 1 ELSE 0 END) AS tasks_completed
                FROM milestones m
                LEFT JOIN projects p ON p.id = m.project_id
                LEFT JOIN tasks t ON t.milestone_id = m.id
                GROUP BY m.id
                ORDER BY p.title ASC, m.position ASC
            """)
            rows = []
            for row in cursor.fetchall():
                record = dict(row)
                record["tasks_completed"] = record["tasks_completed"] or 0
                rows.append(record)
            return rows

    def get_completed_between(self, table: str, start: str, end: str) -> List[Dict[str, Any]]:
        """Projects or milestones marked completed with updated_at in [start, end]."""
        if table not in ("projects", "milestones"):
            raise ValueError(f"Unsupported table: {table}")
        rows, _ = self._fetch_page(
            table, "*", f"FROM {table}",
            ["status = 'completed'", "updated_at >= ?", "updated_at <= ?"],
            [start, end], "updated_at ASC",
        )
        return rows

    def count_rows(self, table: str, status: Optional[List[str]] = None) -> int:
        if table not in POSITION_SCOPES:
            raise ValueError(f"Unsupported table: {table}")
        sql = f"SELECT COUNT(*) FROM {table}"
        params: List[Any] = []
        if status:
            sql += " WHERE " + self._in_clause("status", status, params)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(sql, params)
            return cursor.fetchone()[0]

    def get_task_stats(self) -> Dict[str, int]:
        today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN status = 'done' AND completed_at >= ? THEN 1 ELSE 0 END)
                           AS completed_today
                FROM tasks
            """, (format_timestamp(today_start),))
            row = cursor.fetchone()
            return {"total": row["total"], "completed_today": row["completed_today"] or 0}

    def search_entities(self, entity_type: str, term: str,
                        limit: int) -> Tuple[List[Dict[str, Any]], int]:
        """
        Case-insensitive substring search over one entity type.

        Rows are normalised to id/title/description/status plus a parent
        reference, ready for scoring.
        """
        queries = {
            "areas": ("a.id, a.name AS title, NULL AS description, a.type AS status",
                      "FROM areas a", ["a.name"]),
            "projects": ("p.id, p.title, p.description, p.status, "
                         "'area' AS parent__type, a.id AS parent__id, a.name AS parent__title",
                         "FROM projects p LEFT JOIN areas a ON a.id = p.area_id",
                         ["p.title", "p.description"]),
            "milestones": ("m.id, m.title, m.description, m.status, "
                           "'project' AS parent__type, p.id AS parent__id, p.title AS parent__title",
                           "FROM milestones m LEFT JOIN projects p ON p.id = m.project_id",
                           ["m.title", "m.description"]),
            "tasks": ("t.id, t.title, t.description, t.status, "
                      "'board' AS parent__type, b.id AS parent__id, b.name AS parent__title",
                      "FROM tasks t LEFT JOIN boards b ON b.id = t.board_id",
                      ["t.title", "t.description"]),
            "prds": ("r.id, r.title, r.content AS description, r.status, "
                     "'project' AS parent__type, p.id AS parent__id, p.title AS parent__title",
                     "FROM prds r LEFT JOIN projects p ON p.id = r.project_id",
                     ["r.title", "r.content"]),
            "boards": ("b.id, b.name AS title, NULL AS description, NULL AS status, "
                       "'project' AS parent__type, p.id AS parent__id, p.title AS parent__title",
                       "FROM boards b LEFT JOIN projects p ON p.id = b.project_id",
                       ["b.name"]),
        }
        select_sql, from_sql, columns = queries[entity_type]
        params: List[Any] = []
        where = [self._search_clause(columns, term, params)]
        rows, total = self._fetch_page(entity_type, select_sql, from_sql, where, params,
                                       "title ASC", limit)
        for row in rows:
            if row.get("parent") and row["parent"].get("id") is None:
                row["parent"] = None
        return rows, total

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Drop every table and recreate the schema."""
        if self._connection:
            self.close()
        self._initialize_database(drop_existing=True)

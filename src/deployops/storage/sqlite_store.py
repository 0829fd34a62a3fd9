"""SQLite storage for projects, issues and their follow-up records.

Provides persistent storage for:
- Projects and project membership
- Issues, including the atomic status transitions used as the AI lock
- Follow-up tasks, notifications and the audit ledger
"""

import json
import sqlite3
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from ..config import get_settings
from ..models import (
    AuditLog,
    Issue,
    MemberRole,
    Notification,
    Project,
    ProjectMember,
    Task,
    TaskStatus,
)

ISSUE_COLUMNS = (
    "project_id",
    "requirement_id",
    "title",
    "description",
    "type",
    "priority",
    "status",
    "assigned_to",
    "pr_url",
    "external_id",
    "ai_explanation",
    "merged_at",
)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def _db_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    """SQLite-based storage for dashboard records."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize storage.

        Args:
            db_path: Path to SQLite database file. Defaults to config value.
        """
        self.db_path = Path(db_path or get_settings().database_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_conn()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    repo_url TEXT,
                    owner TEXT,
                    repo TEXT,
                    github_token TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS project_members (
                    project_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'developer',
                    PRIMARY KEY (project_id, user_id),
                    FOREIGN KEY (project_id) REFERENCES projects(id)
                );

                CREATE TABLE IF NOT EXISTS issues (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    requirement_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    type TEXT NOT NULL DEFAULT 'improvement',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    status TEXT NOT NULL DEFAULT 'open',
                    assigned_to TEXT NOT NULL DEFAULT 'ai',
                    pr_url TEXT,
                    external_id TEXT,
                    ai_explanation TEXT,
                    merged_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    FOREIGN KEY (project_id) REFERENCES projects(id)
                );

                CREATE INDEX IF NOT EXISTS idx_issues_project_id ON issues(project_id);
                CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_issues_external
                    ON issues(project_id, external_id) WHERE external_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    assigned_to TEXT,
                    issue_id TEXT,
                    pr_url TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_issue_id ON tasks(issue_id);

                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    project_id TEXT,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    link TEXT,
                    is_read INTEGER DEFAULT 0,
                    is_critical INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);

                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_id TEXT NOT NULL,
                    actor_name TEXT,
                    actor_type TEXT NOT NULL DEFAULT 'user',
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    project_id TEXT,
                    description TEXT DEFAULT '',
                    metadata_json TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_logs(project_id);
            """)
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Projects
    # =========================================================================

    def create_project(self, project: Project) -> Project:
        """Insert a project record."""
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO projects
                   (id, name, description, repo_url, owner, repo, github_token, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project.id,
                    project.name,
                    project.description,
                    project.repo_url,
                    project.owner,
                    project.repo,
                    project.github_token,
                    project.created_at.isoformat(),
                ),
            )
            conn.commit()
            return project
        finally:
            conn.close()

    def get_project(self, project_id: str) -> Optional[Project]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if not row:
                return None
            return Project(
                id=row["id"],
                name=row["name"],
                description=row["description"] or "",
                repo_url=row["repo_url"],
                owner=row["owner"],
                repo=row["repo"],
                github_token=row["github_token"],
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=_parse_dt(row["updated_at"]),
            )
        finally:
            conn.close()

    def add_member(self, project_id: str, user_id: str, role: MemberRole = MemberRole.DEVELOPER) -> ProjectMember:
        """Add or re-role a project member."""
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)
                   ON CONFLICT(project_id, user_id) DO UPDATE SET role = excluded.role""",
                (project_id, user_id, _db_value(role)),
            )
            conn.commit()
            return ProjectMember(project_id=project_id, user_id=user_id, role=role)
        finally:
            conn.close()

    def list_members(self, project_id: str) -> list[ProjectMember]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM project_members WHERE project_id = ? ORDER BY user_id",
                (project_id,),
            ).fetchall()
            return [
                ProjectMember(project_id=row["project_id"], user_id=row["user_id"], role=row["role"])
                for row in rows
            ]
        finally:
            conn.close()

    def get_member_role(self, project_id: str, user_id: str) -> Optional[str]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            ).fetchone()
            return row["role"] if row else None
        finally:
            conn.close()

    # =========================================================================
    # Issues
    # =========================================================================

    def create_issue(self, issue: Issue) -> Issue:
        """Insert an issue record."""
        conn = self._get_conn()
        try:
            values = [_db_value(getattr(issue, col)) for col in ISSUE_COLUMNS]
            conn.execute(
                f"""INSERT INTO issues (id, {', '.join(ISSUE_COLUMNS)}, created_at)
                    VALUES (?, {', '.join('?' for _ in ISSUE_COLUMNS)}, ?)""",
                [issue.id, *values, issue.created_at.isoformat()],
            )
            conn.commit()
            return issue
        finally:
            conn.close()

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM issues WHERE id = ?", (issue_id,)).fetchone()
            return self._row_to_issue(row) if row else None
        finally:
            conn.close()

    def list_issues(self, project_id: str, status: Optional[str] = None) -> list[Issue]:
        conn = self._get_conn()
        try:
            if status:
                rows = conn.execute(
                    "SELECT * FROM issues WHERE project_id = ? AND status = ? ORDER BY created_at DESC",
                    (project_id, _db_value(status)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM issues WHERE project_id = ? ORDER BY created_at DESC",
                    (project_id,),
                ).fetchall()
            return [self._row_to_issue(row) for row in rows]
        finally:
            conn.close()

    def find_issue_by_external_id(self, project_id: str, external_id: str) -> Optional[Issue]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM issues WHERE project_id = ? AND external_id = ?",
                (project_id, external_id),
            ).fetchone()
            return self._row_to_issue(row) if row else None
        finally:
            conn.close()

    def find_issue_by_pr_url(self, project_id: str, pr_url: str) -> Optional[Issue]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM issues WHERE project_id = ? AND pr_url = ?",
                (project_id, pr_url),
            ).fetchone()
            return self._row_to_issue(row) if row else None
        finally:
            conn.close()

    def update_issue(
        self,
        issue_id: str,
        expected_status: Optional[Iterable[str]] = None,
        **fields,
    ) -> bool:
        """Update issue columns, optionally conditioned on the current status.

        The update is a single ``UPDATE ... WHERE status IN (...)`` statement,
        so concurrent callers racing on the same transition see exactly one
        winner.

        Args:
            issue_id: Issue to update
            expected_status: If given, only update when the current status is
                one of these values
            **fields: Column values to set. ``None`` clears a column.

        Returns:
            True if a row was updated
        """
        unknown = set(fields) - set(ISSUE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown issue fields: {', '.join(sorted(unknown))}")

        conn = self._get_conn()
        try:
            updates = ["updated_at = ?"]
            params = [datetime.utcnow().isoformat()]

            for column, value in fields.items():
                updates.append(f"{column} = ?")
                params.append(_db_value(value))

            where = "id = ?"
            params.append(issue_id)

            if expected_status is not None:
                expected = [_db_value(s) for s in expected_status]
                where += f" AND status IN ({', '.join('?' for _ in expected)})"
                params.extend(expected)

            cursor = conn.execute(
                f"UPDATE issues SET {', '.join(updates)} WHERE {where}",
                params,
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def _row_to_issue(self, row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            project_id=row["project_id"],
            requirement_id=row["requirement_id"],
            title=row["title"],
            description=row["description"] or "",
            type=row["type"],
            priority=row["priority"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            pr_url=row["pr_url"],
            external_id=row["external_id"],
            ai_explanation=row["ai_explanation"],
            merged_at=_parse_dt(row["merged_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(self, task: Task) -> Task:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO tasks
                   (id, project_id, title, description, status, priority,
                    assigned_to, issue_id, pr_url, created_by, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id,
                    task.project_id,
                    task.title,
                    task.description,
                    _db_value(task.status),
                    _db_value(task.priority),
                    task.assigned_to,
                    task.issue_id,
                    task.pr_url,
                    task.created_by,
                    task.created_at.isoformat(),
                ),
            )
            conn.commit()
            return task
        finally:
            conn.close()

    def list_tasks(self, project_id: Optional[str] = None, issue_id: Optional[str] = None) -> list[Task]:
        conn = self._get_conn()
        try:
            query = "SELECT * FROM tasks WHERE 1 = 1"
            params = []
            if project_id:
                query += " AND project_id = ?"
                params.append(project_id)
            if issue_id:
                query += " AND issue_id = ?"
                params.append(issue_id)
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
            return [
                Task(
                    id=row["id"],
                    project_id=row["project_id"],
                    title=row["title"],
                    description=row["description"] or "",
                    status=row["status"],
                    priority=row["priority"],
                    assigned_to=row["assigned_to"],
                    issue_id=row["issue_id"],
                    pr_url=row["pr_url"],
                    created_by=row["created_by"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def complete_tasks_for_issue(self, issue_id: str) -> int:
        """Mark every open task linked to an issue as done.

        Returns:
            Number of tasks updated
        """
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "UPDATE tasks SET status = ? WHERE issue_id = ? AND status != ?",
                (TaskStatus.DONE.value, issue_id, TaskStatus.DONE.value),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # =========================================================================
    # Notifications
    # =========================================================================

    def create_notification(self, notification: Notification) -> Notification:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO notifications
                   (id, user_id, project_id, type, message, link, is_read, is_critical, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    notification.id,
                    notification.user_id,
                    notification.project_id,
                    _db_value(notification.type),
                    notification.message,
                    notification.link,
                    int(notification.is_read),
                    int(notification.is_critical),
                    notification.created_at.isoformat(),
                ),
            )
            conn.commit()
            return notification
        finally:
            conn.close()

    def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        conn = self._get_conn()
        try:
            query = "SELECT * FROM notifications WHERE user_id = ?"
            if unread_only:
                query += " AND is_read = 0"
            rows = conn.execute(
                query + " ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
            return [
                Notification(
                    id=row["id"],
                    user_id=row["user_id"],
                    project_id=row["project_id"],
                    type=row["type"],
                    message=row["message"],
                    link=row["link"],
                    is_read=bool(row["is_read"]),
                    is_critical=bool(row["is_critical"]),
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    # =========================================================================
    # Audit ledger
    # =========================================================================

    def log_audit(self, entry: AuditLog) -> AuditLog:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """INSERT INTO audit_logs
                   (actor_id, actor_name, actor_type, action, entity_type, entity_id,
                    project_id, description, metadata_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.actor_id,
                    entry.actor_name,
                    _db_value(entry.actor_type),
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    entry.project_id,
                    entry.description,
                    json.dumps(entry.metadata, default=str),
                    entry.created_at.isoformat(),
                ),
            )
            conn.commit()
            entry.id = cursor.lastrowid
            return entry
        finally:
            conn.close()

    def list_audit_logs(self, project_id: Optional[str] = None, limit: int = 50) -> list[AuditLog]:
        conn = self._get_conn()
        try:
            if project_id:
                rows = conn.execute(
                    "SELECT * FROM audit_logs WHERE project_id = ? ORDER BY id DESC LIMIT ?",
                    (project_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            return [
                AuditLog(
                    id=row["id"],
                    actor_id=row["actor_id"],
                    actor_name=row["actor_name"],
                    actor_type=row["actor_type"],
                    action=row["action"],
                    entity_type=row["entity_type"],
                    entity_id=row["entity_id"],
                    project_id=row["project_id"],
                    description=row["description"] or "",
                    metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

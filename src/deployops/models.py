"""Pydantic models for DeployOps.

Defines records for projects, members, issues, tasks, notifications and
audit entries, plus the request bodies accepted by the API.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class IssueStatus(str, Enum):
    """Lifecycle states of an issue."""
    OPEN = "open"
    AI_RUNNING = "ai_running"
    PR_CREATED = "pr_created"
    CLOSED = "closed"


class IssueType(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    IMPROVEMENT = "improvement"


class IssuePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MemberRole(str, Enum):
    """Project membership roles, most privileged first."""
    ADMIN = "admin"
    LEAD = "lead"
    DEVELOPER = "developer"
    VIEWER = "viewer"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationType(str, Enum):
    PR_CREATED = "pr_created"
    PR_MERGED = "pr_merged"
    TASK_ASSIGNED = "task_assigned"
    OPS_INCIDENT = "ops_incident"
    CONFLICT = "conflict"


class ActorType(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class LogLevel(str, Enum):
    """Severity of a streamed run log line."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RunStatus(str, Enum):
    """Terminal status of an autofix, rollback or preview run."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


AI_ASSIGNEE = "ai"


class Project(BaseModel):
    """A repository tracked by the dashboard."""
    id: str
    name: str
    description: str = ""
    repo_url: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    github_token: Optional[str] = Field(None, description="Project-scoped token, overrides the server default")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None


class ProjectMember(BaseModel):
    project_id: str
    user_id: str
    role: MemberRole = MemberRole.DEVELOPER

    class Config:
        use_enum_values = True


class Issue(BaseModel):
    """A tracked defect or request that the AI agent can attempt to fix."""
    id: str
    project_id: str
    requirement_id: Optional[str] = None
    title: str
    description: str = ""
    type: IssueType = IssueType.IMPROVEMENT
    priority: IssuePriority = IssuePriority.MEDIUM
    status: IssueStatus = IssueStatus.OPEN
    assigned_to: str = AI_ASSIGNEE
    pr_url: Optional[str] = None
    external_id: Optional[str] = Field(None, description="Remote tracker id used to de-duplicate imports")
    ai_explanation: Optional[str] = None
    merged_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class Task(BaseModel):
    """A follow-up work item, e.g. reviewing an AI-generated PR."""
    id: str
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: Optional[str] = None
    issue_id: Optional[str] = None
    pr_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


class Notification(BaseModel):
    id: str
    user_id: str
    project_id: Optional[str] = None
    type: NotificationType
    message: str
    link: Optional[str] = None
    is_read: bool = False
    is_critical: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


class AuditLog(BaseModel):
    id: Optional[int] = None
    actor_id: str
    actor_name: Optional[str] = None
    actor_type: ActorType = ActorType.USER
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    project_id: Optional[str] = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


class LogRecord(BaseModel):
    """One line of a run's structured log stream."""
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


# =============================================================================
# Request bodies
# =============================================================================


class _CamelRequest(BaseModel):
    class Config:
        populate_by_name = True
        use_enum_values = True


class ProjectCreate(_CamelRequest):
    name: str
    description: str = ""
    repo_url: Optional[str] = Field(None, alias="repoUrl")
    github_token: Optional[str] = Field(None, alias="githubToken")


class MemberAdd(_CamelRequest):
    user_id: str = Field(..., alias="userId")
    role: MemberRole = MemberRole.DEVELOPER


class IssueCreate(_CamelRequest):
    title: str = Field(..., min_length=1)
    description: str = ""
    type: IssueType = IssueType.IMPROVEMENT
    priority: IssuePriority = IssuePriority.MEDIUM
    requirement_id: Optional[str] = Field(None, alias="requirementId")
    assigned_to: str = Field(AI_ASSIGNEE, alias="assignedTo")


class IssueUpdate(_CamelRequest):
    """Manual edit of an issue. Status and PR linkage are not settable to AI-only values."""
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[IssueType] = None
    priority: Optional[IssuePriority] = None
    status: Optional[IssueStatus] = None
    assigned_to: Optional[str] = Field(None, alias="assignedTo")


class AutofixRequest(_CamelRequest):
    ai_api_key: Optional[str] = Field(None, alias="apiKey")


class RollbackRequest(_CamelRequest):
    pr_number: int = Field(..., alias="prNumber", gt=0)
    commit_sha: str = Field(..., alias="commitSha", pattern="^[0-9a-fA-F]{4,40}$")
    issue_id: Optional[str] = Field(None, alias="issueId")


class MergeRequest(_CamelRequest):
    confirm: bool = False
    merge_method: str = Field("squash", alias="mergeMethod", pattern="^(merge|squash|rebase)$")
    comment: str = ""


class PreviewRequest(_CamelRequest):
    modified_files: dict[str, str] = Field(default_factory=dict, alias="modifiedFiles")

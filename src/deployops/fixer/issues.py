"""Issue lifecycle operations outside the AI pipeline.

Handles:
- Creating issues by hand
- Manual edits, guarded by the issue state machine
- Reopening a closed issue after its change was rolled back
- Importing open GitHub issues
"""

import logging
from typing import Callable, Optional

from ..audit import AuditEvents, AuditLogger
from ..config import Settings, get_settings
from ..credentials import Credentials
from ..errors import NotFoundError, ValidationError
from ..models import AI_ASSIGNEE, Issue, IssueCreate, IssueStatus, IssueType, IssueUpdate
from ..storage import SQLiteStore, new_id
from .github_client import GitHubClient, parse_repo_url
from .issue_state import CLOSED, OPEN, validate_manual_update

logger = logging.getLogger(__name__)


class IssueService:
    def __init__(
        self,
        store: SQLiteStore,
        audit: AuditLogger,
        settings: Optional[Settings] = None,
        github_factory: Optional[Callable[[str, str], GitHubClient]] = None,
    ):
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings()
        self.github_factory = github_factory or (
            lambda token, repo: GitHubClient(token, repo, base_url=self.settings.github_api_url)
        )

    def create_issue(self, project_id: str, data: IssueCreate) -> Issue:
        if self.store.get_project(project_id) is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return self.store.create_issue(
            Issue(
                id=new_id(),
                project_id=project_id,
                requirement_id=data.requirement_id,
                title=data.title,
                description=data.description,
                type=data.type,
                priority=data.priority,
                assigned_to=data.assigned_to,
            )
        )

    def get_issue(self, issue_id: str, project_id: Optional[str] = None) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None or (project_id and issue.project_id != project_id):
            raise NotFoundError(f"Issue not found: {issue_id}")
        return issue

    def update_issue(self, issue_id: str, update: IssueUpdate, actor: str, project_id: Optional[str] = None) -> Issue:
        """Apply a manual edit.

        Raises:
            ValidationError: if the issue is being processed by the AI agent,
                is closed, or the status move is not allowed
        """
        issue = self.get_issue(issue_id, project_id)
        changes = validate_manual_update(issue, update)
        if not changes:
            return issue

        if not self.store.update_issue(issue.id, expected_status=[issue.status], **changes):
            raise ValidationError("Issue changed while it was being edited; refresh and try again.")

        self.audit.log(
            actor_id=actor,
            action=AuditEvents.ISSUE_UPDATE,
            entity_type="issue",
            entity_id=issue.id,
            project_id=issue.project_id,
            description=f"Updated {', '.join(sorted(changes))}",
            metadata={k: v for k, v in changes.items() if k != "description"},
        )
        return self.store.get_issue(issue.id)

    def reopen_after_rollback(self, issue_id: str, actor: str, revert_pr_url: Optional[str] = None) -> Issue:
        """Move a closed issue back to open once its change has been reverted."""
        issue = self.get_issue(issue_id)
        if issue.status != CLOSED:
            raise ValidationError(f"Only closed issues can be reopened by a rollback (issue is '{issue.status}').")

        if not self.store.update_issue(
            issue.id,
            expected_status=[CLOSED],
            status=OPEN,
            pr_url=None,
            merged_at=None,
        ):
            raise ValidationError("Issue changed while it was being reopened; refresh and try again.")

        self.audit.log(
            actor_id=actor,
            action=AuditEvents.ROLLBACK,
            entity_type="issue",
            entity_id=issue.id,
            project_id=issue.project_id,
            description=f"Reopened after rollback of {issue.pr_url}",
            metadata={"reverted_pr_url": issue.pr_url, "revert_pr_url": revert_pr_url},
        )
        logger.info(f"Reopened issue {issue.id} after rollback")
        return self.store.get_issue(issue.id)

    async def sync_from_github(self, project_id: str, credentials: Credentials, actor: str) -> dict:
        """Import open GitHub issues that are not tracked yet.

        Pull requests are skipped. An issue labelled with anything containing
        "bug" is imported as a bug, everything else as a feature.

        Returns:
            Dict with imported and skipped counts
        """
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        if project.owner and project.repo:
            repo = f"{project.owner}/{project.repo}"
        else:
            owner, name = parse_repo_url(project.repo_url or "")
            repo = f"{owner}/{name}"

        async with self.github_factory(credentials.require_github_token(), repo) as github:
            remote_issues = await github.list_issues(state="open")

        imported = 0
        skipped = 0
        for item in remote_issues:
            if "pull_request" in item:
                continue
            external_id = str(item["id"])
            if self.store.find_issue_by_external_id(project_id, external_id):
                skipped += 1
                continue

            labels = [label["name"] if isinstance(label, dict) else str(label) for label in item.get("labels", [])]
            is_bug = any("bug" in label.lower() for label in labels)
            self.store.create_issue(
                Issue(
                    id=new_id(),
                    project_id=project_id,
                    title=item["title"],
                    description=item.get("body") or "",
                    type=IssueType.BUG if is_bug else IssueType.FEATURE,
                    status=IssueStatus.OPEN,
                    assigned_to=AI_ASSIGNEE,
                    external_id=external_id,
                )
            )
            imported += 1

        self.audit.log(
            actor_id=actor,
            action=AuditEvents.GITHUB_SYNC,
            entity_type="project",
            entity_id=project_id,
            project_id=project_id,
            description=f"Imported {imported} GitHub issues from {repo}",
            metadata={"imported": imported, "skipped": skipped},
        )
        logger.info(f"GitHub sync for {repo}: {imported} imported, {skipped} already tracked")
        return {"imported": imported, "skipped": skipped}

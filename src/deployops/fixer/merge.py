"""Merge an AI-generated pull request and close its issue."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..audit import AuditEvents, AuditLogger
from ..config import Settings, get_settings
from ..credentials import Credentials
from ..errors import ConfigurationError, NotFoundError, ValidationError, classify, describe
from ..models import Issue, NotificationType
from ..notifications import Notifier
from ..storage import SQLiteStore
from ..tasks import TaskService
from .github_client import GitHubClient, parse_pull_request_url, parse_repo_url
from .issue_state import CLOSED, PR_CREATED

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Result of merging an issue's pull request."""
    success: bool
    issue_id: str
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    merged_sha: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_response(self) -> dict:
        if self.success:
            return {"success": True, "prUrl": self.pr_url, "sha": self.merged_sha}
        return {"error": self.error, "kind": self.error_kind}


class MergeService:
    def __init__(
        self,
        store: SQLiteStore,
        tasks: TaskService,
        notifier: Notifier,
        audit: AuditLogger,
        settings: Optional[Settings] = None,
        github_factory: Optional[Callable[[str, str], GitHubClient]] = None,
    ):
        self.store = store
        self.tasks = tasks
        self.notifier = notifier
        self.audit = audit
        self.settings = settings or get_settings()
        self.github_factory = github_factory or (
            lambda token, repo: GitHubClient(token, repo, base_url=self.settings.github_api_url)
        )

    async def merge(
        self,
        issue_id: str,
        actor: str,
        credentials: Credentials,
        method: str = "squash",
        comment: str = "",
        confirm: bool = True,
    ) -> MergeResult:
        """Merge the PR linked to an issue and move the issue to closed.

        GitHub refusals (conflicts, failing checks) are reported as conflict
        errors and leave the issue in ``pr_created``.
        """
        result = MergeResult(success=False, issue_id=issue_id)
        try:
            if not confirm:
                raise ValidationError("Merging requires explicit confirmation.")
            issue = self._mergeable_issue(issue_id)
            result.pr_url = issue.pr_url
            result.pr_number = parse_pull_request_url(issue.pr_url)
            repo = self._repo(issue)

            async with self.github_factory(credentials.require_github_token(), repo) as github:
                merged = await github.merge_pull_request(
                    result.pr_number,
                    method=method,
                    commit_title=f"Merge AI-generated PR #{result.pr_number} for issue: {issue.title}",
                    commit_message=self._commit_message(issue, comment),
                )
            result.merged_sha = merged.get("sha")

            if not self.store.update_issue(
                issue.id,
                expected_status=[PR_CREATED],
                status=CLOSED,
                merged_at=datetime.utcnow(),
            ):
                raise ValidationError(
                    f"PR #{result.pr_number} was merged but issue {issue.id} changed state; refresh and verify."
                )
        except Exception as e:
            result.error = credentials.redact(describe(e))
            result.error_kind = classify(e).value
            logger.error(f"Merge for issue {issue_id} failed ({result.error_kind}): {result.error}")
            return result

        result.success = True
        try:
            self.tasks.complete_for_issue(issue.id)
        except Exception as e:
            logger.warning(f"Could not complete review tasks for issue {issue.id}: {e}")
        self.audit.log(
            actor_id=actor,
            action=AuditEvents.PR_MERGE,
            entity_type="issue",
            entity_id=issue.id,
            project_id=issue.project_id,
            description=f"Merged {issue.pr_url} ({method})",
            metadata={"pr_number": result.pr_number, "sha": result.merged_sha, "method": method},
        )
        try:
            await self.notifier.notify_project_members(
                issue.project_id,
                NotificationType.PR_MERGED,
                f'✅ PR #{result.pr_number} for "{issue.title}" was merged',
                link=issue.pr_url,
            )
        except Exception as e:
            logger.warning(f"Could not send merge notifications for issue {issue.id}: {e}")

        logger.info(f"Merged PR #{result.pr_number} and closed issue {issue.id}")
        return result

    def _mergeable_issue(self, issue_id: str) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue not found: {issue_id}")
        if issue.status != PR_CREATED:
            raise ValidationError(f"Issue is '{issue.status}'; only issues with an open AI PR can be merged.")
        if not issue.pr_url:
            raise ValidationError("Issue has no pull request to merge.")
        return issue

    def _repo(self, issue: Issue) -> str:
        project = self.store.get_project(issue.project_id)
        if project is None:
            raise NotFoundError("Project not found for issue")
        if project.owner and project.repo:
            return f"{project.owner}/{project.repo}"
        if project.repo_url:
            owner, repo = parse_repo_url(project.repo_url)
            return f"{owner}/{repo}"
        raise ConfigurationError(f"Project {project.name} has no GitHub repository configured")

    def _commit_message(self, issue: Issue, comment: str) -> str:
        parts = []
        if issue.ai_explanation:
            parts.append(issue.ai_explanation)
        if comment:
            parts.append(f"Reviewer comment: {comment}")
        parts.append(f"Issue: {issue.title}")
        return "\n\n".join(parts)

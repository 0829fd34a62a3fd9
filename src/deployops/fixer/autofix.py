"""Autofix orchestrator.

Coordinates one AI fix attempt for an issue:
1. Lock the issue (open -> ai_running) with an atomic status update
2. Resolve credentials and open a tracking issue on GitHub
3. Run the AI fix invoker, streaming its log lines
4. Record the PR (ai_running -> pr_created) and run best-effort follow-ups

Any failure, timeout or cancellation sends the issue back to ``open``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..audit import AuditEvents, AuditLogger
from ..config import Settings, get_settings
from ..credentials import Credentials, resolve_credentials
from ..errors import (
    AgentFailure,
    ConfigurationError,
    NotFoundError,
    RunTimeoutError,
    ValidationError,
    classify,
    describe,
)
from ..models import ActorType, Issue, NotificationType, Project, RunStatus
from ..notifications import Notifier
from ..storage import SQLiteStore
from ..tasks import TaskService
from .ai_invoker import FixInvocation, FixInvoker, FixOutcome
from .github_client import GitHubClient, parse_repo_url
from .issue_state import AI_RUNNING, AUTOFIX_START_STATES, OPEN, PR_CREATED, ensure_autofix_allowed
from .run_log import LogSink, RunLog, RunTracker

logger = logging.getLogger(__name__)


@dataclass
class AutofixResult:
    """Result of an autofix run."""
    success: bool
    issue_id: str
    run_id: Optional[str] = None
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    tracking_issue_url: Optional[str] = None
    explanation: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_response(self) -> dict:
        if self.success:
            return {"success": True, "prUrl": self.pr_url, "prNumber": self.pr_number, "runId": self.run_id}
        return {"error": self.error, "kind": self.error_kind, "runId": self.run_id}


def build_explanation(issue: Issue, outcome: FixOutcome) -> str:
    parts = [f'Successfully generated a fix for: "{issue.title}".']
    if outcome.explanation:
        parts.append(outcome.explanation)
    if outcome.changed_files:
        parts.append("Changed files: " + ", ".join(outcome.changed_files))
    parts.append(f"Review the pull request at {outcome.pr_url} before merging.")
    return "\n\n".join(parts)


class AutofixOrchestrator:
    """Runs the AI fix pipeline for one issue at a time."""

    def __init__(
        self,
        store: SQLiteStore,
        invoker: FixInvoker,
        notifier: Notifier,
        tasks: TaskService,
        audit: AuditLogger,
        settings: Optional[Settings] = None,
        github_factory: Optional[Callable[[str, str], GitHubClient]] = None,
        tracker: Optional[RunTracker] = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Issue/project storage
            invoker: AI fix invoker
            notifier: Notification collaborator
            tasks: Task collaborator
            audit: Audit ledger
            settings: Settings (timeouts, default credentials)
            github_factory: Builds a GitHubClient for (token, "owner/repo")
            tracker: Run history; runs are not persisted when omitted
        """
        self.store = store
        self.invoker = invoker
        self.notifier = notifier
        self.tasks = tasks
        self.audit = audit
        self.settings = settings or get_settings()
        self.github_factory = github_factory or (
            lambda token, repo: GitHubClient(token, repo, base_url=self.settings.github_api_url)
        )
        self.tracker = tracker

    async def run(
        self,
        issue_id: str,
        actor: str,
        session_token: Optional[str] = None,
        ai_api_key: Optional[str] = None,
        on_log: Optional[LogSink] = None,
    ) -> AutofixResult:
        """Run the AI fix pipeline for an issue.

        Never raises for run failures: the result carries the error message
        and kind. Cancellation is re-raised after the issue is released.

        Args:
            issue_id: Issue to fix
            actor: User id of the person who triggered the run
            session_token: GitHub token from the user's session
            ai_api_key: AI key supplied with the request
            on_log: Sink receiving each log record and the terminal record

        Returns:
            AutofixResult
        """
        run_log = RunLog("autofix", issue_id, sink=on_log, tracker=self.tracker)

        try:
            issue = self._lock(issue_id)
        except Exception as e:
            return self._fail(run_log, issue_id, e, locked=False)

        run_log.info(f'Issue "{issue.title}" locked for AI processing')
        timeout = self.settings.autofix_timeout_seconds

        try:
            credentials = self._resolve(issue, session_token, ai_api_key)
            run_log.redact_with(credentials.redact)
            outcome, tracking_url = await asyncio.wait_for(
                self._execute(issue, actor, credentials, run_log),
                timeout=timeout,
            )
            explanation = build_explanation(issue, outcome)
            if not self.store.update_issue(
                issue.id,
                expected_status=[AI_RUNNING],
                status=PR_CREATED,
                pr_url=outcome.pr_url,
                ai_explanation=explanation,
            ):
                raise ValidationError(f"Issue {issue.id} left ai_running while the AI agent was working")
        except asyncio.CancelledError:
            self._release(issue.id)
            run_log.finish(RunStatus.FAILED, "Run cancelled", error="Run cancelled", errorKind="internal")
            raise
        except asyncio.TimeoutError:
            return self._fail(run_log, issue.id, RunTimeoutError(f"AI agent timed out after {timeout:.0f}s"), actor=actor)
        except Exception as e:
            return self._fail(run_log, issue.id, e, actor=actor)

        run_log.success(f"Issue moved to pr_created: {outcome.pr_url}")
        self.audit.log(
            actor_id="ai",
            actor_type=ActorType.AI,
            action=AuditEvents.AI_PR_CREATED,
            entity_type="issue",
            entity_id=issue.id,
            project_id=issue.project_id,
            description=f"AI opened {outcome.pr_url}",
            metadata={"pr_url": outcome.pr_url, "triggered_by": actor},
        )
        await self._follow_up(issue, actor, outcome.pr_url, run_log)

        result = AutofixResult(
            success=True,
            issue_id=issue.id,
            run_id=run_log.run_id,
            pr_url=outcome.pr_url,
            pr_number=outcome.pr_number,
            tracking_issue_url=tracking_url,
            explanation=explanation,
        )
        run_log.finish(
            RunStatus.SUCCESS,
            f'Pull request created for "{issue.title}"',
            prUrl=outcome.pr_url,
            prNumber=outcome.pr_number,
        )
        return result

    def _lock(self, issue_id: str) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue not found: {issue_id}")
        ensure_autofix_allowed(issue)
        if not self.store.update_issue(issue_id, expected_status=AUTOFIX_START_STATES, status=AI_RUNNING):
            raise ValidationError(f"Issue {issue_id} is already being processed by the AI agent.")
        issue.status = AI_RUNNING
        return issue

    def _resolve(self, issue: Issue, session_token: Optional[str], ai_api_key: Optional[str]) -> Credentials:
        project = self.store.get_project(issue.project_id)
        credentials = resolve_credentials(
            session_token=session_token,
            project_token=project.github_token if project else None,
            ai_api_key=ai_api_key,
            settings=self.settings,
        )
        credentials.require_github_token()
        credentials.require_ai_key()
        return credentials

    async def _execute(
        self,
        issue: Issue,
        actor: str,
        credentials: Credentials,
        run_log: RunLog,
    ) -> tuple[FixOutcome, str]:
        project = self.store.get_project(issue.project_id)
        repo_url = self._repo_url(project)
        owner, repo = parse_repo_url(repo_url)

        self.audit.log(
            actor_id=actor,
            action=AuditEvents.AI_FIX_START,
            entity_type="issue",
            entity_id=issue.id,
            project_id=issue.project_id,
            description=f'Started AI fix for "{issue.title}"',
            metadata={"repo": f"{owner}/{repo}"},
        )

        run_log.info(f"Creating tracking issue on {owner}/{repo}")
        issue_type = getattr(issue.type, "value", issue.type)
        async with self.github_factory(credentials.github_token, f"{owner}/{repo}") as github:
            tracking = await github.create_issue(
                title=f"[DeployOps] {issue.title}",
                body="\n".join([
                    f"**Issue Type**: {issue_type.upper()}",
                    "",
                    issue.description or issue.title,
                    "",
                    f"*Triggered by @{actor} via DeployOps Portal*",
                ]),
            )
        run_log.info(f"Tracking issue #{tracking.number}: {tracking.html_url}")

        run_log.info("Starting AI agent")
        outcome = await self.invoker.invoke(
            FixInvocation(issue_url=tracking.html_url, repo_url=repo_url, credentials=credentials),
            run_log.log,
        )
        status = getattr(outcome.status, "value", outcome.status) if outcome else None
        if status != RunStatus.SUCCESS.value or not outcome.pr_url:
            raise AgentFailure("AI agent finished without a pull request")
        run_log.success(f"AI agent opened {outcome.pr_url}")
        return outcome, tracking.html_url

    def _repo_url(self, project: Optional[Project]) -> str:
        if project is None:
            raise NotFoundError("Project not found for issue")
        if project.repo_url:
            return project.repo_url
        if project.owner and project.repo:
            return f"{project.owner}/{project.repo}"
        raise ConfigurationError(f"Project {project.name} has no GitHub repository configured")

    async def _follow_up(self, issue: Issue, actor: str, pr_url: str, run_log: RunLog) -> None:
        """Notifications and the review task. Failures never undo pr_created."""
        try:
            await self.notifier.notify_project_members(
                issue.project_id,
                NotificationType.PR_CREATED,
                f'⚡ AI created a Pull Request for "{issue.title}"',
                link=pr_url,
            )
        except Exception as e:
            run_log.warning(f"Could not notify project members: {e}")

        try:
            self.tasks.create_review_task(issue, pr_url, assignee=actor, created_by=actor)
        except Exception as e:
            run_log.warning(f"Could not create review task: {e}")
            return

        try:
            await self.notifier.notify(
                actor,
                NotificationType.TASK_ASSIGNED,
                f'📝 Requirement Review: AI PR for "{issue.title}"',
                project_id=issue.project_id,
                link=pr_url,
                is_critical=True,
            )
        except Exception as e:
            run_log.warning(f"Could not notify reviewer {actor}: {e}")

    def _release(self, issue_id: str) -> None:
        """Send a locked issue back to open."""
        try:
            if self.store.update_issue(issue_id, expected_status=[AI_RUNNING], status=OPEN):
                logger.info(f"Released issue {issue_id} back to open")
        except Exception:
            logger.exception(f"Failed to release issue {issue_id}; it may need a manual reset")

    def _fail(
        self,
        run_log: RunLog,
        issue_id: str,
        exc: BaseException,
        locked: bool = True,
        actor: Optional[str] = None,
    ) -> AutofixResult:
        message = run_log.redact(describe(exc))
        kind = classify(exc).value
        if locked:
            self._release(issue_id)
            self.audit.log(
                actor_id=actor or "system",
                actor_type=ActorType.SYSTEM,
                action=AuditEvents.AI_FIX_FAILED,
                entity_type="issue",
                entity_id=issue_id,
                description=message,
                metadata={"kind": kind},
            )
        logger.error(f"Autofix for issue {issue_id} failed ({kind}): {message}")
        run_log.error(message)
        run_log.finish(RunStatus.FAILED, message, error=message, errorKind=kind)
        return AutofixResult(
            success=False,
            issue_id=issue_id,
            run_id=run_log.run_id,
            error=message,
            error_kind=kind,
        )

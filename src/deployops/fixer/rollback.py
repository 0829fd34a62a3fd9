"""Safe rollback of a merged pull request.

Clones the repository into a one-shot workspace, reverts the merge commit
on a new ``revert/pr-<n>-<ms>`` branch, pushes it and opens a revert PR.
The workspace is removed whatever happens.
"""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..config import Settings, get_settings
from ..credentials import Credentials
from ..errors import ConflictError, ValidationError, classify, describe
from ..models import RunStatus
from ..workspace import GitCommandError, GitRunner, WorkspaceManager
from .github_client import GitHubClient, parse_repo_url, repo_clone_url
from .run_log import LogSink, RunLog, RunTracker

logger = logging.getLogger(__name__)

COMMIT_SHA_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")


@dataclass
class RollbackResult:
    """Result of a rollback run."""
    success: bool
    pr_number: int
    commit_sha: str
    run_id: Optional[str] = None
    pr_url: Optional[str] = None
    revert_pr_number: Optional[int] = None
    branch: Optional[str] = None
    workspace: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_response(self) -> dict:
        if self.success:
            return {
                "success": True,
                "prUrl": self.pr_url,
                "prNumber": self.revert_pr_number,
                "branch": self.branch,
                "runId": self.run_id,
            }
        return {"error": self.error, "kind": self.error_kind, "runId": self.run_id}


def revert_pr_body(pr_number: int, commit_sha: str) -> str:
    return (
        f"This PR reverts the changes from PR #{pr_number} (Commit {commit_sha}).\n\n"
        "Generated automatically by DeployOps Safe Rollback System."
    )


class RollbackOrchestrator:
    """Reverts a merged change through a new pull request."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        settings: Optional[Settings] = None,
        github_factory: Optional[Callable[[str, str], GitHubClient]] = None,
        git_factory: Optional[Callable[[Optional[str]], GitRunner]] = None,
        tracker: Optional[RunTracker] = None,
    ):
        self.workspaces = workspaces
        self.settings = settings or get_settings()
        self.github_factory = github_factory or (
            lambda token, repo: GitHubClient(token, repo, base_url=self.settings.github_api_url)
        )
        self.git_factory = git_factory or (lambda token: GitRunner(token, timeout=self.settings.git_timeout_seconds))
        self.tracker = tracker

    async def run(
        self,
        repo_url: str,
        commit_sha: str,
        pr_number: int,
        credentials: Credentials,
        on_log: Optional[LogSink] = None,
        clone_url: Optional[str] = None,
    ) -> RollbackResult:
        """Revert a merged PR.

        Args:
            repo_url: Repository URL or "owner/repo"; identifies the GitHub repo
            commit_sha: Merge (or squash) commit of the PR to revert
            pr_number: Number of the PR being reverted
            credentials: Run credentials
            on_log: Sink receiving log records and the terminal record
            clone_url: Overrides where the repository is cloned from

        Returns:
            RollbackResult; failures are reported, not raised
        """
        run_log = RunLog("rollback", f"pr-{pr_number}", sink=on_log, tracker=self.tracker, redact=credentials.redact)
        result = RollbackResult(success=False, pr_number=pr_number, commit_sha=commit_sha, run_id=run_log.run_id)

        try:
            if not COMMIT_SHA_RE.match(commit_sha):
                raise ValidationError(f"Invalid commit SHA: {commit_sha!r}")
            token = credentials.require_github_token()
            owner, repo = parse_repo_url(repo_url)
            git = self.git_factory(token)

            async with self.workspaces.one_shot(prefix="rollback") as path:
                result.workspace = str(path)
                run_log.info(f"Cloning {owner}/{repo} into a fresh workspace")
                await git.clone(clone_url or repo_clone_url(repo_url), path)
                await git.configure_identity(path, self.settings.git_author_name, self.settings.git_author_email)
                base_branch = await git.current_branch(path)

                branch = f"revert/pr-{pr_number}-{int(time.time() * 1000)}"
                result.branch = branch
                await git.checkout_new_branch(path, branch)
                run_log.info(f"Created branch {branch} from {base_branch}")

                await self._revert(git, path, commit_sha, run_log)

                await git.push(path, branch)
                run_log.info(f"Pushed {branch}")

                async with self.github_factory(token, f"{owner}/{repo}") as github:
                    pr = await github.create_pull_request(
                        title=f"revert: rollback PR #{pr_number}",
                        body=revert_pr_body(pr_number, commit_sha),
                        head=branch,
                        base=base_branch,
                    )
        except Exception as e:
            result.error = run_log.redact(describe(e))
            result.error_kind = classify(e).value
            logger.error(f"Rollback of PR #{pr_number} failed ({result.error_kind}): {result.error}")
            run_log.error(result.error)
            run_log.finish(RunStatus.FAILED, result.error, error=result.error, errorKind=result.error_kind)
            return result

        result.success = True
        result.pr_url = pr.html_url
        result.revert_pr_number = pr.number
        run_log.success(f"Opened revert PR #{pr.number}: {pr.html_url}")
        run_log.finish(
            RunStatus.SUCCESS,
            f"Rollback PR opened for PR #{pr_number}",
            prUrl=pr.html_url,
            prNumber=pr.number,
        )
        return result

    async def _revert(self, git: GitRunner, path: Path, commit_sha: str, run_log: RunLog) -> None:
        """Revert as a merge commit first, then as a plain commit."""
        try:
            await git.revert(path, commit_sha, mainline=1)
            run_log.info(f"Reverted merge commit {commit_sha}")
            return
        except GitCommandError as e:
            run_log.warning(f"Merge-aware revert failed, retrying as a regular commit: {e.stderr.strip()}")
            await git.revert_abort(path)

        try:
            await git.revert(path, commit_sha)
        except GitCommandError as e:
            await git.revert_abort(path)
            raise ConflictError(f"Could not revert commit {commit_sha}: {e.stderr.strip() or e}") from e
        run_log.info(f"Reverted commit {commit_sha}")

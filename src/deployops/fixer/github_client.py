"""GitHub client for issues, commits and pull requests.

Handles:
- Creating tracking issues and reading issues for sync
- Creating branches and multi-file commits through the git data API
- Creating, inspecting and merging pull requests
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from ..errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    DeployOpsError,
    ErrorKind,
    TransientIOError,
    ValidationError,
    is_bad_credentials,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"

_REPO_PATTERNS = (
    re.compile(r"^https?://[^/]+/(?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$"),
    re.compile(r"^git@[^:]+:(?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?$"),
    re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+?)(?:\.git)?$"),
)
_PULL_PATTERN = re.compile(r"/pull/(\d+)")


@dataclass
class GitHubIssue:
    """Represents a GitHub issue."""
    number: int
    url: str
    html_url: str
    title: str
    state: str


@dataclass
class GitHubPR:
    """Represents a GitHub pull request."""
    number: int
    url: str
    html_url: str
    title: str
    state: str
    head_ref: str


@dataclass
class FileChange:
    """A file to write in a commit. ``content=None`` deletes the path."""
    path: str
    content: Optional[str]


class GitHubClientError(DeployOpsError):
    """Error from GitHub API."""
    kind = ErrorKind.HOST_API

    def __init__(self, operation: str, repo: str, status_code: Optional[int], message: str):
        self.operation = operation
        self.repo = repo
        self.status_code = status_code
        self.host_message = message
        super().__init__(f"GitHub API error during {operation} on {repo} ({status_code}): {message}")


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """Split a repository URL or ``owner/repo`` string into owner and name."""
    value = (repo_url or "").strip()
    for pattern in _REPO_PATTERNS:
        match = pattern.match(value)
        if match:
            return match.group("owner"), match.group("repo")
    raise ValidationError(f"Invalid repository URL: {repo_url!r}")


def repo_clone_url(repo_url: str) -> str:
    """Clone URL for a repository reference.

    ``owner/repo`` shorthand becomes a github.com https URL; anything else
    (full URLs, local paths) is used as-is.
    """
    if re.match(r"^[\w.-]+/[\w.-]+$", repo_url or "") and not repo_url.startswith("."):
        return f"https://github.com/{repo_url}.git"
    return repo_url


def parse_pull_request_url(pr_url: str) -> int:
    """Extract the PR number from a pull request URL."""
    match = _PULL_PATTERN.search(pr_url or "")
    if not match:
        raise ValidationError(f"Invalid PR URL: {pr_url!r}")
    return int(match.group(1))


class GitHubClient:
    """Async client for GitHub API operations on one repository."""

    def __init__(
        self,
        token: Optional[str],
        repo: str,
        base_url: str = DEFAULT_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize GitHub client.

        Args:
            token: GitHub token for the run
            repo: Repository in "owner/repo" format
            base_url: API root, overridable for GitHub Enterprise
            transport: Optional httpx transport (tests use MockTransport)
        """
        if not token:
            raise ConfigurationError("Missing GitHub Token: Please sign in again.")

        self.token = token
        self.repo = repo
        self.owner, self.repo_name = repo.split("/")

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=30.0,
            transport=transport,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs):
        """Make an API request and map failures onto the error taxonomy."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientIOError(f"GitHub {operation} on {self.repo} failed: {e}") from e

        if not response.is_success:
            try:
                error_msg = response.json().get("message", response.text)
            except ValueError:
                error_msg = response.text
            if response.status_code == 401 or is_bad_credentials(error_msg):
                raise AuthenticationError(
                    f"GitHub rejected the token during {operation} on {self.repo}: {error_msg}"
                )
            raise GitHubClientError(operation, self.repo, response.status_code, error_msg)

        if response.status_code == 204:  # No content
            return {}

        return response.json()

    # =========================================================================
    # Issues
    # =========================================================================

    async def create_issue(self, title: str, body: str, labels: Optional[list[str]] = None) -> GitHubIssue:
        """Create a new GitHub issue.

        Args:
            title: Issue title
            body: Issue body (markdown)
            labels: List of label names to apply

        Returns:
            GitHubIssue with created issue details
        """
        data = {"title": title, "body": body}
        if labels:
            data["labels"] = labels

        result = await self._request("create_issue", "POST", f"/repos/{self.repo}/issues", json=data)
        return GitHubIssue(
            number=result["number"],
            url=result["url"],
            html_url=result["html_url"],
            title=result["title"],
            state=result["state"],
        )

    async def get_issue(self, number: int) -> dict:
        return await self._request("get_issue", "GET", f"/repos/{self.repo}/issues/{number}")

    async def list_issues(self, state: str = "open", per_page: int = 100) -> list[dict]:
        """List issues. The GitHub issues endpoint also returns pull requests."""
        return await self._request(
            "list_issues",
            "GET",
            f"/repos/{self.repo}/issues",
            params={"state": state, "per_page": per_page},
        )

    # =========================================================================
    # Branches and commits
    # =========================================================================

    async def get_default_branch(self) -> str:
        result = await self._request("get_repo", "GET", f"/repos/{self.repo}")
        return result["default_branch"]

    async def get_branch_sha(self, branch: str) -> str:
        result = await self._request("get_ref", "GET", f"/repos/{self.repo}/git/ref/heads/{branch}")
        return result["object"]["sha"]

    async def create_branch(self, branch_name: str, from_sha: Optional[str] = None) -> str:
        """Create a new branch.

        Args:
            branch_name: Name for the new branch
            from_sha: Commit to branch from (defaults to the default branch head)

        Returns:
            SHA the new branch points at
        """
        if from_sha is None:
            from_sha = await self.get_branch_sha(await self.get_default_branch())

        result = await self._request(
            "create_branch",
            "POST",
            f"/repos/{self.repo}/git/refs",
            json={"ref": f"refs/heads/{branch_name}", "sha": from_sha},
        )
        return result["object"]["sha"]

    async def update_branch(self, branch: str, sha: str, force: bool = False) -> None:
        """Move an existing branch to another commit."""
        await self._request(
            "update_ref",
            "PATCH",
            f"/repos/{self.repo}/git/refs/heads/{branch}",
            json={"sha": sha, "force": force},
        )

    async def create_blob(self, content: str) -> str:
        result = await self._request(
            "create_blob",
            "POST",
            f"/repos/{self.repo}/git/blobs",
            json={
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "encoding": "base64",
            },
        )
        return result["sha"]

    async def get_commit_tree(self, commit_sha: str) -> str:
        result = await self._request("get_commit", "GET", f"/repos/{self.repo}/git/commits/{commit_sha}")
        return result["tree"]["sha"]

    async def create_tree(self, base_tree: str, items: list[dict]) -> str:
        result = await self._request(
            "create_tree",
            "POST",
            f"/repos/{self.repo}/git/trees",
            json={"base_tree": base_tree, "tree": items},
        )
        return result["sha"]

    async def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> str:
        result = await self._request(
            "create_commit",
            "POST",
            f"/repos/{self.repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return result["sha"]

    async def commit_changes(self, changes: list[FileChange], parent_sha: str, message: str) -> str:
        """Create one commit with several file writes and deletions.

        Blobs are uploaded for written files; deletions become tree entries
        with a null SHA. The commit is not attached to any branch.

        Returns:
            SHA of the new commit
        """
        if not changes:
            raise ValidationError("No file changes to commit")

        items = []
        for change in changes:
            entry = {"path": change.path, "mode": "100644", "type": "blob"}
            if change.content is None:
                entry["sha"] = None
            else:
                entry["sha"] = await self.create_blob(change.content)
            items.append(entry)

        base_tree = await self.get_commit_tree(parent_sha)
        tree_sha = await self.create_tree(base_tree, items)
        commit_sha = await self.create_commit(message, tree_sha, [parent_sha])
        logger.info(f"Created commit {commit_sha[:7]} on {self.repo} with {len(items)} file changes")
        return commit_sha

    # =========================================================================
    # Pull requests
    # =========================================================================

    async def create_pull_request(self, title: str, body: str, head: str, base: Optional[str] = None) -> GitHubPR:
        """Create a pull request.

        Args:
            title: PR title
            body: PR body (markdown)
            head: The branch containing the changes
            base: The branch to merge into (defaults to default branch)

        Returns:
            GitHubPR with created PR details
        """
        if base is None:
            base = await self.get_default_branch()

        result = await self._request(
            "create_pull_request",
            "POST",
            f"/repos/{self.repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return GitHubPR(
            number=result["number"],
            url=result["url"],
            html_url=result["html_url"],
            title=result["title"],
            state=result["state"],
            head_ref=head,
        )

    async def get_pull_request(self, number: int) -> dict:
        return await self._request("get_pull_request", "GET", f"/repos/{self.repo}/pulls/{number}")

    async def list_pull_requests(self, state: str = "all", per_page: int = 30) -> list[dict]:
        return await self._request(
            "list_pull_requests",
            "GET",
            f"/repos/{self.repo}/pulls",
            params={"state": state, "per_page": per_page, "sort": "updated", "direction": "desc"},
        )

    async def list_pull_request_files(self, number: int) -> list[dict]:
        return await self._request("list_pull_request_files", "GET", f"/repos/{self.repo}/pulls/{number}/files")

    async def merge_pull_request(
        self,
        number: int,
        method: str = "squash",
        commit_title: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> dict:
        """Merge a pull request. Not retried.

        Raises:
            ConflictError: when GitHub refuses the merge (conflicts, failing
                checks, already merged)
        """
        data = {"merge_method": method}
        if commit_title:
            data["commit_title"] = commit_title
        if commit_message:
            data["commit_message"] = commit_message

        try:
            return await self._request(
                "merge_pull_request",
                "PUT",
                f"/repos/{self.repo}/pulls/{number}/merge",
                json=data,
            )
        except GitHubClientError as e:
            if e.status_code in (405, 409, 422):
                raise ConflictError(
                    f"GitHub Rejected Merge: {e.host_message}. "
                    "Ensure the PR has no conflicts and all required checks have passed."
                ) from e
            raise

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

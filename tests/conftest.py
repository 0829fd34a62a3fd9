"""Shared fixtures: isolated settings, a temp database and fake GitHub/AI collaborators."""

import asyncio
import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from deployops.audit import AuditLogger
from deployops.config import Settings
from deployops.credentials import Credentials
from deployops.fixer import FixOutcome, GitHubIssue, GitHubPR, RunTracker
from deployops.models import Issue, MemberRole, Project
from deployops.notifications import Notifier
from deployops.storage import SQLiteStore, new_id
from deployops.tasks import TaskService
from deployops.workspace import WorkspaceManager

GITHUB_TOKEN = "ghp_testtoken123456"
AI_KEY = "sk-test-key-987654"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings pointing at temp directories, with no secrets from the environment."""
    for var in (
        "GITHUB_TOKEN",
        "API_KEY",
        "OPENAI_API_KEY",
        "SLACK_WEBHOOK_URL",
        "DEPLOYOPS_API_USERNAME",
        "DEPLOYOPS_API_PASSWORD",
    ):
        monkeypatch.delenv(var, raising=False)
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "deployops.db"),
        workspace_root=str(tmp_path / "workspaces"),
        run_log_dir=str(tmp_path / "runs"),
        github_token=GITHUB_TOKEN,
        ai_api_key=AI_KEY,
        autofix_timeout_seconds=5.0,
        git_timeout_seconds=30.0,
    )


@pytest.fixture
def store(settings):
    return SQLiteStore(settings.database_path)


@pytest.fixture
def tracker(settings):
    return RunTracker(settings.run_log_dir)


@pytest.fixture
def workspaces(settings):
    return WorkspaceManager(settings.workspace_root)


@pytest.fixture
def audit(store):
    return AuditLogger(store)


@pytest.fixture
def tasks(store):
    return TaskService(store)


@pytest.fixture
def slack():
    return AsyncMock(return_value=True)


@pytest.fixture
def notifier(store, settings, slack):
    return Notifier(store, settings, slack=slack)


@pytest.fixture
def credentials():
    return Credentials(github_token=GITHUB_TOKEN, ai_api_key=AI_KEY, github_token_source="session")


@pytest.fixture
def project(store):
    project = store.create_project(
        Project(
            id="proj-1",
            name="Shop",
            repo_url="https://github.com/acme/shop",
            owner="acme",
            repo="shop",
        )
    )
    store.add_member(project.id, "alice", MemberRole.ADMIN)
    return project


@pytest.fixture
def make_issue(store, project):
    """Create an issue in the test project."""

    def _make(title="Null pointer on login", status="open", **fields):
        return store.create_issue(
            Issue(id=new_id(), project_id=project.id, title=title, status=status, type="bug", **fields)
        )

    return _make


class FakeGitHub:
    """In-memory stand-in for GitHubClient, shared by every factory call."""

    def __init__(self):
        self.calls = []
        self.tokens = []
        self.repos = []
        self.errors = {}
        self.remote_issues = []
        self.pull_requests = []
        self.pr_files = {}
        self.next_issue = 7
        self.next_pr = 43

    def factory(self, token, repo):
        self.tokens.append(token)
        self.repos.append(repo)
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.errors:
            raise self.errors[name]

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_issue(self, title, body, labels=None):
        self._record("create_issue", title=title, body=body)
        number = self.next_issue
        return GitHubIssue(
            number=number,
            url=f"https://api.github.com/repos/acme/shop/issues/{number}",
            html_url=f"https://github.com/acme/shop/issues/{number}",
            title=title,
            state="open",
        )

    async def list_issues(self, state="open", per_page=100):
        self._record("list_issues", state=state)
        return self.remote_issues

    async def create_pull_request(self, title, body, head, base=None):
        self._record("create_pull_request", title=title, body=body, head=head, base=base)
        number = self.next_pr
        return GitHubPR(
            number=number,
            url=f"https://api.github.com/repos/acme/shop/pulls/{number}",
            html_url=f"https://github.com/acme/shop/pull/{number}",
            title=title,
            state="open",
            head_ref=head,
        )

    async def merge_pull_request(self, number, method="squash", commit_title=None, commit_message=None):
        self._record(
            "merge_pull_request",
            number=number,
            method=method,
            commit_title=commit_title,
            commit_message=commit_message,
        )
        return {"sha": "f00dbabe", "merged": True}

    async def list_pull_requests(self, state="all", per_page=30):
        self._record("list_pull_requests", state=state)
        return self.pull_requests

    async def list_pull_request_files(self, number):
        self._record("list_pull_request_files", number=number)
        files = self.pr_files.get(number)
        if isinstance(files, Exception):
            raise files
        return files or []


@pytest.fixture
def github():
    return FakeGitHub()


class FakeInvoker:
    """FixInvoker double with a scripted outcome."""

    def __init__(self, outcome=None, error=None, delay=0.0, gate=None):
        self.outcome = outcome or FixOutcome(
            status="SUCCESS",
            pr_url="https://github.com/acme/shop/pull/42",
            pr_number=42,
            explanation="Guarded the session lookup.",
            changed_files=["app/login.py"],
        )
        self.error = error
        self.delay = delay
        self.gate = gate
        self.invocations = []
        self.on_invoke = None

    async def invoke(self, invocation, on_log):
        self.invocations.append(invocation)
        on_log("Agent thinking", "info")
        if self.on_invoke:
            self.on_invoke(invocation)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.outcome


@pytest.fixture
def invoker():
    return FakeInvoker()


def git(*args, cwd=None):
    """Run git synchronously for repository setup in tests."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def remote_repo(tmp_path):
    """A bare repository with one commit on main, plus a working clone to push from.

    Returns:
        (bare_path, work_path)
    """
    bare = tmp_path / "remote.git"
    work = tmp_path / "work"
    git("init", "--bare", "-b", "main", str(bare))
    git("clone", str(bare), str(work))
    git("config", "user.name", "Test", cwd=work)
    git("config", "user.email", "test@example.com", cwd=work)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=work)
    (work / "app.txt").write_text("line one\n")
    git("add", "app.txt", cwd=work)
    git("commit", "-m", "initial", cwd=work)
    git("push", "origin", "main", cwd=work)
    return bare, work


def commit_file(work: Path, name: str, content: str, message: str) -> str:
    (work / name).write_text(content)
    git("add", name, cwd=work)
    git("commit", "-m", message, cwd=work)
    return git("rev-parse", "HEAD", cwd=work)

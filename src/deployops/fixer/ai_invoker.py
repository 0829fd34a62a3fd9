"""AI fix invoker.

The orchestrator only depends on the FixInvoker protocol: given a tracking
issue URL, a repository and credentials, produce a pull request or raise.
OpenAIFixInvoker is the production binding: it reads the issue, looks at a
shallow clone of the repository, asks an OpenAI-compatible model for file
changes and opens a PR with them.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Protocol

import openai

from ..config import Settings, get_settings
from ..credentials import Credentials
from ..errors import AgentFailure, ValidationError
from ..models import RunStatus
from ..workspace import GitRunner, WorkspaceManager
from .github_client import FileChange, GitHubClient, parse_repo_url, repo_clone_url

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str], None]

MAX_FILE_CHARS = 20000
MAX_LISTED_FILES = 400


@dataclass
class FixInvocation:
    """Input to one AI fix attempt."""
    issue_url: str
    repo_url: str
    credentials: Credentials


@dataclass
class FixOutcome:
    """Result of a successful AI fix attempt."""
    status: str
    pr_url: str
    pr_number: Optional[int] = None
    explanation: Optional[str] = None
    changed_files: list[str] = field(default_factory=list)


class FixInvoker(Protocol):
    async def invoke(self, invocation: FixInvocation, on_log: LogCallback) -> FixOutcome:
        ...


@dataclass
class ProviderConfig:
    """OpenAI-compatible endpoint selected from the API key."""
    name: str
    api_key: str
    base_url: Optional[str]
    model: str
    json_mode: bool = False


def detect_provider(api_key: str, model: Optional[str] = None) -> ProviderConfig:
    """Pick the AI provider from the key prefix.

    ``sk-or-`` OpenRouter, ``csk-`` Cerebras, ``together_`` Together,
    ``gsk_`` Groq, ``ollama:<model>`` a local Ollama server, anything else
    OpenAI.
    """
    if api_key.startswith("sk-or-"):
        config = ProviderConfig("openrouter", api_key, "https://openrouter.ai/api/v1",
                                "google/gemini-2.0-flash-exp:free")
    elif api_key.startswith("csk-"):
        config = ProviderConfig("cerebras", api_key, "https://api.cerebras.ai/v1", "llama-3.3-70b")
    elif api_key.startswith("together_"):
        config = ProviderConfig("together", api_key, "https://api.together.xyz/v1",
                                "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo")
    elif api_key.startswith("gsk_"):
        # Groq JSON mode is requested through the prompt
        config = ProviderConfig("groq", api_key, "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile")
    elif api_key.startswith("ollama:"):
        local_model = api_key.split(":", 1)[1] or "llama3.1"
        config = ProviderConfig("ollama", "ollama", "http://localhost:11434/v1", local_model)
    else:
        config = ProviderConfig("openai", api_key, None, "gpt-4o", json_mode=True)

    if model:
        config.model = model
    return config


def parse_issue_number(issue_url: str) -> int:
    match = re.search(r"/issues/(\d+)", issue_url or "")
    if not match:
        raise ValidationError(f"Invalid issue URL: {issue_url!r}")
    return int(match.group(1))


def safe_repo_path(path: str) -> Optional[str]:
    """Normalize a repository-relative path, or None if it escapes the repo."""
    if not path or path.startswith("/") or "\\" in path:
        return None
    parts = PurePosixPath(path).parts
    if any(part in ("..", ".git") for part in parts):
        return None
    return str(PurePosixPath(*parts))


def _extract_json(content: str) -> dict:
    content = (content or "").strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", content, re.DOTALL)
    if fenced:
        content = fenced.group(1)
    try:
        result = json.loads(content)
    except json.JSONDecodeError as e:
        raise AgentFailure(f"AI response was not valid JSON: {e}") from e
    if not isinstance(result, dict):
        raise AgentFailure("AI response was not a JSON object")
    return result


class OpenAIFixInvoker:
    """Generates a fix with an OpenAI-compatible model and opens a PR."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        settings: Optional[Settings] = None,
        github_factory: Callable[[str, str], GitHubClient] = None,
        git_factory: Callable[[Optional[str]], GitRunner] = None,
        client_factory: Callable[[ProviderConfig], object] = None,
        max_files: int = 5,
    ):
        """Initialize the invoker.

        Args:
            workspaces: Workspace manager for the shallow clone
            settings: Settings (model override, git timeout, API URL)
            github_factory: Builds a GitHubClient for (token, "owner/repo")
            git_factory: Builds a GitRunner for a token
            client_factory: Builds an AsyncOpenAI-compatible client for a provider
            max_files: Maximum number of files the model may change
        """
        self.workspaces = workspaces
        self.settings = settings or get_settings()
        self.github_factory = github_factory or (
            lambda token, repo: GitHubClient(token, repo, base_url=self.settings.github_api_url)
        )
        self.git_factory = git_factory or (lambda token: GitRunner(token, timeout=self.settings.git_timeout_seconds))
        self.client_factory = client_factory or (
            lambda provider: openai.AsyncOpenAI(api_key=provider.api_key, base_url=provider.base_url)
        )
        self.max_files = max_files

    async def invoke(self, invocation: FixInvocation, on_log: LogCallback) -> FixOutcome:
        credentials = invocation.credentials
        token = credentials.require_github_token()
        provider = detect_provider(credentials.require_ai_key(), self.settings.ai_model)
        client = self.client_factory(provider)

        owner, repo = parse_repo_url(invocation.repo_url)
        issue_number = parse_issue_number(invocation.issue_url)
        on_log(f"Using {provider.name} model {provider.model}", "info")

        async with self.github_factory(token, f"{owner}/{repo}") as github:
            issue = await github.get_issue(issue_number)
            on_log(f"Read issue #{issue_number}: {issue.get('title', '')}", "info")

            async with self.workspaces.one_shot(prefix="autofix") as path:
                git = self.git_factory(token)
                on_log(f"Cloning {owner}/{repo}", "info")
                await git.clone(repo_clone_url(invocation.repo_url), path, depth=1)
                files = await git.ls_files(path)
                on_log(f"Repository has {len(files)} tracked files", "info")

                selected = await self._select_files(client, provider, issue, files)
                on_log(f"Selected files: {', '.join(selected) or '(none)'}", "info")
                contents = self._read_files(path, selected)

                plan = await self._generate_changes(client, provider, issue, contents)

            changes = self._validate_changes(plan, set(files))
            explanation = plan.get("explanation") or f"Automated fix for issue #{issue_number}"
            on_log(f"Model proposed changes to {len(changes)} files", "info")

            default_branch = await github.get_default_branch()
            base_sha = await github.get_branch_sha(default_branch)
            commit_message = plan.get("commit_message") or f"fix: {issue.get('title', 'automated fix')}"
            commit_sha = await github.commit_changes(changes, base_sha, commit_message)

            branch = f"ai-fix/issue-{issue_number}-{int(time.time() * 1000)}"
            await github.create_branch(branch, commit_sha)
            on_log(f"Pushed branch {branch}", "info")

            body_parts = [
                f"Fixes #{issue_number}",
                "",
                "## Summary",
                explanation,
                "",
                "## Changed files",
                *[f"- `{c.path}`{' (deleted)' if c.content is None else ''}" for c in changes],
                "",
                "---",
                "*Generated by DeployOps AI Agent*",
            ]
            pr = await github.create_pull_request(
                title=f"fix: {issue.get('title', f'issue #{issue_number}')}",
                body="\n".join(body_parts),
                head=branch,
                base=default_branch,
            )
            on_log(f"Opened pull request #{pr.number}", "success")

        return FixOutcome(
            status=RunStatus.SUCCESS.value,
            pr_url=pr.html_url,
            pr_number=pr.number,
            explanation=explanation,
            changed_files=[c.path for c in changes],
        )

    async def _chat(self, client, provider: ProviderConfig, system: str, prompt: str) -> dict:
        kwargs = {}
        if provider.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await client.chat.completions.create(
                model=provider.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.1,
                max_tokens=4000,
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise AgentFailure(f"AI provider {provider.name} failed: {e}") from e

        return _extract_json(response.choices[0].message.content)

    async def _select_files(self, client, provider: ProviderConfig, issue: dict, files: list[str]) -> list[str]:
        listing = "\n".join(files[:MAX_LISTED_FILES])
        prompt = f"""Issue title: {issue.get('title', '')}

Issue description:
{issue.get('body') or '(none)'}

Repository files:
{listing}

Pick at most {self.max_files} existing files that must change to resolve the issue.
Return JSON: {{"files": ["path/one", "path/two"]}}
Return ONLY valid JSON."""

        result = await self._chat(
            client, provider, "You are a senior engineer triaging a bug. Return valid JSON.", prompt
        )
        known = set(files)
        return [f for f in result.get("files", []) if f in known][: self.max_files]

    def _read_files(self, root: Path, selected: list[str]) -> dict[str, str]:
        contents = {}
        for rel in selected:
            file_path = root / rel
            if file_path.is_file():
                contents[rel] = file_path.read_text(errors="replace")[:MAX_FILE_CHARS]
        return contents

    async def _generate_changes(self, client, provider: ProviderConfig, issue: dict, contents: dict[str, str]) -> dict:
        files_block = "\n\n".join(f"### {path}\n```\n{text}\n```" for path, text in contents.items())
        prompt = f"""Fix this issue.

Issue title: {issue.get('title', '')}

Issue description:
{issue.get('body') or '(none)'}

Current files:
{files_block or '(no files selected)'}

Return JSON:
{{
    "changes": [{{"path": "relative/path", "content": "complete new file content, or null to delete"}}],
    "explanation": "What was changed and why, and any risks",
    "commit_message": "fix: short summary"
}}

Return ONLY valid JSON."""

        return await self._chat(
            client,
            provider,
            "You are a precise code fixer. Make the smallest change that resolves the issue. Return valid JSON.",
            prompt,
        )

    def _validate_changes(self, plan: dict, tracked: set[str]) -> list[FileChange]:
        changes = []
        for item in plan.get("changes") or []:
            if not isinstance(item, dict):
                continue
            path = safe_repo_path(str(item.get("path", "")))
            if path is None:
                logger.warning(f"Skipping unsafe path from model: {item.get('path')!r}")
                continue
            content = item.get("content")
            if content is None and path not in tracked:
                continue
            changes.append(FileChange(path=path, content=None if content is None else str(content)))
            if len(changes) >= self.max_files:
                break

        if not changes:
            raise AgentFailure("AI agent did not produce any file changes")
        return changes

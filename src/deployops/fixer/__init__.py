"""Fix orchestration module for DeployOps.

This module handles:
- Running the AI agent against an issue and recording its pull request
- Reverting merged pull requests through revert PRs
- Merging AI pull requests and closing their issues
- Issue state transitions, GitHub issue sync and preview runs
"""

from .ai_invoker import FixInvocation, FixInvoker, FixOutcome, OpenAIFixInvoker, detect_provider
from .autofix import AutofixOrchestrator, AutofixResult
from .github_client import (
    FileChange,
    GitHubClient,
    GitHubClientError,
    GitHubIssue,
    GitHubPR,
    parse_pull_request_url,
    parse_repo_url,
)
from .issues import IssueService
from .merge import MergeResult, MergeService
from .preview import PreviewResult, PreviewRunner
from .rollback import RollbackOrchestrator, RollbackResult
from .run_log import RunLog, RunTracker

__all__ = [
    "AutofixOrchestrator",
    "AutofixResult",
    "FileChange",
    "FixInvocation",
    "FixInvoker",
    "FixOutcome",
    "GitHubClient",
    "GitHubClientError",
    "GitHubIssue",
    "GitHubPR",
    "IssueService",
    "MergeResult",
    "MergeService",
    "OpenAIFixInvoker",
    "PreviewResult",
    "PreviewRunner",
    "RollbackOrchestrator",
    "RollbackResult",
    "RunLog",
    "RunTracker",
    "detect_provider",
    "parse_pull_request_url",
    "parse_repo_url",
]

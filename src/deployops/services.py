"""Wiring of stores, collaborators and orchestrators shared by the API and CLI."""

from dataclasses import dataclass
from typing import Optional

from .audit import AuditLogger
from .config import Settings, get_settings
from .fixer import (
    AutofixOrchestrator,
    GitHubClient,
    IssueService,
    MergeService,
    OpenAIFixInvoker,
    PreviewRunner,
    RollbackOrchestrator,
    RunTracker,
)
from .notifications import Notifier
from .storage import SQLiteStore
from .tasks import TaskService
from .workspace import WorkspaceManager


@dataclass
class Services:
    settings: Settings
    store: SQLiteStore
    workspaces: WorkspaceManager
    tracker: RunTracker
    notifier: Notifier
    tasks: TaskService
    audit: AuditLogger
    issues: IssueService
    autofix: AutofixOrchestrator
    rollback: RollbackOrchestrator
    merge: MergeService
    preview: PreviewRunner

    def github_client(self, token: Optional[str], repo: str) -> GitHubClient:
        return GitHubClient(token, repo, base_url=self.settings.github_api_url)


def build_services(settings: Optional[Settings] = None, invoker=None) -> Services:
    """Create the default object graph from settings."""
    settings = settings or get_settings()
    store = SQLiteStore(settings.database_path)
    workspaces = WorkspaceManager(settings.workspace_root)
    tracker = RunTracker(settings.run_log_dir)
    notifier = Notifier(store, settings)
    tasks = TaskService(store)
    audit = AuditLogger(store)

    return Services(
        settings=settings,
        store=store,
        workspaces=workspaces,
        tracker=tracker,
        notifier=notifier,
        tasks=tasks,
        audit=audit,
        issues=IssueService(store, audit, settings),
        autofix=AutofixOrchestrator(
            store,
            invoker or OpenAIFixInvoker(workspaces, settings),
            notifier,
            tasks,
            audit,
            settings=settings,
            tracker=tracker,
        ),
        rollback=RollbackOrchestrator(workspaces, settings, tracker=tracker),
        merge=MergeService(store, tasks, notifier, audit, settings),
        preview=PreviewRunner(workspaces, settings, tracker=tracker),
    )

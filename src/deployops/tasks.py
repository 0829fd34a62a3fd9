"""Follow-up tasks created by the AI pipeline."""

import logging
from typing import Optional

from .models import Issue, Task, TaskPriority, TaskStatus
from .storage import SQLiteStore, new_id

logger = logging.getLogger(__name__)


class TaskService:
    def __init__(self, store: SQLiteStore):
        self.store = store

    def create_review_task(
        self,
        issue: Issue,
        pr_url: str,
        assignee: str,
        created_by: Optional[str] = None,
    ) -> Task:
        """Create the "review this PR" task for an AI-generated pull request."""
        task = self.store.create_task(
            Task(
                id=new_id(),
                project_id=issue.project_id,
                title=f"Review AI PR for: {issue.title}",
                description=(
                    f"The AI agent opened a pull request for issue \"{issue.title}\".\n\n"
                    f"Review the changes at {pr_url} and merge them once they look correct."
                ),
                status=TaskStatus.TODO,
                priority=TaskPriority.HIGH,
                assigned_to=assignee,
                issue_id=issue.id,
                pr_url=pr_url,
                created_by=created_by or assignee,
            )
        )
        logger.info(f"Created review task {task.id} for issue {issue.id}")
        return task

    def complete_for_issue(self, issue_id: str) -> int:
        """Mark the tasks linked to an issue as done."""
        count = self.store.complete_tasks_for_issue(issue_id)
        if count:
            logger.info(f"Completed {count} tasks linked to issue {issue_id}")
        return count

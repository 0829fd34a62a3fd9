"""In-app notifications for project members."""

import logging
from typing import Awaitable, Callable, Iterable, Optional

from .config import Settings, get_settings
from .models import MemberRole, Notification, NotificationType
from .slack import send_slack_notification
from .storage import SQLiteStore, new_id

logger = logging.getLogger(__name__)

SlackSender = Callable[..., Awaitable[bool]]

_TITLES = {
    NotificationType.PR_CREATED.value: ("⚡", "AI Pull Request Created"),
    NotificationType.PR_MERGED.value: ("✅", "Pull Request Merged"),
    NotificationType.TASK_ASSIGNED.value: ("📝", "Task Assigned"),
    NotificationType.OPS_INCIDENT.value: ("🚨", "Ops Incident"),
    NotificationType.CONFLICT.value: ("⚠️", "Merge Conflict"),
}


class Notifier:
    """Persists notifications and mirrors critical ones to Slack."""

    def __init__(
        self,
        store: SQLiteStore,
        settings: Optional[Settings] = None,
        slack: SlackSender = send_slack_notification,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._slack = slack

    async def notify(
        self,
        user_id: str,
        type: NotificationType,
        message: str,
        project_id: Optional[str] = None,
        link: Optional[str] = None,
        is_critical: bool = False,
    ) -> Notification:
        """Create one notification for one user."""
        notification = self.store.create_notification(
            Notification(
                id=new_id(),
                user_id=user_id,
                project_id=project_id,
                type=type,
                message=message,
                link=link,
                is_critical=is_critical,
            )
        )
        if is_critical:
            emoji, title = _TITLES.get(notification.type, ("🔔", "DeployOps"))
            await self._slack(
                self.settings.slack_webhook_url,
                emoji,
                title,
                f"*User:* {user_id}\n{message}",
                link=self._absolute(link),
            )
        return notification

    async def notify_project_members(
        self,
        project_id: str,
        type: NotificationType,
        message: str,
        link: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> list[Notification]:
        """Notify every member of a project, optionally filtered by role."""
        wanted = {getattr(r, "value", r) for r in roles} if roles else None
        sent = []
        for member in self.store.list_members(project_id):
            if wanted and member.role not in wanted:
                continue
            sent.append(await self.notify(member.user_id, type, message, project_id=project_id, link=link))
        logger.info(f"Sent {type} notification to {len(sent)} members of project {project_id}")
        return sent

    async def notify_project_admins(
        self,
        project_id: str,
        type: NotificationType,
        message: str,
        link: Optional[str] = None,
    ) -> list[Notification]:
        return await self.notify_project_members(
            project_id,
            type,
            message,
            link=link,
            roles=(MemberRole.ADMIN, MemberRole.LEAD),
        )

    def _absolute(self, link: Optional[str]) -> Optional[str]:
        if link and link.startswith("/") and self.settings.app_base_url:
            return self.settings.app_base_url.rstrip("/") + link
        return link

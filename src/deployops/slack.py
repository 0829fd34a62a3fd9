"""Slack notification utilities for DeployOps.

Critical notifications (PR review assignments, incidents) are mirrored to a
Slack incoming webhook in addition to the in-app notification list.
"""

import logging
import socket
from datetime import datetime
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


def get_hostname() -> str:
    """Get the current hostname for context in notifications."""
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def build_payload(emoji: str, title: str, message: str, link: Optional[str] = None) -> dict:
    """Build a Block Kit payload for a notification."""
    text = message
    if link:
        text += f"\n<{link}|Open>"

    return {
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {title}", "emoji": True},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": text},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Server: `{get_hostname()}` | Time: `{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}`",
                    }
                ],
            },
        ],
    }


async def send_slack_notification(
    webhook_url: Optional[str],
    emoji: str,
    title: str,
    message: str,
    link: Optional[str] = None,
) -> bool:
    """Send a Slack notification via webhook.

    Args:
        webhook_url: Incoming webhook URL; sending is skipped when unset
        emoji: Emoji to prefix the title
        title: Header text for the notification
        message: Body text (supports Slack mrkdwn formatting)
        link: Optional link appended to the body

    Returns:
        True if notification was sent successfully, False otherwise.
    """
    if not webhook_url:
        logger.debug(f"[Slack disabled] {title}: {message[:100]}")
        return False

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(webhook_url, json=build_payload(emoji, title, message, link))
        return response.status_code == 200
    except httpx.HTTPError as e:
        logger.warning(f"[Slack error] Failed to send notification: {e}")
        return False

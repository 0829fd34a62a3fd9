"""Credential resolution for a single run.

Resolved once when a run starts and passed explicitly to every
collaborator that talks to GitHub or the AI provider.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings, get_settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    """Secrets used by one autofix, rollback or merge run."""
    github_token: Optional[str]
    ai_api_key: Optional[str] = None
    github_token_source: str = "none"

    def require_github_token(self) -> str:
        if not self.github_token:
            raise ConfigurationError("Missing GitHub Token: Please sign in again.")
        return self.github_token

    def require_ai_key(self) -> str:
        if not self.ai_api_key:
            raise ConfigurationError("Server misconfigured: Missing API_KEY")
        return self.ai_api_key

    def redact(self, text: str) -> str:
        """Strip secrets from text that may reach logs or users."""
        for secret in (self.github_token, self.ai_api_key):
            if secret:
                text = text.replace(secret, "***")
        return text


def resolve_credentials(
    session_token: Optional[str] = None,
    project_token: Optional[str] = None,
    ai_api_key: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Credentials:
    """Pick the GitHub token and AI key for a run.

    GitHub token precedence: the signed-in user's session token, then the
    token stored on the project, then the server default (GITHUB_TOKEN).
    The AI key comes from the request when given, otherwise from the
    server environment. Missing values are not an error here; the steps
    that need them raise ConfigurationError.
    """
    settings = settings or get_settings()

    candidates = (
        ("session", session_token),
        ("project", project_token),
        ("environment", settings.github_token),
    )
    token, source = None, "none"
    for name, value in candidates:
        if value:
            token, source = value, name
            break

    logger.debug(f"Resolved GitHub token from {source}")
    return Credentials(
        github_token=token,
        ai_api_key=ai_api_key or settings.ai_api_key,
        github_token_source=source,
    )

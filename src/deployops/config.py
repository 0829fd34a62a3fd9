import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


def _default_workspace_root() -> str:
    return str(Path(tempfile.gettempdir()) / "deployops-workspaces")


class Settings(BaseSettings):
    # Secrets
    github_token: Optional[str] = Field(default=None, alias="GITHUB_TOKEN")
    ai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ai_api_key", "API_KEY", "OPENAI_API_KEY"),
    )
    ai_model: Optional[str] = Field(default=None, alias="DEPLOYOPS_AI_MODEL")

    # Source control
    github_api_url: str = Field(default="https://api.github.com", alias="GITHUB_API_URL")
    git_author_name: str = Field(default="DeployOps Revert Bot", alias="DEPLOYOPS_GIT_AUTHOR_NAME")
    git_author_email: str = Field(default="bot@deployops.ai", alias="DEPLOYOPS_GIT_AUTHOR_EMAIL")
    git_timeout_seconds: float = Field(default=120.0, alias="DEPLOYOPS_GIT_TIMEOUT")

    # Storage
    database_path: str = Field(default="data/deployops.db", alias="DEPLOYOPS_DATABASE_PATH")
    workspace_root: str = Field(default_factory=_default_workspace_root, alias="DEPLOYOPS_WORKSPACE_ROOT")
    run_log_dir: str = Field(default="data/runs", alias="DEPLOYOPS_RUN_LOG_DIR")

    # Run limits
    autofix_timeout_seconds: float = Field(default=300.0, alias="DEPLOYOPS_AUTOFIX_TIMEOUT")
    preview_timeout_seconds: float = Field(default=600.0, alias="DEPLOYOPS_PREVIEW_TIMEOUT")
    preview_memory_limit: str = Field(default="512m", alias="DEPLOYOPS_PREVIEW_MEMORY")
    preview_cpu_limit: str = Field(default="1", alias="DEPLOYOPS_PREVIEW_CPUS")

    # Notifications
    slack_webhook_url: Optional[str] = Field(default=None, alias="SLACK_WEBHOOK_URL")
    app_base_url: Optional[str] = Field(default=None, alias="DEPLOYOPS_BASE_URL")

    # API server
    api_host: str = Field(default="0.0.0.0", alias="DEPLOYOPS_API_HOST")
    api_port: int = Field(default=8000, alias="DEPLOYOPS_API_PORT")
    api_username: Optional[str] = Field(default=None, alias="DEPLOYOPS_API_USERNAME")
    api_password: Optional[str] = Field(default=None, alias="DEPLOYOPS_API_PASSWORD")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

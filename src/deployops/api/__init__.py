"""API module for DeployOps."""

from .app import app, get_services, run_server

__all__ = ["app", "get_services", "run_server"]

"""FastAPI web service for DeployOps.

Provides REST API endpoints for:
- Projects, members and issues
- Starting AI fix runs (plain and streamed)
- Merging AI pull requests and rolling back merged ones
- GitHub issue sync, pull request overview and preview runs
- Run history, notifications and the audit ledger
"""

import asyncio
import json
import logging
import secrets
from typing import Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.responses import StreamingResponse

from ..credentials import Credentials, resolve_credentials
from ..errors import DeployOpsError, ErrorKind, classify, describe
from ..fixer import parse_repo_url
from ..models import (
    AutofixRequest,
    IssueCreate,
    IssueUpdate,
    MemberAdd,
    MemberRole,
    MergeRequest,
    PreviewRequest,
    Project,
    ProjectCreate,
    RollbackRequest,
    RunStatus,
)
from ..services import Services, build_services
from ..storage import new_id

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION.value: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT.value: status.HTTP_409_CONFLICT,
    ErrorKind.AUTHENTICATION.value: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.CONFIGURATION.value: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.AGENT_FAILURE.value: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.TRANSIENT_IO.value: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.HOST_API.value: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INTERNAL.value: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

WRITE_ROLES = (MemberRole.ADMIN.value, MemberRole.LEAD.value, MemberRole.DEVELOPER.value)
RELEASE_ROLES = (MemberRole.ADMIN.value, MemberRole.LEAD.value)


app = FastAPI(
    title="DeployOps Orchestrator",
    description="Autofix, merge and safe rollback orchestration for DeployOps",
    version="0.1.0",
)

# Optional HTTP Basic Auth
security = HTTPBasic(auto_error=False)

_services: Optional[Services] = None

# Streamed runs outlive their response; keep them referenced until done
_running_tasks: set = set()


def get_services() -> Services:
    """Shared services, built on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


@app.exception_handler(DeployOpsError)
async def deployops_error_handler(request: Request, exc: DeployOpsError):
    kind = classify(exc).value
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(kind, 500),
        content={"error": describe(exc), "kind": kind},
    )


def result_response(payload: dict, error_kind: Optional[str]) -> JSONResponse:
    """Return a run result, using the error kind to pick the status code."""
    status_code = status.HTTP_200_OK if error_kind is None else STATUS_BY_KIND.get(error_kind, 500)
    return JSONResponse(status_code=status_code, content=payload)


def verify_auth(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> dict:
    """Verify HTTP Basic Auth when configured and identify the acting user.

    The acting user is the ``X-User-Id`` header set by the dashboard's
    session layer, falling back to the Basic Auth username.
    """
    settings = services.settings
    user_header = request.headers.get("x-user-id")

    if settings.api_username and settings.api_password:
        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Basic"},
            )
        is_valid_username = secrets.compare_digest(
            credentials.username.encode("utf8"),
            settings.api_username.encode("utf8"),
        )
        is_valid_password = secrets.compare_digest(
            credentials.password.encode("utf8"),
            settings.api_password.encode("utf8"),
        )
        if not (is_valid_username and is_valid_password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return {"user_id": user_header or credentials.username, "dev_mode": False}

    # No auth configured at all - allow access (dev mode)
    return {"user_id": user_header or "anonymous", "dev_mode": True}


def require_project(services: Services, project_id: str) -> Project:
    project = services.store.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project not found: {project_id}")
    return project


def require_role(services: Services, project_id: str, auth: dict, roles: tuple) -> None:
    """Reject users without one of ``roles`` on projects that have members."""
    if not services.store.list_members(project_id):
        return
    role = services.store.get_member_role(project_id, auth["user_id"])
    if role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires one of: {', '.join(roles)}",
        )


def run_credentials(
    services: Services,
    project: Optional[Project],
    session_token: Optional[str],
    ai_api_key: Optional[str] = None,
) -> Credentials:
    return resolve_credentials(
        session_token=session_token,
        project_token=project.github_token if project else None,
        ai_api_key=ai_api_key,
        settings=services.settings,
    )


def event_stream(start: Callable[[Callable[[dict], None]], Awaitable]) -> StreamingResponse:
    """Stream a run's log records as server-sent events.

    ``start`` receives the sink and runs in its own task, so the run keeps
    going (and cleans up) even if the client disconnects. The stream ends
    after the terminal record.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def generate():
        task = asyncio.create_task(start(queue.put_nowait))
        _running_tasks.add(task)
        task.add_done_callback(_running_tasks.discard)
        task.add_done_callback(lambda _: queue.put_nowait(None))
        while True:
            record = await queue.get()
            if record is None:
                if not task.cancelled() and task.exception() is not None:
                    error = describe(task.exception())
                    yield f"data: {json.dumps({'status': RunStatus.FAILED.value, 'message': error, 'error': error})}\n\n"
                break
            yield f"data: {json.dumps(record, default=str)}\n\n"
            if "status" in record:
                break

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Health
# =============================================================================


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# =============================================================================
# Projects and issues
# =============================================================================


@app.post("/api/projects", status_code=201)
async def create_project(
    body: ProjectCreate,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    owner = repo = None
    if body.repo_url:
        owner, repo = parse_repo_url(body.repo_url)
    project = services.store.create_project(
        Project(
            id=new_id(),
            name=body.name,
            description=body.description,
            repo_url=body.repo_url,
            owner=owner,
            repo=repo,
            github_token=body.github_token,
        )
    )
    if auth["user_id"] != "anonymous":
        services.store.add_member(project.id, auth["user_id"], MemberRole.ADMIN)
    return project.model_dump(mode="json", exclude={"github_token"})


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str, auth: dict = Depends(verify_auth), services: Services = Depends(get_services)):
    project = require_project(services, project_id)
    data = project.model_dump(mode="json", exclude={"github_token"})
    data["members"] = [m.model_dump(mode="json") for m in services.store.list_members(project_id)]
    return data


@app.post("/api/projects/{project_id}/members", status_code=201)
async def add_member(
    project_id: str,
    body: MemberAdd,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    require_project(services, project_id)
    require_role(services, project_id, auth, RELEASE_ROLES)
    member = services.store.add_member(project_id, body.user_id, body.role)
    return member.model_dump(mode="json")


@app.get("/api/projects/{project_id}/issues")
async def list_issues(
    project_id: str,
    status: Optional[str] = None,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    require_project(services, project_id)
    return [issue.model_dump(mode="json") for issue in services.store.list_issues(project_id, status)]


@app.post("/api/projects/{project_id}/issues", status_code=201)
async def create_issue(
    project_id: str,
    body: IssueCreate,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    require_role(services, project_id, auth, WRITE_ROLES)
    return services.issues.create_issue(project_id, body).model_dump(mode="json")


@app.patch("/api/projects/{project_id}/issues/{issue_id}")
async def update_issue(
    project_id: str,
    issue_id: str,
    body: IssueUpdate,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    """Manual edit. Rejected while the AI agent holds the issue or once it is closed."""
    require_role(services, project_id, auth, WRITE_ROLES)
    issue = services.issues.update_issue(issue_id, body, actor=auth["user_id"], project_id=project_id)
    return issue.model_dump(mode="json")


@app.post("/api/projects/{project_id}/sync-github")
async def sync_github(
    project_id: str,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    project = require_project(services, project_id)
    require_role(services, project_id, auth, WRITE_ROLES)
    credentials = run_credentials(services, project, x_github_token)
    return await services.issues.sync_from_github(project_id, credentials, actor=auth["user_id"])


# =============================================================================
# AI fix runs
# =============================================================================


def _autofix_target(services: Services, issue_id: str, auth: dict) -> None:
    issue = services.store.get_issue(issue_id)
    if issue is not None:
        require_role(services, issue.project_id, auth, WRITE_ROLES)


@app.post("/api/issues/{issue_id}/run-ai")
async def run_ai(
    issue_id: str,
    body: Optional[AutofixRequest] = None,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    """Run the AI agent for an issue and wait for the result."""
    _autofix_target(services, issue_id, auth)
    result = await services.autofix.run(
        issue_id,
        actor=auth["user_id"],
        session_token=x_github_token,
        ai_api_key=body.ai_api_key if body else None,
    )
    return result_response(result.to_response(), result.error_kind)


@app.post("/api/issues/{issue_id}/run-ai/stream")
async def run_ai_stream(
    issue_id: str,
    body: Optional[AutofixRequest] = None,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    """Run the AI agent and stream its log as server-sent events."""
    _autofix_target(services, issue_id, auth)
    return event_stream(
        lambda sink: services.autofix.run(
            issue_id,
            actor=auth["user_id"],
            session_token=x_github_token,
            ai_api_key=body.ai_api_key if body else None,
            on_log=sink,
        )
    )


@app.post("/api/issues/{issue_id}/merge")
async def merge_issue_pr(
    issue_id: str,
    body: MergeRequest,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    issue = services.store.get_issue(issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue not found: {issue_id}")
    require_role(services, issue.project_id, auth, RELEASE_ROLES)
    project = services.store.get_project(issue.project_id)
    result = await services.merge.merge(
        issue_id,
        actor=auth["user_id"],
        credentials=run_credentials(services, project, x_github_token),
        method=body.merge_method,
        comment=body.comment,
        confirm=body.confirm,
    )
    return result_response(result.to_response(), result.error_kind)


@app.post("/api/projects/{project_id}/rollback")
async def rollback(
    project_id: str,
    body: RollbackRequest,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    """Revert a merged PR; optionally reopen the issue it closed."""
    project = require_project(services, project_id)
    require_role(services, project_id, auth, RELEASE_ROLES)
    if not (project.repo_url or (project.owner and project.repo)):
        raise HTTPException(status_code=400, detail="Project has no GitHub repository configured")

    result = await services.rollback.run(
        repo_url=project.repo_url or f"{project.owner}/{project.repo}",
        commit_sha=body.commit_sha,
        pr_number=body.pr_number,
        credentials=run_credentials(services, project, x_github_token),
    )
    payload = result.to_response()
    if result.success and body.issue_id:
        try:
            issue = services.issues.reopen_after_rollback(body.issue_id, auth["user_id"], result.pr_url)
            payload["issue"] = issue.model_dump(mode="json")
        except DeployOpsError as e:
            logger.warning(f"Rollback PR opened but issue {body.issue_id} was not reopened: {e}")
            payload["issueError"] = describe(e)
    return result_response(payload, result.error_kind)


@app.post("/api/projects/{project_id}/run")
async def run_preview(
    project_id: str,
    body: Optional[PreviewRequest] = None,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    """Build and run the project's container, streaming output."""
    project = require_project(services, project_id)
    require_role(services, project_id, auth, WRITE_ROLES)
    credentials = run_credentials(services, project, x_github_token)
    modified = body.modified_files if body else {}
    return event_stream(lambda sink: services.preview.run(project, credentials, modified, on_log=sink))


@app.get("/api/projects/{project_id}/pull-requests")
async def list_pull_requests(
    project_id: str,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
    x_github_token: Optional[str] = Header(None),
):
    """Latest pull requests with their linked issue and changed files."""
    project = require_project(services, project_id)
    credentials = run_credentials(services, project, x_github_token)
    owner, repo = parse_repo_url(project.repo_url or f"{project.owner}/{project.repo}")

    entries = []
    async with services.github_client(credentials.require_github_token(), f"{owner}/{repo}") as github:
        for pr in await github.list_pull_requests():
            entry = {
                "number": pr["number"],
                "title": pr["title"],
                "state": pr["state"],
                "url": pr["html_url"],
                "author": (pr.get("user") or {}).get("login"),
                "head": (pr.get("head") or {}).get("ref"),
                "mergedAt": pr.get("merged_at"),
                "mergeCommitSha": pr.get("merge_commit_sha"),
                "issue": None,
                "files": [],
            }
            issue = services.store.find_issue_by_pr_url(project_id, pr["html_url"])
            if issue:
                entry["issue"] = {"id": issue.id, "title": issue.title, "status": issue.status}
            try:
                files = await github.list_pull_request_files(pr["number"])
                entry["files"] = [f["filename"] for f in files]
            except DeployOpsError as e:
                entry["filesError"] = describe(e)
            entries.append(entry)
    return entries


# =============================================================================
# Runs, notifications, audit
# =============================================================================


@app.get("/api/runs")
async def list_runs(
    limit: int = 20,
    kind: Optional[str] = None,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    return services.tracker.list_runs(limit=limit, kind=kind)


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str, auth: dict = Depends(verify_auth), services: Services = Depends(get_services)):
    run = services.tracker.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@app.get("/api/notifications")
async def list_notifications(
    unread: bool = False,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    notifications = services.store.list_notifications(auth["user_id"], unread_only=unread)
    return [n.model_dump(mode="json") for n in notifications]


@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    if not services.store.mark_notification_read(notification_id, auth["user_id"]):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@app.get("/api/projects/{project_id}/audit")
async def list_audit(
    project_id: str,
    limit: int = 50,
    auth: dict = Depends(verify_auth),
    services: Services = Depends(get_services),
):
    require_project(services, project_id)
    require_role(services, project_id, auth, RELEASE_ROLES)
    return [entry.model_dump(mode="json") for entry in services.store.list_audit_logs(project_id, limit)]


def run_server():
    """Run the API server."""
    import uvicorn

    settings = get_services().settings
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run_server()

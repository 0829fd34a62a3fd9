"""Tests for the FastAPI service."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import FakeInvoker
from deployops.api.app import _running_tasks, app, event_stream, get_services
from deployops.errors import AuthenticationError
from deployops.fixer import RollbackResult
from deployops.services import build_services

ALICE = {"X-User-Id": "alice"}


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def services(settings, invoker, github, slack):
    services = build_services(settings, invoker=invoker)
    services.notifier._slack = slack
    services.autofix.github_factory = github.factory
    services.merge.github_factory = github.factory
    services.issues.github_factory = github.factory
    services.github_client = github.factory
    return services


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def project_id(client):
    response = client.post(
        "/api/projects",
        json={"name": "Shop", "repoUrl": "https://github.com/acme/shop", "githubToken": "ghp_project"},
        headers=ALICE,
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def issue_id(client, project_id):
    response = client.post(
        f"/api/projects/{project_id}/issues",
        json={"title": "Null pointer on login", "type": "bug"},
        headers=ALICE,
    )
    assert response.status_code == 201
    return response.json()["id"]


class TestProjects:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_create_project(self, client, project_id, services):
        data = client.get(f"/api/projects/{project_id}", headers=ALICE).json()

        assert data["owner"] == "acme"
        assert data["repo"] == "shop"
        assert "github_token" not in data
        assert data["members"] == [{"project_id": project_id, "user_id": "alice", "role": "admin"}]

    def test_unknown_project(self, client):
        response = client.get("/api/projects/missing", headers=ALICE)
        assert response.status_code == 404

    def test_invalid_repo_url(self, client):
        response = client.post("/api/projects", json={"name": "x", "repoUrl": "not a repo"}, headers=ALICE)
        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    def test_non_member_cannot_add_members(self, client, project_id):
        response = client.post(
            f"/api/projects/{project_id}/members",
            json={"userId": "mallory", "role": "admin"},
            headers={"X-User-Id": "mallory"},
        )
        assert response.status_code == 403


class TestIssues:
    def test_list_issues(self, client, project_id, issue_id):
        issues = client.get(f"/api/projects/{project_id}/issues", headers=ALICE).json()
        assert [i["id"] for i in issues] == [issue_id]
        assert issues[0]["status"] == "open"

    def test_patch_running_issue_rejected(self, client, project_id, issue_id, services):
        services.store.update_issue(issue_id, status="ai_running")
        response = client.patch(
            f"/api/projects/{project_id}/issues/{issue_id}",
            json={"status": "closed"},
            headers=ALICE,
        )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Cannot manually move an issue that is being processed by AI Agent.",
            "kind": "validation",
        }

    def test_patch_unknown_issue(self, client, project_id):
        response = client.patch(f"/api/projects/{project_id}/issues/missing", json={"title": "x"}, headers=ALICE)
        assert response.status_code == 404

    def test_sync_github(self, client, project_id, github):
        github.remote_issues = [{"id": 5, "number": 1, "title": "Crash", "labels": [{"name": "bug"}]}]
        response = client.post(f"/api/projects/{project_id}/sync-github", headers=ALICE)

        assert response.json() == {"imported": 1, "skipped": 0}
        assert github.tokens == ["ghp_project"]


class TestRunAI:
    def test_run_ai(self, client, issue_id, services):
        response = client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["prUrl"] == "https://github.com/acme/shop/pull/42"
        assert services.store.get_issue(issue_id).status == "pr_created"

    def test_session_token_header(self, client, issue_id, github):
        client.post(f"/api/issues/{issue_id}/run-ai", headers={**ALICE, "X-GitHub-Token": "ghp_session"})
        assert github.tokens == ["ghp_session"]

    def test_run_ai_twice(self, client, issue_id, invoker):
        client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)
        response = client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)

        assert response.status_code == 400
        assert response.json()["kind"] == "validation"
        assert len(invoker.invocations) == 1

    def test_run_ai_failure(self, client, issue_id, invoker, services):
        invoker.error = RuntimeError("rate limited")
        response = client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)

        assert response.status_code == 500
        assert response.json()["error"] == "rate limited"
        assert services.store.get_issue(issue_id).status == "open"

    def test_bad_credentials(self, client, issue_id, github):
        github.errors["create_issue"] = AuthenticationError("Bad credentials")
        response = client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)

        assert response.status_code == 401
        assert response.json()["error"].startswith("GitHub Bad Credentials")

    def test_stream(self, client, issue_id):
        with client.stream("POST", f"/api/issues/{issue_id}/run-ai/stream", headers=ALICE) as response:
            assert response.headers["content-type"].startswith("text/event-stream")
            events = [
                json.loads(line[len("data: "):])
                for line in response.iter_lines()
                if line.startswith("data: ")
            ]

        assert all("message" in e for e in events)
        assert events[-1]["status"] == "SUCCESS"
        assert events[-1]["prUrl"] == "https://github.com/acme/shop/pull/42"
        assert sum(1 for e in events if "status" in e) == 1

    def test_non_member_cannot_run(self, client, issue_id, invoker):
        response = client.post(f"/api/issues/{issue_id}/run-ai", headers={"X-User-Id": "mallory"})
        assert response.status_code == 403
        assert invoker.invocations == []


class TestMergeAndRollback:
    def test_merge(self, client, issue_id, services):
        client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)
        response = client.post(f"/api/issues/{issue_id}/merge", json={"confirm": True}, headers=ALICE)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert services.store.get_issue(issue_id).status == "closed"

    def test_merge_without_confirm(self, client, issue_id):
        client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)
        response = client.post(f"/api/issues/{issue_id}/merge", json={}, headers=ALICE)
        assert response.status_code == 400

    def test_rollback_reopens_issue(self, client, project_id, issue_id, services):
        services.store.update_issue(issue_id, status="closed", pr_url="https://github.com/acme/shop/pull/42")
        services.rollback.run = AsyncMock(return_value=RollbackResult(
            success=True,
            pr_number=42,
            commit_sha="abc123",
            pr_url="https://github.com/acme/shop/pull/43",
            revert_pr_number=43,
            branch="revert/pr-42-1",
        ))

        response = client.post(
            f"/api/projects/{project_id}/rollback",
            json={"prNumber": 42, "commitSha": "abc123", "issueId": issue_id},
            headers=ALICE,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["prUrl"] == "https://github.com/acme/shop/pull/43"
        assert data["issue"]["status"] == "open"
        kwargs = services.rollback.run.await_args.kwargs
        assert kwargs["repo_url"] == "https://github.com/acme/shop"
        assert kwargs["credentials"].github_token == "ghp_project"

    def test_rollback_failure(self, client, project_id, services):
        services.rollback.run = AsyncMock(return_value=RollbackResult(
            success=False,
            pr_number=42,
            commit_sha="abc123",
            error="Could not revert commit abc123: conflict",
            error_kind="conflict",
        ))
        response = client.post(
            f"/api/projects/{project_id}/rollback",
            json={"prNumber": 42, "commitSha": "abc123"},
            headers=ALICE,
        )

        assert response.status_code == 409
        assert response.json()["kind"] == "conflict"

    def test_rollback_validates_body(self, client, project_id):
        response = client.post(f"/api/projects/{project_id}/rollback", json={"prNumber": 0}, headers=ALICE)
        assert response.status_code == 422


class TestReadEndpoints:
    def test_pull_requests(self, client, project_id, issue_id, github):
        from deployops.fixer import GitHubClientError

        client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)
        github.pull_requests = [
            {"number": 42, "title": "fix: login", "state": "open",
             "html_url": "https://github.com/acme/shop/pull/42", "user": {"login": "deployops-bot"}},
            {"number": 41, "title": "docs", "state": "closed",
             "html_url": "https://github.com/acme/shop/pull/41", "merged_at": "2026-01-01T00:00:00Z"},
        ]
        github.pr_files = {
            42: [{"filename": "app/login.py"}],
            41: GitHubClientError("list_pull_request_files", "acme/shop", 500, "boom"),
        }

        entries = client.get(f"/api/projects/{project_id}/pull-requests", headers=ALICE).json()

        assert entries[0]["issue"]["id"] == issue_id
        assert entries[0]["files"] == ["app/login.py"]
        assert entries[1]["issue"] is None
        assert entries[1]["files"] == []
        assert "boom" in entries[1]["filesError"]

    def test_runs_and_notifications(self, client, issue_id):
        run_id = client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE).json()["runId"]

        runs = client.get("/api/runs", headers=ALICE).json()
        assert [r["run_id"] for r in runs] == [run_id]
        assert client.get(f"/api/runs/{run_id}", headers=ALICE).json()["status"] == "SUCCESS"
        assert client.get("/api/runs/missing", headers=ALICE).status_code == 404

        notifications = client.get("/api/notifications", headers=ALICE).json()
        assert {n["type"] for n in notifications} == {"pr_created", "task_assigned"}
        read = client.post(f"/api/notifications/{notifications[0]['id']}/read", headers=ALICE)
        assert read.json() == {"success": True}
        assert len(client.get("/api/notifications?unread=true", headers=ALICE).json()) == 1

    def test_audit(self, client, project_id, issue_id):
        client.post(f"/api/issues/{issue_id}/run-ai", headers=ALICE)
        actions = [e["action"] for e in client.get(f"/api/projects/{project_id}/audit", headers=ALICE).json()]
        assert actions[:2] == ["ai_pr_created", "ai_fix_start"]


class TestAuth:
    @pytest.fixture
    def services(self, settings, invoker, github, slack):
        locked = settings.model_copy(update={"api_username": "ops", "api_password": "s3cret"})
        services = build_services(locked, invoker=invoker)
        services.notifier._slack = slack
        return services

    def test_requires_credentials(self, client):
        assert client.get("/api/runs").status_code == 401

    def test_wrong_password(self, client):
        assert client.get("/api/runs", auth=("ops", "nope")).status_code == 401

    def test_valid_credentials(self, client):
        response = client.get("/api/runs", auth=("ops", "s3cret"))
        assert response.status_code == 200

    def test_health_is_open(self, client):
        assert client.get("/api/health").status_code == 200


class TestEventStream:
    @pytest.mark.asyncio
    async def test_run_survives_client_disconnect(self):
        gate = asyncio.Event()
        delivered = []

        async def start(sink):
            sink({"message": "cloning", "level": "info"})
            await gate.wait()
            delivered.append("finished")
            sink({"status": "SUCCESS", "message": "done"})

        before = set(_running_tasks)
        body = event_stream(start).body_iterator
        first = await body.__anext__()
        assert json.loads(first[len("data: "):]) == {"message": "cloning", "level": "info"}
        (task,) = _running_tasks - before

        await body.aclose()
        gate.set()
        await task

        assert delivered == ["finished"]
        assert task not in _running_tasks

    @pytest.mark.asyncio
    async def test_crashed_run_ends_with_failed_record(self):
        async def start(sink):
            raise RuntimeError("worker crashed")

        before = set(_running_tasks)
        chunks = [chunk async for chunk in event_stream(start).body_iterator]

        assert json.loads(chunks[-1][len("data: "):])["status"] == "FAILED"
        assert "worker crashed" in chunks[-1]
        assert _running_tasks <= before

"""Tests for the GitHub client against a mocked transport."""

import json

import httpx
import pytest

from deployops.errors import AuthenticationError, ConfigurationError, ConflictError, TransientIOError, ValidationError
from deployops.fixer import FileChange, GitHubClient, GitHubClientError, parse_pull_request_url, parse_repo_url
from deployops.fixer.github_client import repo_clone_url


def make_client(handler):
    return GitHubClient("ghp_abc", "acme/shop", transport=httpx.MockTransport(handler))


class TestRepoParsing:
    @pytest.mark.parametrize(
        "value",
        [
            "https://github.com/acme/shop",
            "https://github.com/acme/shop.git",
            "https://github.com/acme/shop/",
            "git@github.com:acme/shop.git",
            "acme/shop",
        ],
    )
    def test_parse_repo_url(self, value):
        assert parse_repo_url(value) == ("acme", "shop")

    def test_invalid_repo_url(self):
        with pytest.raises(ValidationError):
            parse_repo_url("not a repo")

    def test_clone_url_for_shorthand(self):
        assert repo_clone_url("acme/shop") == "https://github.com/acme/shop.git"
        assert repo_clone_url("/srv/git/shop.git") == "/srv/git/shop.git"

    def test_parse_pull_request_url(self):
        assert parse_pull_request_url("https://github.com/acme/shop/pull/42") == 42
        with pytest.raises(ValidationError):
            parse_pull_request_url("https://github.com/acme/shop/issues/42")


class TestGitHubClient:
    def test_requires_token(self):
        with pytest.raises(ConfigurationError, match="Missing GitHub Token"):
            GitHubClient(None, "acme/shop")

    @pytest.mark.asyncio
    async def test_create_issue(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "number": 7,
                "url": "https://api.github.com/repos/acme/shop/issues/7",
                "html_url": "https://github.com/acme/shop/issues/7",
                "title": "[DeployOps] Broken",
                "state": "open",
            })

        async with make_client(handler) as client:
            issue = await client.create_issue("[DeployOps] Broken", "body")

        assert issue.number == 7
        assert issue.html_url == "https://github.com/acme/shop/issues/7"
        assert seen["path"] == "/repos/acme/shop/issues"
        assert seen["auth"] == "Bearer ghp_abc"
        assert seen["body"] == {"title": "[DeployOps] Broken", "body": "body"}

    @pytest.mark.asyncio
    async def test_unauthorized_is_authentication_error(self):
        def handler(request):
            return httpx.Response(401, json={"message": "Bad credentials"})

        async with make_client(handler) as client:
            with pytest.raises(AuthenticationError, match="Bad credentials"):
                await client.get_default_branch()

    @pytest.mark.asyncio
    async def test_other_errors_carry_status(self):
        def handler(request):
            return httpx.Response(404, json={"message": "Not Found"})

        async with make_client(handler) as client:
            with pytest.raises(GitHubClientError) as exc_info:
                await client.get_pull_request(5)

        assert exc_info.value.status_code == 404
        assert exc_info.value.operation == "get_pull_request"
        assert exc_info.value.kind.value == "host_api"

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientIOError):
                await client.list_issues()

    @pytest.mark.asyncio
    async def test_merge_rejection_is_conflict(self):
        def handler(request):
            assert request.method == "PUT"
            assert json.loads(request.content)["merge_method"] == "squash"
            return httpx.Response(405, json={"message": "Pull Request is not mergeable"})

        async with make_client(handler) as client:
            with pytest.raises(ConflictError, match="GitHub Rejected Merge: Pull Request is not mergeable"):
                await client.merge_pull_request(42)

    @pytest.mark.asyncio
    async def test_commit_changes_builds_tree(self):
        requests = []

        def handler(request):
            body = json.loads(request.content) if request.content else None
            requests.append((request.method, request.url.path, body))
            path = request.url.path
            if path.endswith("/git/blobs"):
                return httpx.Response(201, json={"sha": "blob1"})
            if "/git/commits/" in path:
                return httpx.Response(200, json={"tree": {"sha": "basetree"}})
            if path.endswith("/git/trees"):
                return httpx.Response(201, json={"sha": "newtree"})
            if path.endswith("/git/commits"):
                return httpx.Response(201, json={"sha": "commit1"})
            return httpx.Response(500)

        changes = [FileChange("app/login.py", "fixed\n"), FileChange("old.py", None)]
        async with make_client(handler) as client:
            sha = await client.commit_changes(changes, "parent1", "fix: login")

        assert sha == "commit1"
        tree_body = next(body for method, path, body in requests if path.endswith("/git/trees"))
        assert tree_body["base_tree"] == "basetree"
        assert tree_body["tree"] == [
            {"path": "app/login.py", "mode": "100644", "type": "blob", "sha": "blob1"},
            {"path": "old.py", "mode": "100644", "type": "blob", "sha": None},
        ]
        commit_body = requests[-1][2]
        assert commit_body == {"message": "fix: login", "tree": "newtree", "parents": ["parent1"]}

    @pytest.mark.asyncio
    async def test_create_pull_request_defaults_base(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"default_branch": "develop"})
            body = json.loads(request.content)
            assert body["base"] == "develop"
            return httpx.Response(201, json={
                "number": 43,
                "url": "https://api.github.com/repos/acme/shop/pulls/43",
                "html_url": "https://github.com/acme/shop/pull/43",
                "title": body["title"],
                "state": "open",
            })

        async with make_client(handler) as client:
            pr = await client.create_pull_request("revert: rollback PR #42", "body", head="revert/pr-42-1")

        assert pr.number == 43
        assert pr.head_ref == "revert/pr-42-1"

    @pytest.mark.asyncio
    async def test_update_branch_patches_ref(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"object": {"sha": "def456"}})

        async with make_client(handler) as client:
            await client.update_branch("ai-fix/issue-7", "def456", force=True)

        assert seen["method"] == "PATCH"
        assert seen["path"] == "/repos/acme/shop/git/refs/heads/ai-fix/issue-7"
        assert seen["body"] == {"sha": "def456", "force": True}

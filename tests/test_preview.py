"""Tests for preview runs: file application, process streaming and the docker flow."""

import sys

import pytest

from conftest import commit_file, git, requires_git
from deployops.fixer import PreviewRunner
from deployops.fixer import preview as preview_module
from deployops.fixer.preview import apply_modified_files, parse_exposed_port, stream_process


class TestApplyModifiedFiles:
    def test_writes_files(self, tmp_path):
        applied = apply_modified_files(tmp_path, {"src/app.py": "print('hi')\n", "README.md": "# Shop\n"})

        assert sorted(applied) == ["README.md", "src/app.py"]
        assert (tmp_path / "src" / "app.py").read_text() == "print('hi')\n"

    def test_skips_paths_outside_workspace(self, tmp_path):
        root = tmp_path / "ws"
        root.mkdir()
        warnings = []

        applied = apply_modified_files(
            root,
            {"../escape.txt": "x", "/etc/passwd": "x", ".git/config": "x", "ok.txt": "y"},
            warn=warnings.append,
        )

        assert applied == ["ok.txt"]
        assert not (tmp_path / "escape.txt").exists()
        assert len(warnings) == 3


class TestExposedPort:
    def test_finds_port(self):
        assert parse_exposed_port("FROM node:20\nEXPOSE 3000\nCMD npm start\n") == 3000

    def test_no_port(self):
        assert parse_exposed_port("FROM python:3.12\n") is None


class TestStreamProcess:
    @pytest.mark.asyncio
    async def test_forwards_lines_and_exit_code(self):
        lines = []
        code = await stream_process(
            [sys.executable, "-c", "print('one'); print('two'); raise SystemExit(3)"],
            lines.append,
            timeout=30,
        )
        assert lines == ["one", "two"]
        assert code == 3

    @pytest.mark.asyncio
    async def test_kills_after_timeout(self):
        stopped = []

        async def on_timeout():
            stopped.append(True)

        code = await stream_process(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            lambda line: None,
            timeout=0.2,
            on_timeout=on_timeout,
        )
        assert code is None
        assert stopped == [True]

    @pytest.mark.asyncio
    async def test_missing_binary_is_transient(self):
        from deployops.errors import TransientIOError

        with pytest.raises(TransientIOError):
            await stream_process(["definitely-not-a-real-binary-xyz"], lambda line: None, timeout=5)


@requires_git
class TestPreviewRunner:
    @pytest.fixture
    def docker_calls(self, monkeypatch):
        """Replace process streaming so no docker daemon is needed."""
        calls = []

        async def fake_stream(argv, on_line, timeout, cwd=None, on_timeout=None):
            calls.append(argv)
            on_line(f"$ {' '.join(argv[:2])}")
            return 0

        monkeypatch.setattr(preview_module, "stream_process", fake_stream)
        return calls

    @pytest.mark.asyncio
    async def test_builds_and_runs_container(self, workspaces, settings, credentials, project, remote_repo, docker_calls):
        bare, work = remote_repo
        commit_file(work, "Dockerfile", "FROM nginx\nEXPOSE 80\n", "add dockerfile")
        git("push", "origin", "main", cwd=work)
        records = []

        runner = PreviewRunner(workspaces, settings)
        result = await runner.run(
            project,
            credentials,
            {"index.html": "<h1>preview</h1>"},
            on_log=records.append,
            clone_url=str(bare),
        )

        assert result.success is True, result.error
        assert result.applied_files == ["index.html"]
        assert result.preview_url.startswith("http://localhost:")
        build, run = docker_calls
        assert build[:3] == ["docker", "build", "-t"]
        assert build[3].startswith("deployops-run-")
        assert run[:3] == ["docker", "run", "--rm"]
        assert "--memory" in run and "--cpus" in run
        assert any(r["message"].startswith("[PREVIEW_URL]") for r in records if "level" in r)
        assert records[-1]["status"] == "SUCCESS"
        assert (workspaces.cached_path(project.id) / "index.html").exists()

    @pytest.mark.asyncio
    async def test_missing_dockerfile(self, workspaces, settings, credentials, project, remote_repo, docker_calls):
        bare, _ = remote_repo
        result = await PreviewRunner(workspaces, settings).run(project, credentials, clone_url=str(bare))

        assert result.success is False
        assert result.error_kind == "validation"
        assert "Dockerfile" in result.error
        assert docker_calls == []

    @pytest.mark.asyncio
    async def test_failed_build_discards_checkout(self, workspaces, settings, credentials, project, remote_repo, monkeypatch):
        bare, work = remote_repo
        commit_file(work, "Dockerfile", "FROM nothing\n", "add dockerfile")
        git("push", "origin", "main", cwd=work)

        async def failing_build(argv, on_line, timeout, cwd=None, on_timeout=None):
            return 1

        monkeypatch.setattr(preview_module, "stream_process", failing_build)
        result = await PreviewRunner(workspaces, settings).run(project, credentials, clone_url=str(bare))

        assert result.error_kind == "validation"
        assert "docker build failed" in result.error
        assert not workspaces.cached_path(project.id).exists()

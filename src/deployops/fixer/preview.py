"""Preview runs: build and start a project's container from a cached checkout.

The project's persistent workspace is synced to the remote default branch,
editor changes are written on top, then ``docker build`` and ``docker run``
output is streamed to the caller. The container is killed after the
configured wall-clock limit.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..config import Settings, get_settings
from ..credentials import Credentials
from ..errors import TransientIOError, ValidationError, classify, describe
from ..models import Project, RunStatus
from ..workspace import GitRunner, WorkspaceManager, workspace_key
from .github_client import repo_clone_url
from .run_log import LogSink, RunLog, RunTracker

logger = logging.getLogger(__name__)

_EXPOSE = re.compile(r"^\s*EXPOSE\s+(\d+)", re.IGNORECASE | re.MULTILINE)


@dataclass
class PreviewResult:
    success: bool
    run_id: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    preview_url: Optional[str] = None
    applied_files: Optional[list[str]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def parse_exposed_port(dockerfile: str) -> Optional[int]:
    match = _EXPOSE.search(dockerfile)
    return int(match.group(1)) if match else None


def apply_modified_files(root: Path, files: dict[str, str], warn: Optional[Callable[[str], None]] = None) -> list[str]:
    """Write editor changes into a workspace.

    Paths that resolve outside the workspace are skipped.

    Returns:
        Relative paths that were written
    """
    root = root.resolve()
    applied = []
    for rel, content in files.items():
        target = (root / rel).resolve()
        if not target.is_relative_to(root) or target == root or ".git" in target.relative_to(root).parts:
            if warn:
                warn(f"Skipped unsafe path: {rel}")
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        applied.append(str(target.relative_to(root)))
    return applied


async def stream_process(
    argv: list[str],
    on_line: Callable[[str], None],
    timeout: float,
    cwd: Optional[Path] = None,
    on_timeout: Optional[Callable[[], Awaitable[None]]] = None,
) -> Optional[int]:
    """Run a command, forwarding each output line.

    The process is killed once ``timeout`` seconds have passed.

    Returns:
        Exit code, or None if the process was killed for running too long
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise TransientIOError(f"Could not start {argv[0]}: {e}") from e

    async def pump() -> int:
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                on_line(line)
        return await process.wait()

    try:
        return await asyncio.wait_for(pump(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{argv[0]} exceeded {timeout}s, killing pid {process.pid}")
        process.kill()
        await process.wait()
        if on_timeout is not None:
            await on_timeout()
        return None


class PreviewRunner:
    """Builds and runs a project's container from its cached checkout."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        settings: Optional[Settings] = None,
        git_factory: Optional[Callable[[Optional[str]], GitRunner]] = None,
        tracker: Optional[RunTracker] = None,
    ):
        self.workspaces = workspaces
        self.settings = settings or get_settings()
        self.git_factory = git_factory or (lambda token: GitRunner(token, timeout=self.settings.git_timeout_seconds))
        self.tracker = tracker

    async def run(
        self,
        project: Project,
        credentials: Credentials,
        modified_files: Optional[dict[str, str]] = None,
        on_log: Optional[LogSink] = None,
        clone_url: Optional[str] = None,
    ) -> PreviewResult:
        run_log = RunLog("preview", project.id, sink=on_log, tracker=self.tracker, redact=credentials.redact)
        result = PreviewResult(success=False, run_id=run_log.run_id)
        key = workspace_key(project.id)
        image = f"deployops-run-{key}"
        container = f"container-{key}"
        timeout = self.settings.preview_timeout_seconds

        try:
            repo_url = clone_url or repo_clone_url(project.repo_url or f"{project.owner}/{project.repo}")
            git = self.git_factory(credentials.require_github_token())

            async with self.workspaces.cached_checkout(project.id, repo_url, git, warn=run_log.warning) as path:
                result.applied_files = apply_modified_files(path, modified_files or {}, warn=run_log.warning)
                if result.applied_files:
                    run_log.info(f"Applied {len(result.applied_files)} modified files")

                dockerfile = path / "Dockerfile"
                if not dockerfile.is_file():
                    raise ValidationError("No Dockerfile found in the repository root; cannot start a preview.")

                run_log.info(f"Building image {image}")
                code = await stream_process(["docker", "build", "-t", image, "."], run_log.info, timeout, cwd=path)
                if code != 0:
                    # Don't reuse a checkout that failed to build
                    self.workspaces.release(path)
                    raise ValidationError(f"docker build failed (exit {code})")

                port = parse_exposed_port(dockerfile.read_text())
                argv = [
                    "docker", "run", "--rm",
                    "--name", container,
                    "--memory", self.settings.preview_memory_limit,
                    "--cpus", self.settings.preview_cpu_limit,
                ]
                if port:
                    host_port = random.randint(10000, 60000)
                    argv.extend(["-p", f"{host_port}:{port}"])
                    result.preview_url = f"http://localhost:{host_port}"
                    run_log.success(f"[PREVIEW_URL] {result.preview_url}")
                argv.append(image)

                run_log.info(f"Starting container {container} (limit {timeout:.0f}s)")
                result.exit_code = await stream_process(
                    argv,
                    run_log.info,
                    timeout,
                    on_timeout=lambda: self._stop(container),
                )
                result.timed_out = result.exit_code is None
        except Exception as e:
            result.error = run_log.redact(describe(e))
            result.error_kind = classify(e).value
            run_log.error(result.error)
            run_log.finish(RunStatus.FAILED, result.error, error=result.error, errorKind=result.error_kind)
            return result

        result.success = True
        message = "Preview stopped after reaching its time limit" if result.timed_out else "Preview exited"
        run_log.finish(RunStatus.SUCCESS, message, exitCode=result.exit_code, previewUrl=result.preview_url)
        return result

    async def _stop(self, container: str) -> None:
        try:
            await stream_process(["docker", "stop", container], lambda line: None, timeout=30)
        except TransientIOError as e:
            logger.warning(f"Could not stop {container}: {e}")

"""Workspace directories and git plumbing for orchestration runs.

Handles:
- One-shot workspaces that are always deleted when the run ends
- Persistent per-project checkouts reused by preview runs
- Async git subprocesses with timeouts and token redaction
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from .errors import TransientIOError

logger = logging.getLogger(__name__)

WarnCallback = Callable[[str], None]


@dataclass
class GitResult:
    """Output of one git command."""
    returncode: int
    stdout: str
    stderr: str


class GitCommandError(TransientIOError):
    """A git subprocess failed or timed out."""

    def __init__(self, command: str, returncode: Optional[int], stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        if returncode is None:
            super().__init__(f"git {command} timed out")
        else:
            super().__init__(f"git {command} failed ({returncode}): {stderr.strip()}")


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Embed a token into an https clone URL.

    Local paths, ``file://`` URLs and URLs that already carry credentials
    are returned unchanged.
    """
    if not token:
        return repo_url
    parsed = urlparse(repo_url)
    if parsed.scheme != "https" or "@" in parsed.netloc:
        return repo_url
    return urlunparse(parsed._replace(netloc=f"x-access-token:{token}@{parsed.netloc}"))


def workspace_key(project_id: str) -> str:
    """Stable directory name for a project's persistent checkout."""
    return hashlib.md5(project_id.encode("utf-8")).hexdigest()[:12]


class GitRunner:
    """Runs git commands for a workspace."""

    def __init__(self, token: Optional[str] = None, timeout: float = 120.0):
        """Initialize the runner.

        Args:
            token: GitHub token used for clone/fetch/push and redacted from errors
            timeout: Per-command timeout in seconds
        """
        self.token = token
        self.timeout = timeout

    def redact(self, text: str) -> str:
        # Don't expose token in error messages
        return text.replace(self.token, "***") if self.token else text

    async def run(self, *args: str, cwd: Optional[Path] = None, check: bool = True) -> GitResult:
        """Run a git command.

        Raises:
            GitCommandError: on a non-zero exit (when ``check``) or timeout
        """
        command = self.redact(" ".join(args[:2]))
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitCommandError(command, -1, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"git {command} timed out after {self.timeout}s")
            raise GitCommandError(command, None, "")

        result = GitResult(
            returncode=process.returncode,
            stdout=self.redact(stdout.decode("utf-8", errors="replace")),
            stderr=self.redact(stderr.decode("utf-8", errors="replace")),
        )
        if check and result.returncode != 0:
            logger.warning(f"git {command} failed: {result.stderr.strip()}")
            raise GitCommandError(command, result.returncode, result.stderr)
        return result

    async def clone(self, repo_url: str, dest: Path, depth: Optional[int] = None) -> None:
        args = ["clone"]
        if depth:
            args.extend(["--depth", str(depth)])
        args.extend([authenticated_url(repo_url, self.token), str(dest)])
        logger.info(f"Cloning {self.redact(repo_url)} into {dest}")
        await self.run(*args)

    async def configure_identity(self, cwd: Path, name: str, email: str) -> None:
        await self.run("config", "user.name", name, cwd=cwd)
        await self.run("config", "user.email", email, cwd=cwd)

    async def current_branch(self, cwd: Path) -> str:
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        return result.stdout.strip()

    async def remote_default_branch(self, cwd: Path) -> Optional[str]:
        """Default branch advertised by origin, if known locally."""
        result = await self.run("symbolic-ref", "--short", "refs/remotes/origin/HEAD", cwd=cwd, check=False)
        ref = result.stdout.strip()
        if result.returncode != 0 or not ref:
            return None
        return ref.split("/", 1)[-1]

    async def checkout_new_branch(self, cwd: Path, branch: str) -> None:
        await self.run("checkout", "-b", branch, cwd=cwd)

    async def revert(self, cwd: Path, sha: str, mainline: Optional[int] = None) -> None:
        args = ["revert"]
        if mainline is not None:
            args.extend(["-m", str(mainline)])
        args.extend([sha, "--no-edit"])
        await self.run(*args, cwd=cwd)

    async def revert_abort(self, cwd: Path) -> None:
        await self.run("revert", "--abort", cwd=cwd, check=False)

    async def push(self, cwd: Path, branch: str) -> None:
        await self.run("push", "origin", branch, cwd=cwd)

    async def set_remote(self, cwd: Path, repo_url: str) -> None:
        await self.run("remote", "set-url", "origin", authenticated_url(repo_url, self.token), cwd=cwd)

    async def fetch(self, cwd: Path) -> None:
        await self.run("fetch", "origin", cwd=cwd)

    async def reset_hard(self, cwd: Path, ref: str) -> None:
        await self.run("reset", "--hard", ref, cwd=cwd)

    async def ls_files(self, cwd: Path) -> list[str]:
        result = await self.run("ls-files", cwd=cwd)
        return [line for line in result.stdout.splitlines() if line]


class WorkspaceManager:
    """Allocates and removes run workspaces under one root directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or Path(tempfile.gettempdir()) / "deployops-workspaces")
        self._locks: dict[str, asyncio.Lock] = {}

    def acquire(self, prefix: str = "run", key: Optional[str] = None) -> Path:
        """Create a workspace directory.

        Args:
            prefix: Name prefix for one-shot directories
            key: Stable name for a persistent directory. A persistent
                directory that exists but is not a git checkout is wiped.

        Returns:
            Path to the (empty or reusable) workspace
        """
        self.root.mkdir(parents=True, exist_ok=True)
        if key is None:
            return Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.root))

        path = self.root / key
        if path.exists() and not (path / ".git").exists():
            self.release(path)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def release(self, path: Optional[Path]) -> bool:
        """Delete a workspace. Never raises.

        Returns:
            True if the directory is gone afterwards
        """
        if path is None:
            return True
        path = Path(path)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove workspace {path}: {e}")
        return not path.exists()

    @asynccontextmanager
    async def one_shot(self, prefix: str = "run"):
        """Workspace for a single run, removed however the run ends."""
        path = self.acquire(prefix=prefix)
        logger.info(f"Acquired workspace {path}")
        try:
            yield path
        finally:
            if self.release(path):
                logger.info(f"Released workspace {path}")

    def lock_for(self, project_id: str) -> asyncio.Lock:
        return self._locks.setdefault(workspace_key(project_id), asyncio.Lock())

    def cached_path(self, project_id: str) -> Path:
        return self.root / workspace_key(project_id)

    @asynccontextmanager
    async def cached_checkout(
        self,
        project_id: str,
        repo_url: str,
        git: GitRunner,
        warn: Optional[WarnCallback] = None,
    ):
        """Persistent checkout of a project's repository.

        Holds the project's lock for the duration of the block. The first use
        clones; later uses fetch and hard-reset to the remote default branch.
        A failed sync keeps the stale checkout and reports a warning. A failed
        first clone removes the partial directory.
        """
        async with self.lock_for(project_id):
            path = self.acquire(key=workspace_key(project_id))
            if (path / ".git").exists():
                await self._sync(path, repo_url, git, warn)
            else:
                try:
                    await git.clone(repo_url, path)
                except BaseException:
                    self.release(path)
                    raise
            yield path

    async def _sync(self, path: Path, repo_url: str, git: GitRunner, warn: Optional[WarnCallback]) -> None:
        try:
            await git.set_remote(path, repo_url)
            await git.fetch(path)
            default = await git.remote_default_branch(path)
            refs = [f"origin/{b}" for b in dict.fromkeys([default, "main", "master"]) if b]
            last_error = None
            for ref in refs:
                try:
                    await git.reset_hard(path, ref)
                    logger.info(f"Reset cached workspace {path} to {ref}")
                    return
                except GitCommandError as e:
                    last_error = e
            raise last_error
        except GitCommandError as e:
            message = f"Sync failed, using cached workspace state: {e}"
            logger.warning(message)
            if warn:
                warn(message)

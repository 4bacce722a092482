"""Workspace management — one git worktree per tracked item.

Each item gets a private directory ``<worktree_dir>/<prefix>-<number>`` checked
out on a fresh branch of the same name, so a worker never touches the
primary checkout or the trunk branch.

Existence checks are advisory: the cleanup reaper and the dispatcher both
mutate the workspace root without a shared lock, so "already removed" is
treated as success everywhere.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from flotilla import process
from flotilla.errors import ProvisionError
from flotilla.models import RemovalResult, RemovalStatus, Workspace

if TYPE_CHECKING:
    from flotilla.config import FlotillaConfig

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates, verifies and removes per-item git worktrees."""

    def __init__(
        self,
        repo_root: Path,
        worktree_dir: Path,
        *,
        trunk: str = "main",
        prefix: str = "item",
        remote: str = "origin",
        git_timeout: int = 60,
    ):
        self.repo_root = repo_root
        self.worktree_dir = worktree_dir
        self.trunk = trunk
        self.prefix = prefix
        self.remote = remote
        self.git_timeout = git_timeout
        self._name_re = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        self._locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: FlotillaConfig, repo_root: Path) -> WorkspaceManager:
        return cls(
            repo_root,
            config.resolve_path(repo_root, config.paths.worktree_dir),
            trunk=config.project.default_branch,
            prefix=config.workspace.name_prefix,
            remote=config.workspace.remote,
            git_timeout=config.workspace.git_timeout,
        )

    # ── Naming ───────────────────────────────────────────────────────────

    def name_for(self, item_number: int) -> str:
        return f"{self.prefix}-{item_number}"

    def workspace_for(self, item_number: int) -> Workspace:
        """The derived workspace for an item (it may not exist yet)."""
        name = self.name_for(item_number)
        return Workspace(item_number=item_number, path=self.worktree_dir / name, branch=name)

    def parse_name(self, dir_name: str) -> int | None:
        """Item number encoded in a workspace directory name, or None."""
        match = self._name_re.match(dir_name)
        return int(match.group(1)) if match else None

    # ── Operations ───────────────────────────────────────────────────────

    async def ensure(self, item_number: int) -> Workspace:
        """Return the item's workspace, creating it if needed.

        An existing registered worktree is reused unchanged. Otherwise the
        trunk reference is refreshed and a new worktree is created on a
        fresh branch named after the item.

        Raises:
            ProvisionError: If the checkout cannot be created, including a git
                command that times out or cannot be started.
        """
        async with self._lock(item_number):
            workspace = self.workspace_for(item_number)
            if workspace.branch == self.trunk:
                raise ProvisionError(
                    f"Refusing to create workspace on trunk branch '{self.trunk}'"
                )
            try:
                return await self._provision(workspace)
            except asyncio.TimeoutError as e:
                logger.error("git timed out provisioning %s", workspace.branch)
                raise ProvisionError(
                    f"git timed out after {self.git_timeout}s provisioning {workspace.branch}"
                ) from e
            except OSError as e:
                raise ProvisionError(f"Cannot provision {workspace.path}: {e}") from e

    async def _provision(self, workspace: Workspace) -> Workspace:
        registered = await self._registered_paths()
        if workspace.path.resolve() in registered:
            logger.info("Workspace already exists: %s", workspace.path)
            return workspace

        if workspace.path.exists():
            # A stale directory that git no longer tracks would make
            # `worktree add` fail; the caller sees this as a provision error.
            raise ProvisionError(f"{workspace.path} exists but is not a registered worktree")

        base = await self._refresh_trunk()
        self.worktree_dir.mkdir(parents=True, exist_ok=True)

        if await self._branch_exists(workspace.branch):
            rc, _, stderr = await self._git("worktree", "add", str(workspace.path), workspace.branch)
        else:
            rc, _, stderr = await self._git(
                "worktree", "add", "-b", workspace.branch, str(workspace.path), base
            )
        if rc != 0:
            logger.error(
                "Failed to create worktree for #%d: %s", workspace.item_number, stderr.strip()
            )
            raise ProvisionError(
                f"git worktree add failed for {workspace.branch}: {stderr.strip()}"
            )

        logger.info("Created worktree: %s → %s", workspace.branch, workspace.path)
        workspace.created = True
        return workspace

    async def verify_isolation(self, workspace: Workspace) -> bool:
        """Check the workspace is a secondary worktree not on the trunk branch.

        Returns False (with a warning) instead of raising; the caller decides
        whether a failed check is fatal.
        """
        if not workspace.path.is_dir():
            logger.warning("Isolation check: %s does not exist", workspace.path)
            return False

        try:
            rc1, git_dir, _ = await self._git_in(workspace.path, "rev-parse", "--git-dir")
            rc2, common_dir, _ = await self._git_in(
                workspace.path, "rev-parse", "--git-common-dir"
            )
            rc3, branch, _ = await self._git_in(workspace.path, "branch", "--show-current")
        except asyncio.TimeoutError:
            logger.warning("Isolation check timed out for %s", workspace.path)
            return False

        if rc1 != 0 or rc2 != 0 or rc3 != 0:
            logger.warning("Isolation check: %s is not a git checkout", workspace.path)
            return False

        git_dir_path = (workspace.path / git_dir.strip()).resolve()
        common_dir_path = (workspace.path / common_dir.strip()).resolve()
        if git_dir_path == common_dir_path:
            logger.warning("Isolation check: %s is the primary worktree", workspace.path)
            return False

        current = branch.strip()
        if current == self.trunk:
            logger.warning(
                "Isolation check: %s is on trunk branch '%s'", workspace.path, self.trunk
            )
            return False

        workspace.isolation_verified = True
        return True

    async def remove(self, workspace: Workspace) -> RemovalResult:
        """Remove a workspace, falling back to recursive deletion.

        Never raises; a workspace that does not exist counts as removed.
        """
        async with self._lock(workspace.item_number):
            path = workspace.path
            if path.resolve() == self.repo_root.resolve():
                logger.warning("Refusing to remove %s — it is the main repo root", path)
                return RemovalResult(
                    status=RemovalStatus.PARTIALLY_REMOVED, error="refusing to remove repo root"
                )

            if not path.exists():
                await self._prune()
                logger.debug("Workspace %s already removed", path)
                return RemovalResult(status=RemovalStatus.REMOVED)

            try:
                rc, _, stderr = await self._git("worktree", "remove", "--force", str(path))
            except asyncio.TimeoutError:
                rc, stderr = 1, "git worktree remove timed out"
            if rc == 0:
                logger.info("Removed worktree %s", path)
                return RemovalResult(status=RemovalStatus.REMOVED)

            logger.warning(
                "git worktree remove failed for %s (%s), trying manual cleanup",
                path,
                stderr.strip(),
            )
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Failed to remove %s: %s", path, e)
                return RemovalResult(status=RemovalStatus.PARTIALLY_REMOVED, error=str(e))

            await self._prune()
            logger.info("Manually cleaned up directory %s", path)
            return RemovalResult(status=RemovalStatus.REMOVED)

    async def list_workspaces(self) -> list[Workspace]:
        """All registered worktrees inside the workspace root that follow the naming convention."""
        rc, stdout, stderr = await self._git("worktree", "list", "--porcelain")
        if rc != 0:
            logger.warning("git worktree list failed: %s", stderr.strip())
            return []

        root = self.worktree_dir.resolve()
        workspaces: list[Workspace] = []
        for entry in _parse_porcelain(stdout):
            path = Path(entry["worktree"])
            if path.resolve().parent != root:
                continue
            number = self.parse_name(path.name)
            if number is None:
                logger.debug("Skipping %s — not a workspace name", path.name)
                continue
            branch = entry.get("branch", "").removeprefix("refs/heads/")
            workspaces.append(Workspace(item_number=number, path=path, branch=branch or path.name))
        return sorted(workspaces, key=lambda w: w.item_number)

    # ── Private helpers ──────────────────────────────────────────────────

    def _lock(self, item_number: int) -> asyncio.Lock:
        return self._locks.setdefault(item_number, asyncio.Lock())

    async def _refresh_trunk(self) -> str:
        """Fetch the trunk and return the ref new branches should start from."""
        try:
            rc, _, stderr = await self._git("fetch", self.remote, self.trunk)
        except asyncio.TimeoutError:
            rc, stderr = 1, f"fetch timed out after {self.git_timeout}s"
        if rc == 0:
            return f"{self.remote}/{self.trunk}"
        logger.warning(
            "Could not refresh %s/%s (%s), branching from local %s",
            self.remote,
            self.trunk,
            stderr.strip(),
            self.trunk,
        )
        return self.trunk

    async def _branch_exists(self, branch: str) -> bool:
        rc, _, _ = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return rc == 0

    async def _registered_paths(self) -> set[Path]:
        rc, stdout, _ = await self._git("worktree", "list", "--porcelain")
        if rc != 0:
            return set()
        return {Path(e["worktree"]).resolve() for e in _parse_porcelain(stdout)}

    async def _prune(self) -> None:
        try:
            rc, _, stderr = await self._git("worktree", "prune")
        except asyncio.TimeoutError:
            rc, stderr = 1, "timed out"
        if rc != 0:
            logger.debug("git worktree prune failed: %s", stderr.strip())

    async def _git(self, *args: str) -> tuple[int, str, str]:
        return await process.run("git", *args, cwd=self.repo_root, timeout=self.git_timeout)

    async def _git_in(self, cwd: Path, *args: str) -> tuple[int, str, str]:
        return await process.run("git", *args, cwd=cwd, timeout=self.git_timeout)


def _parse_porcelain(output: str) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into one dict per worktree."""
    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        current[key] = value
    if current:
        entries.append(current)
    return [e for e in entries if "worktree" in e]

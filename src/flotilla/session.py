"""tmux session bootstrap behind ``flotilla setup``.

Lays out one pane per channel of the registry (``issue-manager`` in pane 0,
``workerN`` in pane N), resets all worker state, and starts the manager agent.
Workers stay idle until the dispatcher assigns them an item.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import TYPE_CHECKING

from flotilla import process
from flotilla.errors import FlotillaError, TargetUnavailable

if TYPE_CHECKING:
    from flotilla.channels import ChannelRegistry
    from flotilla.config import AgentConfig
    from flotilla.reaper import CleanupReaper
    from flotilla.transport import TmuxTransport
    from flotilla.worker_state import WorkerStateStore

logger = logging.getLogger(__name__)


class SessionBootstrap:
    """Recreates the multi-agent tmux session from scratch."""

    def __init__(
        self,
        registry: ChannelRegistry,
        transport: TmuxTransport,
        store: WorkerStateStore,
        *,
        repo_root: Path,
        worktree_dir: Path,
        agent: AgentConfig,
        reaper: CleanupReaper | None = None,
    ):
        self.registry = registry
        self.transport = transport
        self.store = store
        self.repo_root = repo_root
        self.worktree_dir = worktree_dir
        self.agent = agent
        self.reaper = reaper

    async def run(self) -> None:
        """Full setup. Raises TargetUnavailable if the session cannot be created."""
        session = self.registry.session

        if await self._tmux("has-session", "-t", session, check=False) == 0:
            await self._tmux("kill-session", "-t", session)
            logger.info("Killed existing session '%s'", session)
        cleared = await self.store.reset_all()
        logger.info("Cleared %d worker status marker(s)", cleared)

        self.ensure_gitignore()
        if self.reaper is not None:
            try:
                await self.reaper.reap(dry_run=False)
            except FlotillaError as e:
                logger.warning("Workspace cleanup failed, continuing setup: %s", e)
        self.worktree_dir.mkdir(parents=True, exist_ok=True)

        await self.create_layout()
        await self.prepare_panes()

        manager = self.registry.resolve(self.registry.manager_name)
        await self.transport.run_command(manager, self.agent.manager_command())
        logger.info("Started %s in %s", self.registry.manager_name, manager.target)

        for worker_id in range(1, self.registry.worker_count + 1):
            channel = self.registry.worker_channel(worker_id)
            await self.transport.run_command(
                channel, f"echo '=== {channel.name} waiting ==='"
            )

    def ensure_gitignore(self) -> bool:
        """Add the workspace root to .gitignore. Returns True if the file changed."""
        try:
            rel = self.worktree_dir.resolve().relative_to(self.repo_root.resolve())
        except ValueError:
            # Outside the repository; nothing to ignore
            return False
        entry = f"{rel.as_posix()}/"
        gitignore = self.repo_root / ".gitignore"
        content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        if entry in content.splitlines():
            return False
        with open(gitignore, "a", encoding="utf-8") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(entry + "\n")
        logger.info("Added %s to .gitignore", entry)
        return True

    async def create_layout(self) -> None:
        session = self.registry.session
        window = f"{session}:0"
        await self._tmux("new-session", "-d", "-s", session, "-n", "agents", "-c", str(self.repo_root))
        for _ in range(self.registry.worker_count):
            await self._tmux("split-window", "-t", window, "-c", str(self.repo_root))
            # Re-tile after each split so later splits have room
            await self._tmux("select-layout", "-t", window, "tiled")
        for channel in self.registry.channels():
            await self._tmux("select-pane", "-t", channel.target, "-T", channel.name)
        logger.info(
            "Created session '%s' with %d panes", session, self.registry.worker_count + 1
        )

    async def prepare_panes(self) -> None:
        exports = {
            "ISSUE_MANAGER_ARGS": self.agent.manager_args,
            "WORKER_ARGS": self.agent.worker_args,
            "FLOTILLA_WORKER_COUNT": str(self.registry.worker_count),
        }
        for channel in self.registry.channels():
            await self.transport.run_command(channel, f"cd {shlex.quote(str(self.repo_root))}")
            for name, value in exports.items():
                await self.transport.run_command(channel, f"export {name}={shlex.quote(value)}")
            await self.transport.run_command(channel, f"echo '=== {channel.name} agent ==='")

    async def _tmux(self, *args: str, check: bool = True) -> int:
        try:
            rc, _, stderr = await process.run(self.transport.tmux, *args, timeout=self.transport.timeout)
        except asyncio.TimeoutError as e:
            raise TargetUnavailable(self.registry.session, f"tmux {args[0]} timed out") from e
        if check and rc != 0:
            raise TargetUnavailable(self.registry.session, stderr.strip() or f"tmux {args[0]} exited {rc}")
        return rc

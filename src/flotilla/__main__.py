"""Flotilla CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from flotilla.channels import ChannelRegistry
from flotilla.config import DEFAULT_WORKERS, MAX_WORKERS, MIN_WORKERS, FlotillaConfig, load_config
from flotilla.dispatcher import Dispatcher
from flotilla.errors import (
    AssignmentError,
    ChannelNotFound,
    FlotillaError,
    TargetUnavailable,
    TrackerError,
)
from flotilla.github_client import GitHubClient
from flotilla.models import Assignment, ItemState
from flotilla.reaper import CleanupReaper
from flotilla.session import SessionBootstrap
from flotilla.tracker import IssueTracker
from flotilla.transport import MessageLog, Messenger, TmuxTransport
from flotilla.worker_state import WorkerStateStore
from flotilla.workspace import WorkspaceManager

logger = logging.getLogger("flotilla")


# ── Component wiring ─────────────────────────────────────────────────────────


@dataclass
class Components:
    config: FlotillaConfig
    repo_root: Path
    registry: ChannelRegistry
    transport: TmuxTransport
    messenger: Messenger
    store: WorkerStateStore
    workspaces: WorkspaceManager


def build_components(repo_root: Path, config: FlotillaConfig) -> Components:
    registry = ChannelRegistry.from_config(config.pool)
    transport = TmuxTransport.from_config(config.transport)
    log = MessageLog(config.resolve_path(repo_root, config.paths.message_log))
    return Components(
        config=config,
        repo_root=repo_root,
        registry=registry,
        transport=transport,
        messenger=Messenger(registry, transport, log),
        store=WorkerStateStore(
            config.resolve_path(repo_root, config.paths.status_dir), config.pool.worker_count
        ),
        workspaces=WorkspaceManager.from_config(config, repo_root),
    )


def github_repo(config: FlotillaConfig, repo_root: Path) -> tuple[str, str]:
    """Owner and repo from config, falling back to the ``origin`` remote URL.

    Raises:
        FlotillaError: If neither source names a GitHub repository.
    """
    owner, repo = config.project.owner, config.project.repo
    if owner and repo:
        return owner, repo
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise FlotillaError(f"Cannot read git remote: {e}") from e
    url = result.stdout.strip() if result.returncode == 0 else ""
    if "github.com" in url:
        # Parse github.com/owner/repo from SSH or HTTPS URL
        parts = url.removesuffix(".git").split("github.com")[-1].lstrip("/:").split("/")
        if len(parts) >= 2:
            return owner or parts[0], repo or parts[1]
    raise FlotillaError(
        "GitHub repository unknown — set FLOTILLA_GITHUB_OWNER / FLOTILLA_GITHUB_REPO "
        "or project.owner / project.repo in .flotilla/config.yaml"
    )


def make_github(c: Components) -> GitHubClient:
    owner, repo = github_repo(c.config, c.repo_root)
    return GitHubClient(owner, repo, token=os.environ.get("GITHUB_TOKEN"))


def make_tracker(c: Components, github: GitHubClient) -> IssueTracker:
    return IssueTracker(github, assignee=c.config.project.assignee)


def make_dispatcher(c: Components, tracker: IssueTracker, *, auto_confirm: bool) -> Dispatcher:
    dispatch = c.config.dispatch
    return Dispatcher(
        c.store,
        c.workspaces,
        tracker,
        c.messenger,
        worker_command=c.config.agent.worker_command(),
        setup_commands=dispatch.setup_commands,
        setup_timeout=dispatch.setup_timeout,
        labels=dispatch.labels,
        poll_interval=dispatch.poll_interval,
        confirmation_timeout=dispatch.confirmation_timeout,
        comment_on_completion=dispatch.comment_on_completion,
        confirmer=_auto_confirm if auto_confirm else _prompt_confirmation,
    )


async def _auto_confirm(assignment: Assignment) -> bool:
    return True


async def _prompt_confirmation(assignment: Assignment) -> bool:
    loop = asyncio.get_running_loop()
    answer = await loop.run_in_executor(
        None,
        input,
        f"Worker {assignment.worker_id} started on issue #{assignment.item.number} "
        f"in {assignment.workspace.path}. Confirm setup? [y/N] ",
    )
    return answer.strip().lower() in ("y", "yes")


# ── Commands ─────────────────────────────────────────────────────────────────


async def cmd_send(args, c: Components) -> int:
    if args.list:
        print("Available agents:")
        for channel in c.registry.channels():
            print(f"  {channel.name:<15} → {channel.target:<15} ({channel.description})")
        return 0

    if not args.agent or not args.message:
        print("Usage: flotilla send <agent-name> <message>", file=sys.stderr)
        print("       flotilla send --list", file=sys.stderr)
        return 1

    message = " ".join(args.message)
    try:
        await c.messenger.send(args.agent, message)
    except ChannelNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Available agents: " + ", ".join(c.registry.names()), file=sys.stderr)
        return 1
    except TargetUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'flotilla setup' to create the session.", file=sys.stderr)
        return 1

    print(f"Sent to {args.agent}: '{message}'")
    return 0


async def cmd_cleanup(args, c: Components) -> int:
    try:
        github = make_github(c)
    except FlotillaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    async with github:
        reaper = CleanupReaper(c.workspaces, make_tracker(c, github), c.store)
        report = await reaper.reap(dry_run=args.dry_run)

    print("Cleanup summary" + (" (dry run)" if report.dry_run else "") + ":")
    print(f"  Checked:          {report.checked}")
    label = "Would remove:" if report.dry_run else "Removed:"
    print(f"  {label:<18}{report.removed}")
    print(f"  Kept (open):      {report.kept_open}")
    print(f"  Kept (unknown):   {report.kept_unknown}")
    print(f"  Errors:           {report.errors}")
    for name in report.removed_names:
        print(f"  - {name}")
    if report.review_names:
        print("Needs manual review: " + ", ".join(report.review_names))
    return 0


async def cmd_setup(args, c: Components) -> int:
    github = None
    reaper = None
    try:
        github = make_github(c)
    except FlotillaError as e:
        logger.warning("Skipping workspace cleanup: %s", e)
    else:
        await github.start()
        reaper = CleanupReaper(c.workspaces, make_tracker(c, github), c.store)

    bootstrap = SessionBootstrap(
        c.registry,
        c.transport,
        c.store,
        repo_root=c.repo_root,
        worktree_dir=c.workspaces.worktree_dir,
        agent=c.config.agent,
        reaper=reaper,
    )
    try:
        await bootstrap.run()
    except TargetUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if github is not None:
            await github.close()

    print(f"Session '{c.registry.session}' ready with {c.registry.worker_count} worker(s):")
    for channel in c.registry.channels():
        print(f"  Pane {channel.pane}: {channel.name:<15} ({channel.description})")
    print()
    print(f"Attach with: tmux attach-session -t {c.registry.session}")
    print("Start dispatching with: flotilla dispatch")
    return 0


async def cmd_dispatch(args, c: Components) -> int:
    try:
        github = make_github(c)
    except FlotillaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    async with github:
        tracker = make_tracker(c, github)
        dispatcher = make_dispatcher(c, tracker, auto_confirm=args.auto_confirm)

        if args.once:
            try:
                assigned = await dispatcher.poll_once()
            except TrackerError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            for a in assigned:
                print(f"Issue #{a.item.number} → worker{a.worker_id} ({a.workspace.path})")
            if not assigned:
                print("Nothing assigned.")
            return 0

        reaper = None
        if c.config.cleanup.enabled:
            reaper = CleanupReaper(c.workspaces, tracker, c.store, interval=c.config.cleanup.interval)
            await reaper.start()
        await dispatcher.start()
        try:
            await asyncio.Event().wait()
        finally:
            await dispatcher.stop()
            if reaper is not None:
                await reaper.stop()
    return 0


async def cmd_assign(args, c: Components) -> int:
    try:
        github = make_github(c)
    except FlotillaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    async with github:
        tracker = make_tracker(c, github)
        try:
            item = await tracker.get_item(args.issue)
        except FlotillaError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if item.state != ItemState.OPEN:
            print(f"Error: issue #{args.issue} is {item.state.value}", file=sys.stderr)
            return 1
        holder = await c.store.find_by_item(item.number)
        if holder is not None:
            print(f"Error: issue #{item.number} is already held by worker{holder}", file=sys.stderr)
            return 1

        dispatcher = make_dispatcher(c, tracker, auto_confirm=args.auto_confirm)
        try:
            assignment = await dispatcher.assign(item.ref())
            dispatcher.watch_confirmation(assignment)
            await dispatcher.await_confirmation(assignment, timeout=c.config.dispatch.confirmation_timeout)
        except (AssignmentError, TargetUnavailable) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(
        f"Issue #{item.number} assigned to worker{assignment.worker_id} "
        f"({assignment.workspace.path}, branch {assignment.workspace.branch})"
    )
    return 0


async def cmd_complete(args, c: Components) -> int:
    try:
        worker_id = c.registry.worker_id_for(args.worker)
    except ChannelNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        github = make_github(c)
    except FlotillaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    async with github:
        dispatcher = make_dispatcher(c, make_tracker(c, github), auto_confirm=True)
        report = await dispatcher.complete(worker_id)

    print(report.summary)
    for warning in report.warnings:
        print(f"  warning: {warning}")
    print(f"{args.worker} released" + ("" if report.workspace_removed else " (workspace not removed)"))
    return 0


async def cmd_release(args, c: Components) -> int:
    try:
        worker_id = c.registry.worker_id_for(args.worker)
    except ChannelNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    await c.store.release(worker_id)
    print(f"{args.worker} released")
    return 0


async def cmd_status(args, c: Components) -> int:
    slots = await c.store.snapshot()
    busy = 0
    for slot in slots:
        name = c.registry.worker_name(slot.worker_id)
        if slot.is_free:
            print(f"  {name}: free")
            continue
        busy += 1
        if slot.assigned_item is None:
            print(f"  {name}: busy ({slot.raw_payload!r})")
            continue
        line = f"  {name}: busy — {slot.assigned_item.payload()}"
        line += " [confirmed]" if slot.setup_confirmed else " [awaiting confirmation]"
        workspace = c.workspaces.workspace_for(slot.assigned_item.number)
        if not await c.workspaces.verify_isolation(workspace):
            line += " [workspace not isolated]"
        print(line)
    print(f"Load: {busy}/{len(slots)} busy")
    return 0


# ── Argument parsing ─────────────────────────────────────────────────────────

_COMMANDS = {
    "send": cmd_send,
    "cleanup": cmd_cleanup,
    "setup": cmd_setup,
    "dispatch": cmd_dispatch,
    "assign": cmd_assign,
    "complete": cmd_complete,
    "release": cmd_release,
    "status": cmd_status,
}


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1 like every other failure."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    common = _Parser(add_help=False)
    common.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    parser = _Parser(
        prog="flotilla",
        description="Flotilla — dispatch GitHub issues to a pool of terminal coding agents",
    )
    subparsers = parser.add_subparsers(dest="command")

    send_parser = subparsers.add_parser("send", parents=[common], help="Send a message to an agent")
    send_parser.add_argument("agent", nargs="?", help="Agent name, e.g. issue-manager or worker1")
    send_parser.add_argument("message", nargs="*", help="Message text")
    send_parser.add_argument("--list", action="store_true", help="List available agents")

    cleanup_parser = subparsers.add_parser(
        "cleanup", parents=[common], help="Remove workspaces of closed issues"
    )
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="Report what would be removed without deleting"
    )

    setup_parser = subparsers.add_parser(
        "setup", parents=[common], help="Create the tmux session for the agent pool"
    )
    setup_parser.add_argument(
        "worker_count",
        nargs="?",
        default=str(DEFAULT_WORKERS),
        help=f"Number of workers ({MIN_WORKERS}-{MAX_WORKERS}, default: {DEFAULT_WORKERS})",
    )

    dispatch_parser = subparsers.add_parser(
        "dispatch", parents=[common], help="Poll for open issues and assign them to free workers"
    )
    dispatch_parser.add_argument("--once", action="store_true", help="Run a single polling pass")
    dispatch_parser.add_argument(
        "--auto-confirm", action="store_true", help="Confirm worker setup without prompting"
    )

    assign_parser = subparsers.add_parser("assign", parents=[common], help="Assign one issue")
    assign_parser.add_argument("issue", type=int, help="Issue number")
    assign_parser.add_argument(
        "--auto-confirm", action="store_true", help="Confirm worker setup without prompting"
    )

    complete_parser = subparsers.add_parser(
        "complete", parents=[common], help="Process a worker's completion and free its slot"
    )
    complete_parser.add_argument("worker", help="Worker name, e.g. worker1")

    release_parser = subparsers.add_parser(
        "release", parents=[common], help="Reset a worker's status markers"
    )
    release_parser.add_argument("worker", help="Worker name, e.g. worker1")

    subparsers.add_parser("status", parents=[common], help="Show worker load")
    return parser


def parse_worker_count(value: str) -> int | None:
    """Worker count from the command line, or None when outside 1-10."""
    if not value.isdigit():
        return None
    count = int(value)
    return count if MIN_WORKERS <= count <= MAX_WORKERS else None


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    repo_root: Path = args.repo_root.resolve()
    try:
        config = load_config(repo_root)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "setup":
        count = parse_worker_count(args.worker_count)
        if count is None:
            print(
                f"Error: Worker count must be specified in the range {MIN_WORKERS}-{MAX_WORKERS}",
                file=sys.stderr,
            )
            print("Usage: flotilla setup [worker_count]", file=sys.stderr)
            sys.exit(1)
        config.pool.worker_count = count

    components = build_components(repo_root, config)
    try:
        code = asyncio.run(_COMMANDS[args.command](args, components))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()

"""Configuration loading for Flotilla.

Reads .flotilla/config.yaml (optional) and applies environment overrides.
Pydantic models validate the schema; every component receives the values it
needs through its constructor rather than reading process state itself.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

MIN_WORKERS = 1
MAX_WORKERS = 10
DEFAULT_WORKERS = 3

# Used when ISSUE_MANAGER_ARGS / WORKER_ARGS are unset. An empty string is a
# valid value meaning "start the agent without extra arguments".
DEFAULT_AGENT_ARGS = "--dangerously-skip-permissions"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    owner: str = ""  # GitHub org/user
    repo: str = ""  # GitHub repo name
    default_branch: str = "main"
    assignee: str = ""  # login set as assignee when an item is dispatched


class PoolConfig(BaseModel):
    worker_count: int = DEFAULT_WORKERS
    session_name: str = "multiagent"
    manager_name: str = "issue-manager"
    worker_prefix: str = "worker"

    @field_validator("worker_count")
    @classmethod
    def _validate_worker_count(cls, v: int) -> int:
        if not MIN_WORKERS <= v <= MAX_WORKERS:
            raise ValueError(
                f"worker_count must be in the range {MIN_WORKERS}-{MAX_WORKERS}, got {v}"
            )
        return v


class PathsConfig(BaseModel):
    """Locations relative to the repository root (absolute paths are kept)."""

    worktree_dir: str = "worktree"
    status_dir: str = "tmp/worker-status"
    message_log: str = "logs/send_log.txt"


class WorkspaceConfig(BaseModel):
    name_prefix: str = "item"  # item 42 → directory and branch "item-42"
    remote: str = "origin"
    git_timeout: int = 60  # seconds

    @field_validator("name_prefix")
    @classmethod
    def _validate_prefix(cls, v: str) -> str:
        if not v or "/" in v or v.startswith("-"):
            raise ValueError(f"name_prefix must be a plain directory name, got {v!r}")
        return v


class TransportConfig(BaseModel):
    clear_delay: float = 0.3  # after C-c
    inject_delay: float = 0.1  # after the message text
    commit_delay: float = 0.5  # after C-m


class AgentConfig(BaseModel):
    command: str = "claude"
    manager_args: str = DEFAULT_AGENT_ARGS
    worker_args: str = DEFAULT_AGENT_ARGS

    def manager_command(self) -> str:
        return _join_command(self.command, self.manager_args)

    def worker_command(self) -> str:
        return _join_command(self.command, self.worker_args)


class DispatchConfig(BaseModel):
    poll_interval: int = 60  # seconds
    labels: str | None = None  # comma-separated label filter for eligible issues
    setup_commands: list[str] = Field(default_factory=list)  # run inside each new workspace
    setup_timeout: int = 900  # seconds per setup command
    confirmation_timeout: float | None = None  # None = wait for confirmation forever
    comment_on_completion: bool = False


class CleanupConfig(BaseModel):
    enabled: bool = False  # periodic reaping alongside the dispatcher
    interval: int = 3600  # seconds


class FlotillaConfig(BaseModel):
    """Top-level Flotilla configuration (matches .flotilla/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    def resolve_path(self, repo_root: Path, value: str) -> Path:
        p = Path(value)
        return p if p.is_absolute() else repo_root / p


def _join_command(command: str, args: str) -> str:
    args = args.strip()
    return f"{command} {args}" if args else command


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(repo_root: Path, env: dict[str, str] | None = None) -> FlotillaConfig:
    """Load configuration for the repository at ``repo_root``.

    The YAML file is optional; defaults apply when it is absent.
    Environment variables override file values.

    Raises:
        ValueError: If config validation fails.
    """
    env = os.environ if env is None else env
    config_path = repo_root / ".flotilla" / "config.yaml"

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file at %s, using defaults", config_path)

    config = FlotillaConfig(**raw)

    worker_count = env.get("FLOTILLA_WORKER_COUNT")
    if worker_count:
        try:
            count = int(worker_count)
        except ValueError:
            raise ValueError(f"FLOTILLA_WORKER_COUNT must be an integer, got {worker_count!r}")
        config.pool = PoolConfig(**{**config.pool.model_dump(), "worker_count": count})

    # Present-but-empty is meaningful for the agent argument variables
    if "ISSUE_MANAGER_ARGS" in env:
        config.agent.manager_args = env["ISSUE_MANAGER_ARGS"]
    if "WORKER_ARGS" in env:
        config.agent.worker_args = env["WORKER_ARGS"]

    for var, section, field in (
        ("FLOTILLA_WORKTREE_DIR", config.paths, "worktree_dir"),
        ("FLOTILLA_STATUS_DIR", config.paths, "status_dir"),
        ("FLOTILLA_GITHUB_OWNER", config.project, "owner"),
        ("FLOTILLA_GITHUB_REPO", config.project, "repo"),
        ("FLOTILLA_ASSIGNEE", config.project, "assignee"),
    ):
        value = env.get(var)
        if value:
            setattr(section, field, value)

    logger.debug(
        "Loaded Flotilla config: workers=%d repo=%s/%s",
        config.pool.worker_count,
        config.project.owner,
        config.project.repo,
    )
    return config

"""Core data models for Flotilla."""

from __future__ import annotations

import enum
import re
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

# ── Workers ──────────────────────────────────────────────────────────────────


class WorkerStatus(str, enum.Enum):
    FREE = "free"
    BUSY = "busy"


# Busy marker payload, e.g. "Issue #42: Fix bug"
_ITEM_PAYLOAD_RE = re.compile(r"^Issue #(\d+): ?(.*)$", re.DOTALL)


class ItemRef(BaseModel):
    """The subset of an item a worker slot remembers."""

    number: int
    title: str = ""

    def payload(self) -> str:
        return f"Issue #{self.number}: {self.title}"

    @classmethod
    def from_payload(cls, text: str) -> ItemRef | None:
        """Parse a busy marker payload; returns None if it is not recognizable."""
        match = _ITEM_PAYLOAD_RE.match(text.strip())
        if not match:
            return None
        return cls(number=int(match.group(1)), title=match.group(2))


class WorkerSlot(BaseModel):
    """State of one pool slot as read from its markers."""

    worker_id: int
    status: WorkerStatus = WorkerStatus.FREE
    assigned_item: ItemRef | None = None
    setup_confirmed: bool = False
    raw_payload: str | None = Field(
        default=None, description="Busy marker content when it could not be parsed"
    )

    @property
    def is_free(self) -> bool:
        return self.status == WorkerStatus.FREE


# ── Items ────────────────────────────────────────────────────────────────────


class ItemState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class Item(BaseModel):
    """An externally tracked work unit (a GitHub issue)."""

    number: int
    title: str = ""
    state: ItemState = ItemState.UNKNOWN
    assignees: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    def ref(self) -> ItemRef:
        return ItemRef(number=self.number, title=self.title)


# ── Workspaces ───────────────────────────────────────────────────────────────


class Workspace(BaseModel):
    """A branch-scoped git worktree owned by exactly one item."""

    item_number: int
    path: Path
    branch: str
    isolation_verified: bool = False
    created: bool = Field(default=False, description="True when this call created it")

    @property
    def name(self) -> str:
        return self.path.name


class RemovalStatus(str, enum.Enum):
    REMOVED = "removed"
    PARTIALLY_REMOVED = "partially_removed"


class RemovalResult(BaseModel):
    status: RemovalStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RemovalStatus.REMOVED


# ── Messaging ────────────────────────────────────────────────────────────────


class MessageLogEntry(BaseModel):
    """One line of the append-only send log."""

    timestamp: datetime
    target: str
    message: str
    delivered: bool = True

    def render(self) -> str:
        outcome = "SENT" if self.delivered else "FAILED"
        ts = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return f'[{ts}] {self.target}: {outcome} - "{self.message}"'


class DeliveryAck(BaseModel):
    """Bytes were injected into the channel; the recipient has not acknowledged anything."""

    target: str
    channel: str
    delivered_at: datetime


# ── Assignment ───────────────────────────────────────────────────────────────


class AssignmentPhase(str, enum.Enum):
    SELECTING = "selecting"
    EXTERNAL_ASSIGNING = "external_assigning"
    PROVISIONING = "provisioning"
    SETTING_UP = "setting_up"
    NOTIFIED = "notified"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class Assignment(BaseModel):
    worker_id: int
    item: ItemRef
    workspace: Workspace
    phase: AssignmentPhase = AssignmentPhase.NOTIFIED


class CheckConclusion(str, enum.Enum):
    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"
    TIMED_OUT = "timed_out"
    NONE = "none"  # no check runs reported


class CompletionReport(BaseModel):
    worker_id: int
    item: ItemRef | None = None
    pr_number: int | None = None
    pr_state: str | None = None
    checks: CheckConclusion = CheckConclusion.NONE
    summary: str = ""
    warnings: list[str] = Field(default_factory=list)
    workspace_removed: bool = False


# ── Reconciliation ───────────────────────────────────────────────────────────


class ReapReport(BaseModel):
    dry_run: bool = False
    checked: int = 0
    removed: int = 0
    kept_open: int = 0
    kept_unknown: int = 0
    errors: int = 0
    removed_names: list[str] = Field(
        default_factory=list, description="Removed workspaces (would-remove in dry run)"
    )
    review_names: list[str] = Field(
        default_factory=list, description="Workspaces kept for manual review"
    )

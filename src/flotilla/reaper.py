"""Cleanup Reaper — reconciles leftover workspaces against tracker state.

For every workspace under the workspace root:

- item closed                        → remove (dry run: would remove)
- item open                          → keep
- item not found / unknown / error   → keep, flag for manual review

The reaper never fails closed: anything it cannot classify is kept. It runs
independently of the dispatcher and takes no shared lock, so a workspace it
removes may already be gone; removal treats that as success.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from flotilla.errors import TrackerError
from flotilla.models import ItemState, ReapReport

if TYPE_CHECKING:
    from flotilla.tracker import IssueTracker
    from flotilla.worker_state import WorkerStateStore
    from flotilla.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class CleanupReaper:
    """One-shot and periodic workspace reconciliation."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        tracker: IssueTracker,
        store: WorkerStateStore | None = None,
        *,
        interval: int = 3600,
    ):
        self.workspaces = workspaces
        self.tracker = tracker
        self.store = store
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def reap(self, dry_run: bool = False) -> ReapReport:
        report = ReapReport(dry_run=dry_run)
        held = await self._held_items()
        try:
            workspaces = await self.workspaces.list_workspaces()
        except asyncio.TimeoutError:
            logger.error("Listing workspaces timed out, nothing reaped")
            report.errors += 1
            return report

        for workspace in workspaces:
            report.checked += 1
            number = workspace.item_number

            if number in held:
                logger.info("Keeping %s — issue #%d is held by a busy worker", workspace.name, number)
                report.kept_open += 1
                continue

            try:
                state = await self.tracker.get_state(number)
            except TrackerError as e:
                logger.warning("Could not query issue #%d (%s) — keeping %s", number, e, workspace.name)
                report.kept_unknown += 1
                report.review_names.append(workspace.name)
                continue

            if state == ItemState.OPEN:
                logger.debug("Keeping %s — issue #%d is open", workspace.name, number)
                report.kept_open += 1
            elif state == ItemState.CLOSED:
                if dry_run:
                    logger.info("[dry run] Would remove %s (issue #%d closed)", workspace.name, number)
                    report.removed += 1
                    report.removed_names.append(workspace.name)
                    continue
                result = await self.workspaces.remove(workspace)
                if result.ok:
                    logger.info("Removed %s (issue #%d closed)", workspace.name, number)
                    report.removed += 1
                    report.removed_names.append(workspace.name)
                else:
                    logger.error("Failed to remove %s: %s", workspace.name, result.error)
                    report.errors += 1
            elif state == ItemState.NOT_FOUND:
                logger.warning("Issue #%d not found — keeping %s for manual review", number, workspace.name)
                report.kept_unknown += 1
                report.review_names.append(workspace.name)
            else:
                logger.warning(
                    "Issue #%d has unknown state — keeping %s for manual review", number, workspace.name
                )
                report.kept_unknown += 1
                report.review_names.append(workspace.name)

        logger.info(
            "Cleanup %s: checked=%d removed=%d open=%d unknown=%d errors=%d",
            "dry run" if dry_run else "complete",
            report.checked,
            report.removed,
            report.kept_open,
            report.kept_unknown,
            report.errors,
        )
        return report

    async def _held_items(self) -> set[int]:
        if self.store is None:
            return set()
        return {
            slot.assigned_item.number
            for slot in await self.store.snapshot()
            if slot.assigned_item is not None
        }

    # ── Periodic mode ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="cleanup-reaper")
        logger.info("Cleanup reaper started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Cleanup reaper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.reap(dry_run=False)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Cleanup pass failed")

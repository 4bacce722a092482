"""Dispatcher — assigns tracked items to free worker slots.

Assignment is a small state machine:

    selecting → external_assigning → provisioning → setting_up → notified
              → confirmed | rolled_back

Every failure after the external assignee was set rolls the attempt back in
reverse order (markers, channel, workspace, assignee) before the error is
raised, so the tracker and the pool look exactly as they did before the
attempt. The ``notified → confirmed`` transition is an explicit suspension:
``await_confirmation`` waits on a future that ``confirm`` or ``abandon``
resolves.

Completion processing never fails on tracker errors; slot reclamation must
not depend on tracker availability.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

from flotilla import process
from flotilla.errors import (
    AssignmentAbandoned,
    EnvironmentSetupError,
    ExternalAssignFailed,
    FlotillaError,
    IsolationViolation,
    NoCapacity,
    ProvisionError,
    ProvisionFailed,
    SetupFailed,
    TargetUnavailable,
    TrackerError,
    WorkerBusyError,
)
from flotilla.models import (
    Assignment,
    AssignmentPhase,
    CheckConclusion,
    CompletionReport,
    ItemRef,
    Workspace,
)

if TYPE_CHECKING:
    from flotilla.tracker import IssueTracker
    from flotilla.transport import Messenger
    from flotilla.worker_state import WorkerStateStore
    from flotilla.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

Confirmer = Callable[[Assignment], Awaitable[bool]]

_UNASSIGN_ATTEMPTS = 3


@dataclass
class _Attempt:
    """Side effects made so far by one assignment attempt."""

    worker_id: int
    item: ItemRef
    external_assigned: bool = False
    workspace: Workspace | None = None
    marked: bool = False
    agent_started: bool = False


@dataclass
class _Pending:
    assignment: Assignment
    attempt: _Attempt
    gate: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class Dispatcher:
    """Worker-pool dispatcher with rollback and a confirmation gate."""

    def __init__(
        self,
        store: WorkerStateStore,
        workspaces: WorkspaceManager,
        tracker: IssueTracker,
        messenger: Messenger,
        *,
        worker_command: str = "claude",
        setup_commands: list[str] | None = None,
        setup_timeout: int = 900,
        labels: str | None = None,
        poll_interval: int = 60,
        confirmation_timeout: float | None = None,
        comment_on_completion: bool = False,
        confirmer: Confirmer | None = None,
    ):
        self.store = store
        self.workspaces = workspaces
        self.tracker = tracker
        self.messenger = messenger

        self.worker_command = worker_command
        self.setup_commands = list(setup_commands or [])
        self.setup_timeout = setup_timeout
        self.labels = labels
        self.poll_interval = poll_interval
        self.confirmation_timeout = confirmation_timeout
        self.comment_on_completion = comment_on_completion
        self.confirmer = confirmer

        self._assign_lock = asyncio.Lock()
        self._pending: dict[int, _Pending] = {}
        self._confirmers: set[asyncio.Task] = set()
        self._running = False
        self._task: asyncio.Task | None = None

    # ── Assignment protocol ──────────────────────────────────────────────

    async def assign(self, item: ItemRef) -> Assignment:
        """Run the assignment protocol up to the ``notified`` state.

        Raises:
            NoCapacity: No free worker (no tracker call was made).
            ExternalAssignFailed: The tracker refused the assignee.
            ProvisionFailed: The workspace could not be created.
            IsolationViolation: The workspace failed isolation verification.
            SetupFailed: A workspace setup command failed.
            TargetUnavailable: The worker channel could not be reached.
        """
        async with self._assign_lock:
            worker_id = await self.store.find_free()
            if worker_id is None:
                raise NoCapacity(
                    f"No free worker for issue #{item.number}; all "
                    f"{self.store.worker_count} slots are busy",
                    phase=AssignmentPhase.SELECTING,
                    item_number=item.number,
                )
            attempt = _Attempt(worker_id=worker_id, item=item)
            logger.info("Selected worker %d for issue #%d", worker_id, item.number)

            # external_assigning
            try:
                await self.tracker.assign(item.number)
            except TrackerError as e:
                raise ExternalAssignFailed(
                    f"Could not assign issue #{item.number}: {e}",
                    phase=AssignmentPhase.EXTERNAL_ASSIGNING,
                    item_number=item.number,
                    worker_id=worker_id,
                ) from e
            attempt.external_assigned = True

            try:
                workspace = await self._prepare(attempt)
            except BaseException:
                # Timeouts and cancellation included
                await self._rollback(attempt)
                raise

            assignment = Assignment(
                worker_id=worker_id,
                item=item,
                workspace=workspace,
                phase=AssignmentPhase.NOTIFIED,
            )
            self._pending[worker_id] = _Pending(assignment=assignment, attempt=attempt)
            logger.info(
                "Issue #%d assigned to worker %d, awaiting confirmation", item.number, worker_id
            )
            return assignment

    async def _prepare(self, attempt: _Attempt) -> Workspace:
        """Provisioning through notified; the caller rolls back on any error."""
        worker_id, item = attempt.worker_id, attempt.item

        # provisioning
        try:
            workspace = await self.workspaces.ensure(item.number)
        except ProvisionError as e:
            raise ProvisionFailed(
                f"Could not create workspace for issue #{item.number}: {e}",
                phase=AssignmentPhase.PROVISIONING,
                item_number=item.number,
                worker_id=worker_id,
            ) from e
        if workspace.created:
            attempt.workspace = workspace

        if not await self.workspaces.verify_isolation(workspace):
            raise IsolationViolation(
                f"Workspace {workspace.path} is not isolated from the trunk checkout",
                phase=AssignmentPhase.PROVISIONING,
                item_number=item.number,
                worker_id=worker_id,
            )

        # setting_up
        try:
            await self._bring_up(workspace)
        except EnvironmentSetupError as e:
            raise SetupFailed(
                f"Environment setup failed for issue #{item.number}: {e}",
                phase=AssignmentPhase.SETTING_UP,
                item_number=item.number,
                worker_id=worker_id,
            ) from e

        # notified
        try:
            await self.store.mark_busy(worker_id, item)
        except WorkerBusyError as e:
            # Another dispatcher wrote the marker first
            raise NoCapacity(
                f"Worker {worker_id} was claimed concurrently",
                phase=AssignmentPhase.NOTIFIED,
                item_number=item.number,
                worker_id=worker_id,
            ) from e
        attempt.marked = True

        channel = self.messenger.registry.worker_channel(worker_id)
        # Set before typing: a launch that fails halfway still needs a channel reset
        attempt.agent_started = True
        await self.messenger.transport.run_command(
            channel, f"cd {workspace.path} && {self.worker_command}"
        )
        await self.messenger.send_to_worker(worker_id, self.briefing(worker_id, item, workspace))
        return workspace

    async def await_confirmation(
        self, assignment: Assignment, timeout: float | None = None
    ) -> Assignment:
        """Suspend until the assignment is confirmed or abandoned.

        Raises:
            AssignmentAbandoned: After rolling back, if abandoned or timed out.
        """
        pending = self._pending.get(assignment.worker_id)
        if pending is None or pending.assignment is not assignment:
            raise FlotillaError(f"No pending assignment for worker {assignment.worker_id}")

        reason = "abandoned"
        try:
            confirmed = await asyncio.wait_for(asyncio.shield(pending.gate), timeout)
        except asyncio.TimeoutError:
            confirmed = False
            reason = f"not confirmed within {timeout}s"
        except asyncio.CancelledError:
            self._pending.pop(assignment.worker_id, None)
            await self._rollback(pending.attempt)
            assignment.phase = AssignmentPhase.ROLLED_BACK
            raise
        self._pending.pop(assignment.worker_id, None)

        if confirmed:
            await self.store.mark_setup_confirmed(assignment.worker_id)
            assignment.phase = AssignmentPhase.CONFIRMED
            logger.info("Worker %d confirmed for issue #%d", assignment.worker_id, assignment.item.number)
            return assignment

        await self._rollback(pending.attempt)
        assignment.phase = AssignmentPhase.ROLLED_BACK
        raise AssignmentAbandoned(
            f"Assignment of issue #{assignment.item.number} to worker "
            f"{assignment.worker_id} {reason}; rolled back",
            phase=AssignmentPhase.NOTIFIED,
            item_number=assignment.item.number,
            worker_id=assignment.worker_id,
        )

    def confirm(self, worker_id: int) -> bool:
        """Affirm that the worker session is live. Returns False if nothing is pending."""
        return self._resolve_gate(worker_id, True)

    def abandon(self, worker_id: int) -> bool:
        """Give up on a pending assignment; the waiter rolls it back."""
        return self._resolve_gate(worker_id, False)

    def pending(self) -> list[Assignment]:
        return [p.assignment for p in self._pending.values()]

    def _resolve_gate(self, worker_id: int, value: bool) -> bool:
        pending = self._pending.get(worker_id)
        if pending is None or pending.gate.done():
            return False
        pending.gate.set_result(value)
        return True

    async def _bring_up(self, workspace: Workspace) -> None:
        for command in self.setup_commands:
            logger.info("Running setup in %s: %s", workspace.path, command)
            try:
                rc, _, stderr = await process.run_shell(
                    command, cwd=workspace.path, timeout=self.setup_timeout
                )
            except asyncio.TimeoutError:
                raise EnvironmentSetupError(
                    f"'{command}' timed out after {self.setup_timeout}s"
                ) from None
            if rc != 0:
                raise EnvironmentSetupError(f"'{command}' exited {rc}: {stderr.strip()[-500:]}")

    async def _rollback(self, attempt: _Attempt) -> None:
        """Undo an attempt's side effects in reverse order. Idempotent."""
        logger.warning(
            "Rolling back assignment of issue #%d to worker %d",
            attempt.item.number,
            attempt.worker_id,
        )
        if attempt.agent_started:
            channel = self.messenger.registry.worker_channel(attempt.worker_id)
            try:
                await self.messenger.transport.reset(channel, self._waiting_banner(attempt.worker_id))
            except TargetUnavailable:
                logger.debug("Worker %d channel unavailable during rollback", attempt.worker_id)
            except Exception:
                logger.exception("Could not reset worker %d channel during rollback", attempt.worker_id)
            attempt.agent_started = False

        if attempt.marked:
            await self.store.release(attempt.worker_id)
            attempt.marked = False

        if attempt.workspace is not None:
            result = await self.workspaces.remove(attempt.workspace)
            if not result.ok:
                logger.error(
                    "Rollback could not fully remove %s: %s", attempt.workspace.path, result.error
                )
            attempt.workspace = None

        if attempt.external_assigned:
            for i in range(_UNASSIGN_ATTEMPTS):
                try:
                    await self.tracker.unassign(attempt.item.number)
                    attempt.external_assigned = False
                    break
                except TrackerError as e:
                    logger.warning(
                        "Unassign attempt %d/%d for #%d failed: %s",
                        i + 1,
                        _UNASSIGN_ATTEMPTS,
                        attempt.item.number,
                        e,
                    )
                    if i + 1 < _UNASSIGN_ATTEMPTS:
                        await asyncio.sleep(0.5 * 2**i)
            else:
                logger.error(
                    "Issue #%d is still assigned after rollback — remove the assignee manually",
                    attempt.item.number,
                )

    # ── Completion & release ─────────────────────────────────────────────

    async def complete(self, worker_id: int) -> CompletionReport:
        """Process a worker's completion report and reclaim its slot.

        Tracker and delivery errors are recorded as warnings; release,
        workspace teardown and channel reset always run.
        """
        if worker_id in self._pending:
            raise FlotillaError(
                f"Worker {worker_id} is awaiting confirmation; confirm or abandon it first"
            )

        slot = await self.store.get(worker_id)
        report = CompletionReport(worker_id=worker_id, item=slot.assigned_item)
        item = slot.assigned_item
        workspace = self.workspaces.workspace_for(item.number) if item else None

        if item is None:
            report.warnings.append(f"Worker {worker_id} has no recorded assignment")
        else:
            try:
                pr = await self.tracker.find_pull_request(workspace.branch)
                if pr:
                    report.pr_number = pr.get("number")
                    report.pr_state = "merged" if pr.get("merged_at") else pr.get("state")
                    sha = (pr.get("head") or {}).get("sha") or workspace.branch
                    report.checks = await self.tracker.check_conclusion(sha)
            except TrackerError as e:
                logger.warning("Completion lookup for #%d failed: %s", item.number, e)
                report.warnings.append(str(e))

        report.summary = _summarize(report)

        if item is not None:
            try:
                await self.messenger.send_to_worker(worker_id, report.summary)
            except TargetUnavailable as e:
                report.warnings.append(str(e))
            if self.comment_on_completion:
                try:
                    await self.tracker.comment(item.number, report.summary)
                except TrackerError as e:
                    logger.warning("Could not comment on #%d: %s", item.number, e)
                    report.warnings.append(str(e))

        await self.store.release(worker_id)

        if workspace is not None:
            result = await self.workspaces.remove(workspace)
            report.workspace_removed = result.ok
            if not result.ok:
                report.warnings.append(f"Workspace {workspace.path} partially removed: {result.error}")

        channel = self.messenger.registry.worker_channel(worker_id)
        try:
            await self.messenger.transport.reset(channel, self._waiting_banner(worker_id))
        except TargetUnavailable as e:
            report.warnings.append(str(e))

        logger.info("Worker %d completed: %s", worker_id, report.summary)
        return report

    async def release(self, worker_id: int) -> None:
        """Manual reset of a slot's markers."""
        await self.store.release(worker_id)

    # ── Polling loop ─────────────────────────────────────────────────────

    async def poll_once(self) -> list[Assignment]:
        """Assign eligible open items to free workers, lowest issue number first."""
        items = await self.tracker.list_open_items(self.labels)
        held = {
            slot.assigned_item.number
            for slot in await self.store.snapshot()
            if slot.assigned_item is not None
        }
        eligible = sorted(
            (i for i in items if not i.assignees and i.number not in held),
            key=lambda i: i.number,
        )
        if not eligible:
            logger.debug("No eligible issues")
            return []

        assigned: list[Assignment] = []
        for item in eligible:
            try:
                assignment = await self.assign(item.ref())
            except NoCapacity:
                logger.info("Pool full — %d eligible issue(s) left waiting", len(eligible) - len(assigned))
                break
            except TargetUnavailable as e:
                logger.error("Worker channel unavailable, stopping this pass: %s", e)
                break
            except FlotillaError as e:
                logger.warning("Skipping issue #%d: %s", item.number, e)
                continue

            self.watch_confirmation(assignment)
            try:
                await self.await_confirmation(assignment, timeout=self.confirmation_timeout)
            except AssignmentAbandoned as e:
                logger.warning("%s", e)
                continue
            assigned.append(assignment)
        return assigned

    def watch_confirmation(self, assignment: Assignment) -> asyncio.Task | None:
        """Resolve the assignment's gate from the configured confirmer, if any."""
        if self.confirmer is None:
            return None
        task = asyncio.create_task(
            self._run_confirmer(assignment), name=f"confirm-worker{assignment.worker_id}"
        )
        self._confirmers.add(task)
        task.add_done_callback(self._confirmers.discard)
        return task

    async def _run_confirmer(self, assignment: Assignment) -> None:
        try:
            ok = await self.confirmer(assignment)
        except Exception:
            logger.exception("Confirmer failed for worker %d", assignment.worker_id)
            ok = False
        if ok:
            self.confirm(assignment.worker_id)
        else:
            self.abandon(assignment.worker_id)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="dispatcher")
        logger.info("Dispatcher started (interval=%ds)", self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        for worker_id in list(self._pending):
            self.abandon(worker_id)
        for task in list(self._confirmers):
            task.cancel()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Dispatcher stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Dispatch pass failed")
                await asyncio.sleep(self.poll_interval)

    # ── Messages ─────────────────────────────────────────────────────────

    def briefing(self, worker_id: int, item: ItemRef, workspace: Workspace) -> str:
        name = self.messenger.registry.worker_name(worker_id)
        return (
            f"You are {name}. Resolve Issue #{item.number}: {item.title}. "
            f"Work only in {workspace.path} on branch {workspace.branch}. "
            f"Open a pull request when done, then report with: flotilla complete {name}"
        )

    def _waiting_banner(self, worker_id: int) -> str:
        return f"=== {self.messenger.registry.worker_name(worker_id)} waiting ==="


def _summarize(report: CompletionReport) -> str:
    if report.item is None:
        return f"Worker {report.worker_id} released"
    head = f"Issue #{report.item.number}"
    if report.pr_number is None:
        if report.warnings:
            return f"{head}: pull request status unknown ({report.warnings[0]})"
        return f"{head}: no pull request found"
    checks = {
        CheckConclusion.PASSING: "checks passing",
        CheckConclusion.FAILING: "checks failing",
        CheckConclusion.PENDING: "checks pending",
        CheckConclusion.TIMED_OUT: "checks timed out",
        CheckConclusion.NONE: "no checks reported",
    }[report.checks]
    return f"{head}: PR #{report.pr_number} {report.pr_state}, {checks}"

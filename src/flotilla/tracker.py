"""Issue tracker facade — maps GitHub payloads onto Flotilla's data model.

The dispatcher and reaper only ever talk to the tracker through this class,
which keeps the assignee context and turns HTTP failures into
``TrackerError``s.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from flotilla.errors import ExternalQueryFailed, TrackerError
from flotilla.models import CheckConclusion, Item, ItemState

if TYPE_CHECKING:
    from flotilla.github_client import GitHubClient

logger = logging.getLogger(__name__)

# Check run conclusions that count as a failed check
_FAILED_CONCLUSIONS = {"failure", "cancelled", "action_required", "startup_failure", "stale"}


class IssueTracker:
    """Query/mutation surface over one GitHub repository."""

    def __init__(self, github: GitHubClient, assignee: str = ""):
        self.github = github
        self._assignee = assignee

    async def assignee(self) -> str:
        """Login used for assignment; defaults to the authenticated user."""
        if not self._assignee:
            try:
                user = await self.github.current_user()
            except (httpx.HTTPError, RuntimeError) as e:
                raise TrackerError(f"Cannot determine assignee login: {e}") from e
            self._assignee = user.get("login", "")
            if not self._assignee:
                raise TrackerError("Authenticated user has no login")
        return self._assignee

    # ── Queries ──────────────────────────────────────────────────────────

    async def list_open_items(self, labels: str | None = None) -> list[Item]:
        try:
            issues = await self.github.issues(labels=labels)
        except (httpx.HTTPError, RuntimeError) as e:
            raise ExternalQueryFailed(f"Listing issues failed: {e}") from e
        return [_to_item(i) for i in issues]

    async def get_item(self, number: int) -> Item:
        """Fetch one item; a missing issue yields an Item in state NOT_FOUND.

        Raises:
            ExternalQueryFailed: On any other tracker error.
        """
        try:
            data = await self.github.issue(number)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (404, 410):
                return Item(number=number, state=ItemState.NOT_FOUND)
            raise ExternalQueryFailed(f"Querying issue #{number} failed: {e}") from e
        except (httpx.HTTPError, RuntimeError) as e:
            raise ExternalQueryFailed(f"Querying issue #{number} failed: {e}") from e
        if "pull_request" in data:
            # The number belongs to a pull request, not an issue
            return Item(number=number, title=data.get("title", ""), state=ItemState.NOT_FOUND)
        return _to_item(data)

    async def get_state(self, number: int) -> ItemState:
        return (await self.get_item(number)).state

    async def find_pull_request(self, branch: str) -> dict | None:
        """Most recent pull request whose head is ``branch`` (open ones first)."""
        head = f"{self.github.owner}:{branch}"
        try:
            pulls = await self.github.pulls(head=head)
            if not pulls:
                pulls = await self.github.pulls(head=head, state="all")
        except (httpx.HTTPError, RuntimeError) as e:
            raise ExternalQueryFailed(f"Looking up pull request for {branch} failed: {e}") from e
        if not pulls:
            return None
        return max(pulls, key=lambda p: p.get("number", 0))

    async def check_conclusion(self, ref: str) -> CheckConclusion:
        try:
            runs = await self.github.check_runs(ref)
        except (httpx.HTTPError, RuntimeError) as e:
            raise ExternalQueryFailed(f"Listing check runs for {ref} failed: {e}") from e
        return classify_checks(runs)

    # ── Mutations ────────────────────────────────────────────────────────

    async def assign(self, number: int) -> None:
        login = await self.assignee()
        try:
            await self.github.add_assignees(number, [login])
        except (httpx.HTTPError, RuntimeError) as e:
            raise TrackerError(f"Assigning #{number} to {login} failed: {e}") from e
        logger.info("Assigned issue #%d to %s", number, login)

    async def unassign(self, number: int) -> None:
        login = await self.assignee()
        try:
            await self.github.remove_assignees(number, [login])
        except (httpx.HTTPError, RuntimeError) as e:
            raise TrackerError(f"Unassigning {login} from #{number} failed: {e}") from e
        logger.info("Removed assignee %s from issue #%d", login, number)

    async def comment(self, number: int, body: str) -> None:
        try:
            await self.github.add_comment(number, body)
        except (httpx.HTTPError, RuntimeError) as e:
            raise TrackerError(f"Commenting on #{number} failed: {e}") from e


def classify_checks(runs: list[dict]) -> CheckConclusion:
    """Reduce check runs to passing / failing / timed_out / pending / none."""
    if not runs:
        return CheckConclusion.NONE
    conclusions = [r.get("conclusion") for r in runs]
    if any(c in _FAILED_CONCLUSIONS for c in conclusions):
        return CheckConclusion.FAILING
    if "timed_out" in conclusions:
        return CheckConclusion.TIMED_OUT
    if any(r.get("status") != "completed" for r in runs):
        return CheckConclusion.PENDING
    return CheckConclusion.PASSING


def _to_item(data: dict) -> Item:
    state = data.get("state", "")
    try:
        item_state = ItemState(state)
    except ValueError:
        item_state = ItemState.UNKNOWN
    if item_state == ItemState.NOT_FOUND:
        item_state = ItemState.UNKNOWN
    return Item(
        number=data["number"],
        title=data.get("title", ""),
        state=item_state,
        assignees=[a.get("login", "") for a in data.get("assignees") or []],
        labels=[lbl.get("name", "") for lbl in data.get("labels") or [] if isinstance(lbl, dict)],
    )

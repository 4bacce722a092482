"""GitHub REST client bound to a single repository.

Flotilla only ever works against one repository, so the client carries the
owner/repo pair and every endpoint method takes issue numbers, branches or
refs only. Authentication is a plain token (``GITHUB_TOKEN``).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


@dataclass
class RateLimit:
    """Quota state taken from the ``X-RateLimit-*`` response headers."""

    remaining: int = 5000
    reset_at: float = 0.0
    reserve: int = 50

    def update(self, headers: httpx.Headers) -> None:
        remaining = headers.get("X-RateLimit-Remaining")
        reset = headers.get("X-RateLimit-Reset")
        if remaining is not None:
            self.remaining = int(remaining)
        if reset is not None:
            self.reset_at = float(reset)
        if self.remaining < 100:
            logger.warning(
                "GitHub quota low: %d requests left, window resets in %.0fs",
                self.remaining,
                self.seconds_to_reset(),
            )

    @property
    def throttled(self) -> bool:
        return self.remaining <= self.reserve

    def seconds_to_reset(self) -> float:
        return max(0.0, self.reset_at - time.time())


class GitHubClient:
    """Async client for the issue, pull request and check run endpoints of one repo."""

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        token: str | None = None,
        base_url: str = GITHUB_API,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.base_url = base_url
        self.rate_limit = RateLimit()
        self._throttle: asyncio.Lock | None = None
        self._client: httpx.AsyncClient | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def start(self) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "flotilla",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        else:
            logger.warning("GITHUB_TOKEN not set; using unauthenticated requests for %s", self.full_name)
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=30.0)
        self._throttle = asyncio.Lock()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GitHubClient:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHubClient used before start()")
        return self._client

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request; near the reserve, requests queue behind a lock."""
        if self._throttle is not None and self.rate_limit.throttled:
            async with self._throttle:
                await self._sleep_until_reset()
                return await self._send(method, path, **kwargs)
        return await self._send(method, path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, path, **kwargs)
        self.rate_limit.update(response.headers)
        response.raise_for_status()
        return response

    async def _sleep_until_reset(self) -> None:
        if self.rate_limit.remaining > 0:
            return
        delay = self.rate_limit.seconds_to_reset() + 1
        logger.warning("GitHub quota exhausted, pausing %.1fs", delay)
        await asyncio.sleep(delay)
        self.rate_limit.remaining = self.rate_limit.reserve + 1

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/{suffix}"

    # ── Endpoints ────────────────────────────────────────────────────────

    async def current_user(self) -> dict:
        return (await self._request("GET", "/user")).json()

    async def issues(self, *, labels: str | None = None, state: str = "open") -> list[dict]:
        """Issues of the repository; pull requests are dropped from the listing.

        Args:
            labels: Comma-separated label filter, e.g. ``"bug,ready"``.
        """
        params: dict[str, str | int] = {"state": state, "per_page": 100}
        if labels:
            params["labels"] = labels
        response = await self._request("GET", self._repo_path("issues"), params=params)
        return [issue for issue in response.json() if "pull_request" not in issue]

    async def issue(self, number: int) -> dict:
        return (await self._request("GET", self._repo_path(f"issues/{number}"))).json()

    async def add_assignees(self, number: int, logins: list[str]) -> None:
        await self._request("POST", self._repo_path(f"issues/{number}/assignees"), json={"assignees": logins})

    async def remove_assignees(self, number: int, logins: list[str]) -> None:
        await self._request("DELETE", self._repo_path(f"issues/{number}/assignees"), json={"assignees": logins})

    async def add_comment(self, number: int, body: str) -> None:
        await self._request("POST", self._repo_path(f"issues/{number}/comments"), json={"body": body})

    async def pulls(self, *, head: str | None = None, state: str = "open") -> list[dict]:
        """Pull requests, optionally narrowed to one ``owner:branch`` head."""
        params: dict[str, str | int] = {"state": state, "per_page": 100}
        if head:
            params["head"] = head
        return (await self._request("GET", self._repo_path("pulls"), params=params)).json()

    async def check_runs(self, ref: str) -> list[dict]:
        response = await self._request("GET", self._repo_path(f"commits/{ref}/check-runs"))
        return response.json().get("check_runs", [])

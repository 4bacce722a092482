"""Channel Registry — maps agent names to addressable tmux panes.

The map is built once from the configured pool size; resolution is an exact
key lookup with no I/O.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from flotilla.errors import ChannelNotFound

if TYPE_CHECKING:
    from flotilla.config import PoolConfig


class Channel(BaseModel):
    """An addressable destination capable of receiving injected text."""

    name: str
    session: str
    window: int = 0
    pane: int = 0
    description: str = ""

    @property
    def target(self) -> str:
        """tmux target string, e.g. ``multiagent:0.1``."""
        return f"{self.session}:{self.window}.{self.pane}"


class ChannelRegistry:
    """Name → Channel map for the manager and every worker slot."""

    def __init__(
        self,
        worker_count: int,
        *,
        session: str = "multiagent",
        manager_name: str = "issue-manager",
        worker_prefix: str = "worker",
    ):
        self.worker_count = worker_count
        self.session = session
        self.manager_name = manager_name
        self.worker_prefix = worker_prefix

        self._channels: dict[str, Channel] = {
            manager_name: Channel(
                name=manager_name,
                session=session,
                pane=0,
                description="GitHub Issue Manager",
            )
        }
        for worker_id in range(1, worker_count + 1):
            name = self.worker_name(worker_id)
            self._channels[name] = Channel(
                name=name,
                session=session,
                pane=worker_id,
                description=f"Issue Resolution Worker #{worker_id}",
            )

    @classmethod
    def from_config(cls, pool: PoolConfig) -> ChannelRegistry:
        return cls(
            pool.worker_count,
            session=pool.session_name,
            manager_name=pool.manager_name,
            worker_prefix=pool.worker_prefix,
        )

    def resolve(self, name: str) -> Channel:
        try:
            return self._channels[name]
        except KeyError:
            raise ChannelNotFound(name) from None

    def worker_name(self, worker_id: int) -> str:
        return f"{self.worker_prefix}{worker_id}"

    def worker_channel(self, worker_id: int) -> Channel:
        return self.resolve(self.worker_name(worker_id))

    def worker_id_for(self, name: str) -> int:
        """Slot id of a worker name; raises ChannelNotFound for anything else."""
        channel = self.resolve(name)
        if channel.name == self.manager_name:
            raise ChannelNotFound(name)
        return channel.pane

    def names(self) -> list[str]:
        return [c.name for c in self.channels()]

    def channels(self) -> list[Channel]:
        return sorted(self._channels.values(), key=lambda c: c.pane)

    def __contains__(self, name: object) -> bool:
        return name in self._channels

"""Messaging Transport — best-effort text delivery to agent channels.

Delivery is fire-and-forget: a ``DeliveryAck`` only says the text was
injected into the destination, never that the recipient processed it.

The clear/inject/commit protocol is specific to interactive terminal
recipients and lives in ``TmuxTransport`` only. ``QueueTransport`` implements
the same contract over in-process asyncio queues.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from flotilla import process
from flotilla.channels import Channel, ChannelRegistry
from flotilla.errors import TargetUnavailable
from flotilla.models import DeliveryAck, MessageLogEntry

if TYPE_CHECKING:
    from flotilla.config import TransportConfig

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class MessageTransport(abc.ABC):
    """Abstract channel transport."""

    @abc.abstractmethod
    async def is_available(self, channel: Channel) -> bool:
        """Whether the session hosting the channel exists right now."""

    @abc.abstractmethod
    async def send(self, channel: Channel, message: str) -> DeliveryAck:
        """Inject a message. Raises TargetUnavailable if the destination is missing."""

    @abc.abstractmethod
    async def run_command(self, channel: Channel, command: str) -> None:
        """Start a program (a shell command line) inside the channel."""

    @abc.abstractmethod
    async def reset(self, channel: Channel, banner: str = "") -> None:
        """Return the channel to an idle/waiting state."""


# ── tmux ─────────────────────────────────────────────────────────────────────


class TmuxTransport(MessageTransport):
    """Sends keystrokes into tmux panes."""

    def __init__(
        self,
        *,
        clear_delay: float = 0.3,
        inject_delay: float = 0.1,
        commit_delay: float = 0.5,
        tmux: str = "tmux",
        timeout: float = 10,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.clear_delay = clear_delay
        self.inject_delay = inject_delay
        self.commit_delay = commit_delay
        self.tmux = tmux
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_config(cls, transport_config: TransportConfig) -> TmuxTransport:
        return cls(
            clear_delay=transport_config.clear_delay,
            inject_delay=transport_config.inject_delay,
            commit_delay=transport_config.commit_delay,
        )

    async def has_session(self, session: str) -> bool:
        rc, _, _ = await self._tmux("has-session", "-t", session)
        return rc == 0

    async def is_available(self, channel: Channel) -> bool:
        try:
            return await self.has_session(channel.session)
        except asyncio.TimeoutError:
            return False

    async def send(self, channel: Channel, message: str) -> DeliveryAck:
        await self._require_session(channel)

        # The recipient is a long-lived interactive process that may be
        # mid-output: clear its prompt, type the text, then press Enter.
        await self._send_keys(channel, "C-c")
        await self._sleep(self.clear_delay)
        await self._send_keys(channel, "-l", "--", message)
        await self._sleep(self.inject_delay)
        await self._send_keys(channel, "C-m")
        await self._sleep(self.commit_delay)

        logger.debug("Injected %d chars into %s", len(message), channel.target)
        return DeliveryAck(target=channel.name, channel=channel.target, delivered_at=datetime.now())

    async def run_command(self, channel: Channel, command: str) -> None:
        await self._require_session(channel)
        await self._send_keys(channel, "-l", "--", command)
        await self._send_keys(channel, "Enter")

    async def reset(self, channel: Channel, banner: str = "") -> None:
        await self._require_session(channel)
        # Twice: the first interrupt clears the prompt, the second exits the agent CLI
        for _ in range(2):
            await self._send_keys(channel, "C-c")
            await self._sleep(self.clear_delay)
        command = "clear"
        if banner:
            command = f"clear && echo '{banner}'"
        await self.run_command(channel, command)

    async def _require_session(self, channel: Channel) -> None:
        try:
            alive = await self.has_session(channel.session)
        except asyncio.TimeoutError as e:
            raise TargetUnavailable(channel.name, f"tmux has-session timed out after {self.timeout}s") from e
        if not alive:
            raise TargetUnavailable(channel.name, f"session '{channel.session}' not found")

    async def _send_keys(self, channel: Channel, *keys: str) -> None:
        try:
            rc, _, stderr = await self._tmux("send-keys", "-t", channel.target, *keys)
        except asyncio.TimeoutError as e:
            raise TargetUnavailable(channel.name, f"tmux send-keys timed out after {self.timeout}s") from e
        if rc != 0:
            raise TargetUnavailable(channel.name, stderr.strip() or f"tmux exited {rc}")

    async def _tmux(self, *args: str) -> tuple[int, str, str]:
        return await process.run(self.tmux, *args, timeout=self.timeout)


# ── In-process queues ────────────────────────────────────────────────────────


class QueueTransport(MessageTransport):
    """Delivers into one asyncio.Queue per registered channel name."""

    def __init__(self) -> None:
        self.inboxes: dict[str, asyncio.Queue[str]] = {}

    def register(self, name: str) -> asyncio.Queue[str]:
        return self.inboxes.setdefault(name, asyncio.Queue())

    def unregister(self, name: str) -> None:
        self.inboxes.pop(name, None)

    async def is_available(self, channel: Channel) -> bool:
        return channel.name in self.inboxes

    async def send(self, channel: Channel, message: str) -> DeliveryAck:
        inbox = self._inbox(channel)
        inbox.put_nowait(message)
        return DeliveryAck(target=channel.name, channel=channel.name, delivered_at=datetime.now())

    async def run_command(self, channel: Channel, command: str) -> None:
        self._inbox(channel).put_nowait(command)

    async def reset(self, channel: Channel, banner: str = "") -> None:
        inbox = self._inbox(channel)
        while not inbox.empty():
            inbox.get_nowait()

    def _inbox(self, channel: Channel) -> asyncio.Queue[str]:
        inbox = self.inboxes.get(channel.name)
        if inbox is None:
            raise TargetUnavailable(channel.name, "no inbox registered")
        return inbox


# ── Send log ─────────────────────────────────────────────────────────────────


class MessageLog:
    """Append-only ``[timestamp] target: SENT - "message"`` log file."""

    def __init__(self, path: Path):
        self.path = path

    def append(self, target: str, message: str, *, delivered: bool) -> MessageLogEntry:
        entry = MessageLogEntry(
            timestamp=datetime.now(), target=target, message=message, delivered=delivered
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.render() + "\n")
        return entry

    def entries(self) -> list[MessageLogEntry]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            entry = _parse_log_line(line)
            if entry:
                entries.append(entry)
        return entries


def _parse_log_line(line: str) -> MessageLogEntry | None:
    if not line.startswith("[") or "] " not in line:
        return None
    ts_text, rest = line[1:].split("] ", 1)
    target, sep, rest = rest.partition(": ")
    outcome, sep2, quoted = rest.partition(" - ")
    if not sep or not sep2 or outcome not in ("SENT", "FAILED"):
        return None
    try:
        timestamp = datetime.strptime(ts_text, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    message = quoted[1:-1] if quoted.startswith('"') and quoted.endswith('"') else quoted
    return MessageLogEntry(
        timestamp=timestamp, target=target, message=message, delivered=outcome == "SENT"
    )


# ── Messenger ────────────────────────────────────────────────────────────────


class Messenger:
    """Name-addressed sending: resolve, deliver, log every attempt."""

    def __init__(self, registry: ChannelRegistry, transport: MessageTransport, log: MessageLog):
        self.registry = registry
        self.transport = transport
        self.log = log

    async def send(self, name: str, message: str) -> DeliveryAck:
        """Raises ChannelNotFound for unknown names, TargetUnavailable for missing sessions.

        Any transport error is logged as a FAILED attempt before propagating.
        """
        channel = self.registry.resolve(name)
        try:
            ack = await self.transport.send(channel, message)
        except Exception as e:
            self.log.append(name, message, delivered=False)
            logger.warning("Send to %s failed: %s", name, str(e) or type(e).__name__)
            raise
        self.log.append(name, message, delivered=True)
        logger.info("Sent message to %s (%s)", name, channel.target)
        return ack

    async def send_to_worker(self, worker_id: int, message: str) -> DeliveryAck:
        return await self.send(self.registry.worker_name(worker_id), message)

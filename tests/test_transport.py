"""Tests for the messaging transports, the send log and Messenger."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from flotilla import process
from flotilla.channels import ChannelRegistry
from flotilla.errors import ChannelNotFound, TargetUnavailable
from flotilla.models import MessageLogEntry
from flotilla.transport import MessageLog, Messenger, QueueTransport, TmuxTransport


class FakeTmux:
    """Records tmux invocations made through process.run."""

    def __init__(self, session_exists: bool = True, send_keys_rc: int = 0):
        self.session_exists = session_exists
        self.send_keys_rc = send_keys_rc
        self.hang: set[str] = set()
        self.calls: list[tuple[str, ...]] = []

    async def __call__(self, *cmd, cwd=None, timeout=60):
        self.calls.append(cmd)
        if cmd[1] in self.hang:
            raise asyncio.TimeoutError()
        if cmd[1] == "has-session":
            return (0 if self.session_exists else 1), "", ""
        if cmd[1] == "send-keys":
            return self.send_keys_rc, "", "" if self.send_keys_rc == 0 else "can't find pane"
        return 0, "", ""

    def send_keys(self) -> list[tuple[str, ...]]:
        return [c[4:] for c in self.calls if c[1] == "send-keys"]


@pytest.fixture
def registry():
    return ChannelRegistry(3)


@pytest.fixture
def fake_tmux(monkeypatch):
    fake = FakeTmux()
    monkeypatch.setattr(process, "run", fake)
    return fake


# ── TmuxTransport ────────────────────────────────────────────────────────────


class TestTmuxSend:
    async def test_three_step_protocol(self, registry, fake_tmux):
        sleep = AsyncMock()
        transport = TmuxTransport(sleep=sleep)

        ack = await transport.send(registry.resolve("worker1"), "hello there")

        assert fake_tmux.calls[0] == ("tmux", "has-session", "-t", "multiagent")
        assert fake_tmux.send_keys() == [("C-c",), ("-l", "--", "hello there"), ("C-m",)]
        assert [c.args[0] for c in sleep.call_args_list] == [0.3, 0.1, 0.5]
        assert ack.target == "worker1"
        assert ack.channel == "multiagent:0.1"

    async def test_targets_the_resolved_pane(self, registry, fake_tmux):
        transport = TmuxTransport(sleep=AsyncMock())
        await transport.send(registry.resolve("worker3"), "x")
        targets = {c[3] for c in fake_tmux.calls if c[1] == "send-keys"}
        assert targets == {"multiagent:0.3"}

    async def test_missing_session_raises_before_sending(self, registry, fake_tmux):
        fake_tmux.session_exists = False
        transport = TmuxTransport(sleep=AsyncMock())

        with pytest.raises(TargetUnavailable):
            await transport.send(registry.resolve("worker1"), "hello")
        assert fake_tmux.send_keys() == []

    async def test_send_keys_failure_raises(self, registry, fake_tmux):
        fake_tmux.send_keys_rc = 1
        transport = TmuxTransport(sleep=AsyncMock())
        with pytest.raises(TargetUnavailable):
            await transport.send(registry.resolve("worker1"), "hello")

    async def test_send_keys_timeout_is_unavailable(self, registry, fake_tmux):
        fake_tmux.hang.add("send-keys")
        transport = TmuxTransport(sleep=AsyncMock())
        with pytest.raises(TargetUnavailable, match="timed out"):
            await transport.send(registry.resolve("worker1"), "hello")

    async def test_has_session_timeout_is_unavailable(self, registry, fake_tmux):
        fake_tmux.hang.add("has-session")
        transport = TmuxTransport(sleep=AsyncMock())
        with pytest.raises(TargetUnavailable):
            await transport.reset(registry.resolve("worker1"))
        assert fake_tmux.send_keys() == []

    async def test_configured_delays(self, registry, fake_tmux):
        sleep = AsyncMock()
        transport = TmuxTransport(clear_delay=1.0, inject_delay=2.0, commit_delay=3.0, sleep=sleep)
        await transport.send(registry.resolve("issue-manager"), "x")
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 3.0]


class TestTmuxCommands:
    async def test_run_command_presses_enter(self, registry, fake_tmux):
        transport = TmuxTransport(sleep=AsyncMock())
        await transport.run_command(registry.resolve("worker2"), "cd /tmp && claude")
        assert fake_tmux.send_keys() == [("-l", "--", "cd /tmp && claude"), ("Enter",)]

    async def test_reset_interrupts_twice_and_prints_banner(self, registry, fake_tmux):
        transport = TmuxTransport(sleep=AsyncMock())
        await transport.reset(registry.resolve("worker2"), "=== worker2 waiting ===")
        assert fake_tmux.send_keys() == [
            ("C-c",),
            ("C-c",),
            ("-l", "--", "clear && echo '=== worker2 waiting ==='"),
            ("Enter",),
        ]

    async def test_is_available(self, registry, fake_tmux):
        transport = TmuxTransport(sleep=AsyncMock())
        assert await transport.is_available(registry.resolve("worker1")) is True
        fake_tmux.session_exists = False
        assert await transport.is_available(registry.resolve("worker1")) is False

    async def test_hung_tmux_is_not_available(self, registry, fake_tmux):
        fake_tmux.hang.add("has-session")
        transport = TmuxTransport(sleep=AsyncMock())
        assert await transport.is_available(registry.resolve("worker1")) is False


# ── QueueTransport ───────────────────────────────────────────────────────────


class TestQueueTransport:
    async def test_delivers_into_inbox(self, registry):
        transport = QueueTransport()
        inbox = transport.register("worker1")

        await transport.send(registry.resolve("worker1"), "do the thing")

        assert inbox.get_nowait() == "do the thing"

    async def test_unregistered_channel_unavailable(self, registry):
        transport = QueueTransport()
        channel = registry.resolve("worker2")
        assert await transport.is_available(channel) is False
        with pytest.raises(TargetUnavailable):
            await transport.send(channel, "hello")

    async def test_reset_drains_inbox(self, registry):
        transport = QueueTransport()
        inbox = transport.register("worker1")
        await transport.send(registry.resolve("worker1"), "a")
        await transport.run_command(registry.resolve("worker1"), "b")
        await transport.reset(registry.resolve("worker1"))
        assert inbox.empty()


# ── MessageLog ───────────────────────────────────────────────────────────────


class TestMessageLog:
    def test_line_format(self, tmp_path):
        log = MessageLog(tmp_path / "logs" / "send_log.txt")
        log.append("worker1", "hello", delivered=True)
        log.append("worker2", "bye", delivered=False)

        lines = (tmp_path / "logs" / "send_log.txt").read_text().splitlines()
        assert lines[0].endswith('] worker1: SENT - "hello"')
        assert lines[1].endswith('] worker2: FAILED - "bye"')
        assert lines[0].startswith("[")

    def test_entries_parsed_back(self, tmp_path):
        log = MessageLog(tmp_path / "send_log.txt")
        log.append("issue-manager", "status: done", delivered=True)
        with open(tmp_path / "send_log.txt", "a") as f:
            f.write("garbage line\n")

        entries = log.entries()

        assert len(entries) == 1
        assert entries[0].target == "issue-manager"
        assert entries[0].message == "status: done"
        assert entries[0].delivered is True

    def test_missing_file_has_no_entries(self, tmp_path):
        assert MessageLog(tmp_path / "nope.txt").entries() == []

    def test_render(self):
        entry = MessageLogEntry(
            timestamp=datetime(2024, 1, 2, 3, 4, 5), target="worker1", message="hi"
        )
        assert entry.render() == '[2024-01-02 03:04:05] worker1: SENT - "hi"'


# ── Messenger ────────────────────────────────────────────────────────────────


class TestMessenger:
    @pytest.fixture
    def setup(self, registry, tmp_path):
        transport = QueueTransport()
        log = MessageLog(tmp_path / "send_log.txt")
        return Messenger(registry, transport, log), transport, log

    async def test_send_logs_success(self, setup):
        messenger, transport, log = setup
        inbox = transport.register("worker1")

        ack = await messenger.send("worker1", "hello")

        assert ack.target == "worker1"
        assert inbox.get_nowait() == "hello"
        assert [(e.target, e.delivered) for e in log.entries()] == [("worker1", True)]

    async def test_unavailable_target_logged_as_failed(self, setup):
        messenger, _, log = setup
        with pytest.raises(TargetUnavailable):
            await messenger.send("worker2", "hello")
        assert [(e.target, e.delivered) for e in log.entries()] == [("worker2", False)]

    async def test_transport_timeout_logged_as_failed(self, registry, tmp_path):
        transport = AsyncMock(spec=QueueTransport)
        transport.send.side_effect = asyncio.TimeoutError()
        log = MessageLog(tmp_path / "send_log.txt")

        with pytest.raises(asyncio.TimeoutError):
            await Messenger(registry, transport, log).send("worker1", "hello")

        assert [(e.target, e.message, e.delivered) for e in log.entries()] == [
            ("worker1", "hello", False)
        ]

    async def test_unknown_name_not_logged(self, setup):
        messenger, _, log = setup
        with pytest.raises(ChannelNotFound):
            await messenger.send("worker9", "hello")
        assert log.entries() == []

    async def test_send_to_worker(self, setup):
        messenger, transport, _ = setup
        inbox = transport.register("worker3")
        await messenger.send_to_worker(3, "brief")
        assert inbox.get_nowait() == "brief"

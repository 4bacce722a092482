"""Tests for the flotilla command line."""

from __future__ import annotations

import asyncio
import shutil
import subprocess

import httpx
import pytest
import respx

from flotilla import process
from flotilla.__main__ import build_parser, github_repo, main, parse_worker_count
from flotilla.config import FlotillaConfig, ProjectConfig
from flotilla.errors import FlotillaError
from flotilla.models import ItemRef
from flotilla.transport import MessageLog
from flotilla.worker_state import WorkerStateStore

_ENV_VARS = [
    "FLOTILLA_WORKER_COUNT",
    "FLOTILLA_WORKTREE_DIR",
    "FLOTILLA_STATUS_DIR",
    "FLOTILLA_GITHUB_OWNER",
    "FLOTILLA_GITHUB_REPO",
    "FLOTILLA_ASSIGNEE",
    "ISSUE_MANAGER_ARGS",
    "WORKER_ARGS",
    "GITHUB_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def no_tmux_session(monkeypatch):
    async def fake_run(*cmd, cwd=None, timeout=60):
        return 1, "", "no server running"

    monkeypatch.setattr(process, "run", fake_run)


def _run(*argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    return exc_info.value.code


class TestParser:
    def test_common_options_on_every_command(self, tmp_path):
        args = build_parser().parse_args(["status", "--repo-root", str(tmp_path), "--log-level", "DEBUG"])
        assert args.repo_root == tmp_path
        assert args.log_level == "DEBUG"

    def test_no_command_exits_1(self):
        assert _run() == 1

    def test_usage_errors_exit_1(self, tmp_path):
        assert _run("frobnicate") == 1
        assert _run("assign", "not-a-number", "--repo-root", str(tmp_path)) == 1
        assert _run("status", "--log-level", "LOUD") == 1

    @pytest.mark.parametrize("value,expected", [("1", 1), ("3", 3), ("10", 10)])
    def test_worker_count_valid(self, value, expected):
        assert parse_worker_count(value) == expected

    @pytest.mark.parametrize("value", ["0", "11", "-1", "abc", "2.5", ""])
    def test_worker_count_invalid(self, value):
        assert parse_worker_count(value) is None


class TestSend:
    def test_list(self, tmp_path, capsys):
        assert _run("send", "--list", "--repo-root", str(tmp_path)) == 0
        out = capsys.readouterr().out
        assert "issue-manager" in out
        assert "multiagent:0.3" in out

    def test_missing_arguments(self, tmp_path, capsys):
        assert _run("send", "worker1", "--repo-root", str(tmp_path)) == 1
        assert "Usage" in capsys.readouterr().err

    def test_unknown_agent(self, tmp_path, capsys):
        assert _run("send", "worker9", "hello", "--repo-root", str(tmp_path)) == 1
        err = capsys.readouterr().err
        assert "Unknown agent 'worker9'" in err
        assert not (tmp_path / "logs" / "send_log.txt").exists()

    def test_missing_session_logged_as_failed(self, tmp_path, capsys, no_tmux_session):
        assert _run("send", "worker1", "hello", "world", "--repo-root", str(tmp_path)) == 1

        entries = MessageLog(tmp_path / "logs" / "send_log.txt").entries()
        assert [(e.target, e.message, e.delivered) for e in entries] == [
            ("worker1", "hello world", False)
        ]

    def test_worker_count_from_env(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("FLOTILLA_WORKER_COUNT", "5")
        assert _run("send", "--list", "--repo-root", str(tmp_path)) == 0
        assert "worker5" in capsys.readouterr().out


class TestSetup:
    @pytest.mark.parametrize("count", ["0", "11", "many"])
    def test_out_of_range(self, tmp_path, capsys, count):
        assert _run("setup", count, "--repo-root", str(tmp_path)) == 1
        assert "range 1-10" in capsys.readouterr().err


class TestWorkerCommands:
    def _busy(self, tmp_path, worker_id=2) -> WorkerStateStore:
        store = WorkerStateStore(tmp_path / "tmp" / "worker-status", 3)
        store.status_dir.mkdir(parents=True)
        store.busy_path(worker_id).write_text(ItemRef(number=42, title="Fix bug").payload())
        return store

    def test_release(self, tmp_path, capsys):
        store = self._busy(tmp_path)
        assert _run("release", "worker2", "--repo-root", str(tmp_path)) == 0
        assert not store.busy_path(2).exists()

    def test_release_unknown_worker(self, tmp_path, capsys):
        assert _run("release", "issue-manager", "--repo-root", str(tmp_path)) == 1

    def test_status(self, tmp_path, capsys):
        self._busy(tmp_path)
        assert _run("status", "--repo-root", str(tmp_path)) == 0
        out = capsys.readouterr().out
        assert "worker1: free" in out
        assert "worker2: busy — Issue #42: Fix bug [awaiting confirmation]" in out
        assert "Load: 1/3 busy" in out

    def test_complete_unknown_worker(self, tmp_path, capsys):
        assert _run("complete", "worker7", "--repo-root", str(tmp_path)) == 1


class TestCleanup:
    def test_without_repository_exits_1(self, tmp_path, capsys):
        assert _run("cleanup", "--repo-root", str(tmp_path)) == 1
        assert "GitHub repository unknown" in capsys.readouterr().err

    def test_nothing_to_clean(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("FLOTILLA_GITHUB_OWNER", "acme")
        monkeypatch.setenv("FLOTILLA_GITHUB_REPO", "widgets")
        assert _run("cleanup", "--dry-run", "--repo-root", str(tmp_path)) == 0
        out = capsys.readouterr().out
        assert "(dry run)" in out
        assert "Checked:          0" in out

    def test_unknown_flag_exits_1(self, tmp_path, capsys):
        assert _run("cleanup", "--bogus", "--repo-root", str(tmp_path)) == 1
        err = capsys.readouterr().err
        assert err.startswith("usage: flotilla")
        assert "unrecognized arguments: --bogus" in err

    def test_git_timeout_counted_as_error(self, tmp_path, capsys, monkeypatch):
        async def hung_git(*cmd, cwd=None, timeout=60):
            raise asyncio.TimeoutError()

        monkeypatch.setattr(process, "run", hung_git)
        monkeypatch.setenv("FLOTILLA_GITHUB_OWNER", "acme")
        monkeypatch.setenv("FLOTILLA_GITHUB_REPO", "widgets")

        assert _run("cleanup", "--repo-root", str(tmp_path)) == 0
        assert "Errors:           1" in capsys.readouterr().out


class TestTrackerCommands:
    API = "https://api.github.com/repos/acme/widgets"

    @pytest.fixture(autouse=True)
    def repository(self, monkeypatch):
        monkeypatch.setenv("FLOTILLA_GITHUB_OWNER", "acme")
        monkeypatch.setenv("FLOTILLA_GITHUB_REPO", "widgets")

    def test_assign_closed_issue_refused(self, tmp_path, capsys):
        with respx.mock:
            respx.get(f"{self.API}/issues/5").mock(
                return_value=httpx.Response(200, json={"number": 5, "title": "Old", "state": "closed"})
            )
            assert _run("assign", "5", "--repo-root", str(tmp_path)) == 1
        assert "issue #5 is closed" in capsys.readouterr().err

    def test_assign_held_issue_refused(self, tmp_path, capsys):
        store = WorkerStateStore(tmp_path / "tmp" / "worker-status", 3)
        store.status_dir.mkdir(parents=True)
        store.busy_path(2).write_text(ItemRef(number=42, title="Fix bug").payload())
        with respx.mock:
            respx.get(f"{self.API}/issues/42").mock(
                return_value=httpx.Response(200, json={"number": 42, "title": "Fix bug", "state": "open"})
            )
            assert _run("assign", "42", "--auto-confirm", "--repo-root", str(tmp_path)) == 1
        assert "already held by worker2" in capsys.readouterr().err

    def test_dispatch_once_skips_assigned_issues(self, tmp_path, capsys):
        issues = [{"number": 3, "title": "Taken", "state": "open", "assignees": [{"login": "bob"}]}]
        with respx.mock:
            route = respx.get(f"{self.API}/issues").mock(return_value=httpx.Response(200, json=issues))
            assert _run("dispatch", "--once", "--repo-root", str(tmp_path)) == 0
        assert route.calls[0].request.url.params["state"] == "open"
        assert "Nothing assigned." in capsys.readouterr().out

    def test_dispatch_once_tracker_failure(self, tmp_path, capsys):
        with respx.mock:
            respx.get(f"{self.API}/issues").mock(return_value=httpx.Response(502))
            assert _run("dispatch", "--once", "--repo-root", str(tmp_path)) == 1
        assert "Listing issues failed" in capsys.readouterr().err


class TestGithubRepo:
    def test_from_config(self, tmp_path):
        config = FlotillaConfig(project=ProjectConfig(owner="acme", repo="widgets"))
        assert github_repo(config, tmp_path) == ("acme", "widgets")

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    @pytest.mark.parametrize(
        "url",
        ["git@github.com:acme/widgets.git", "https://github.com/acme/widgets"],
    )
    def test_from_origin_remote(self, git_repo, url):
        subprocess.run(["git", "remote", "add", "origin", url], cwd=str(git_repo), check=True)
        assert github_repo(FlotillaConfig(), git_repo) == ("acme", "widgets")

    def test_unknown(self, tmp_path):
        with pytest.raises(FlotillaError):
            github_repo(FlotillaConfig(), tmp_path)

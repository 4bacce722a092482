"""Async subprocess helper shared by the git and tmux callers."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


async def run(*cmd: str, cwd: Path | None = None, timeout: float = 60) -> tuple[int, str, str]:
    """Run a command without blocking the event loop.

    Returns (returncode, stdout, stderr). A missing executable is reported
    as returncode 127 rather than raised. Raises asyncio.TimeoutError after
    killing the process if it does not finish in time.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.debug("Executable not found: %s", cmd[0])
        return 127, "", f"{cmd[0]}: command not found"
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )


async def run_shell(command: str, *, cwd: Path | None = None, timeout: float = 60) -> tuple[int, str, str]:
    """Run a shell command line (used for user-configured setup commands)."""
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )

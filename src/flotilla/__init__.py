"""Flotilla — dispatches GitHub issues to a fixed pool of terminal coding agents.

Components:
- Channel registry and messaging transport (tmux panes addressed by name)
- Workspace manager (one git worktree per issue)
- Worker state store (marker files, one busy slot per worker)
- Dispatcher (assignment with full rollback, confirmation gate, completion)
- Cleanup reaper (removes workspaces of closed issues)
"""

__version__ = "0.1.0"

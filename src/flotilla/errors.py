"""Exception taxonomy for Flotilla.

Assignment errors carry the phase in which the attempt failed; by the time
one is raised the dispatcher has already rolled the attempt back.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flotilla.models import AssignmentPhase


class FlotillaError(Exception):
    """Base class for all Flotilla errors."""


class ChannelNotFound(FlotillaError):
    """A name does not resolve to any channel of the configured pool."""

    def __init__(self, name: str):
        super().__init__(f"Unknown agent '{name}'")
        self.name = name


class TargetUnavailable(FlotillaError):
    """The session hosting a channel does not exist at send time."""

    def __init__(self, target: str, detail: str = ""):
        message = f"Target '{target}' is not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.target = target


class TrackerError(FlotillaError):
    """The issue tracker could not be queried or mutated."""


class ExternalQueryFailed(TrackerError):
    pass


class ProvisionError(FlotillaError):
    """A workspace checkout could not be created."""


class EnvironmentSetupError(FlotillaError):
    """A workspace setup command failed or timed out."""


class WorkerBusyError(FlotillaError):
    """A busy marker already exists for the slot (first writer won)."""

    def __init__(self, worker_id: int):
        super().__init__(f"Worker {worker_id} already has a busy marker")
        self.worker_id = worker_id


# ── Assignment protocol ──────────────────────────────────────────────────────


class AssignmentError(FlotillaError):
    """Terminal failure of one assignment attempt (already rolled back)."""

    def __init__(self, message: str, *, phase: AssignmentPhase | None = None,
                 item_number: int | None = None, worker_id: int | None = None):
        super().__init__(message)
        self.phase = phase
        self.item_number = item_number
        self.worker_id = worker_id


class NoCapacity(AssignmentError):
    pass


class ExternalAssignFailed(AssignmentError):
    pass


class ProvisionFailed(AssignmentError):
    pass


class SetupFailed(AssignmentError):
    pass


class IsolationViolation(AssignmentError):
    pass


class AssignmentAbandoned(AssignmentError):
    """The confirmation gate was cancelled or timed out."""

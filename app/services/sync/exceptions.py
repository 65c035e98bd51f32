"""Exceptions raised by the sync engine.

Entity-level failures never surface as exceptions past a task; they are
counted on the run. What is raised here crosses task or HTTP boundaries.
"""


class SyncError(Exception):
    """Base class for sync engine errors."""


class SourceUnavailableError(SyncError):
    """An external source could not be read at all; the task cannot continue."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source} unavailable: {message}")


class RunVisibilityError(SyncError):
    """A sync run write is not yet visible to a fresh reader."""

    def __init__(self, run_id: str, detail: str):
        self.run_id = run_id
        super().__init__(f"Sync run {run_id} not visible: {detail}")


class UnknownSyncKindError(SyncError):
    """Trigger requested for a kind other than directory, devices or all."""


class SyncRunNotFoundError(SyncError):
    """No sync run exists with the requested id."""

"""Application-level exception types.

Convention:
- ``ConfigurationError``: a missing credential or key precondition. Raised
  before any remote call is made, so no partial state exists.
- ``GitHubAPIError``: a single GitHub call returned a non-success status.
  The sync orchestrator decides whether it is fatal (phase-level) or
  recoverable (one file upload).
- ``SyncError``: a fatal, phase-qualified failure of a sync run.
- ``AnalysisError``: the analysis backend failed or returned a payload of
  the wrong shape. Never raised by the sync engine.
- ``ValueError``: business logic validation errors that are safe to forward
  to clients.  The global ``ValueError`` handler returns ``str(exc)`` as the
  422 detail.
"""

from __future__ import annotations


class ConfigurationError(Exception):
    """Raised when a required credential or setting is missing."""


class GitHubAPIError(Exception):
    """Raised when a GitHub REST call fails."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status_code})"


class SyncError(Exception):
    """Raised when a sync run aborts in a phase with no skip policy.

    ``phase`` is the value of the failing ``SyncPhase``.
    """

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase
        self.message = message

    def __str__(self) -> str:
        return f"{self.phase}: {self.message}"


class RefUpdateError(SyncError):
    """Raised when the branch could not be moved after a commit was created.

    The commit object stays on the remote unreferenced.
    """

    def __init__(self, phase: str, message: str, orphaned_commit: str) -> None:
        super().__init__(phase, message)
        self.orphaned_commit = orphaned_commit


class SyncCancelledError(SyncError):
    """Raised when a run is cancelled at a phase boundary."""


class AnalysisError(Exception):
    """Raised when the analysis backend fails or returns an invalid payload."""

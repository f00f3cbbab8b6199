"""Error taxonomy for ReconFlow."""

from typing import Any, Optional


class ReconFlowError(Exception):
    """Base class for all ReconFlow errors."""


class ValidationError(ReconFlowError):
    """Required local input is missing or invalid; no remote call was made."""


class WorkflowBusyError(ValidationError):
    """A workflow run is already active in this session."""


class RemoteError(ReconFlowError):
    """The remote API answered with a non-2xx status or an unsuccessful envelope."""

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_server_error(self) -> bool:
        return self.status is None or self.status >= 500

    def __repr__(self):
        return f"RemoteError(status={self.status!r}, message={self.message!r})"


class TransientError(ReconFlowError):
    """The request never produced an HTTP response (network, DNS, timeout)."""


class WorkflowError(ReconFlowError):
    """A phase failed; carries the failing phase into the terminal state."""

    def __init__(self, phase, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.phase = phase
        self.message = message
        self.cause = cause

    def __repr__(self):
        return f"WorkflowError(phase={self.phase!r}, message={self.message!r})"


class WorkflowCancelled(ReconFlowError):
    """Raised inside a run when cancellation is observed at a suspension point."""

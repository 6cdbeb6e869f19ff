from typing import Optional


class RestoreError(Exception):
    """Base class for errors raised by sqlrestore."""


class ConfigError(RestoreError):
    """Configuration file missing, unreadable or holding invalid values."""


class PlanningError(RestoreError):
    """The export tree cannot be turned into an execution plan."""


class ConnectionLostError(RestoreError):
    """The connection to the target server went away mid-run."""


class EngineError(RestoreError):
    """A batch failed on the target server."""

    def __init__(self, message: str, number: Optional[int] = None, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.number = number
        self.sqlstate = sqlstate

    def __str__(self) -> str:
        if self.number is not None:
            return f"Msg {self.number}: {self.message}"
        return self.message


class EngineTimeoutError(EngineError):
    """A batch exceeded the per-script execution timeout."""

"""Custom exceptions for Autoscript.

Session outcomes (a task that could not be accomplished, a stale endpoint)
are reported as RepairOutcome values, never raised. These exceptions cover
misconfiguration and collaborator transport faults.
"""


class AutoscriptError(Exception):
    """Base exception for all Autoscript errors."""

    pass


class ConfigurationError(AutoscriptError):
    """Exception raised for missing or invalid configuration."""

    pass


class FixerError(AutoscriptError):
    """Exception raised when the fix service transport fails."""

    def __init__(self, message: str, status_code: int = None):
        """
        Initialize fixer error.

        Args:
            message: Error message
            status_code: Optional HTTP status or process exit code
        """
        super().__init__(message)
        self.status_code = status_code

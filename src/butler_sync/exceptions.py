"""butler-sync exception hierarchy.

All butler-sync exceptions inherit from ButlerSyncError. Only
CommandFatalError is allowed to leave the command executor; everything
else is reduced to a sentinel value and a log entry by its caller.
"""


class ButlerSyncError(Exception):
    """Base exception for all butler-sync errors."""


class CommandError(ButlerSyncError):
    """Base exception for branch CLI invocation errors."""


class TransientCommandError(CommandError):
    """A command hit a contention signature and may be retried.

    Internal to the executor: it drives the retry loop and is converted to
    CommandFatalError once the retry budget is spent.
    """

    def __init__(self, subcommand: str, exit_code: int, stderr: str, pattern: str) -> None:
        self.subcommand = subcommand
        self.exit_code = exit_code
        self.stderr = stderr
        self.pattern = pattern
        super().__init__(
            f"but cursor {subcommand} hit transient failure ({pattern})"
        )


class CommandFatalError(CommandError):
    """Raised when a command fails for good (retries exhausted or unrecognized)."""

    def __init__(
        self,
        subcommand: str,
        exit_code: int,
        stderr: str,
        attempts: int = 1,
    ) -> None:
        self.subcommand = subcommand
        self.exit_code = exit_code
        self.stderr = stderr
        self.attempts = attempts
        super().__init__(
            f"but cursor {subcommand} failed (exit {exit_code}): {stderr.strip()}"
        )


class HostClientError(ButlerSyncError):
    """Raised when a host platform API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class HostTimeoutError(HostClientError):
    """Raised when a host platform API call times out."""

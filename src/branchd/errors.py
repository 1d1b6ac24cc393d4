"""Exception hierarchy for branchd.

Every error raised on purpose by the package derives from ``BranchdError``
so callers (CLI, worker) can separate expected failures from bugs.

Usage:
    from branchd.errors import BranchdError, ConfigurationError

    try:
        provider = select_provider(config)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
"""


class BranchdError(Exception):
    """Base class for all branchd errors."""

    pass


class ConfigurationError(BranchdError):
    """Raised when required configuration is missing or inconsistent."""

    pass


class ValidationError(BranchdError):
    """Raised when an input is rejected before any resource is touched."""

    pass


class NotFoundError(BranchdError):
    """Raised when a persisted record does not exist."""

    pass


class CommandError(BranchdError):
    """Raised when an external command exits non-zero or times out.

    Args:
        command: The argv (or script label) that was executed.
        returncode: Exit code, or ``None`` when the command timed out.
        output: Combined stdout/stderr captured from the command.
    """

    def __init__(self, command: str, returncode: int | None, output: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"Command timed out: {command}"
        else:
            message = f"Command failed with exit code {returncode}: {command}"
        super().__init__(message)


class ResourceError(BranchdError):
    """Raised when a host resource cannot be allocated or released."""

    pass


class RestoreFailedError(BranchdError):
    """Raised when a background restore reports failure or dies unexplained.

    Args:
        restore_name: Name of the restore.
        status: Terminal status string (``failed``, ``unknown``, ...).
        log_tail: Trailing lines of the restore log for diagnosis.
    """

    def __init__(self, restore_name: str, status: str, log_tail: str = "") -> None:
        self.restore_name = restore_name
        self.status = status
        self.log_tail = log_tail
        super().__init__(f"Restore {restore_name} ended with status {status}")


class AnonymizationError(BranchdError):
    """Raised when post-restore SQL or anonymization fails to apply."""

    pass


class BranchError(BranchdError):
    """Raised when a branch cannot be created or deleted."""

    pass


class DatabaseNotReadyError(BranchError):
    """Source restore is not accepting connections yet."""

    def __init__(self) -> None:
        super().__init__(
            "instance is still in initial recovery. "
            "Please wait a few minutes and try again"
        )


class RestoreNotRunningError(BranchError):
    """Source restore cluster is not running."""

    def __init__(self) -> None:
        super().__init__("instance not ready: restore_not_running")


class PortMismatchError(BranchError):
    """Clone announced a different port than the one it was forced to use."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"port mismatch: expected port {expected}, got {actual}")

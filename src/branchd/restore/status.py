"""Lifecycle status of a background restore."""

from enum import Enum


class RestoreStatus(str, Enum):
    """Observable state of a restore's background operation.

    ``pending`` and ``running`` mean "still going"; every other value is
    terminal.  ``unknown`` means the process exited without writing a
    sentinel and is treated as a crash.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"
    NOT_FOUND = "not_found"

    @property
    def is_running(self) -> bool:
        return self in (RestoreStatus.PENDING, RestoreStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_running

"""Restore task queue and worker pool."""

from branchd.tasks.queue import Task, TaskKind, TaskQueue
from branchd.tasks.worker import Worker

__all__ = ["Task", "TaskKind", "TaskQueue", "Worker"]

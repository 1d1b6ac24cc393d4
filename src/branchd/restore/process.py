"""Stateless tracking of detached restore processes.

A restore runs as a detached bash script.  Its only durable state is two
files under the log directory, keyed by restore name:

- ``restore-{name}.pid``: PID of the script; the script removes it as its
  last action.
- ``restore-{name}.log``: append-only output.  Right before removing the
  PID file the script appends ``__BRANCHD_RESTORE_SUCCESS__`` or
  ``__BRANCHD_RESTORE_FAILED__`` and calls ``sync``.

Callers derive state from those files alone, so a controller restart loses
nothing:

=================  ===============  ==========
PID file           sentinel         status
=================  ===============  ==========
present, alive     --               running
absent             success          success
absent             failure          failed
absent             none             unknown
=================  ===============  ==========

External tooling reads the same files; keep names and markers unchanged.
"""

import asyncio
import logging
import os
import shlex
import signal
from collections import deque
from pathlib import Path

from branchd.commands import run_command
from branchd.errors import CommandError, ValidationError
from branchd.restore.status import RestoreStatus

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "__BRANCHD_RESTORE_SUCCESS__"
FAILURE_MARKER = "__BRANCHD_RESTORE_FAILED__"
LOG_TAIL_LINES = 50

_FORBIDDEN_NAME_CHARS = set("\"';\\\n\r")


def validate_inputs(name: str, port: int, **required: str) -> None:
    """Reject malformed restore parameters before any resource is touched.

    Args:
        name: Restore name; rendered into shell scripts and paths.
        port: TCP port for the restore cluster.
        **required: Further parameters that must be non-empty, keyed by a
            human-readable label (e.g. ``postgres_version="16"``).

    Raises:
        ValidationError: On an empty value, an out-of-range port or a
            name containing quote, semicolon, backslash or newline.
    """
    for label, value in required.items():
        if not value:
            raise ValidationError(f"{label.replace('_', ' ')} is required")
    if not 1 <= port <= 65535:
        raise ValidationError(f"invalid PostgreSQL port: {port} (must be between 1-65535)")
    if not name:
        raise ValidationError("restore name is required")
    if _FORBIDDEN_NAME_CHARS & set(name):
        raise ValidationError("restore name contains invalid characters")


class ProcessManager:
    """Launch, observe and kill detached restore scripts.

    Args:
        log_dir: Directory holding PID and log files.
        script_dir: Where launch scripts are written before execution.
    """

    def __init__(self, log_dir: Path, script_dir: Path = Path("/tmp")) -> None:
        self.log_dir = Path(log_dir)
        self.script_dir = Path(script_dir)

    def log_path(self, name: str) -> Path:
        return self.log_dir / f"restore-{name}.log"

    def pid_path(self, name: str) -> Path:
        return self.log_dir / f"restore-{name}.pid"

    async def ensure_log_dir(self) -> None:
        """Create the log directory, via sudo when not writable."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            return
        except PermissionError:
            logger.info("Creating log directory %s with sudo", self.log_dir)

        await run_command(["sudo", "mkdir", "-p", str(self.log_dir)])
        await run_command(
            ["sudo", "chown", "-R", f"{os.getuid()}:{os.getgid()}", str(self.log_dir)]
        )

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def read_pid(self, name: str) -> int | None:
        """Return the recorded PID, removing an empty or garbled PID file."""
        pid_file = self.pid_path(name)
        try:
            raw = pid_file.read_text().strip()
        except FileNotFoundError:
            return None

        try:
            pid = int(raw)
        except ValueError:
            logger.warning("Invalid PID file %s (%r), removing", pid_file, raw)
            pid_file.unlink(missing_ok=True)
            return None
        if pid <= 0:
            pid_file.unlink(missing_ok=True)
            return None
        return pid

    @staticmethod
    def pid_alive(pid: int) -> bool:
        """Probe a PID with signal 0."""
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists, owned by someone else
            return True
        return True

    def is_running(self, name: str) -> tuple[bool, int | None]:
        """Check whether the restore script for ``name`` is alive.

        A PID file whose process is gone is stale and gets removed.

        Returns:
            ``(True, pid)`` while running, otherwise ``(False, None)``.
        """
        pid = self.read_pid(name)
        if pid is None:
            return False, None

        if not self.pid_alive(pid):
            logger.info("Found stale PID file for %s (pid=%d), cleaning up", name, pid)
            self.pid_path(name).unlink(missing_ok=True)
            return False, None

        logger.debug("Restore %s is running (pid=%d)", name, pid)
        return True, pid

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def read_log_tail(self, name: str, lines: int = LOG_TAIL_LINES) -> str:
        with open(self.log_path(name), errors="replace") as f:
            return "".join(deque(f, maxlen=lines)).strip()

    def check_status(self, name: str) -> tuple[RestoreStatus, str]:
        """Derive a terminal status from the restore log.

        Call only after ``is_running`` reported the process gone.

        Returns:
            ``(status, log_tail)``.  The tail is empty on success and on
            ``not_found``.
        """
        log_file = self.log_path(name)
        try:
            content = log_file.read_text(errors="replace")
        except FileNotFoundError:
            return RestoreStatus.NOT_FOUND, ""

        if SUCCESS_MARKER in content:
            logger.debug("Found success marker in %s", log_file)
            return RestoreStatus.SUCCESS, ""

        status = RestoreStatus.FAILED if FAILURE_MARKER in content else RestoreStatus.UNKNOWN
        try:
            tail = self.read_log_tail(name)
        except OSError as e:
            logger.warning("Failed to read log tail for %s: %s", name, e)
            tail = "Failed to read log" if status is RestoreStatus.FAILED else ""
        return status, tail

    # ------------------------------------------------------------------
    # Launch / kill
    # ------------------------------------------------------------------

    def launch_command(self, script_path: Path, name: str) -> str:
        """Shell snippet that detaches ``script_path`` and records its PID.

        The double fork (``nohup ... &`` inside ``bash -c``) re-parents the
        script to init, so it is reaped on exit and ``kill -0`` stops
        succeeding once it finishes.
        """
        script = shlex.quote(str(script_path))
        inner = f"bash {script}; rm -f {script}"
        return (
            f"nohup bash -c {shlex.quote(inner)} "
            f"> {shlex.quote(str(self.log_path(name)))} 2>&1 & "
            f"echo $! > {shlex.quote(str(self.pid_path(name)))}"
        )

    async def launch(self, name: str, script: str, prefix: str = "branchd_restore") -> Path:
        """Write ``script`` to disk and start it detached.

        Args:
            name: Restore name; keys the PID and log files.
            script: Rendered bash script.
            prefix: File name prefix for the temporary script.

        Returns:
            Path of the written script (removed by the script itself).

        Raises:
            CommandError: If the launcher shell fails.
        """
        script_path = self.script_dir / f"{prefix}_{name}.sh"
        script_path.write_text(script)
        script_path.chmod(0o755)

        await run_command(["bash", "-c", self.launch_command(script_path, name)])
        logger.info(
            "Started restore script for %s (log=%s, pid_file=%s)",
            name,
            self.log_path(name),
            self.pid_path(name),
        )
        return script_path

    async def kill(self, name: str) -> None:
        """Terminate the restore script and remove its PID and log files.

        Sends SIGTERM, waits a second, then SIGKILL if still alive.  Never
        raises for a process that is already gone.
        """
        running, pid = self.is_running(name)
        if running and pid is not None:
            try:
                os.kill(pid, signal.SIGTERM)
                await asyncio.sleep(1)
                if self.pid_alive(pid):
                    os.kill(pid, signal.SIGKILL)
                logger.info("Killed restore process for %s (pid=%d)", name, pid)
            except ProcessLookupError:
                pass
            except PermissionError:
                logger.warning("No permission to signal pid %d, using sudo", pid)
                try:
                    await run_command(["sudo", "kill", "-KILL", str(pid)])
                except CommandError as e:
                    logger.warning("Failed to kill restore process %d: %s", pid, e)

        for path in (self.pid_path(name), self.log_path(name)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove %s: %s", path, e)

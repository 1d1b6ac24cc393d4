"""Async execution of short-lived administrative commands.

All host-level operations (zfs, systemctl, ufw, psql, rendered bash
scripts) go through ``run_command`` so that timeouts and failures are
handled in one place.  Long-running restores are NOT run here -- they are
detached by ``ProcessManager.launch`` and only polled afterwards.

Usage:
    from branchd.commands import run_command, run_script

    output = await run_command(["sudo", "zfs", "destroy", "-r", "tank/x"])
    output = await run_script(rendered_script, timeout=300)
"""

import asyncio
import logging
import os
import shlex

from branchd.errors import CommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


async def run_command(
    argv: list[str],
    timeout: float | None = DEFAULT_TIMEOUT,
    check: bool = True,
    env: dict[str, str] | None = None,
    label: str | None = None,
) -> str:
    """Run a command and return its combined stdout/stderr.

    Args:
        argv: Program and arguments.
        timeout: Seconds before the child is killed.  ``None`` disables
            the timeout.
        check: Raise ``CommandError`` on a non-zero exit code.
        env: Extra environment variables merged over ``os.environ``.
        label: Name used in logs and errors instead of the full argv
            (scripts can contain credentials).

    Returns:
        Decoded combined output.

    Raises:
        CommandError: If the command exits non-zero (with ``check``) or
            exceeds ``timeout``.
    """
    display = label or shlex.join(argv)
    child_env = {**os.environ, **env} if env else None

    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=child_env,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.error("Command timed out after %ss: %s", timeout, display)
        raise CommandError(display, None)

    output = stdout.decode(errors="replace") if stdout else ""
    if check and proc.returncode != 0:
        logger.debug("Command failed (%s): %s\n%s", proc.returncode, display, output)
        raise CommandError(display, proc.returncode, output)
    return output


async def run_script(
    script: str,
    timeout: float | None = DEFAULT_TIMEOUT,
    check: bool = True,
    env: dict[str, str] | None = None,
    label: str = "bash script",
) -> str:
    """Run a bash script body with ``bash -c``.

    Args:
        script: Script source.
        timeout: Seconds before the child is killed.
        check: Raise ``CommandError`` on a non-zero exit code.
        env: Extra environment variables for the script.
        label: Name used in logs and errors.

    Returns:
        Decoded combined output.
    """
    return await run_command(
        ["bash", "-c", script], timeout=timeout, check=check, env=env, label=label
    )

"""Host resources owned by restores and branches.

Covers TCP port allocation, systemd units, ZFS datasets and processes
holding a data directory open.  Every cleanup step except dataset
destruction is best-effort: failures are logged and the sequence goes on.
A dataset that survives ``zfs destroy`` is still mounted and must never be
reported as deleted.
"""

import asyncio
import fcntl
import logging
import re
from pathlib import Path

import psutil

from branchd.commands import run_command, run_script
from branchd.config.models import BranchdSettings
from branchd.errors import CommandError, ResourceError
from branchd.restore.process import ProcessManager

logger = logging.getLogger(__name__)

_UFW_PORT_RE = re.compile(r"\b(\d+)/tcp\b")


def service_name(restore_name: str) -> str:
    return f"branchd-restore-{restore_name}"


def listening_ports() -> set[int]:
    """Ports with a socket in LISTEN state on this host."""
    ports: set[int] = set()
    for conn in psutil.net_connections(kind="inet"):
        if conn.status == psutil.CONN_LISTEN and conn.laddr:
            ports.add(conn.laddr.port)
    return ports


class ResourceManager:
    """Allocate and reclaim ports, units, datasets and processes.

    Args:
        settings: Service settings (port ranges, paths, pool name).
        process_manager: Tracker used to kill a restore's own script.
    """

    def __init__(self, settings: BranchdSettings, process_manager: ProcessManager) -> None:
        self._settings = settings
        self._process_manager = process_manager
        self._timeout = settings.command_timeout_seconds

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    def find_available_port(self, start: int | None = None, end: int | None = None) -> int:
        """First port in ``[start, end]`` nothing listens on.

        Restore ports are not reserved; a collision surfaces as a failed
        cluster start and the next attempt picks another port.

        Raises:
            ResourceError: If every port in the range is in use.
        """
        if start is None or end is None:
            start, end = self._settings.restore_port_range
        in_use = listening_ports()
        for port in range(start, end + 1):
            if port not in in_use:
                logger.debug("Found available port %d", port)
                return port
        raise ResourceError(f"no available ports in range {start}-{end}")

    async def reserved_firewall_ports(self) -> set[int]:
        """TCP ports currently allowed in ufw."""
        output = await run_command(["sudo", "ufw", "status", "numbered"], timeout=self._timeout)
        return {int(m) for m in _UFW_PORT_RE.findall(output)}

    async def _reserve(self, port: int) -> bool:
        try:
            await run_command(["sudo", "ufw", "allow", f"{port}/tcp"], timeout=self._timeout)
        except CommandError as e:
            logger.warning("Failed to reserve port %d in ufw: %s", port, e)
            return False
        return True

    async def allocate_branch_port(self, forced_port: int | None = None) -> int:
        """Pick a free branch port and reserve it in the firewall.

        The ufw rule doubles as the reservation: a port is free only if
        nothing listens on it and no rule exists for it.  The scan and the
        reservation run under an exclusive lock on ``port_lock_file`` so
        concurrent branch creations cannot pick the same port.

        Args:
            forced_port: Reuse this exact port (branch refresh).  Fails if
                it is taken instead of falling back to another port.

        Returns:
            The reserved port.

        Raises:
            ResourceError: If no port (or the forced port) is available.
        """
        lock_path = Path(self._settings.port_lock_file)
        with open(lock_path, "a") as lock_file:
            await asyncio.to_thread(fcntl.flock, lock_file.fileno(), fcntl.LOCK_EX)
            try:
                in_use = listening_ports()
                reserved = await self.reserved_firewall_ports()

                if forced_port is not None:
                    if forced_port in in_use:
                        raise ResourceError(f"Forced port {forced_port} is already in use")
                    if forced_port in reserved:
                        raise ResourceError(
                            f"Forced port {forced_port} is already reserved in UFW"
                        )
                    if not await self._reserve(forced_port):
                        raise ResourceError(f"Failed to reserve forced port {forced_port}")
                    logger.info("Reserved forced branch port %d", forced_port)
                    return forced_port

                start, end = self._settings.branch_port_range
                for port in range(start, end + 1):
                    if port in in_use or port in reserved:
                        continue
                    if await self._reserve(port):
                        logger.info("Reserved branch port %d", port)
                        return port
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

        raise ResourceError(f"No available ports in range {start}-{end}")

    async def release_branch_port(self, port: int) -> None:
        """Drop a port's ufw rule (best-effort)."""
        try:
            await run_command(
                ["sudo", "ufw", "--force", "delete", "allow", f"{port}/tcp"],
                timeout=self._timeout,
            )
        except CommandError as e:
            logger.warning("Failed to release port %d (continuing anyway): %s", port, e)

    # ------------------------------------------------------------------
    # Units, processes, datasets
    # ------------------------------------------------------------------

    async def stop_service(self, unit: str) -> None:
        """Stop and disable a systemd unit (best-effort)."""
        logger.info("Stopping PostgreSQL service %s", unit)
        for action in ("stop", "disable"):
            try:
                await run_command(["sudo", "systemctl", action, unit], timeout=self._timeout)
            except CommandError as e:
                logger.warning("Failed to %s service %s (continuing anyway): %s", action, unit, e)

    async def remove_service(self, unit: str) -> None:
        """Delete a unit file and reload systemd (best-effort)."""
        unit_file = self._settings.systemd_dir / f"{unit}.service"
        logger.info("Removing systemd service file %s", unit_file)
        try:
            await run_command(["sudo", "rm", "-f", str(unit_file)], timeout=self._timeout)
            await run_command(["sudo", "systemctl", "daemon-reload"], timeout=self._timeout)
        except CommandError as e:
            logger.warning("Failed to remove service file (continuing anyway): %s", e)

    async def kill_processes_in_directory(self, directory: Path) -> None:
        """TERM, then KILL, whatever still holds ``directory`` open (best-effort)."""
        logger.info("Killing any remaining processes in %s", directory)
        target = str(directory)
        script = (
            f'pids=$(sudo lsof -t +D "{target}" 2>/dev/null || true)\n'
            'if [ -n "$pids" ]; then\n'
            '    echo "Killing processes: $pids"\n'
            "    sudo kill -TERM $pids 2>/dev/null || true\n"
            "    sleep 2\n"
            f'    pids=$(sudo lsof -t +D "{target}" 2>/dev/null || true)\n'
            '    if [ -n "$pids" ]; then\n'
            "        sudo kill -9 $pids 2>/dev/null || true\n"
            "    fi\n"
            "fi\n"
        )
        try:
            await run_script(script, timeout=self._timeout, label=f"kill processes in {target}")
        except CommandError as e:
            logger.warning("Failed to kill remaining processes (continuing anyway): %s", e)

    async def destroy_dataset(self, dataset: str) -> None:
        """Recursively destroy a ZFS dataset.

        Raises:
            ResourceError: If ``zfs destroy`` fails.
        """
        logger.info("Destroying ZFS dataset %s", dataset)
        try:
            await run_command(["sudo", "zfs", "destroy", "-r", dataset], timeout=self._timeout)
        except CommandError as e:
            logger.error("Failed to destroy ZFS dataset %s: %s", dataset, e.output.strip())
            raise ResourceError(f"failed to destroy ZFS dataset {dataset}") from e
        logger.info("ZFS dataset %s destroyed", dataset)

    async def cleanup_restore(self, restore_name: str) -> None:
        """Release everything a restore owns, in dependency order.

        1. kill the tracked restore script
        2. stop and disable its systemd unit
        3. remove the unit file
        4. kill processes still holding the data directory
        5. destroy the dataset (the only fatal step)

        Raises:
            ResourceError: If the dataset cannot be destroyed.
        """
        unit = service_name(restore_name)
        data_dir = self._settings.restore_data_path(restore_name) / "data"

        try:
            await self._process_manager.kill(restore_name)
        except OSError as e:
            logger.warning("Failed to kill restore process (continuing): %s", e)

        await self.stop_service(unit)
        await self.remove_service(unit)
        await self.kill_processes_in_directory(data_dir)
        await self.destroy_dataset(self._settings.dataset_name(restore_name))

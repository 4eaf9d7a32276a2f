from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from typing import Iterable, Protocol, runtime_checkable

import psutil

LOGGER = logging.getLogger("Devstack.Ports")

_LSOF_TIMEOUT = 5.0


class PortReclaimFailure(RuntimeError):
    """Raised when the owner of a port cannot be resolved or terminated."""

    def __init__(self, port: int, message: str) -> None:
        super().__init__(message)
        self.port = port


@runtime_checkable
class PortOwnerResolver(Protocol):
    """Platform capability for finding and killing the listener on a TCP port."""

    def owner_of(self, port: int) -> int | None: ...

    def terminate(self, pid: int) -> None: ...


class PsutilPortOwnerResolver:
    """Looks up listeners through the kernel socket table (Linux, Windows)."""

    def owner_of(self, port: int) -> int | None:
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, OSError) as exc:
            raise PortReclaimFailure(port, f"Cannot read socket table: {exc}") from exc
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.status == psutil.CONN_LISTEN and conn.pid:
                return conn.pid
        return None

    def terminate(self, pid: int) -> None:
        psutil.Process(pid).kill()


class LsofPortOwnerResolver:
    """Looks up listeners with ``lsof``; macOS restricts ``net_connections``."""

    def __init__(self, executable: str | None = None) -> None:
        self._executable = executable or shutil.which("lsof")

    def owner_of(self, port: int) -> int | None:
        if not self._executable:
            raise PortReclaimFailure(port, "lsof is not available on PATH.")
        try:
            result = subprocess.run(
                [self._executable, "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"],
                capture_output=True,
                text=True,
                timeout=_LSOF_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PortReclaimFailure(port, f"lsof failed: {exc}") from exc

        # lsof exits 1 when nothing matches.
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def terminate(self, pid: int) -> None:
        psutil.Process(pid).kill()


def default_resolver(platform: str | None = None) -> PortOwnerResolver:
    platform = platform or sys.platform
    if platform == "darwin":
        return LsofPortOwnerResolver()
    return PsutilPortOwnerResolver()


class PortReclaimer:
    """Best-effort termination of whatever already listens on the plan's ports."""

    def __init__(self, resolver: PortOwnerResolver | None = None) -> None:
        self._resolver = resolver or default_resolver()
        self._own_pid = os.getpid()

    def reclaim(self, ports: Iterable[int]) -> list[int]:
        """Kill listeners on ``ports`` and return the pids signalled.

        Never raises; a missing listener is not an error.
        """

        killed: list[int] = []
        for port in sorted(set(ports)):
            try:
                pid = self._owner_of(port)
                if pid is None:
                    continue
                LOGGER.info("Reclaiming port %s from pid %s.", port, pid)
                self._terminate(port, pid)
                killed.append(pid)
            except PortReclaimFailure as exc:
                LOGGER.warning("Could not reclaim port %s: %s", exc.port, exc)
        return killed

    def _owner_of(self, port: int) -> int | None:
        pid = self._resolver.owner_of(port)
        if pid is None:
            LOGGER.debug("No process is listening on port %s.", port)
            return None
        if pid == self._own_pid:
            LOGGER.debug("Port %s is held by this process; skipping.", port)
            return None
        return pid

    def _terminate(self, port: int, pid: int) -> None:
        try:
            self._resolver.terminate(pid)
        except psutil.NoSuchProcess:
            LOGGER.debug("Process %s on port %s already exited.", pid, port)
        except (psutil.Error, OSError) as exc:
            raise PortReclaimFailure(
                port, f"Cannot terminate pid {pid}: {exc}"
            ) from exc

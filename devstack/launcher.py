from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from typing import Callable, Mapping

from .types import ManagedProcess, ProcessState

LOGGER = logging.getLogger("Devstack.Launcher")

PopenFunc = Callable[..., subprocess.Popen]
ExitCallback = Callable[[ManagedProcess, int], None]

_EXIT_POLL_INTERVAL = 0.25


class SpawnFailure(RuntimeError):
    """Raised when a stage's process cannot be started."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


def launch_process(
    managed: ManagedProcess,
    env: Mapping[str, str] | None = None,
    *,
    popen: PopenFunc = subprocess.Popen,
) -> ManagedProcess:
    """Start ``managed`` with the console streams inherited from this process.

    Returns as soon as the OS accepts the spawn. Failures that only surface
    once the child runs are reported through :func:`watch_exit`.
    """

    env_vars = os.environ.copy()
    env_vars.update(env or {})

    managed.transition(ProcessState.STARTING)
    # npm and flutter are .cmd shims on Windows and only resolve through the shell.
    use_shell = sys.platform == "win32"
    command = subprocess.list2cmdline(managed.command) if use_shell else list(managed.command)
    try:
        process = popen(command, cwd=managed.cwd, env=env_vars, shell=use_shell)
    except OSError as exc:
        managed.failure = str(exc)
        managed.transition(ProcessState.FAILED)
        raise SpawnFailure(
            managed.name, f"Failed to start '{managed.command[0]}': {exc}"
        ) from exc

    managed.process = process
    managed.launched_at = time.monotonic()
    LOGGER.info(
        "Launched '%s' (pid=%s): %s", managed.name, process.pid, " ".join(managed.command)
    )
    return managed


async def watch_exit(
    managed: ManagedProcess,
    on_exit: ExitCallback,
    *,
    poll_interval: float = _EXIT_POLL_INTERVAL,
) -> int | None:
    """Invoke ``on_exit`` once when the child of ``managed`` exits."""

    process = managed.process
    if process is None:
        return None
    while True:
        returncode = process.poll()
        if returncode is not None:
            break
        await asyncio.sleep(poll_interval)

    LOGGER.debug("Process '%s' exited with code %s.", managed.name, returncode)
    on_exit(managed, returncode)
    return returncode

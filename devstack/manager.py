from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from typing import Callable, List, Mapping, Sequence

import psutil

from .health import ReadinessProbe, ReadinessTimeout
from .launcher import SpawnFailure, launch_process, watch_exit
from .ports import PortReclaimer
from .types import (
    ManagedProcess,
    OrchestrationPlan,
    OrchestratorState,
    ProcessState,
    ReadinessCheck,
    Stage,
)

LOGGER = logging.getLogger("Devstack.Orchestrator")

LaunchFunc = Callable[[ManagedProcess, Mapping[str, str]], ManagedProcess]
ProbeFactory = Callable[..., ReadinessProbe]

DEFAULT_SIGNALS: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)
_DEFAULT_SETTLE_DELAY = 1.0
_IS_WINDOWS = os.name == "nt"


class StageFailure(RuntimeError):
    """Raised when a stage fails to launch or to become ready."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {reason}")
        self.stage = stage
        self.reason = reason


class Orchestrator:
    """Bring up a plan's stages in order and relay shutdown signals to them."""

    def __init__(
        self,
        plan: OrchestrationPlan,
        *,
        reclaimer: PortReclaimer | None = None,
        launch_fn: LaunchFunc = launch_process,
        probe_factory: ProbeFactory = ReadinessProbe,
        settle_delay: float = _DEFAULT_SETTLE_DELAY,
        exit_poll_interval: float = 0.25,
        signals: Sequence[int] = DEFAULT_SIGNALS,
        on_all_ready: Callable[[], None] | None = None,
    ) -> None:
        self.plan = plan
        self.state = OrchestratorState.IDLE
        self.processes: List[ManagedProcess] = []
        self._reclaimer = reclaimer or PortReclaimer()
        self._launch = launch_fn
        self._probe_factory = probe_factory
        self._settle_delay = settle_delay
        self._exit_poll_interval = exit_poll_interval
        self._signals = tuple(signals)
        self._on_all_ready = on_all_ready
        self._watchers: list[asyncio.Task[int | None]] = []
        self._stage_failures: dict[str, asyncio.Future[SpawnFailure]] = {}
        self._run_task: asyncio.Task[None] | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._received_signal: int | None = None

    @property
    def shutting_down(self) -> bool:
        return self.state in (OrchestratorState.SHUTTING_DOWN, OrchestratorState.EXITED)

    def process(self, name: str) -> ManagedProcess | None:
        return next((p for p in self.processes if p.name == name), None)

    async def run(self) -> None:
        """Reclaim ports and start every stage, raising :class:`StageFailure` on abort."""

        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError("Orchestrator has already run.")

        ports = self.plan.ports
        if ports:
            self._set_state(OrchestratorState.RECLAIMING_PORTS)
            LOGGER.info("Reclaiming ports %s ...", sorted(ports))
            self._reclaimer.reclaim(ports)
            if self._settle_delay:
                await asyncio.sleep(self._settle_delay)

        for stage in self.plan.stages:
            if self.shutting_down:
                return
            self._set_state(OrchestratorState.RUNNING_STAGE)
            try:
                await self._run_stage(stage)
            except StageFailure:
                self._set_state(OrchestratorState.ABORTED)
                raise

        if not self.shutting_down:
            self._set_state(OrchestratorState.ALL_READY)
            LOGGER.info(
                "All stages ready: %s", ", ".join(s.name for s in self.plan.stages)
            )
            if self._on_all_ready is not None:
                self._on_all_ready()

    async def serve(self, *, handle_signals: bool = True) -> int:
        """Run the plan, then block until a shutdown signal arrives.

        Returns the process exit code: 0 after signal-driven shutdown, 1 when a
        stage fails.
        """

        self._shutdown_event = asyncio.Event()
        if handle_signals:
            self.install_signal_handlers()

        self._run_task = asyncio.ensure_future(self.run())
        try:
            try:
                await self._run_task
            except StageFailure as exc:
                LOGGER.error("%s; exiting with code 1.", exc)
                return 1
            except asyncio.CancelledError:
                if not self.shutting_down:
                    raise
            finally:
                self._run_task = None

            if not self.shutting_down:
                await self._shutdown_event.wait()
            self._set_state(OrchestratorState.EXITED)
            return 0
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop watching child exits; the children themselves keep running."""

        watchers, self._watchers = self._watchers, []
        for task in watchers:
            task.cancel()
        for task in watchers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            try:
                loop.add_signal_handler(signum, self.handle_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support add_signal_handler.
                signal.signal(
                    signum,
                    lambda received, _frame: loop.call_soon_threadsafe(
                        self.handle_signal, received
                    ),
                )

    def handle_signal(self, signum: int) -> int:
        """Relay ``signum`` to every starting or ready process, once."""

        if self.shutting_down:
            return 0
        self._received_signal = signum
        self._set_state(OrchestratorState.SHUTTING_DOWN)
        LOGGER.info("Received %s; shutting down services...", _signal_name(signum))

        relayed = 0
        for managed in self.processes:
            if not managed.active:
                continue
            if self._relay(managed, signum):
                relayed += 1

        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        return relayed

    def _relay(self, managed: ManagedProcess, signum: int) -> bool:
        process = managed.process
        managed.transition(ProcessState.TERMINATING)
        if process is None:
            return False
        LOGGER.info(
            "Sending %s to '%s' (pid=%s).", _signal_name(signum), managed.name, process.pid
        )
        try:
            if _IS_WINDOWS:
                _terminate_tree(process)
            else:
                process.send_signal(signum)
        except (ProcessLookupError, OSError) as exc:
            LOGGER.debug("Could not signal '%s': %s", managed.name, exc)
            return False
        return True

    async def _run_stage(self, stage: Stage) -> None:
        managed = ManagedProcess.for_stage(stage)
        self.processes.append(managed)

        if stage.launch_delay:
            await asyncio.sleep(stage.launch_delay)

        LOGGER.info("Launching stage '%s' ...", stage.name)
        try:
            self._launch(managed, stage.env)
        except SpawnFailure as exc:
            raise StageFailure(stage.name, str(exc)) from exc

        loop = asyncio.get_running_loop()
        spawn_failed: asyncio.Future[SpawnFailure] = loop.create_future()
        self._stage_failures[stage.name] = spawn_failed
        self._watchers.append(
            asyncio.ensure_future(
                watch_exit(
                    managed, self._on_exit, poll_interval=self._exit_poll_interval
                )
            )
        )

        probe_task = asyncio.ensure_future(self._probe(stage.check, stage.name))
        try:
            done, _ = await asyncio.wait(
                {probe_task, spawn_failed}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not probe_task.done():
                probe_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await probe_task

        if self.shutting_down:
            return
        if probe_task in done and not probe_task.cancelled():
            try:
                probe_task.result()
            except ReadinessTimeout as exc:
                self._fail(managed, str(exc))
                raise StageFailure(
                    stage.name, f"not ready after {exc.attempts} attempt(s)"
                ) from exc
            if managed.state is ProcessState.STARTING:
                managed.transition(ProcessState.READY)
                managed.ready_at = time.monotonic()
                LOGGER.info("Stage '%s' is ready.", stage.name)
                return

        if spawn_failed.done():
            failure = spawn_failed.result()
            raise StageFailure(stage.name, str(failure)) from failure
        raise StageFailure(
            stage.name, f"process left the starting state ({managed.state.value})"
        )

    async def _probe(self, check: ReadinessCheck, name: str) -> int:
        probe = self._probe_factory(check, name=name)
        return await probe.wait()

    def _fail(self, managed: ManagedProcess, reason: str) -> None:
        managed.failure = reason
        if managed.state is ProcessState.STARTING:
            managed.transition(ProcessState.FAILED)

    def _on_exit(self, managed: ManagedProcess, returncode: int) -> None:
        if managed.state is ProcessState.STARTING:
            reason = (
                f"'{managed.command[0]}' exited with code {returncode} "
                "before becoming ready"
            )
            self._fail(managed, reason)
            pending = self._stage_failures.get(managed.name)
            if pending is not None and not pending.done():
                pending.set_result(SpawnFailure(managed.name, reason))
            return

        if managed.state is ProcessState.READY:
            LOGGER.warning(
                "Process '%s' exited unexpectedly with code %s.", managed.name, returncode
            )
        managed.transition(ProcessState.STOPPED)

    def _set_state(self, state: OrchestratorState) -> None:
        LOGGER.debug("Orchestrator state: %s -> %s", self.state.value, state.value)
        self.state = state


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _terminate_tree(process) -> None:
    """Terminate ``process`` and its descendants.

    On Windows children run under a ``shell=True`` wrapper, so terminating the
    wrapper alone would leave the real service running.
    """

    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.Error as exc:
        LOGGER.debug("Could not list children of pid %s: %s", process.pid, exc)
        children = []
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as exc:
            LOGGER.debug("Could not terminate child pid %s: %s", child.pid, exc)
    process.terminate()

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Tuple


class ProcessState(str, Enum):
    """Lifecycle of a process launched by the orchestrator."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TERMINATING = "terminating"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RECLAIMING_PORTS = "reclaiming_ports"
    RUNNING_STAGE = "running_stage"
    ALL_READY = "all_ready"
    ABORTED = "aborted"
    SHUTTING_DOWN = "shutting_down"
    EXITED = "exited"


_ALLOWED_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.STOPPED: frozenset({ProcessState.STARTING}),
    ProcessState.STARTING: frozenset(
        {ProcessState.READY, ProcessState.FAILED, ProcessState.TERMINATING}
    ),
    ProcessState.READY: frozenset({ProcessState.TERMINATING, ProcessState.STOPPED}),
    ProcessState.FAILED: frozenset({ProcessState.TERMINATING, ProcessState.STOPPED}),
    ProcessState.TERMINATING: frozenset({ProcessState.STOPPED}),
}


@dataclass(frozen=True)
class ProbeTarget:
    """Network location polled by a readiness probe."""

    host: str
    port: int
    path: str = "/"
    protocol: str = "http"

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{self.protocol}://{self.host}:{self.port}{path}"


@dataclass(frozen=True)
class ReadinessCheck:
    """Immutable polling configuration for a single stage.

    ``expect_status`` of ``None`` means any HTTP response proves the target is
    listening; otherwise the response status must match exactly.
    """

    target: ProbeTarget
    max_attempts: int
    expect_status: Optional[int] = None
    interval: float = 1.0
    attempt_timeout: float = 0.8
    initial_delay: float = 1.0
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.interval <= 0:
            raise ValueError("interval must be positive.")
        if self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive.")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative.")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided.")

    @property
    def budget(self) -> float:
        if self.timeout is not None:
            return self.timeout
        return (
            self.initial_delay
            + self.max_attempts * self.interval
            + self.attempt_timeout
        )


@dataclass(frozen=True)
class Stage:
    """One process plus the readiness check that gates the next stage."""

    name: str
    command: Tuple[str, ...]
    cwd: Path
    check: ReadinessCheck
    ports: frozenset[int] = frozenset()
    env: Mapping[str, str] = field(default_factory=dict)
    launch_delay: float = 0.0


@dataclass(frozen=True)
class OrchestrationPlan:
    name: str
    stages: Tuple[Stage, ...]

    def __post_init__(self) -> None:
        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate stage names in plan '{self.name}': {names}")

    @property
    def ports(self) -> frozenset[int]:
        ports: set[int] = set()
        for stage in self.stages:
            ports.update(stage.ports)
        return frozenset(ports)


@dataclass
class ManagedProcess:
    """Tracking metadata for a process launched by one stage."""

    name: str
    command: Tuple[str, ...]
    cwd: Path
    state: ProcessState = ProcessState.STOPPED
    process: Optional[subprocess.Popen] = None
    failure: Optional[str] = None
    launched_at: Optional[float] = None
    ready_at: Optional[float] = None

    @classmethod
    def for_stage(cls, stage: Stage) -> "ManagedProcess":
        return cls(name=stage.name, command=tuple(stage.command), cwd=stage.cwd)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def active(self) -> bool:
        return self.state in (ProcessState.STARTING, ProcessState.READY)

    def transition(self, new_state: ProcessState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Process '{self.name}' cannot move from {self.state.value} to {new_state.value}."
            )
        self.state = new_state
        if new_state is ProcessState.STOPPED:
            self.process = None
